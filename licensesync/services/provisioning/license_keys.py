"""License key generation.

Keys look like `KEY-7QXM-4HZP-N2C8-WKJD`: four groups drawn with `secrets`
from an alphabet without look-alike characters (0/O, 1/I/L).
"""

import secrets
from typing import Callable, Iterable

from licensesync.common.config import settings


KEY_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
GROUPS = 4
GROUP_LENGTH = 4
MAX_COLLISION_RETRIES = 10


def generate_license_key(prefix: str | None = None) -> str:
    prefix = prefix or settings.license_key_prefix
    parts = ["".join(secrets.choice(KEY_ALPHABET) for _ in range(GROUP_LENGTH)) for _ in range(GROUPS)]
    return f"{prefix}-{'-'.join(parts)}"


def generate_unique_keys(
    count: int,
    keys_in_use: Callable[[Iterable[str]], set[str]],
    prefix: str | None = None,
) -> list[str]:
    """Generate `count` keys that collide neither with each other nor the store.

    `keys_in_use` receives candidate keys and returns the subset already
    taken (licenses, queue items or planned purchase units).
    """

    accepted: list[str] = []
    seen: set[str] = set()
    for _ in range(MAX_COLLISION_RETRIES):
        needed = count - len(accepted)
        if needed <= 0:
            break
        candidates = []
        while len(candidates) < needed:
            key = generate_license_key(prefix)
            if key not in seen:
                seen.add(key)
                candidates.append(key)
        taken = keys_in_use(candidates)
        accepted.extend(key for key in candidates if key not in taken)
    if len(accepted) < count:
        raise RuntimeError(f"could not generate {count} unique license keys")
    return accepted
