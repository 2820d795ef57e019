"""At-most-once execution gate backed by `idempotency_records`."""

from typing import Any, Awaitable, Callable

from licensesync.common.config import settings
from licensesync.common.logging import logger
from licensesync.common.metrics import duplicate_events_skipped_total
from licensesync.services.provisioning.errors import OperationInFlight
from licensesync.services.provisioning.models import utcnow
from licensesync.services.provisioning.persistence import ProvisioningStore, as_utc


class IdempotencyGuard:
    """Run an operation once per key and replay its stored result afterwards.

    The unique-key insert of a `pending` record is the only gate. A key that
    is `completed` returns the cached result without re-executing; a key that
    is still `pending` inside its TTL raises `OperationInFlight`. Failed or
    expired records may be taken over by exactly one later caller, so the
    wrapped operation must treat already-applied units as no-ops.
    """

    def __init__(self, store: ProvisioningStore, ttl_seconds: int | None = None, scope: str = "event") -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.idempotency_ttl_seconds
        self.scope = scope

    async def run(self, key: str, fn: Callable[[], Awaitable[dict[str, Any]]]) -> dict[str, Any]:
        existing = self.store.begin_operation(key, self.ttl_seconds)
        if existing is not None:
            if existing.status == "completed":
                duplicate_events_skipped_total.labels(service=settings.service_name, scope=self.scope).inc()
                logger.info("duplicate operation replayed key=%s", key)
                return existing.result or {}
            expired = as_utc(existing.expires_at) <= utcnow()
            if existing.status == "pending" and not expired:
                raise OperationInFlight(f"operation {key} is already in progress")
            if not self.store.reclaim_operation(key, self.ttl_seconds):
                raise OperationInFlight(f"operation {key} was taken over by another caller")
            logger.warning("idempotency record taken over key=%s previous_status=%s", key, existing.status)

        try:
            result = await fn()
        except Exception as exc:
            try:
                self.store.fail_operation(key, f"{type(exc).__name__}: {exc}")
            except Exception as mark_exc:
                logger.error("idempotency_fail_mark_failed key=%s error=%s", key, mark_exc)
            raise
        self.store.complete_operation(key, result)
        return result
