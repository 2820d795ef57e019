"""Startup checks and redacted config logging."""

import os

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from licensesync.common.logging import logger


SECRET_MARKERS = ("KEY", "SECRET", "PASSWORD", "TOKEN")
# Without these the webhook cannot be verified and no billing call succeeds.
REQUIRED_SECRETS = ("STRIPE_API_KEY", "STRIPE_WEBHOOK_SECRET")


def _safe_env(name: str) -> str:
    value = os.getenv(name)
    if value is None:
        return "<unset>"
    if name.endswith("_DSN") or name.endswith("_URL"):
        try:
            return make_url(value).render_as_string(hide_password=True)
        except ArgumentError:
            return "<redacted>"
    if any(marker in name for marker in SECRET_MARKERS):
        return "<redacted>"
    return value


def missing_secrets(names: tuple[str, ...] = REQUIRED_SECRETS) -> list[str]:
    return [name for name in names if not os.getenv(name)]


def log_startup_config(service_name: str, keys: list[str]) -> None:
    """Log selected config keys with credentials hidden, and flag unset processor secrets."""

    config = {"service": service_name}
    for key in keys:
        config[key] = _safe_env(key)
    logger.info("startup_config=%s", config)
    for name in missing_secrets():
        logger.error("startup_secret_missing name=%s", name)
