"""Redis-backed fast key-value cache.

Values are JSON documents addressed by composite keys. Strict methods raise
`CacheError` (retryable); the `safe_*` variants log and swallow failures for
callers that treat the cache as best-effort.
"""

import json
from typing import Any

import redis

from licensesync.common.logging import logger


class CacheError(Exception):
    """Cache backend unavailable or returned an unusable value."""

    retryable = True


def license_cache_key(payer_id: str, license_key: str) -> str:
    return f"license:{payer_id}:{license_key}"


def sync_pending_key(task_id: str) -> str:
    return f"sync_pending:{task_id}"


class KeyValueCache:
    """Thin JSON wrapper over a Redis client."""

    def __init__(self, client: redis.Redis) -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "KeyValueCache":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def get(self, key: str) -> dict[str, Any] | None:
        try:
            raw = self.client.get(key)
        except redis.RedisError as exc:
            raise CacheError(f"cache read failed key={key}: {exc}") from exc
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise CacheError(f"cache value is not JSON key={key}") from exc

    def put(self, key: str, value: dict[str, Any], ttl_seconds: int | None = None) -> None:
        try:
            if ttl_seconds:
                self.client.setex(key, ttl_seconds, json.dumps(value))
            else:
                self.client.set(key, json.dumps(value))
        except redis.RedisError as exc:
            raise CacheError(f"cache write failed key={key}: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except redis.RedisError as exc:
            raise CacheError(f"cache delete failed key={key}: {exc}") from exc

    def scan(self, pattern: str, limit: int = 100) -> list[str]:
        try:
            keys = []
            for key in self.client.scan_iter(match=pattern, count=limit):
                keys.append(key)
                if len(keys) >= limit:
                    break
            return keys
        except redis.RedisError as exc:
            raise CacheError(f"cache scan failed pattern={pattern}: {exc}") from exc

    def safe_get(self, key: str) -> dict[str, Any] | None:
        try:
            return self.get(key)
        except CacheError as exc:
            logger.warning("cache_read_failed: %s", exc)
            return None

    def safe_put(self, key: str, value: dict[str, Any], ttl_seconds: int | None = None) -> bool:
        try:
            self.put(key, value, ttl_seconds)
            return True
        except CacheError as exc:
            logger.warning("cache_write_failed: %s", exc)
            return False
