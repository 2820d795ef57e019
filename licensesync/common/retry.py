"""Reusable bounded retry with exponential backoff.

Every external call (payment processor, relational store, cache) is wrapped
in a `RetryPolicy` instead of carrying its own ad hoc loop.
"""

import asyncio
from typing import Any, Awaitable, Callable

from licensesync.common.config import settings
from licensesync.common.logging import logger
from licensesync.common.metrics import retries_total


def backoff_seconds(attempt: int, base: float) -> float:
    """Doubling delay for the given 1-based attempt."""

    return base * (2 ** (attempt - 1))


def is_retryable(exc: BaseException) -> bool:
    """Default predicate: errors opt in through a truthy `retryable` attribute."""

    return bool(getattr(exc, "retryable", False))


class RetryPolicy:
    """Run a callable up to `max_attempts` times, doubling the delay each time.

    Delays follow `base_delay * 2 ** (attempt - 1)` (1s, 2s, 4s for the
    defaults) and are only applied between attempts. Errors rejected by
    `retryable` are re-raised immediately.
    """

    def __init__(
        self,
        max_attempts: int | None = None,
        base_delay: float | None = None,
        retryable: Callable[[BaseException], bool] = is_retryable,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        dependency: str = "processor",
    ) -> None:
        self.max_attempts = max_attempts if max_attempts is not None else settings.retry_max_attempts
        self.base_delay = base_delay if base_delay is not None else settings.retry_base_delay_seconds
        self.retryable = retryable
        self.sleep = sleep
        self.dependency = dependency

    def delay_for(self, attempt: int) -> float:
        return backoff_seconds(attempt, self.base_delay)

    def with_predicate(self, retryable: Callable[[BaseException], bool], dependency: str) -> "RetryPolicy":
        """Copy this schedule for a different dependency/error class."""

        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            retryable=retryable,
            sleep=self.sleep,
            dependency=dependency,
        )

    async def run(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        attempt = 1
        while True:
            try:
                return fn(*args, **kwargs)
            except Exception as exc:
                if not self.retryable(exc) or attempt >= self.max_attempts:
                    raise
                delay_seconds = self.delay_for(attempt)
                retries_total.labels(service=settings.service_name, dependency=self.dependency).inc()
                logger.warning(
                    "retrying dependency=%s attempt=%s backoff_s=%s error=%s",
                    self.dependency,
                    attempt,
                    delay_seconds,
                    exc,
                )
                await self.sleep(delay_seconds)
                attempt += 1
