"""Retry-with-backoff policy shared by fetches, image downloads and store writes."""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Tuple, Type, TypeVar

from ingest.logging_config import get_logger

__all__ = [
    "RetryPolicy",
    "exponential",
    "constant",
    "retry_on",
]

logger = get_logger("retry")

T = TypeVar("T")


def exponential(base_seconds: float, cap: float = 0.0) -> Callable[[int], float]:
    """Backoff of ``base_seconds * 2^attempt``, optionally capped."""

    def backoff(attempt: int) -> float:
        delay = base_seconds * (2 ** attempt)
        return min(delay, cap) if cap else delay

    return backoff


def constant(seconds: float) -> Callable[[int], float]:
    """Fixed delay between attempts."""
    return lambda attempt: seconds


def retry_on(*exc_types: Type[BaseException]) -> Callable[[BaseException], bool]:
    """Predicate that accepts instances of the given exception types."""
    types: Tuple[Type[BaseException], ...] = exc_types or (Exception,)
    return lambda exc: isinstance(exc, types)


@dataclass
class RetryPolicy:
    """Run a callable up to ``max_attempts`` times.

    Args:
        max_attempts: Total attempts, including the first one
        backoff: Maps the zero-based attempt index to a delay in seconds
        retryable: Decides whether an exception is worth another attempt
        sleep: Blocking sleep used by :meth:`call`
        async_sleep: Awaitable sleep used by :meth:`acall`
        name: Label used in log messages
    """

    max_attempts: int = 3
    backoff: Callable[[int], float] = field(default_factory=lambda: exponential(0.4))
    retryable: Callable[[BaseException], bool] = field(default_factory=retry_on)
    sleep: Callable[[float], None] = time.sleep
    async_sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    name: str = "operation"

    def _should_retry(self, exc: BaseException, attempt: int) -> bool:
        return attempt + 1 < self.max_attempts and self.retryable(exc)

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Call ``fn`` with retries; the last exception propagates."""
        attempt = 0
        while True:
            try:
                return fn(*args, **kwargs)
            except Exception as e:
                if not self._should_retry(e, attempt):
                    raise
                delay = self.backoff(attempt)
                logger.debug(
                    f"{self.name} failed ({e}), retrying in {delay:.2f}s "
                    f"(attempt {attempt + 1}/{self.max_attempts})"
                )
                self.sleep(delay)
                attempt += 1

    async def acall(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Async variant of :meth:`call` for coroutine functions."""
        attempt = 0
        while True:
            try:
                return await fn(*args, **kwargs)
            except Exception as e:
                if not self._should_retry(e, attempt):
                    raise
                delay = self.backoff(attempt)
                logger.debug(
                    f"{self.name} failed ({e}), retrying in {delay:.2f}s "
                    f"(attempt {attempt + 1}/{self.max_attempts})"
                )
                await self.async_sleep(delay)
                attempt += 1
