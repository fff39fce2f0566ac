"""Retry policy for remote mailbox calls."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .exceptions import RateLimitedError, TransientNetworkError


logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_MIN_DELAY = 1.0
RATE_LIMIT_MAX_DELAY = 120.0


@dataclass
class RetryStrategy:
    """Exponential backoff retry configuration with jitter.

    Transient failures and rate limiting are budgeted separately. Throttling
    is expected under load and gets the larger budget; a rate-limited call
    never counts against the transient budget.
    """

    max_retries: int = 3
    rate_limit_max_retries: int = 8
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True

    def calculate_delay(self, retry_count: int) -> float:
        delay = min(self.base_delay * (self.exponential_base**retry_count), self.max_delay)
        if self.jitter:
            delay *= 1 + random.random() * 0.5
        return delay

    def rate_limit_delay(self, exc: RateLimitedError, retry_count: int) -> float:
        """Honour ``Retry-After`` when present, else back off exponentially."""
        if exc.retry_after is not None:
            delay = exc.retry_after
        else:
            delay = self.calculate_delay(retry_count)
        return max(RATE_LIMIT_MIN_DELAY, min(delay, RATE_LIMIT_MAX_DELAY))

    def should_retry(self, retry_count: int, exc: Exception) -> bool:
        if isinstance(exc, RateLimitedError):
            return retry_count < self.rate_limit_max_retries
        if isinstance(exc, TransientNetworkError):
            return retry_count < self.max_retries
        return False


SleepFn = Callable[[float], Awaitable[None]]


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    strategy: RetryStrategy,
    *,
    description: str = "remote call",
    sleep: Optional[SleepFn] = None,
) -> T:
    """Await ``operation`` until it succeeds or the strategy gives up.

    Only :class:`TransientNetworkError` and :class:`RateLimitedError` are
    retried; every other exception propagates on the first occurrence. The
    last exception is re-raised once its budget is exhausted.
    """
    sleep = sleep or asyncio.sleep
    transient_attempts = 0
    rate_limit_attempts = 0

    while True:
        try:
            return await operation()
        except RateLimitedError as exc:
            if not strategy.should_retry(rate_limit_attempts, exc):
                raise
            delay = strategy.rate_limit_delay(exc, rate_limit_attempts)
            rate_limit_attempts += 1
            logger.warning(
                f"{description} rate limited, retrying in {delay:.1f}s "
                f"(attempt {rate_limit_attempts}/{strategy.rate_limit_max_retries})"
            )
        except TransientNetworkError as exc:
            if not strategy.should_retry(transient_attempts, exc):
                raise
            delay = strategy.calculate_delay(transient_attempts)
            transient_attempts += 1
            logger.warning(
                f"{description} failed: {exc}; retrying in {delay:.1f}s "
                f"(attempt {transient_attempts}/{strategy.max_retries})"
            )
        await sleep(delay)


__all__ = ["RetryStrategy", "SleepFn", "call_with_retry"]
