"""Token bucket rate limiter for board API calls."""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import structlog

logger = structlog.get_logger()


class TokenBucket:
    """Lock-guarded token bucket.

    The bucket starts full. Tokens refill continuously at ``rate`` per second
    up to ``burst``. One instance is shared by every call in a run and passed
    explicitly to the executor.
    """

    def __init__(
        self,
        rate: float,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the bucket.

        Args:
            rate: Tokens added per second
            burst: Bucket capacity
            clock: Monotonic clock in seconds
            sleep: Coroutine used to wait for replenishment
        """
        if rate <= 0:
            raise ValueError("rate must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")
        self.rate = float(rate)
        self.burst = burst
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(burst)
        self._updated = clock()
        self._lock = asyncio.Lock()

    @property
    def available(self) -> float:
        """Tokens currently available, after refill."""
        self._refill()
        return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
        self._updated = now

    async def acquire(self, tokens: float = 1.0) -> float:
        """Take tokens, suspending until they are available.

        Returns:
            Seconds spent waiting
        """
        if tokens > self.burst:
            raise ValueError(f"Cannot acquire {tokens} tokens from a bucket of {self.burst}")
        waited = 0.0
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    return waited
                delay = (tokens - self._tokens) / self.rate
                logger.debug("Rate budget exhausted, waiting", delay=round(delay, 3))
                await self._sleep(delay)
                waited += delay


@dataclass(frozen=True)
class RateLimitStatus:
    """Remaining API budget as reported by the board API."""

    remaining: int
    limit: int
    reset_at: str | None = None


def should_proceed(status: RateLimitStatus | None, min_remaining: int) -> bool:
    """Whether a run may start with the reported budget.

    An unknown budget never blocks a run.
    """
    if status is None or status.remaining >= min_remaining:
        return True
    logger.warning(
        "Rate limit low",
        remaining=status.remaining,
        limit=status.limit,
        reset_at=status.reset_at,
        min_remaining=min_remaining,
    )
    return False
