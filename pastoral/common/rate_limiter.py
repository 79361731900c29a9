"""
Token-bucket rate limiter.

Used for the inter-organization throttle in the orchestration jobs and the
request budget of the directory API client. Clock and sleep are injectable
so the limiter can be driven by a fake clock in tests.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

logger = logging.getLogger("pastoral.common.rate_limiter")


class RateLimiter:
    """
    Token bucket: holds up to ``capacity`` tokens, refilled at ``rate`` tokens
    per second. ``acquire`` waits until enough tokens are available.

    A limiter with ``capacity=1`` and ``rate=1/delay`` behaves like a fixed
    delay between consecutive acquisitions, with the first one free.
    """

    def __init__(
        self,
        rate: float,
        capacity: float = 1.0,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        if rate <= 0:
            raise ValueError("rate must be positive")
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.rate = rate
        self.capacity = capacity
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._tokens = capacity
        self._updated_at = self._clock()
        self.total_wait = 0.0

    @classmethod
    def fixed_delay(cls, delay: float, **kwargs) -> "RateLimiter":
        """At most one acquisition every ``delay`` seconds."""
        if delay <= 0:
            return cls.unlimited(**kwargs)
        return cls(rate=1.0 / delay, capacity=1.0, **kwargs)

    @classmethod
    def per_minute(cls, requests: int, **kwargs) -> "RateLimiter":
        """Allow bursts of ``requests`` and sustain ``requests`` per minute."""
        return cls(rate=requests / 60.0, capacity=float(requests), **kwargs)

    @classmethod
    def unlimited(cls, **kwargs) -> "RateLimiter":
        return cls(rate=float("inf"), capacity=float("inf"), **kwargs)

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated_at)
        self._updated_at = now
        if self.rate == float("inf"):
            self._tokens = self.capacity
        else:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    def try_acquire(self, tokens: float = 1.0) -> bool:
        """Take tokens without waiting. Returns False if not enough are available."""
        self._refill()
        if self._tokens >= tokens:
            self._tokens -= tokens
            return True
        return False

    def time_until_available(self, tokens: float = 1.0) -> float:
        self._refill()
        if self._tokens >= tokens:
            return 0.0
        return (tokens - self._tokens) / self.rate

    async def acquire(self, tokens: float = 1.0) -> float:
        """Wait until ``tokens`` are available and take them. Returns seconds waited."""
        if tokens > self.capacity:
            raise ValueError("cannot acquire more tokens than the bucket capacity")
        waited = 0.0
        while not self.try_acquire(tokens):
            delay = self.time_until_available(tokens)
            logger.debug("Rate limited, waiting %.3fs", delay)
            await self._sleep(delay)
            waited += delay
        self.total_wait += waited
        return waited
