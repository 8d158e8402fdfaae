"""Request budget shared by every upstream call of a process.

A token bucket replaces fixed sleeps between pages and between stores: the
budget is ``rate`` requests per second with at most ``burst`` requests
back-to-back. Clock and sleep are injectable so tests run without real timers.
"""

import asyncio
import time
from typing import Awaitable, Callable

import structlog

logger = structlog.get_logger()


class RateLimiter:
    """Async token bucket."""

    def __init__(
        self,
        rate: float,
        burst: int = 1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if rate <= 0:
            raise ValueError("rate must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")
        self.rate = rate
        self.burst = burst
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(burst)
        self._updated = clock()
        self._blocked_until = 0.0
        self._lock = asyncio.Lock()

    @property
    def interval(self) -> float:
        """Seconds between requests once the burst is spent."""
        return 1.0 / self.rate

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
        self._updated = now

    async def acquire(self) -> float:
        """Wait until a request may be sent.

        Returns:
            Seconds spent waiting
        """
        waited = 0.0
        async with self._lock:
            while True:
                now = self._clock()
                if now < self._blocked_until:
                    delay = self._blocked_until - now
                else:
                    self._refill(now)
                    if self._tokens >= 1.0:
                        self._tokens -= 1.0
                        return waited
                    delay = (1.0 - self._tokens) / self.rate
                await self._sleep(delay)
                waited += delay

    def defer(self, seconds: float) -> None:
        """Block all callers for ``seconds``, e.g. after a 429 with Retry-After."""
        until = self._clock() + max(0.0, seconds)
        if until > self._blocked_until:
            self._blocked_until = until
            # Drain so the first request after the pause does not burst
            self._tokens = 0.0
            self._updated = until
            logger.info("Upstream rate limit back-off", seconds=seconds)
