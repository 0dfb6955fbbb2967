"""
Rate Limiter — Minimum spacing between outbound model calls.

Shared by every request an executor runs. Slots are handed out in
arrival order (asyncio.Lock wakes waiters FIFO); each slot starts at
least `min_interval` seconds after the previous one. Waiting suspends
only the calling task.

An optional `max_in_flight` bound turns the limiter into a semaphore as
well: `acquire()` then also waits for a free slot and `release()` gives
it back.

Usage:
    limiter = RateLimiter(min_interval=0.2)

    async with limiter:
        text = await provider.complete(...)
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class RateLimiter:
    """Explicit throttle with acquire/release and async context manager support."""

    def __init__(
        self,
        min_interval: float = 0.2,
        *,
        max_in_flight: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if min_interval < 0:
            raise ValueError("min_interval must be >= 0")
        self._min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._semaphore = asyncio.Semaphore(max_in_flight) if max_in_flight else None
        self._last_slot: Optional[float] = None

        # Stats
        self._acquired = 0
        self._throttled = 0
        self._total_wait = 0.0

    @property
    def min_interval(self) -> float:
        return self._min_interval

    async def acquire(self) -> float:
        """
        Wait for the next call slot. Returns the seconds spent waiting.
        """
        start = self._clock()
        if self._semaphore is not None:
            await self._semaphore.acquire()

        try:
            async with self._lock:
                if self._last_slot is not None:
                    wait = self._last_slot + self._min_interval - self._clock()
                    if wait > 0:
                        self._throttled += 1
                        logger.debug("rate_limit_wait", extra={"delay_s": round(wait, 3)})
                        await self._sleep(wait)
                self._last_slot = self._clock()
                self._acquired += 1
        except BaseException:
            if self._semaphore is not None:
                self._semaphore.release()
            raise

        waited = self._clock() - start
        self._total_wait += waited
        return waited

    def release(self) -> None:
        """Give back an in-flight slot. A no-op without `max_in_flight`."""
        if self._semaphore is not None:
            self._semaphore.release()

    async def __aenter__(self) -> "RateLimiter":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()

    def get_stats(self) -> dict[str, float]:
        return {
            "min_interval_s": self._min_interval,
            "acquired": self._acquired,
            "throttled": self._throttled,
            "total_wait_s": round(self._total_wait, 3),
        }
