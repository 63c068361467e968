"""
Throughput rate limiter for streamed downloads.

One instance is shared by every concurrent download so the aggregate
throughput stays under the configured rate. Permits map 1:1 to bytes.

Each acquire reserves the next ``permits / rate`` seconds of capacity and
suspends the calling task until its reservation has elapsed. Reservations
queue behind each other, so transferring S bytes at R bytes/sec takes at
least S/R seconds no matter how the bytes are chunked.

Usage:
    limiter = RateLimiter(permits_per_second=50 * 1024 * 1024)
    async for chunk in stream:
        await limiter.acquire(len(chunk))
        write(chunk)

A non-positive rate means unlimited: acquire never suspends.
"""

import asyncio
import logging
import threading
import time
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

UNLIMITED = -1.0


class RateLimiter:
    """
    Reservation based rate limiter.

    Thread-safe for reservations; waiting happens on the caller's event loop.
    """

    def __init__(
        self,
        permits_per_second: float = UNLIMITED,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._rate = float(permits_per_second)
        self._next_free_at = clock()

    @classmethod
    def unlimited(cls) -> "RateLimiter":
        return cls(UNLIMITED)

    @property
    def rate(self) -> float:
        """Permits per second, or a non-positive value when unlimited."""
        return self._rate

    @property
    def is_unlimited(self) -> bool:
        return self._rate <= 0

    def set_rate(self, permits_per_second: float) -> None:
        """Change the rate. Already reserved capacity is not rescheduled."""
        with self._lock:
            old_rate = self._rate
            self._rate = float(permits_per_second)
            now = self._clock()
            if self._next_free_at < now:
                self._next_free_at = now
        logger.info(
            f"Rate limit changed: {old_rate:g} -> {permits_per_second:g} permits/s",
            extra={"operation": "set_rate"},
        )

    def reserve(self, permits: int) -> float:
        """
        Reserve ``permits`` and return how many seconds the caller must wait.

        Raises:
            ValueError: If permits is negative
        """
        if permits < 0:
            raise ValueError(f"Requested permits ({permits}) must be non-negative")
        if permits == 0:
            return 0.0

        with self._lock:
            if self._rate <= 0:
                return 0.0
            now = self._clock()
            start = max(now, self._next_free_at)
            self._next_free_at = start + permits / self._rate
            return self._next_free_at - now

    async def acquire(self, permits: int = 1) -> float:
        """
        Acquire ``permits``, suspending the current task until they are available.

        Args:
            permits: Number of permits (bytes) to acquire

        Returns:
            Seconds spent waiting
        """
        wait_seconds = self.reserve(permits)
        if wait_seconds > 0:
            await self._sleep(wait_seconds)
        return wait_seconds

    def __repr__(self) -> str:
        rate = "unlimited" if self.is_unlimited else f"{self._rate:g}/s"
        return f"RateLimiter({rate})"
