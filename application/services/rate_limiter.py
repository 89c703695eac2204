"""Async rate limiter gating embedding requests."""
from __future__ import annotations

import asyncio
import logging
import time

logger = logging.getLogger(__name__)


class RateLimiter:
    """Spaces calls so that at most ``requests_per_second`` start per second.

    The limiter is immutable with respect to its rate. When the configured
    rate changes, build a new instance instead of adjusting this one.
    """

    def __init__(self, requests_per_second: float) -> None:
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        self._interval = 1.0 / requests_per_second
        self._next_slot = 0.0
        self._lock = asyncio.Lock()
        self.requests_per_second = requests_per_second

    @classmethod
    def per_minute(cls, requests_per_minute: float) -> "RateLimiter":
        return cls(requests_per_minute / 60.0)

    async def wait(self) -> None:
        async with self._lock:
            now = time.monotonic()
            delay = self._next_slot - now
            if delay > 0:
                logger.debug("Rate limiter sleeping %.3fs", delay)
                await asyncio.sleep(delay)
                now = time.monotonic()
            self._next_slot = max(now, self._next_slot) + self._interval


__all__ = ["RateLimiter"]
