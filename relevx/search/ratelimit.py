"""Minimum-interval rate limiter shared by search calls."""

from __future__ import annotations

import asyncio
import logging
import time

logger = logging.getLogger(__name__)


class RateLimiter:
    """Spaces calls at least ``min_interval`` seconds apart.

    Callers are serialized: each waits out whatever remains of the interval
    since the previous call was released.
    """

    def __init__(self, min_interval: float, clock=time.monotonic, sleep=asyncio.sleep):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_call: float | None = None

    async def wait(self) -> None:
        async with self._lock:
            if self._last_call is not None:
                remaining = self.min_interval - (self._clock() - self._last_call)
                if remaining > 0:
                    logger.debug("Rate limit: waiting %.2fs", remaining)
                    await self._sleep(remaining)
            self._last_call = self._clock()
