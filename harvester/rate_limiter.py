from __future__ import annotations

import asyncio
import time


class RateLimiter:
    """Event-loop token-bucket limiter based on navigations per second (QPS).

    One instance is shared by every session so the target sees a bounded
    request rate regardless of how many tasks run. `await acquire()`
    suspends the calling session until its next navigation is allowed."""

    def __init__(self, qps: float) -> None:
        self._interval = 1.0 / qps if qps > 0 else 0.0
        self._lock = asyncio.Lock()
        self._next_allowed = 0.0

    @property
    def interval(self) -> float:
        return self._interval

    async def acquire(self) -> None:
        """Suspend until the next navigation is permitted under the QPS limit."""
        if self._interval <= 0:
            return
        async with self._lock:
            now = time.monotonic()
            if now < self._next_allowed:
                await asyncio.sleep(self._next_allowed - now)
            self._next_allowed = max(self._next_allowed, time.monotonic()) + self._interval
