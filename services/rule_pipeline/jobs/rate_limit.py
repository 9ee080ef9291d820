"""
Queue Rate Limiting
===================

N jobs per window, per queue. ``SlidingWindowRateLimiter`` works within one
process; ``RedisRateLimiter`` shares the budget across workers through a
Redis counter.

Version: 0.1.0
"""

import time
from collections import deque
from collections.abc import Callable
from typing import Protocol

from shared.database.redis import RedisClient
from shared.logging import get_logger

logger = get_logger(__name__)


class RateLimiter(Protocol):
    async def try_acquire(self) -> bool:
        """Take one slot; False when the window is exhausted."""
        ...


class SlidingWindowRateLimiter:
    """
    In-process sliding window.

    Args:
        max_jobs: Jobs allowed per window
        window_seconds: Window length
        clock: Monotonic clock (injectable for tests)
    """

    def __init__(
        self,
        max_jobs: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_jobs < 1:
            raise ValueError("max_jobs must be at least 1")
        self.max_jobs = max_jobs
        self.window_seconds = window_seconds
        self.clock = clock
        self._stamps: deque[float] = deque()

    def _evict(self, now: float) -> None:
        while self._stamps and now - self._stamps[0] >= self.window_seconds:
            self._stamps.popleft()

    async def try_acquire(self) -> bool:
        now = self.clock()
        self._evict(now)
        if len(self._stamps) >= self.max_jobs:
            return False
        self._stamps.append(now)
        return True

    @property
    def remaining(self) -> int:
        self._evict(self.clock())
        return self.max_jobs - len(self._stamps)


class RedisRateLimiter:
    """Fixed-window counter in Redis shared by every worker of a queue."""

    def __init__(self, queue: str, max_jobs: int, window_seconds: float) -> None:
        self.key = f"rate:queue:{queue}"
        self.max_jobs = max_jobs
        self.window_seconds = max(1, int(window_seconds))

    async def try_acquire(self) -> bool:
        allowed, remaining = await RedisClient.check_rate_limit(
            self.key, self.max_jobs, self.window_seconds
        )
        if not allowed:
            logger.debug("queue_rate_limited", key=self.key, remaining=remaining)
        return allowed
