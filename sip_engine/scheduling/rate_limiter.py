"""Async rate limiter for job dispatch."""

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable

from loguru import logger


class RateLimiter:
    """Allow at most ``max_calls`` per ``duration`` seconds (sliding window)."""

    def __init__(
        self,
        max_calls: int = 1,
        duration: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_calls = max_calls
        self.duration = duration
        self._clock = clock
        self._sleep = sleep
        self._calls: deque[float] = deque()

    async def acquire(self) -> None:
        """Wait until a call is allowed, then record it."""
        while True:
            now = self._clock()
            while self._calls and now - self._calls[0] >= self.duration:
                self._calls.popleft()

            if len(self._calls) < self.max_calls:
                self._calls.append(now)
                return

            wait = self.duration - (now - self._calls[0])
            logger.debug(f"Rate limiting: sleeping for {wait:.2f}s")
            await self._sleep(wait)
