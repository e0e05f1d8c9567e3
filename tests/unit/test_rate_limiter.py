"""Unit tests for the dispatch rate limiter."""

from unittest.mock import AsyncMock

import pytest

from sip_engine.scheduling.rate_limiter import RateLimiter


class FakeTime:
    """Monotonic clock advanced by the limiter's own sleeps."""

    def __init__(self):
        self.now = 100.0
        self.sleeps = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_first_call_is_immediate(self):
        t = FakeTime()
        limiter = RateLimiter(1, 1.0, clock=t.clock, sleep=t.sleep)
        await limiter.acquire()
        assert t.sleeps == []

    @pytest.mark.asyncio
    async def test_one_per_second(self):
        t = FakeTime()
        limiter = RateLimiter(1, 1.0, clock=t.clock, sleep=t.sleep)

        for _ in range(3):
            await limiter.acquire()

        assert t.sleeps == [pytest.approx(1.0), pytest.approx(1.0)]
        assert t.now == pytest.approx(102.0)

    @pytest.mark.asyncio
    async def test_no_wait_after_idle_period(self):
        t = FakeTime()
        limiter = RateLimiter(1, 1.0, clock=t.clock, sleep=t.sleep)
        await limiter.acquire()
        t.now += 5
        await limiter.acquire()
        assert t.sleeps == []

    @pytest.mark.asyncio
    async def test_partial_wait(self):
        t = FakeTime()
        limiter = RateLimiter(1, 1.0, clock=t.clock, sleep=t.sleep)
        await limiter.acquire()
        t.now += 0.25
        await limiter.acquire()
        assert t.sleeps == [pytest.approx(0.75)]

    @pytest.mark.asyncio
    async def test_burst_within_window(self):
        t = FakeTime()
        limiter = RateLimiter(3, 1.0, clock=t.clock, sleep=t.sleep)
        for _ in range(3):
            await limiter.acquire()
        assert t.sleeps == []

        await limiter.acquire()
        assert t.sleeps == [pytest.approx(1.0)]

    @pytest.mark.asyncio
    async def test_default_sleep_is_awaited(self):
        sleep = AsyncMock()
        times = iter([0.0, 0.0, 1.0])
        limiter = RateLimiter(1, 1.0, clock=lambda: next(times), sleep=sleep)
        await limiter.acquire()
        await limiter.acquire()
        sleep.assert_awaited_once_with(1.0)
