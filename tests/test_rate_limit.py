"""
Unit tests for the request rate limiter.
"""

import asyncio
import time

import pytest

from dataflow.backfill.rate_limit import RateLimiter


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_first_request_does_not_wait(self):
        limiter = RateLimiter(requests_per_second=10)
        assert await limiter.acquire() == 0

    @pytest.mark.asyncio
    async def test_disabled(self):
        for rps in (None, 0):
            limiter = RateLimiter(rps)
            for _ in range(5):
                assert await limiter.acquire() == 0

    @pytest.mark.asyncio
    async def test_spacing_between_requests(self):
        limiter = RateLimiter(requests_per_second=20)
        start = time.monotonic()
        for _ in range(4):
            await limiter.acquire()
        elapsed = time.monotonic() - start

        assert elapsed >= 3 * 0.05 * 0.9

    @pytest.mark.asyncio
    async def test_concurrent_waiters_get_distinct_slots(self):
        limiter = RateLimiter(requests_per_second=50)

        waits = await asyncio.gather(*(limiter.acquire() for _ in range(5)))

        assert sorted(waits)[0] == 0
        assert sorted(waits)[-1] == pytest.approx(4 * 0.02, abs=0.015)
