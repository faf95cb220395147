"""Tests for the leaky-bucket gate (services/rpc/rate_limit.py)."""

from __future__ import annotations

import pytest

from services.rpc.rate_limit import LeakyBucketRateLimiter
from tests.conftest import FakeClock


@pytest.mark.asyncio
async def test_burst_then_paced():
    clock = FakeClock()
    limiter = LeakyBucketRateLimiter(capacity=2, refill_rate=2.0, clock=clock, sleep=clock.sleep)
    for _ in range(4):
        await limiter.acquire()
    assert clock.sleeps == [0.5, 0.5]


@pytest.mark.asyncio
async def test_refills_over_time():
    clock = FakeClock()
    limiter = LeakyBucketRateLimiter(capacity=2, refill_rate=2.0, clock=clock, sleep=clock.sleep)
    await limiter.acquire()
    await limiter.acquire()
    assert limiter.available_tokens == 0
    clock.now += 10
    # never above capacity
    assert limiter.available_tokens == 2
    await limiter.acquire()
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_admitted_requests_bounded_by_window():
    clock = FakeClock()
    limiter = LeakyBucketRateLimiter(capacity=2, refill_rate=2.0, clock=clock, sleep=clock.sleep)
    start = clock.now
    for _ in range(10):
        await limiter.acquire()
    window = clock.now - start
    assert 10 <= 2 + 2.0 * window


@pytest.mark.parametrize("capacity,rate", [(0, 1.0), (2, 0)])
def test_invalid_parameters(capacity, rate):
    with pytest.raises(ValueError):
        LeakyBucketRateLimiter(capacity=capacity, refill_rate=rate)
