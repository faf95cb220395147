"""
Leaky-bucket request gate shared by every RPC call of one executor.
"""
from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable

from services.api.logging_config import get_logger

logger = get_logger("rpc.rate_limit")


class LeakyBucketRateLimiter:
    """
    Token bucket with `capacity` burst and `refill_rate` tokens per second.

    acquire() blocks until a whole token is available. Over any window the
    number of admitted requests is at most capacity + refill_rate * window.
    """

    def __init__(
        self,
        capacity: float = 2,
        refill_rate: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if capacity < 1:
            raise ValueError("capacity must allow at least one request")
        if refill_rate <= 0:
            raise ValueError("refill_rate must be positive")
        self.capacity = float(capacity)
        self.refill_rate = float(refill_rate)
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._last_refill = clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
        self._last_refill = now

    @property
    def available_tokens(self) -> float:
        self._refill()
        return self._tokens

    async def acquire(self) -> None:
        self._refill()
        while self._tokens < 1:
            wait = (1 - self._tokens) / self.refill_rate
            logger.debug(f"Rate limiter: waiting {wait:.3f}s for a token")
            await self._sleep(wait)
            self._refill()
        self._tokens -= 1
