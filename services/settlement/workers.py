"""
Bounded worker pools and advisory cancellation for the orchestrators.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

T = TypeVar("T")


class CancelToken:
    """
    Cooperative cancellation. Orchestrators check it between stages; a
    transaction that was already submitted is never retracted.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class WorkflowCancelled(Exception):
    def __init__(self, stage: str, reason: Optional[str] = None):
        super().__init__(f"cancelled before {stage}" + (f": {reason}" if reason else ""))
        self.stage = stage
        self.reason = reason


class WorkerPool:
    """At most `size` jobs in flight, with an optional pause after each job."""

    def __init__(self, size: int, delay_after: float = 0.0,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep, name: str = "pool"):
        if size < 1:
            raise ValueError("pool size must be at least 1")
        self.size = size
        self.delay_after = delay_after
        self.name = name
        self._semaphore = asyncio.Semaphore(size)
        self._sleep = sleep

    async def run(self, job: Callable[[], Awaitable[T]]) -> T:
        async with self._semaphore:
            try:
                return await job()
            finally:
                if self.delay_after:
                    await self._sleep(self.delay_after)
