"""
One retry policy for every network-facing loop in the settlement layer.

A policy pairs a classifier (rate_limited / transient / fatal) with a backoff
schedule per class. The executor uses it per endpoint, the deposit event
parser uses it around transaction lookups, and the confirmation tracker uses
it to decide how long to back off between polls.
"""
from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from services.api.logging_config import get_logger
from services.rpc.errors import (
    RateLimitedError,
    TransientNetworkError,
    looks_rate_limited,
)

logger = get_logger("rpc.retry")

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]


class ErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    FATAL = "fatal"


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, RateLimitedError):
        return ErrorKind.RATE_LIMITED
    if isinstance(exc, TransientNetworkError):
        return ErrorKind.TRANSIENT
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 429:
            return ErrorKind.RATE_LIMITED
        if status >= 500:
            return ErrorKind.TRANSIENT
        return ErrorKind.FATAL
    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError, ConnectionError)):
        return ErrorKind.TRANSIENT
    if looks_rate_limited(str(exc)):
        return ErrorKind.RATE_LIMITED
    return ErrorKind.FATAL


@dataclass(frozen=True)
class Backoff:
    """delay(n) = base * multiplier**(n-1) + U(0, jitter), capped at max_delay"""

    base: float
    multiplier: float = 2.0
    jitter: float = 0.0
    max_delay: Optional[float] = None

    def delay(self, attempt: int) -> float:
        value = self.base * (self.multiplier ** max(0, attempt - 1))
        if self.jitter:
            value += random.uniform(0, self.jitter)
        if self.max_delay is not None:
            value = min(value, self.max_delay)
        return value


@dataclass
class RetryPolicy:
    """
    Args:
        max_attempts: Total attempts including the first one
        backoff: Schedule for transient errors
        rate_limit_backoff: Schedule for rate limits; None means rate limits
            are not retried here (the caller rotates instead)
        classifier: Maps an exception to an ErrorKind
    """

    max_attempts: int = 3
    backoff: Backoff = field(default_factory=lambda: Backoff(base=1.0))
    rate_limit_backoff: Optional[Backoff] = None
    classifier: Callable[[BaseException], ErrorKind] = classify_error

    def classify(self, exc: BaseException) -> ErrorKind:
        return self.classifier(exc)

    def delay_for(self, kind: ErrorKind, attempt: int) -> Optional[float]:
        """Seconds to wait before the next attempt, or None if not retryable."""
        if kind is ErrorKind.FATAL:
            return None
        if kind is ErrorKind.RATE_LIMITED:
            if self.rate_limit_backoff is None:
                return None
            return self.rate_limit_backoff.delay(attempt)
        return self.backoff.delay(attempt)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        description: str = "operation",
        sleep: Sleep = asyncio.sleep,
        on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    ) -> T:
        """Run operation until it succeeds, a fatal error occurs or attempts run out.

        The last error is re-raised unchanged when the policy gives up.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except Exception as exc:
                kind = self.classify(exc)
                delay = self.delay_for(kind, attempt)
                if delay is None or attempt >= self.max_attempts:
                    if kind is not ErrorKind.FATAL:
                        logger.warning(f"{description} gave up after {attempt} attempt(s): {exc}")
                    raise
                logger.info(
                    f"{description} attempt {attempt}/{self.max_attempts} failed ({kind.value}): "
                    f"{exc}; retrying in {delay:.2f}s"
                )
                if on_retry:
                    on_retry(attempt, exc, delay)
                await sleep(delay)


# Per-endpoint transient retries inside the executor: 0.5s * 2^attempt + U(0, 0.5s)
ENDPOINT_RETRY_POLICY = RetryPolicy(
    max_attempts=2,
    backoff=Backoff(base=1.0, multiplier=2.0, jitter=0.5),
    rate_limit_backoff=None,
)


def deposit_event_policy() -> RetryPolicy:
    """Transaction lookups right after a deposit: the RPC often lags the cluster."""

    def classify(exc: BaseException) -> ErrorKind:
        kind = classify_error(exc)
        # anything but a rate limit (missing tx, short logs) is retried at a flat pace
        return kind if kind is ErrorKind.RATE_LIMITED else ErrorKind.TRANSIENT

    return RetryPolicy(
        max_attempts=10,
        backoff=Backoff(base=2.0, multiplier=1.0),
        rate_limit_backoff=Backoff(base=3.0, multiplier=2.0, jitter=1.0),
        classifier=classify,
    )
