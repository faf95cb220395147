"""
Transaction confirmation: push notification when available, otherwise
bounded polling of getSignatureStatuses.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from services.api.logging_config import get_logger
from services.rpc.errors import TransactionFailedError
from services.rpc.executor import RateLimitedExecutor
from services.rpc.retry import Backoff, ErrorKind, RetryPolicy

logger = get_logger("rpc.confirmation")

CONFIRMED_TTL_SECONDS = 300.0


@dataclass(frozen=True)
class ConfirmationResult:
    signature: str
    status: str  # "confirmed" | "pending"
    source: str = "poll"  # "cache" | "push" | "poll" | "timeout"

    @property
    def confirmed(self) -> bool:
        return self.status == "confirmed"


class SignatureSubscriber(Protocol):
    async def wait_for_signature(self, signature: str, commitment: str) -> Any:
        """Resolve with the transaction error (None on success) once the signature lands."""


class ConfirmedSignatureSet:
    """Signatures known to be confirmed, each kept for a fixed TTL."""

    def __init__(self, ttl: float = CONFIRMED_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._expires: Dict[str, float] = {}

    def add(self, signature: str) -> None:
        now = self._clock()
        # sweep on insert so the set stays bounded without a background task
        for sig in [s for s, exp in self._expires.items() if exp <= now]:
            del self._expires[sig]
        self._expires[signature] = now + self.ttl

    def __contains__(self, signature: str) -> bool:
        expires = self._expires.get(signature)
        if expires is None:
            return False
        if self._clock() >= expires:
            del self._expires[signature]
            return False
        return True

    def __len__(self) -> int:
        return len(self._expires)


class ConfirmationTracker:
    """
    Args:
        executor: Shared rate-limited executor
        commitment: Level treated as confirmed ("finalized" always counts)
        poll_interval: Seconds between status polls
        timeout: Overall deadline; on expiry the result is "pending"
        subscriber: Optional push channel tried before polling
        push_timeout: Max seconds to wait on the push channel
        retry_policy: Decides how long to back off after a failed poll
    """

    def __init__(
        self,
        executor: RateLimitedExecutor,
        commitment: str = "confirmed",
        poll_interval: float = 3.0,
        timeout: float = 60.0,
        subscriber: Optional[SignatureSubscriber] = None,
        push_timeout: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        confirmed: Optional[ConfirmedSignatureSet] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.executor = executor
        self.commitment = commitment
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.subscriber = subscriber
        self.push_timeout = push_timeout
        self.retry_policy = retry_policy if retry_policy is not None else RetryPolicy(
            backoff=Backoff(base=poll_interval, multiplier=1.0),
            rate_limit_backoff=Backoff(base=poll_interval * 2, multiplier=1.0),
        )
        self.confirmed = confirmed if confirmed is not None else ConfirmedSignatureSet(clock=clock)
        self._clock = clock
        self._sleep = sleep

    def _accepts(self, confirmation_status: Optional[str]) -> bool:
        return confirmation_status in (self.commitment, "finalized")

    def is_confirmed(self, signature: str) -> bool:
        return signature in self.confirmed

    async def confirm(self, signature: str) -> ConfirmationResult:
        """
        Wait until signature reaches the configured commitment.

        Returns:
            ConfirmationResult with status "confirmed" or "pending" (deadline hit)

        Raises:
            TransactionFailedError: the transaction landed with an error
        """
        if signature in self.confirmed:
            return ConfirmationResult(signature, "confirmed", source="cache")

        if self.subscriber is not None:
            pushed = await self._confirm_push(signature)
            if pushed is not None:
                return pushed

        return await self._confirm_poll(signature)

    async def _confirm_push(self, signature: str) -> Optional[ConfirmationResult]:
        try:
            err = await asyncio.wait_for(
                self.subscriber.wait_for_signature(signature, self.commitment),
                timeout=self.push_timeout,
            )
        except asyncio.TimeoutError:
            logger.info(f"Push confirmation timed out for {signature[:16]}..., polling")
            return None
        except Exception as e:
            logger.warning(f"Push confirmation unavailable for {signature[:16]}...: {e}; polling")
            return None
        if err:
            raise TransactionFailedError(signature, err)
        self.confirmed.add(signature)
        logger.info(f"Confirmed via push: {signature[:16]}...")
        return ConfirmationResult(signature, "confirmed", source="push")

    async def _confirm_poll(self, signature: str) -> ConfirmationResult:
        deadline = self._clock() + self.timeout
        polls = 0
        while self._clock() < deadline:
            polls += 1
            delay = self.poll_interval
            try:
                status = await self.executor.execute(
                    lambda rpc: rpc.get_signature_status(signature),
                    description="getSignatureStatuses",
                )
            except Exception as exc:
                kind = self.retry_policy.classify(exc)
                if kind is ErrorKind.FATAL:
                    raise
                delay = self.retry_policy.delay_for(kind, polls) or self.poll_interval
                logger.warning(
                    f"Status poll {polls} for {signature[:16]}... failed ({kind.value}): {exc}; "
                    f"next poll in {delay:.1f}s"
                )
            else:
                if status is not None:
                    if status.err:
                        raise TransactionFailedError(signature, status.err)
                    if self._accepts(status.confirmation_status):
                        self.confirmed.add(signature)
                        logger.info(f"Confirmed via poll ({polls} polls): {signature[:16]}...")
                        return ConfirmationResult(signature, "confirmed", source="poll")

            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            await self._sleep(min(delay, remaining))

        logger.warning(f"Confirmation timeout after {self.timeout}s: {signature[:16]}... still pending")
        return ConfirmationResult(signature, "pending", source="timeout")
