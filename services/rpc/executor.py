"""
Rate-limited, multi-endpoint execution of RPC operations.

Every call passes two gates (leaky bucket, then a concurrency semaphore) and
is then tried against the configured endpoints in priority order. Transient
errors are retried on the same endpoint; rate limits put the endpoint into a
cooldown and rotate to the next one immediately.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from services.api.logging_config import get_logger
from services.rpc.errors import (
    AllEndpointsFailed,
    AllEndpointsRateLimited,
    AllEndpointsUnavailable,
)
from services.rpc.rate_limit import LeakyBucketRateLimiter
from services.rpc.retry import ENDPOINT_RETRY_POLICY, ErrorKind, RetryPolicy
from services.rpc.transport import SolanaRpcClient

logger = get_logger("rpc.executor")

T = TypeVar("T")
Operation = Callable[[SolanaRpcClient], Awaitable[T]]

ALL_COOLDOWN_GRACE = 0.1


@dataclass
class EndpointHealth:
    disabled_until: float
    fail_count: int = 1


class RateLimitedExecutor:
    """
    Args:
        endpoints: RPC URLs in priority order
        client_factory: Builds the transport for one URL
        rate_limiter: Shared leaky bucket (default 2 burst, 2/s)
        max_concurrent: In-flight request cap
        cooldown: Base cooldown after a rate limit, seconds
        max_cooldown: Upper bound for the cooldown extended on repeated failures
        retry_policy: Per-endpoint policy for transient errors
    """

    def __init__(
        self,
        endpoints: Sequence[str],
        client_factory: Callable[[str], SolanaRpcClient] = SolanaRpcClient,
        rate_limiter: Optional[LeakyBucketRateLimiter] = None,
        max_concurrent: int = 3,
        cooldown: float = 2.0,
        max_cooldown: float = 30.0,
        retry_policy: RetryPolicy = ENDPOINT_RETRY_POLICY,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not endpoints:
            raise ValueError("at least one RPC endpoint is required")
        self.endpoints: List[str] = list(dict.fromkeys(endpoints))
        self._client_factory = client_factory
        self._clients: Dict[str, SolanaRpcClient] = {}
        self._clock = clock
        self._sleep = sleep
        self.rate_limiter = rate_limiter if rate_limiter is not None else LeakyBucketRateLimiter(clock=clock, sleep=sleep)
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self.cooldown = cooldown
        self.max_cooldown = max(max_cooldown, cooldown)
        self.retry_policy = retry_policy
        self._health: Dict[str, EndpointHealth] = {}

    # ======== endpoint health ========

    def _health_for(self, url: str) -> Optional[EndpointHealth]:
        """Current health entry, evicting it once its cooldown has passed."""
        entry = self._health.get(url)
        if entry is not None and self._clock() >= entry.disabled_until:
            del self._health[url]
            logger.info(f"RPC endpoint re-enabled: {url}")
            return None
        return entry

    def is_available(self, url: str) -> bool:
        return self._health_for(url) is None

    def mark_rate_limited(self, url: str) -> None:
        entry = self._health_for(url)
        fail_count = entry.fail_count + 1 if entry else 1
        window = min(self.cooldown * (2 ** (fail_count - 1)), self.max_cooldown)
        self._health[url] = EndpointHealth(disabled_until=self._clock() + window, fail_count=fail_count)
        logger.warning(f"RPC endpoint disabled for {window:.1f}s (failures={fail_count}): {url}")

    def mark_success(self, url: str) -> None:
        if self._health.pop(url, None) is not None:
            logger.info(f"RPC endpoint recovered: {url}")

    def shortest_cooldown(self) -> float:
        now = self._clock()
        remaining = [e.disabled_until - now for e in self._health.values()]
        return max(0.0, min(remaining)) if remaining else 0.0

    def health_status(self) -> List[Dict[str, object]]:
        now = self._clock()
        status = []
        for url in self.endpoints:
            entry = self._health_for(url)
            status.append({
                "url": url,
                "available": entry is None,
                "fail_count": entry.fail_count if entry else 0,
                "cooldown_remaining": round(entry.disabled_until - now, 3) if entry else 0.0,
            })
        return status

    def client(self, url: str) -> SolanaRpcClient:
        if url not in self._clients:
            self._clients[url] = self._client_factory(url)
        return self._clients[url]

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()

    # ======== execution ========

    def _ordered_endpoints(self, prefer_non_primary: bool) -> List[str]:
        return list(reversed(self.endpoints)) if prefer_non_primary else list(self.endpoints)

    async def execute(
        self,
        operation: Operation,
        *,
        description: str = "rpc",
        prefer_non_primary: bool = False,
    ) -> T:
        """
        Run operation(client) against the first endpoint that answers.

        Raises:
            AllEndpointsUnavailable: every endpoint stayed in cooldown
            AllEndpointsFailed: every endpoint was tried and failed
            Any fatal error raised by the operation (not retried)
        """
        await self.rate_limiter.acquire()
        async with self._semaphore:
            return await self._execute_rotating(operation, description, prefer_non_primary, waited=False)

    async def _execute_rotating(self, operation: Operation, description: str,
                                prefer_non_primary: bool, waited: bool) -> T:
        errors: Dict[str, BaseException] = {}
        tried = 0
        for url in self._ordered_endpoints(prefer_non_primary):
            if not self.is_available(url):
                continue
            tried += 1
            try:
                result = await self._execute_on_endpoint(url, operation, description)
            except Exception as exc:
                kind = self.retry_policy.classify(exc)
                if kind is ErrorKind.FATAL:
                    raise
                errors[url] = exc
                if kind is ErrorKind.RATE_LIMITED:
                    self.mark_rate_limited(url)
                else:
                    logger.warning(f"{description} failed on {url}: {exc}; rotating")
                continue
            self.mark_success(url)
            return result

        if tried == 0:
            wait = self.shortest_cooldown()
            if not waited and wait <= self.max_cooldown:
                logger.warning(f"All RPC endpoints cooling down; waiting {wait + ALL_COOLDOWN_GRACE:.2f}s")
                await self._sleep(wait + ALL_COOLDOWN_GRACE)
                return await self._execute_rotating(operation, description, prefer_non_primary, waited=True)
            raise AllEndpointsUnavailable(wait)

        if all(self.retry_policy.classify(e) is ErrorKind.RATE_LIMITED for e in errors.values()):
            raise AllEndpointsRateLimited(errors)
        raise AllEndpointsFailed(errors)

    async def _execute_on_endpoint(self, url: str, operation: Operation, description: str) -> T:
        client = self.client(url)
        return await self.retry_policy.run(
            lambda: operation(client),
            description=f"{description} @ {url}",
            sleep=self._sleep,
        )
