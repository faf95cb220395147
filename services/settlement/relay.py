"""
Client for the relay ("protocol") service that signs and submits withdrawals
so the recipient never has to pay fees from a linked wallet.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from services.api.logging_config import get_logger
from services.rpc.errors import RateLimitedError, TransientNetworkError
from services.rpc.retry import Backoff, RetryPolicy
from services.settlement.errors import DuplicateNullifierError, RelayError

logger = get_logger("relay")

RELAY_POLICY = RetryPolicy(
    max_attempts=3,
    backoff=Backoff(base=1.0, multiplier=2.0, jitter=0.5),
    rate_limit_backoff=Backoff(base=2.0, multiplier=2.0, jitter=1.0),
)


@dataclass(frozen=True)
class RelayInfo:
    status: str
    network: str
    protocol: str
    mode: str
    pools: List[str]

    @property
    def ok(self) -> bool:
        return self.status == "ok"


@dataclass(frozen=True)
class RelayWithdrawResponse:
    signature: str
    status: str  # success | failed | duplicate
    confirmed: bool = False
    slot: Optional[int] = None
    error: Optional[str] = None
    message: Optional[str] = None


class RelayClient:
    def __init__(self, base_url: str, timeout: float = 90.0,
                 client: Optional[httpx.AsyncClient] = None,
                 policy: RetryPolicy = RELAY_POLICY):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self.policy = policy
        self._info: Optional[RelayInfo] = None

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, f"{self.base_url}{path}", **kwargs)
        except httpx.TransportError as e:
            raise TransientNetworkError(f"relay unreachable: {e}") from e
        if response.status_code == 429:
            raise RateLimitedError("relay: 429 Too Many Requests")
        if response.status_code in (502, 503, 504):
            raise TransientNetworkError(f"relay: HTTP {response.status_code}")
        return response

    async def info(self, refresh: bool = False) -> RelayInfo:
        """Relay health; the protocol address is the fee receiver and payer."""
        if self._info is not None and not refresh:
            return self._info
        response = await self.policy.run(lambda: self._request("GET", "/health"), description="relay health")
        if response.status_code != 200:
            raise RelayError(f"relay health check failed: HTTP {response.status_code}",
                             status_code=response.status_code)
        body = response.json()
        self._info = RelayInfo(
            status=body.get("status", "error"),
            network=body.get("network", ""),
            protocol=body.get("protocol", ""),
            mode=body.get("mode", ""),
            pools=list(body.get("pools") or []),
        )
        return self._info

    async def submit_withdrawal(self, pool_id: str, instruction: Dict[str, Any],
                                nullifier_hash: str) -> RelayWithdrawResponse:
        """
        Hand the withdraw instruction to the relay.

        Raises:
            DuplicateNullifierError: the relay reports the nullifier as used
            RelayError: any other rejection
        """
        payload = {"poolId": pool_id, "instruction": instruction}
        response = await self.policy.run(
            lambda: self._request("POST", "/v1/protocol/withdraw", json=payload),
            description="relay withdraw",
        )
        try:
            body = response.json()
        except ValueError as e:
            raise RelayError(f"relay returned invalid JSON (HTTP {response.status_code})",
                             status_code=response.status_code) from e

        if response.status_code >= 400:
            code = body.get("code") or body.get("error")
            message = body.get("message") or body.get("error") or "relay request failed"
            codes = {body.get("code"), body.get("error")}
            if "NULLIFIER_ALREADY_USED" in codes:
                raise DuplicateNullifierError(nullifier_hash)
            if "SIMULATION_FAILED" in codes:
                raise RelayError(f"transaction simulation failed: {message}", code=code,
                                 status_code=response.status_code)
            raise RelayError(message, code=code, status_code=response.status_code)

        result = RelayWithdrawResponse(
            signature=body.get("signature", ""),
            status=body.get("status", "failed"),
            confirmed=bool(body.get("confirmed", False)),
            slot=body.get("slot"),
            error=body.get("error"),
            message=body.get("message"),
        )
        if result.status == "failed":
            raise RelayError(result.message or result.error or "relay reported failure", code=result.error)
        logger.info(f"Relay accepted withdrawal for {pool_id}: {result.signature[:16]}... ({result.status})")
        return result
