"""
Client for the recovery service, which rebuilds a fresh Merkle path for a
commitment whose cached root has aged out of the accepted set.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from services.api.logging_config import get_logger
from services.crypto_core.field_codec import to_int
from services.crypto_core.layouts import TREE_HEIGHT
from services.rpc.errors import RateLimitedError, TransientNetworkError
from services.rpc.retry import Backoff, RetryPolicy
from services.settlement.errors import RecoveryError
from services.settlement.types import MerklePath

logger = get_logger("recovery")

RECOVERY_POLICY = RetryPolicy(
    max_attempts=3,
    backoff=Backoff(base=1.0, multiplier=2.0, jitter=0.5),
    rate_limit_backoff=Backoff(base=2.0, multiplier=2.0, jitter=1.0),
)


class RecoveryClient:
    def __init__(self, base_url: str, timeout: float = 30.0,
                 client: Optional[httpx.AsyncClient] = None,
                 policy: RetryPolicy = RECOVERY_POLICY):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self.policy = policy

    async def aclose(self) -> None:
        await self._client.aclose()

    async def health(self) -> Dict[str, Any]:
        try:
            response = await self._client.get(f"{self.base_url}/health", timeout=5.0)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            return {"status": "unhealthy", "error": str(e)}
        return {"status": body.get("status", "unknown"), **body}

    async def _post_recover(self, pool_id: str, commitment_hex: str) -> Dict[str, Any]:
        try:
            response = await self._client.post(
                f"{self.base_url}/v1/witness/recover",
                json={"poolId": pool_id, "commitment": commitment_hex},
            )
        except httpx.TransportError as e:
            raise TransientNetworkError(f"recovery service unreachable: {e}") from e
        if response.status_code == 429:
            raise RateLimitedError("recovery service: 429 Too Many Requests")
        if response.status_code >= 500:
            raise TransientNetworkError(f"recovery service: HTTP {response.status_code}")
        if response.status_code >= 400:
            raise RecoveryError(f"recovery rejected ({response.status_code}): {response.text[:200]}")
        try:
            return response.json()
        except ValueError as e:
            raise RecoveryError("recovery service returned invalid JSON") from e

    async def recover(self, pool_id: str, commitment: str) -> MerklePath:
        """
        Fetch a path against a currently accepted root.

        Raises:
            RecoveryError: the service cannot recover this commitment or gave up
        """
        commitment_hex = commitment[2:] if commitment.startswith("0x") else commitment
        try:
            body = await self.policy.run(
                lambda: self._post_recover(pool_id, commitment_hex),
                description="witness recovery",
            )
        except TransientNetworkError as e:
            raise RecoveryError(f"recovery service unavailable: {e}") from e

        note = body.get("note") or {}
        metadata = body.get("metadata") or {}
        try:
            siblings = [to_int(_hex(s)) for s in note["siblings"]]
            path = MerklePath(
                root=to_int(_hex(note["rootAfter"])),
                siblings=siblings,
                leaf_index=int(metadata["leafIndex"]),
                path_indices=[int(b) for b in metadata.get("pathIndices") or []],
                recovered=True,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise RecoveryError(f"malformed recovery response: {e}") from e

        if len(path.siblings) != TREE_HEIGHT:
            raise RecoveryError(f"recovered path has {len(path.siblings)} siblings, expected {TREE_HEIGHT}")
        logger.info(f"Recovered path for {commitment_hex[:16]}... at leaf {path.leaf_index}")
        return path


def _hex(value: str) -> str:
    value = str(value)
    return value if value.startswith("0x") else "0x" + value
