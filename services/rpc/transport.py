"""
Minimal async Solana JSON-RPC client over httpx.

Only the methods the settlement layer needs. Transport failures are mapped
onto the error taxonomy in services.rpc.errors so retry decisions never have
to look at httpx exceptions directly.
"""
from __future__ import annotations

import base64
import itertools
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx

from services.api.logging_config import get_logger
from services.rpc.errors import (
    RateLimitedError,
    RpcError,
    TransientNetworkError,
    looks_rate_limited,
)

logger = get_logger("rpc.transport")

DEFAULT_TIMEOUT = 15.0
RPC_RATE_LIMIT_CODES = {429, -32429}


@dataclass(frozen=True)
class AccountInfo:
    data: bytes
    owner: str
    lamports: int
    executable: bool = False

    @classmethod
    def from_rpc(cls, value: Dict[str, Any]) -> "AccountInfo":
        raw = value.get("data") or ["", "base64"]
        payload = raw[0] if isinstance(raw, list) else raw
        return cls(
            data=base64.b64decode(payload) if payload else b"",
            owner=value.get("owner", ""),
            lamports=int(value.get("lamports", 0)),
            executable=bool(value.get("executable", False)),
        )


@dataclass(frozen=True)
class SignatureStatus:
    confirmation_status: Optional[str]
    err: Any
    slot: Optional[int] = None


class SolanaRpcClient:
    """One endpoint, one httpx.AsyncClient."""

    def __init__(self, url: str, timeout: float = DEFAULT_TIMEOUT,
                 client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        try:
            response = await self._client.post(self.url, json=payload)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"{method} timed out: {e}", endpoint=self.url) from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{method} transport error: {e}", endpoint=self.url) from e

        if response.status_code == 429:
            retry_after = response.headers.get("retry-after")
            raise RateLimitedError(
                f"{method}: 429 Too Many Requests",
                endpoint=self.url,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if response.status_code >= 500:
            raise TransientNetworkError(f"{method}: HTTP {response.status_code}", endpoint=self.url)
        if response.status_code >= 400:
            raise RpcError(f"{method}: HTTP {response.status_code}", code=response.status_code,
                           endpoint=self.url)

        try:
            body = response.json()
        except ValueError as e:
            raise TransientNetworkError(f"{method}: invalid JSON response", endpoint=self.url) from e

        error = body.get("error")
        if error:
            message = str(error.get("message", error))
            code = error.get("code")
            if code in RPC_RATE_LIMIT_CODES or looks_rate_limited(message):
                raise RateLimitedError(f"{method}: {message}", endpoint=self.url)
            raise RpcError(f"{method}: {message}", code=code, data=error.get("data"), endpoint=self.url)
        return body.get("result")

    # ======== reads ========

    async def get_account_info(self, address: str, commitment: str = "confirmed") -> Optional[AccountInfo]:
        result = await self.call("getAccountInfo", [address, {"encoding": "base64", "commitment": commitment}])
        value = (result or {}).get("value")
        return AccountInfo.from_rpc(value) if value else None

    async def get_multiple_accounts(self, addresses: Sequence[str],
                                    commitment: str = "confirmed") -> List[Optional[AccountInfo]]:
        result = await self.call(
            "getMultipleAccounts", [list(addresses), {"encoding": "base64", "commitment": commitment}]
        )
        values = (result or {}).get("value") or []
        return [AccountInfo.from_rpc(v) if v else None for v in values]

    async def get_signature_status(self, signature: str) -> Optional[SignatureStatus]:
        result = await self.call(
            "getSignatureStatuses", [[signature], {"searchTransactionHistory": True}]
        )
        values = (result or {}).get("value") or [None]
        status = values[0]
        if not status:
            return None
        return SignatureStatus(
            confirmation_status=status.get("confirmationStatus"),
            err=status.get("err"),
            slot=status.get("slot"),
        )

    async def get_transaction_logs(self, signature: str, commitment: str = "confirmed") -> Optional[List[str]]:
        result = await self.call(
            "getTransaction",
            [signature, {"encoding": "json", "commitment": commitment, "maxSupportedTransactionVersion": 0}],
        )
        if not result:
            return None
        return (result.get("meta") or {}).get("logMessages") or []

    async def get_latest_blockhash(self, commitment: str = "confirmed") -> str:
        result = await self.call("getLatestBlockhash", [{"commitment": commitment}])
        return result["value"]["blockhash"]

    async def get_health(self) -> str:
        return await self.call("getHealth")

    # ======== writes ========

    async def send_transaction(self, raw_tx: bytes, skip_preflight: bool = False) -> str:
        encoded = base64.b64encode(raw_tx).decode()
        return await self.call(
            "sendTransaction",
            [encoded, {"encoding": "base64", "skipPreflight": skip_preflight, "preflightCommitment": "confirmed"}],
        )
