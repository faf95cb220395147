"""
Is a Merkle root still inside the verifier's accepted set?

The verifier accepts a root if it is the state account's current root, one
of its 256 history slots, or any initialized entry of the sharded root ring.
Checking before proving avoids burning a proof on a root the program will
reject; a root that is not found sends the caller to the recovery path.
"""
from __future__ import annotations

from typing import List, Optional, Union

from services.api.logging_config import get_logger
from services.crypto_core.field_codec import hex_to_bytes32, to_int
from services.crypto_core.layouts import (
    ROOT_SIZE,
    LayoutError,
    ShardAccountLayout,
    StateAccountLayout,
)
from services.rpc.errors import TransientNetworkError
from services.rpc.executor import RateLimitedExecutor
from services.rpc.transport import AccountInfo
from services.settlement.types import PoolConfig, RootAcceptanceResult, RootSource

logger = get_logger("root_acceptance")

MAX_ACCOUNTS_PER_REQUEST = 100


def _root_bytes(root: Union[bytes, str, int]) -> Optional[bytes]:
    """Root as 32 bytes; strings are 0x-prefixed hex or decimal."""
    if isinstance(root, str) and not root.strip().startswith(("0x", "0X")):
        try:
            root = to_int(root)
        except ValueError:
            return None
    if isinstance(root, bytes):
        return root if len(root) == ROOT_SIZE else None
    if isinstance(root, int):
        if root < 0 or root.bit_length() > ROOT_SIZE * 8:
            return None
        return root.to_bytes(ROOT_SIZE, "big")
    try:
        return hex_to_bytes32(root.strip())
    except ValueError:
        return None


class RootAcceptanceOracle:
    def __init__(self, executor: RateLimitedExecutor, pool: PoolConfig, commitment: str = "confirmed"):
        self.executor = executor
        self.pool = pool
        self.commitment = commitment

    async def is_accepted_root(self, root: Union[bytes, str, int]) -> RootAcceptanceResult:
        """
        Check the state history first, then every shard in one batched read.

        Network failures are reported as not_found so the caller falls back to
        the recovery path instead of proving against an unverified root.
        """
        root_bytes = _root_bytes(root)
        if root_bytes is None:
            logger.warning("Root check skipped: root is not 32 bytes")
            return RootAcceptanceResult.not_found()

        try:
            if await self._in_state_history(root_bytes):
                logger.info(f"Root {root_bytes.hex()[:16]}... found in state history")
                return RootAcceptanceResult(True, RootSource.STATE_HISTORY)

            shard_index = await self._find_in_shards(root_bytes)
        except (TransientNetworkError, LayoutError) as e:
            logger.warning(f"Root check failed for pool {self.pool.pool_id}: {e}; treating as not found")
            return RootAcceptanceResult.not_found()

        if shard_index is not None:
            logger.info(f"Root {root_bytes.hex()[:16]}... found in shard {shard_index}")
            return RootAcceptanceResult(True, RootSource.SHARDED_RING, shard_index)

        logger.info(f"Root {root_bytes.hex()[:16]}... not in any accepted set")
        return RootAcceptanceResult.not_found()

    async def _in_state_history(self, root: bytes) -> bool:
        account = await self.executor.execute(
            lambda rpc: rpc.get_account_info(self.pool.state_address, self.commitment),
            description="getAccountInfo(state)",
        )
        if account is None:
            raise LayoutError(f"state account {self.pool.state_address} not found")
        return StateAccountLayout(account.data).contains(root)

    async def _fetch_shards(self) -> List[Optional[AccountInfo]]:
        addresses = list(self.pool.shard_addresses)
        accounts: List[Optional[AccountInfo]] = []
        for start in range(0, len(addresses), MAX_ACCOUNTS_PER_REQUEST):
            chunk = addresses[start:start + MAX_ACCOUNTS_PER_REQUEST]
            accounts.extend(await self.executor.execute(
                lambda rpc, chunk=chunk: rpc.get_multiple_accounts(chunk, self.commitment),
                description="getMultipleAccounts(shards)",
            ))
        return accounts

    async def _find_in_shards(self, root: bytes) -> Optional[int]:
        if not self.pool.shard_addresses:
            return None
        for index, account in enumerate(await self._fetch_shards()):
            if account is None:
                # shard not allocated yet
                continue
            if ShardAccountLayout(account.data, self.pool.shard_capacity).contains(root):
                return index
        return None
