"""
Note health and on-chain status.

A note can be withdrawn with its cached path only while its root is still in
the sharded ring. Health estimates how many more deposits that will stay
true for; spent status comes from the existence of the nullifier account.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from services.api.logging_config import get_logger
from services.crypto_core.layouts import RingMetadataLayout
from services.rpc.executor import RateLimitedExecutor
from services.settlement.instruction import derive_nullifier_address
from services.settlement.pools import PoolRegistry
from services.settlement.types import Note, NoteStatus, PoolConfig

logger = get_logger("note_status")

EXPIRING_THRESHOLD_PERCENT = 30.0
MAX_ACCOUNTS_PER_REQUEST = 100


@dataclass(frozen=True)
class NoteHealth:
    deposits_remaining: int
    health_percent: float
    status: str  # ready | expiring | expired


@dataclass(frozen=True)
class NoteStatusReport:
    commitment: str
    status: str  # ready | expiring | expired | spent | error
    health: Optional[NoteHealth] = None
    spent: bool = False
    error: Optional[str] = None


def calculate_note_health(leaf_index: int, current_leaf_count: int, ring_capacity: int) -> NoteHealth:
    """
    deposits_remaining = leaf_index + ring_capacity - current_leaf_count

    A note with unknown leaf index (-1) is treated as the latest deposit.
    """
    effective = leaf_index if leaf_index >= 0 else max(0, current_leaf_count - 1)
    remaining = effective + ring_capacity - current_leaf_count
    percent = max(0.0, min(100.0, remaining / ring_capacity * 100))
    if remaining <= 0:
        status = "expired"
    elif percent < EXPIRING_THRESHOLD_PERCENT:
        status = "expiring"
    else:
        status = "ready"
    return NoteHealth(deposits_remaining=max(0, remaining), health_percent=percent, status=status)


class NoteStatusService:
    def __init__(self, executor: RateLimitedExecutor, pools: PoolRegistry, commitment: str = "confirmed"):
        self.executor = executor
        self.pools = pools
        self.commitment = commitment

    async def fetch_current_leaf_count(self, pool: PoolConfig) -> int:
        account = await self.executor.execute(
            lambda rpc: rpc.get_account_info(pool.metadata_address, self.commitment),
            description="getAccountInfo(metadata)",
        )
        if account is None:
            raise LookupError(f"ring metadata account {pool.metadata_address} not found")
        return RingMetadataLayout(account.data).global_head

    async def fetch_active_shard(self, pool: PoolConfig) -> int:
        account = await self.executor.execute(
            lambda rpc: rpc.get_account_info(pool.metadata_address, self.commitment),
            description="getAccountInfo(metadata)",
        )
        if account is None:
            raise LookupError(f"ring metadata account {pool.metadata_address} not found")
        return RingMetadataLayout(account.data).active_shard_index

    async def is_spent(self, note: Note) -> bool:
        pool = self.pools.get(note.pool_id)
        address = str(derive_nullifier_address(pool, note.nullifier_hash_bytes))
        account = await self.executor.execute(
            lambda rpc: rpc.get_account_info(address, self.commitment),
            description="getAccountInfo(nullifier)",
        )
        return account is not None

    async def batch_spent(self, notes: Sequence[Note]) -> Dict[str, bool]:
        """commitment -> spent, checking nullifier accounts 100 per request.

        Notes of unconfigured pools are left out.
        """
        notes = [n for n in notes if n.pool_id in self.pools]
        addresses = [
            str(derive_nullifier_address(self.pools.get(n.pool_id), n.nullifier_hash_bytes)) for n in notes
        ]
        spent: Dict[str, bool] = {}
        for start in range(0, len(notes), MAX_ACCOUNTS_PER_REQUEST):
            chunk = addresses[start:start + MAX_ACCOUNTS_PER_REQUEST]
            accounts = await self.executor.execute(
                lambda rpc, chunk=chunk: rpc.get_multiple_accounts(chunk, self.commitment),
                description="getMultipleAccounts(nullifiers)",
            )
            for note, account in zip(notes[start:start + MAX_ACCOUNTS_PER_REQUEST], accounts):
                spent[note.commitment] = account is not None
        return spent

    async def report(self, notes: Sequence[Note]) -> List[NoteStatusReport]:
        """Spent / expired / expiring / ready for each note, one leaf-count read per pool."""
        if not notes:
            return []
        spent = await self.batch_spent(notes)
        leaf_counts: Dict[str, int] = {}
        reports = []
        for note in notes:
            if spent.get(note.commitment) or note.status is NoteStatus.SPENT:
                reports.append(NoteStatusReport(note.commitment, "spent", spent=True))
                continue
            try:
                pool = self.pools.get(note.pool_id)
                if pool.pool_id not in leaf_counts:
                    leaf_counts[pool.pool_id] = await self.fetch_current_leaf_count(pool)
            except Exception as e:
                logger.warning(f"Status for {note.commitment[:18]}... unavailable: {e}")
                reports.append(NoteStatusReport(note.commitment, "error", error=str(e)))
                continue
            health = calculate_note_health(note.leaf_index, leaf_counts[pool.pool_id], pool.ring_capacity)
            reports.append(NoteStatusReport(note.commitment, health.status, health=health))
        return reports
