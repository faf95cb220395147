from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, conint, field_validator

from services.settlement.types import NoteStatus, normalize_hex32


class _Base(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, from_attributes=True, extra="ignore")


class Ok(_Base):
    status: str = Field("ok", description="Fixed OK status for successful responses.")


def _hex32(v: str) -> str:
    try:
        return normalize_hex32(v)
    except ValueError as e:
        raise ValueError(f"not a 32-byte hex value: {v!r}") from e


# ---------- pools / roots ----------

class PoolView(_Base):
    pool_id: str
    label: Optional[str] = None
    program_id: str
    denomination_lamports: int
    ring_capacity: int
    shard_count: int = Field(..., description="Number of root shard accounts configured.")
    max_fee_bps: int


class PoolsRes(Ok):
    pools: List[PoolView]


class RootCheckReq(_Base):
    pool_id: str = Field(..., description="Pool whose root buffers are searched.")
    root: str = Field(..., description="Merkle root, 0x-prefixed hex or decimal.")


class RootCheckRes(_Base):
    found: bool
    source: str = Field(..., description="state_history | sharded_ring | not_found")
    shard_index: Optional[int] = None


# ---------- notes ----------

class NoteView(_Base):
    """A note without its secrets."""

    pool_id: str
    commitment: str
    nullifier_hash: str
    leaf_index: int
    status: NoteStatus
    deposit_tx: Optional[str] = None
    spent_tx: Optional[str] = None
    created_at: datetime
    spent_at: Optional[datetime] = None


class NotesRes(Ok):
    notes: List[NoteView]
    count: conint(ge=0)


class NoteHealthView(_Base):
    deposits_remaining: int
    health_percent: float
    status: str


class NoteStatusReq(_Base):
    commitments: List[str] = Field(default_factory=list, description="Empty means every stored note.")

    @field_validator("commitments")
    @classmethod
    def _normalize(cls, v: List[str]) -> List[str]:
        return [_hex32(c) for c in v]


class NoteStatusRow(_Base):
    commitment: str
    status: str = Field(..., description="ready | expiring | expired | spent | error")
    health: Optional[NoteHealthView] = None
    error: Optional[str] = None


class NoteStatusRes(Ok):
    notes: List[NoteStatusRow]


# ---------- withdraw ----------

class WithdrawReq(_Base):
    commitment: str = Field(..., description="Commitment of a stored note (hex).")
    recipient: str = Field(..., description="Recipient account (base58).")
    fee_bps: Optional[conint(ge=0, le=10_000)] = Field(None, description="Relayer fee; capped by the pool.")

    @field_validator("commitment")
    @classmethod
    def _normalize(cls, v: str) -> str:
        return _hex32(v)


class BatchWithdrawReq(_Base):
    commitments: List[str] = Field(..., min_length=1)
    recipient: str
    fee_bps: Optional[conint(ge=0, le=10_000)] = None

    @field_validator("commitments")
    @classmethod
    def _normalize(cls, v: List[str]) -> List[str]:
        return [_hex32(c) for c in v]


class WithdrawRes(_Base):
    commitment: str
    status: Literal["success", "duplicate", "already_spent", "pending", "cancelled", "failed"]
    signature: Optional[str] = None
    stage: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    recovered_path: bool = False


class BatchWithdrawRes(Ok):
    succeeded: conint(ge=0)
    failed: conint(ge=0)
    pending: conint(ge=0)
    results: List[WithdrawRes]


# ---------- deposit ----------

class DepositReq(_Base):
    pool_id: str = Field(..., description="Pool to deposit one denomination into.")


class DepositResumeReq(_Base):
    commitment: str

    @field_validator("commitment")
    @classmethod
    def _normalize(cls, v: str) -> str:
        return _hex32(v)


class DepositRes(Ok):
    note: NoteView
    root_after: Optional[str] = None


# ---------- backups ----------

class BackupRes(Ok):
    filename: str
    size_bytes: int
    timestamp: str
