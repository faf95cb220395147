"""
Domain types of the settlement layer.

Note and PoolConfig are pydantic models (persisted / loaded from JSON);
short-lived results are plain dataclasses.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, conint, field_validator

from services.crypto_core.field_codec import (
    SCALAR_FIELD_MODULUS,
    hex_to_bytes32,
    to_int,
)
from services.crypto_core.layouts import SHARD_CAPACITY, SHARDED_RING_CAPACITY


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_hex32(value: str) -> str:
    """0x-prefixed, lowercase, zero-padded 32-byte hex."""
    return "0x" + hex_to_bytes32(value).hex()


class NoteStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SPENT = "spent"
    EXPIRED = "expired"


class RootSource(str, Enum):
    STATE_HISTORY = "state_history"
    SHARDED_RING = "sharded_ring"
    NOT_FOUND = "not_found"


class Note(BaseModel):
    """A deposit the user can later withdraw. Secrets are decimal strings."""

    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    pool_id: str = Field(..., description="Pool the note was deposited into.")
    commitment: str = Field(..., description="H(nullifier, secret), 32-byte hex.")
    nullifier_secret: str = Field(..., description="Nullifier preimage (decimal).")
    note_secret: str = Field(..., description="Note secret (decimal).")
    nullifier_hash: str = Field(..., description="H(nullifier), 32-byte hex.")
    leaf_index: int = Field(-1, description="Leaf position; -1 until the deposit event is parsed.")
    root_after: Optional[str] = Field(None, description="Merkle root right after the deposit (hex).")
    siblings: List[str] = Field(default_factory=list, description="Merkle path siblings (hex).")
    deposit_tx: Optional[str] = Field(None, description="Deposit transaction signature.")
    status: NoteStatus = NoteStatus.PENDING
    spent_tx: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    spent_at: Optional[datetime] = None

    @field_validator("commitment", "nullifier_hash")
    @classmethod
    def _hex32(cls, v: str) -> str:
        return normalize_hex32(v)

    @field_validator("root_after")
    @classmethod
    def _optional_hex32(cls, v: Optional[str]) -> Optional[str]:
        return normalize_hex32(v) if v else None

    @field_validator("siblings")
    @classmethod
    def _sibling_list(cls, v: List[str]) -> List[str]:
        return [normalize_hex32(s) for s in v]

    @field_validator("nullifier_secret", "note_secret")
    @classmethod
    def _field_element(cls, v: str) -> str:
        x = to_int(v)
        if not 0 <= x < SCALAR_FIELD_MODULUS:
            raise ValueError("secret is not a scalar field element")
        return str(x)

    @property
    def nullifier_int(self) -> int:
        return int(self.nullifier_secret)

    @property
    def secret_int(self) -> int:
        return int(self.note_secret)

    @property
    def commitment_int(self) -> int:
        return int(self.commitment, 16)

    @property
    def nullifier_hash_bytes(self) -> bytes:
        return hex_to_bytes32(self.nullifier_hash)

    @property
    def has_merkle_path(self) -> bool:
        return self.leaf_index >= 0 and bool(self.root_after) and bool(self.siblings)


class PoolConfig(BaseModel):
    """Addresses and parameters of one deployed pool. Immutable after load."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    pool_id: str
    program_id: str
    state_address: str
    vault_address: str
    vk_address: str
    metadata_address: str
    shard_addresses: List[str] = Field(default_factory=list)
    root_ring_address: Optional[str] = None
    denomination_lamports: conint(gt=0)
    ring_capacity: conint(gt=0) = SHARDED_RING_CAPACITY
    shard_capacity: conint(gt=0) = SHARD_CAPACITY
    max_fee_bps: conint(ge=0, le=10_000) = 0
    label: Optional[str] = None

    def shard_index_for_leaf(self, leaf_index: int) -> int:
        """Shard that received the root written by the deposit at leaf_index."""
        return (leaf_index % self.ring_capacity) // self.shard_capacity

    def fee_for(self, fee_bps: Optional[int] = None) -> int:
        bps = self.max_fee_bps if fee_bps is None else min(fee_bps, self.max_fee_bps)
        return self.denomination_lamports * bps // 10_000


@dataclass(frozen=True)
class RootAcceptanceResult:
    found: bool
    source: RootSource
    shard_index: Optional[int] = None

    @classmethod
    def not_found(cls) -> "RootAcceptanceResult":
        return cls(False, RootSource.NOT_FOUND)


@dataclass
class MerklePath:
    root: int
    siblings: List[int]
    leaf_index: int
    path_indices: List[int] = field(default_factory=list)
    recovered: bool = False

    @classmethod
    def from_note(cls, note: Note) -> "MerklePath":
        return cls(
            root=int(note.root_after, 16),
            siblings=[int(s, 16) for s in note.siblings],
            leaf_index=note.leaf_index,
        )
