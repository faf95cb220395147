"""
Typed codecs for the pool program's account layouts, event payloads and
instruction data.

All offsets are fixed by the on-chain program; every decoder checks bounds
before slicing so a truncated account never yields a half-read value.
"""
from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

from services.crypto_core.field_codec import PROOF_SIZE, U64_MAX, WORD_SIZE

TREE_HEIGHT = 20
ROOT_SIZE = 32

# State account
CURRENT_ROOT_OFFSET = 688
ROOT_HISTORY_OFFSET = 720
STATE_ROOT_HISTORY_SIZE = 256

# Shard account: u64 version, u32 shard_index, u32 local_head, then entries
SHARD_HEADER_SIZE = 16
ROOT_ENTRY_SIZE = 40
SHARD_CAPACITY = 128
NUM_SHARDS = 20
SHARDED_RING_CAPACITY = SHARD_CAPACITY * NUM_SHARDS

# Ring metadata account
METADATA_TOTAL_CAPACITY_OFFSET = 16
METADATA_SHARD_CAPACITY_OFFSET = 20
METADATA_NUM_SHARDS_OFFSET = 24
METADATA_GLOBAL_HEAD_OFFSET = 28
METADATA_ACTIVE_SHARD_OFFSET = 32

DISCRIMINATOR_SIZE = 8
DEPOSIT_EVENT_SIZE = DISCRIMINATOR_SIZE + 4 + ROOT_SIZE + TREE_HEIGHT * WORD_SIZE + TREE_HEIGHT
PROGRAM_DATA_PREFIX = "Program data: "

ZERO_ROOT = b"\x00" * ROOT_SIZE


class LayoutError(ValueError):
    """Account or payload bytes do not match the expected layout."""


def anchor_discriminator(name: str) -> bytes:
    """First 8 bytes of sha256("global:<name>")."""
    return hashlib.sha256(f"global:{name}".encode()).digest()[:DISCRIMINATOR_SIZE]


WITHDRAW_DISCRIMINATOR = anchor_discriminator("withdraw_v2_clean")
DEPOSIT_DISCRIMINATOR = anchor_discriminator("deposit_v2_clean")


def _require(data: bytes, end: int, what: str) -> None:
    if len(data) < end:
        raise LayoutError(f"{what}: need {end} bytes, account has {len(data)}")


# ======== state account ========

@dataclass(frozen=True)
class StateAccountLayout:
    data: bytes

    def current_root(self) -> bytes:
        end = CURRENT_ROOT_OFFSET + ROOT_SIZE
        _require(self.data, end, "state.current_root")
        return self.data[CURRENT_ROOT_OFFSET:end]

    def history_roots(self) -> Iterator[bytes]:
        """Non-empty roots from the history buffer, in slot order."""
        end = ROOT_HISTORY_OFFSET + STATE_ROOT_HISTORY_SIZE * ROOT_SIZE
        _require(self.data, end, "state.root_history")
        for i in range(STATE_ROOT_HISTORY_SIZE):
            start = ROOT_HISTORY_OFFSET + i * ROOT_SIZE
            root = self.data[start:start + ROOT_SIZE]
            if root != ZERO_ROOT:
                yield root

    def contains(self, root: bytes) -> bool:
        if self.current_root() == root:
            return True
        return any(candidate == root for candidate in self.history_roots())


# ======== shard account ========

@dataclass(frozen=True)
class ShardAccountLayout:
    data: bytes
    capacity: int = SHARD_CAPACITY

    def header(self) -> Tuple[int, int, int]:
        """(version, shard_index, local_head)"""
        _require(self.data, SHARD_HEADER_SIZE, "shard.header")
        return struct.unpack_from("<QII", self.data, 0)

    def entries(self) -> Iterator[Tuple[bytes, int]]:
        """(root, sequence) pairs for initialized slots; sequence 0 means empty."""
        end = SHARD_HEADER_SIZE + self.capacity * ROOT_ENTRY_SIZE
        _require(self.data, end, "shard.entries")
        for i in range(self.capacity):
            start = SHARD_HEADER_SIZE + i * ROOT_ENTRY_SIZE
            root = self.data[start:start + ROOT_SIZE]
            (sequence,) = struct.unpack_from("<Q", self.data, start + ROOT_SIZE)
            if sequence == 0:
                continue
            yield root, sequence

    def contains(self, root: bytes) -> bool:
        return any(candidate == root for candidate, _ in self.entries())


# ======== ring metadata ========

@dataclass(frozen=True)
class RingMetadataLayout:
    data: bytes

    def _u32(self, offset: int, what: str) -> int:
        _require(self.data, offset + 4, what)
        return struct.unpack_from("<I", self.data, offset)[0]

    @property
    def total_capacity(self) -> int:
        return self._u32(METADATA_TOTAL_CAPACITY_OFFSET, "metadata.total_capacity")

    @property
    def shard_capacity(self) -> int:
        return self._u32(METADATA_SHARD_CAPACITY_OFFSET, "metadata.shard_capacity")

    @property
    def num_shards(self) -> int:
        return self._u32(METADATA_NUM_SHARDS_OFFSET, "metadata.num_shards")

    @property
    def global_head(self) -> int:
        """Total number of roots ever written, i.e. the current leaf count."""
        return self._u32(METADATA_GLOBAL_HEAD_OFFSET, "metadata.global_head")

    @property
    def active_shard_index(self) -> int:
        """Shard the next deposit's root will be written to."""
        return self._u32(METADATA_ACTIVE_SHARD_OFFSET, "metadata.active_shard_index")


# ======== deposit event ========

@dataclass(frozen=True)
class DepositEvent:
    leaf_index: int
    root_after: bytes
    siblings: List[bytes]
    positions: List[int]

    @classmethod
    def decode(cls, data: bytes) -> "DepositEvent":
        if len(data) < DEPOSIT_EVENT_SIZE:
            raise LayoutError(
                f"deposit event: expected at least {DEPOSIT_EVENT_SIZE} bytes, got {len(data)}"
            )
        offset = DISCRIMINATOR_SIZE
        (leaf_index,) = struct.unpack_from("<I", data, offset)
        offset += 4
        root_after = data[offset:offset + ROOT_SIZE]
        offset += ROOT_SIZE
        siblings = []
        for _ in range(TREE_HEIGHT):
            siblings.append(data[offset:offset + WORD_SIZE])
            offset += WORD_SIZE
        positions = list(data[offset:offset + TREE_HEIGHT])
        return cls(leaf_index=leaf_index, root_after=root_after, siblings=siblings, positions=positions)


def program_data_payloads(log_messages: Optional[List[str]]) -> Iterator[str]:
    """Base64 payloads of "Program data:" lines in a transaction's logs."""
    for line in log_messages or []:
        if line.startswith(PROGRAM_DATA_PREFIX):
            yield line[len(PROGRAM_DATA_PREFIX):].strip()


# ======== instruction data ========

@dataclass(frozen=True)
class WithdrawInstructionData:
    nullifier_hash: bytes
    proof: bytes
    root: bytes
    fee: int
    refund: int = 0

    def encode(self) -> bytes:
        if len(self.nullifier_hash) != WORD_SIZE:
            raise LayoutError("withdraw: nullifier hash must be 32 bytes")
        if len(self.proof) != PROOF_SIZE:
            raise LayoutError(f"withdraw: proof must be {PROOF_SIZE} bytes, got {len(self.proof)}")
        if len(self.root) != ROOT_SIZE:
            raise LayoutError("withdraw: root must be 32 bytes")
        for name, value in (("fee", self.fee), ("refund", self.refund)):
            if value < 0 or value > U64_MAX:
                raise LayoutError(f"withdraw: {name} {value} out of u64 range")
        return b"".join((
            WITHDRAW_DISCRIMINATOR,
            self.nullifier_hash,
            struct.pack("<I", PROOF_SIZE),
            self.proof,
            self.root,
            struct.pack("<Q", self.fee),
            struct.pack("<Q", self.refund),
        ))


@dataclass(frozen=True)
class DepositInstructionData:
    commitment: bytes

    def encode(self) -> bytes:
        if len(self.commitment) != WORD_SIZE:
            raise LayoutError("deposit: commitment must be 32 bytes")
        # trailing zero bytes are the program's reserved option fields
        return DEPOSIT_DISCRIMINATOR + self.commitment + b"\x00" * 7
