"""Shared fakes and fixtures for the settlement test suite."""

from __future__ import annotations

import base64
import hashlib
import struct
from typing import Any, Dict, List, Optional, Sequence

import pytest
import pytest_asyncio
from solders.pubkey import Pubkey
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from services.crypto_core.field_codec import SCALAR_FIELD_MODULUS, field_to_hex
from services.crypto_core.layouts import (
    CURRENT_ROOT_OFFSET,
    DEPOSIT_DISCRIMINATOR,
    METADATA_ACTIVE_SHARD_OFFSET,
    METADATA_TOTAL_CAPACITY_OFFSET,
    ROOT_ENTRY_SIZE,
    ROOT_HISTORY_OFFSET,
    ROOT_SIZE,
    SHARD_CAPACITY,
    SHARD_HEADER_SIZE,
    STATE_ROOT_HISTORY_SIZE,
    TREE_HEIGHT,
)
from services.database.models import Base
from services.rpc.executor import RateLimitedExecutor
from services.rpc.rate_limit import LeakyBucketRateLimiter
from services.rpc.retry import Backoff, RetryPolicy
from services.rpc.transport import AccountInfo, SignatureStatus
from services.settlement.pools import PoolRegistry
from services.settlement.prover import Groth16Proof, ProofResult
from services.settlement.types import Note, NoteStatus, PoolConfig


# ── Clock ────────────────────────────────────────────────────────────────


class FakeClock:
    """Monotonic clock whose sleep() advances time instantly."""

    def __init__(self, start: float = 1000.0, advance: bool = True):
        self.now = start
        self.advance = advance
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if self.advance:
            self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ── Addresses / account data ─────────────────────────────────────────────


def address(seed: int) -> str:
    return str(Pubkey.from_bytes(bytes([seed]) * 32))


def root_bytes(seed: int) -> bytes:
    digest = hashlib.sha256(f"root-{seed}".encode()).digest()
    return (int.from_bytes(digest, "big") % SCALAR_FIELD_MODULUS).to_bytes(32, "big")


def state_account_data(current: bytes, history: Sequence[bytes] = ()) -> bytes:
    data = bytearray(ROOT_HISTORY_OFFSET + STATE_ROOT_HISTORY_SIZE * ROOT_SIZE)
    data[CURRENT_ROOT_OFFSET:CURRENT_ROOT_OFFSET + ROOT_SIZE] = current
    for i, root in enumerate(history):
        start = ROOT_HISTORY_OFFSET + i * ROOT_SIZE
        data[start:start + ROOT_SIZE] = root
    return bytes(data)


def shard_account_data(shard_index: int, entries: Sequence[tuple] = ()) -> bytes:
    """entries: (slot, root, sequence)"""
    data = bytearray(SHARD_HEADER_SIZE + SHARD_CAPACITY * ROOT_ENTRY_SIZE)
    struct.pack_into("<QII", data, 0, 1, shard_index, len(entries))
    for slot, root, sequence in entries:
        start = SHARD_HEADER_SIZE + slot * ROOT_ENTRY_SIZE
        data[start:start + ROOT_SIZE] = root
        struct.pack_into("<Q", data, start + ROOT_SIZE, sequence)
    return bytes(data)


def metadata_account_data(global_head: int, active_shard: int = 0) -> bytes:
    data = bytearray(64)
    struct.pack_into("<IIII", data, METADATA_TOTAL_CAPACITY_OFFSET, 2560, 128, 20, global_head)
    struct.pack_into("<I", data, METADATA_ACTIVE_SHARD_OFFSET, active_shard)
    return bytes(data)


def deposit_event_data(leaf_index: int, root: bytes, siblings: Sequence[bytes]) -> bytes:
    positions = bytes((leaf_index >> level) & 1 for level in range(TREE_HEIGHT))
    return DEPOSIT_DISCRIMINATOR + struct.pack("<I", leaf_index) + root + b"".join(siblings) + positions


def program_data_line(payload: bytes) -> str:
    return "Program data: " + base64.b64encode(payload).decode()


def account(data: bytes) -> AccountInfo:
    return AccountInfo(data=data, owner=address(9), lamports=1_000_000)


# ── Pools ────────────────────────────────────────────────────────────────


def make_pool(pool_id: str = "sol-0.1", shards: int = 4, max_fee_bps: int = 0) -> PoolConfig:
    return PoolConfig(
        pool_id=pool_id,
        program_id=address(1),
        state_address=address(2),
        vault_address=address(3),
        vk_address=address(4),
        metadata_address=address(5),
        shard_addresses=[address(100 + i) for i in range(shards)],
        denomination_lamports=100_000_000,
        max_fee_bps=max_fee_bps,
    )


@pytest.fixture
def pool() -> PoolConfig:
    return make_pool()


@pytest.fixture
def registry(pool: PoolConfig) -> PoolRegistry:
    return PoolRegistry([pool])


# ── RPC ──────────────────────────────────────────────────────────────────


class FakeRpc:
    """
    Stand-in for SolanaRpcClient. `failures[method]` holds exceptions raised,
    one per call, before the method starts answering normally.
    """

    def __init__(self, url: str = "http://rpc-a"):
        self.url = url
        self.accounts: Dict[str, Optional[AccountInfo]] = {}
        self.statuses: List[Optional[SignatureStatus]] = []
        self.logs: List[Optional[List[str]]] = []
        self.failures: Dict[str, List[BaseException]] = {}
        self.calls: List[tuple] = []
        self.sent: List[bytes] = []
        self.blockhash = "11111111111111111111111111111111"

    def _record(self, method: str, *args: Any) -> None:
        self.calls.append((method,) + args)
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def count(self, method: str) -> int:
        return sum(1 for c in self.calls if c[0] == method)

    async def get_account_info(self, addr: str, commitment: str = "confirmed"):
        self._record("getAccountInfo", addr)
        return self.accounts.get(addr)

    async def get_multiple_accounts(self, addrs: Sequence[str], commitment: str = "confirmed"):
        self._record("getMultipleAccounts", tuple(addrs))
        return [self.accounts.get(a) for a in addrs]

    async def get_signature_status(self, signature: str):
        self._record("getSignatureStatuses", signature)
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0] if self.statuses else None

    async def get_transaction_logs(self, signature: str, commitment: str = "confirmed"):
        self._record("getTransaction", signature)
        if len(self.logs) > 1:
            return self.logs.pop(0)
        return self.logs[0] if self.logs else None

    async def get_latest_blockhash(self, commitment: str = "confirmed") -> str:
        self._record("getLatestBlockhash")
        return self.blockhash

    async def get_health(self) -> str:
        self._record("getHealth")
        return "ok"

    async def send_transaction(self, raw_tx: bytes, skip_preflight: bool = False) -> str:
        self._record("sendTransaction")
        self.sent.append(raw_tx)
        return "sent"

    async def aclose(self) -> None:
        pass


def make_executor(clients: Dict[str, FakeRpc], clock: FakeClock, **kwargs) -> RateLimitedExecutor:
    kwargs.setdefault(
        "rate_limiter",
        LeakyBucketRateLimiter(capacity=1000, refill_rate=1000, clock=clock, sleep=clock.sleep),
    )
    kwargs.setdefault("retry_policy", RetryPolicy(max_attempts=2, backoff=Backoff(base=0.5)))
    return RateLimitedExecutor(
        list(clients),
        client_factory=lambda url: clients[url],
        clock=clock,
        sleep=clock.sleep,
        **kwargs,
    )


@pytest.fixture
def rpc() -> FakeRpc:
    return FakeRpc()


@pytest.fixture
def executor(rpc: FakeRpc, clock: FakeClock) -> RateLimitedExecutor:
    return make_executor({rpc.url: rpc}, clock)


# ── Crypto collaborators ─────────────────────────────────────────────────


class FakeHasher:
    """Deterministic stand-in for Poseidon: sha256 of the inputs, reduced mod r."""

    def __init__(self):
        self.calls = 0

    @staticmethod
    def digest(inputs: Sequence[int]) -> int:
        text = ",".join(str(int(x)) for x in inputs)
        return int.from_bytes(hashlib.sha256(text.encode()).digest(), "big") % SCALAR_FIELD_MODULUS

    async def hash(self, inputs: Sequence[int]) -> int:
        self.calls += 1
        return self.digest(inputs)

    async def hash_many(self, batch: Sequence[Sequence[int]]) -> List[int]:
        self.calls += 1
        return [self.digest(row) for row in batch]


PUBLIC_SIGNAL_KEYS = (
    "root", "nullifierHash", "recipientHigh", "recipientLow",
    "protocolHigh", "protocolLow", "fee", "refund",
)

SAMPLE_PROOF = {
    "pi_a": ["1", "2", "1"],
    "pi_b": [["3", "4"], ["5", "6"], ["1", "0"]],
    "pi_c": ["7", "8", "1"],
}


class FakeProver:
    """Echoes the public inputs back as public signals, like the real circuit."""

    def __init__(self, fail_for: Sequence[str] = ()):
        self.fail_for = set(fail_for)
        self.inputs: List[Dict[str, Any]] = []

    async def prove(self, inputs: Dict[str, Any]) -> ProofResult:
        from services.settlement.errors import ProverError

        self.inputs.append(inputs)
        if inputs["nullifier"] in self.fail_for:
            raise ProverError("witness does not satisfy constraints")
        return ProofResult(
            proof=Groth16Proof.from_snarkjs(SAMPLE_PROOF),
            public_signals=[str(inputs[k]) for k in PUBLIC_SIGNAL_KEYS],
        )


@pytest.fixture
def hasher() -> FakeHasher:
    return FakeHasher()


def make_note(
    nullifier: int,
    secret: int,
    pool_id: str = "sol-0.1",
    leaf_index: int = 7,
    root: Optional[bytes] = None,
    status: NoteStatus = NoteStatus.CONFIRMED,
) -> Note:
    commitment = FakeHasher.digest([nullifier, secret])
    nullifier_hash = FakeHasher.digest([nullifier])
    return Note(
        pool_id=pool_id,
        commitment=field_to_hex(commitment),
        nullifier_secret=str(nullifier),
        note_secret=str(secret),
        nullifier_hash=field_to_hex(nullifier_hash),
        leaf_index=leaf_index,
        root_after=field_to_hex(int.from_bytes(root, "big")) if root else None,
        siblings=[field_to_hex(i + 1) for i in range(TREE_HEIGHT)] if root else [],
        status=status,
    )


# ── Note store ───────────────────────────────────────────────────────────


class FakeNoteStore:
    def __init__(self):
        self.notes: Dict[str, Note] = {}
        self.spent: Dict[str, Optional[str]] = {}
        self.paths: Dict[str, Any] = {}

    async def save(self, note: Note) -> None:
        self.notes[note.commitment] = note

    async def set_deposit_tx(self, commitment: str, signature: str) -> None:
        self.notes[commitment] = self.notes[commitment].model_copy(update={"deposit_tx": signature})

    async def finalize_deposit(self, note: Note) -> None:
        self.notes[note.commitment] = note

    async def update_path(self, commitment: str, path) -> None:
        self.paths[commitment] = path

    async def mark_spent(self, commitment: str, signature: Optional[str] = None) -> None:
        self.spent[commitment] = signature


@pytest.fixture
def note_store() -> FakeNoteStore:
    return FakeNoteStore()


# ── SQLite note database ─────────────────────────────────────────────────


@pytest_asyncio.fixture
async def sessions(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'notes.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()
