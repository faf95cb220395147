"""
Transaction submission paths.

DirectSubmitter signs locally and sends through the rate-limited executor.
RelaySubmitter hands the instruction to the relay, which pays and signs.
Both report a used nullifier as DuplicateNullifierError so the orchestrator
can treat it as an already-completed withdrawal.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, Tuple

from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from services.api.logging_config import get_logger
from services.rpc.errors import RpcError
from services.rpc.executor import RateLimitedExecutor
from services.settlement.errors import DuplicateNullifierError, RelayError
from services.settlement.instruction import BuiltInstruction
from services.settlement.relay import RelayClient
from services.settlement.types import PoolConfig

logger = get_logger("submit")

DUPLICATE_MARKERS = ("already in use", "nullifieralreadyused", "nullifier already used")
ALREADY_PROCESSED_MARKERS = ("already been processed", "alreadyprocessed")


@dataclass(frozen=True)
class SubmissionResult:
    signature: str
    duplicate: bool = False
    confirmed: bool = False


class Submitter(Protocol):
    async def accounts_for(self, fee: int) -> Tuple[str, str]:
        """(payer, fee_receiver) for a withdrawal charging `fee`."""

    async def submit(self, pool: PoolConfig, built: BuiltInstruction,
                     nullifier_hash: Optional[str] = None) -> SubmissionResult:
        ...


def load_keypair(path: str) -> Keypair:
    """solana-keygen JSON file (array of 64 ints)."""
    raw = json.loads(Path(path).expanduser().read_text())
    return Keypair.from_bytes(bytes(raw))


def _error_text(exc: RpcError) -> str:
    return f"{exc} {json.dumps(exc.data, default=str) if exc.data else ''}".lower()


class DirectSubmitter:
    def __init__(self, executor: RateLimitedExecutor, signer: Keypair,
                 fee_receiver: Optional[str] = None):
        self.executor = executor
        self.signer = signer
        self.fee_receiver = fee_receiver

    @property
    def payer(self) -> Pubkey:
        return self.signer.pubkey()

    async def accounts_for(self, fee: int) -> Tuple[str, str]:
        payer = str(self.payer)
        if fee == 0 or not self.fee_receiver:
            return payer, payer
        return payer, self.fee_receiver

    async def submit(self, pool: PoolConfig, built: BuiltInstruction,
                     nullifier_hash: Optional[str] = None) -> SubmissionResult:
        blockhash = await self.executor.execute(
            lambda rpc: rpc.get_latest_blockhash(), description="getLatestBlockhash"
        )
        tx = Transaction.new_signed_with_payer(
            built.with_compute_budget(),
            self.payer,
            [self.signer],
            Hash.from_string(blockhash),
        )
        raw = bytes(tx)
        signature = str(tx.signatures[0])

        try:
            sent = await self.executor.execute(
                lambda rpc: rpc.send_transaction(raw), description="sendTransaction"
            )
        except RpcError as e:
            text = _error_text(e)
            if nullifier_hash and any(marker in text for marker in DUPLICATE_MARKERS):
                raise DuplicateNullifierError(nullifier_hash, signature) from e
            if any(marker in text for marker in ALREADY_PROCESSED_MARKERS):
                logger.info(f"Transaction already processed: {signature[:16]}...")
                return SubmissionResult(signature)
            raise

        if sent and sent != signature:
            logger.warning(f"RPC returned signature {sent[:16]}... for local {signature[:16]}...")
        logger.info(f"Submitted {pool.pool_id} transaction {signature[:16]}...")
        return SubmissionResult(signature)


class RelaySubmitter:
    def __init__(self, relay: RelayClient):
        self.relay = relay

    async def accounts_for(self, fee: int) -> Tuple[str, str]:
        info = await self.relay.info()
        if not info.protocol:
            raise RelayError("relay did not report its protocol address")
        return info.protocol, info.protocol

    async def submit(self, pool: PoolConfig, built: BuiltInstruction,
                     nullifier_hash: Optional[str] = None) -> SubmissionResult:
        response = await self.relay.submit_withdrawal(
            pool.pool_id, built.to_relay_format(), nullifier_hash or ""
        )
        return SubmissionResult(
            signature=response.signature,
            duplicate=response.status == "duplicate",
            confirmed=response.confirmed,
        )
