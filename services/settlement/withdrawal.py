"""
Withdrawal orchestration.

Single note:  CHECK_ROOT -> BUILD_WITNESS -> GENERATE_PROOF ->
              BUILD_INSTRUCTION -> SUBMIT -> CONFIRM -> MARK_SPENT

Batch: proofs are generated one at a time while submission and confirmation
run in their own bounded pool. One item failing never stops the others.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence

from services.api.logging_config import get_logger
from services.crypto_core.field_codec import PUBLIC_INPUT_COUNT, address_bytes, pack_public_inputs
from services.rpc.confirmation import ConfirmationTracker
from services.rpc.executor import RateLimitedExecutor
from services.settlement.errors import DuplicateNullifierError, ProverError, RecoveryError
from services.settlement.instruction import BuiltInstruction, InstructionBuilder
from services.settlement.note_status import NoteStatusService
from services.settlement.pools import PoolRegistry
from services.settlement.prover import ProvingEngine
from services.settlement.recovery import RecoveryClient
from services.settlement.root_acceptance import RootAcceptanceOracle
from services.settlement.submit import Submitter
from services.settlement.types import MerklePath, Note, PoolConfig, RootAcceptanceResult
from services.settlement.witness import WitnessBuilder
from services.settlement.workers import CancelToken, WorkerPool, WorkflowCancelled

logger = get_logger("withdrawal")

DELAY_BETWEEN_PROOFS = 1.5
DELAY_BETWEEN_SUBMISSIONS = 1.0


class WithdrawalStage(str, Enum):
    CHECK_ROOT = "check_root"
    BUILD_WITNESS = "build_witness"
    GENERATE_PROOF = "generate_proof"
    BUILD_INSTRUCTION = "build_instruction"
    SUBMIT = "submit"
    CONFIRM = "confirm"
    MARK_SPENT = "mark_spent"
    DONE = "done"


ProgressCallback = Callable[[str, WithdrawalStage], None]


@dataclass
class PreparedWithdrawal:
    note: Note
    pool: PoolConfig
    built: BuiltInstruction
    path: MerklePath
    acceptance: Optional[RootAcceptanceResult]
    fee: int


@dataclass
class WithdrawalOutcome:
    commitment: str
    status: str  # success | duplicate | already_spent | pending | cancelled | failed
    signature: Optional[str] = None
    stage: Optional[WithdrawalStage] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    recovered_path: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status in ("success", "duplicate", "already_spent")


@dataclass
class BatchWithdrawalResult:
    outcomes: List[WithdrawalOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> List[WithdrawalOutcome]:
        return [o for o in self.outcomes if o.succeeded]

    @property
    def failed(self) -> List[WithdrawalOutcome]:
        return [o for o in self.outcomes if o.status == "failed"]

    @property
    def pending(self) -> List[WithdrawalOutcome]:
        return [o for o in self.outcomes if o.status in ("pending", "cancelled")]


class WithdrawalOrchestrator:
    def __init__(
        self,
        *,
        pools: PoolRegistry,
        executor: RateLimitedExecutor,
        witness_builder: WitnessBuilder,
        prover: ProvingEngine,
        submitter: Submitter,
        tracker: ConfirmationTracker,
        recovery: Optional[RecoveryClient] = None,
        note_store=None,
        status_service: Optional[NoteStatusService] = None,
        proof_delay: float = DELAY_BETWEEN_PROOFS,
        submission_delay: float = DELAY_BETWEEN_SUBMISSIONS,
        confirm_concurrency: int = 1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.pools = pools
        self.executor = executor
        self.witness_builder = witness_builder
        self.prover = prover
        self.submitter = submitter
        self.tracker = tracker
        self.recovery = recovery
        self.note_store = note_store
        self.status_service = status_service
        self.proof_delay = proof_delay
        self.submission_delay = submission_delay
        self.confirm_concurrency = confirm_concurrency
        self._sleep = sleep

    # ======== helpers ========

    @staticmethod
    def _enter(stage: WithdrawalStage, note: Note, cancel: Optional[CancelToken],
               progress: Optional[ProgressCallback]) -> None:
        if cancel is not None and cancel.cancelled:
            raise WorkflowCancelled(stage.value, cancel.reason)
        if progress is not None:
            progress(note.commitment, stage)

    async def _resolve_path(self, note: Note, pool: PoolConfig):
        """Cached path if its root is still accepted, else a recovered one."""
        if note.has_merkle_path:
            path = MerklePath.from_note(note)
            oracle = RootAcceptanceOracle(self.executor, pool)
            acceptance = await oracle.is_accepted_root(path.root)
            if acceptance.found:
                return path, acceptance
            logger.info(f"Cached root for {note.commitment[:18]}... is stale; recovering path")
        if self.recovery is None:
            raise RecoveryError(f"no accepted root for {note.commitment[:18]}... and no recovery service")
        path = await self.recovery.recover(pool.pool_id, note.commitment)
        if self.note_store is not None:
            await self.note_store.update_path(note.commitment, path)
        return path, None

    async def already_spent(self, note: Note) -> bool:
        if self.status_service is None:
            return False
        return await self.status_service.is_spent(note)

    # ======== stages ========

    async def prepare(
        self,
        note: Note,
        recipient: str,
        *,
        fee_bps: Optional[int] = None,
        cancel: Optional[CancelToken] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> PreparedWithdrawal:
        """Everything up to a ready-to-submit instruction. Nothing is sent."""
        pool = self.pools.get(note.pool_id)
        address_bytes(recipient)  # rejects malformed recipients before any RPC

        self._enter(WithdrawalStage.CHECK_ROOT, note, cancel, progress)
        path, acceptance = await self._resolve_path(note, pool)

        self._enter(WithdrawalStage.BUILD_WITNESS, note, cancel, progress)
        fee = pool.fee_for(fee_bps)
        payer, fee_receiver = await self.submitter.accounts_for(fee)
        witness = await self.witness_builder.build(note, path, recipient, fee_receiver, fee)

        self._enter(WithdrawalStage.GENERATE_PROOF, note, cancel, progress)
        proof = await self.prover.prove(witness.to_prover_inputs())
        if len(proof.public_signals) == PUBLIC_INPUT_COUNT and \
                pack_public_inputs(proof.public_signals) != witness.public_inputs():
            raise ProverError(f"public signals do not match the witness for {note.commitment[:18]}...")

        self._enter(WithdrawalStage.BUILD_INSTRUCTION, note, cancel, progress)
        built = InstructionBuilder(pool).build_withdraw(
            nullifier_hash=note.nullifier_hash_bytes,
            proof=proof.proof.to_bytes(),
            root=path.root.to_bytes(32, "big"),
            recipient=recipient,
            fee_receiver=fee_receiver,
            payer=payer,
            fee=fee,
            acceptance=acceptance,
            leaf_index=path.leaf_index,
        )
        return PreparedWithdrawal(note=note, pool=pool, built=built, path=path,
                                  acceptance=acceptance, fee=fee)

    async def settle(
        self,
        prepared: PreparedWithdrawal,
        *,
        cancel: Optional[CancelToken] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> WithdrawalOutcome:
        """Submit, confirm and record a prepared withdrawal."""
        note = prepared.note
        recovered = prepared.acceptance is None

        self._enter(WithdrawalStage.SUBMIT, note, cancel, progress)
        try:
            submission = await self.submitter.submit(prepared.pool, prepared.built, note.nullifier_hash)
        except DuplicateNullifierError as e:
            logger.info(f"Nullifier for {note.commitment[:18]}... already used; treating as withdrawn")
            await self._mark_spent(note, e.signature)
            return WithdrawalOutcome(note.commitment, "duplicate", signature=e.signature,
                                     stage=WithdrawalStage.DONE, recovered_path=recovered)

        if cancel is not None and cancel.cancelled:
            # submitted transactions stand; confirmation is left to a later status check
            logger.warning(f"Withdrawal {submission.signature[:16]}... submitted before cancellation")
            return WithdrawalOutcome(note.commitment, "cancelled", signature=submission.signature,
                                     stage=WithdrawalStage.CONFIRM, error=cancel.reason,
                                     recovered_path=recovered)

        if not submission.confirmed:
            self._enter(WithdrawalStage.CONFIRM, note, None, progress)
            confirmation = await self.tracker.confirm(submission.signature)
            if not confirmation.confirmed:
                return WithdrawalOutcome(note.commitment, "pending", signature=submission.signature,
                                         stage=WithdrawalStage.CONFIRM, recovered_path=recovered)

        self._enter(WithdrawalStage.MARK_SPENT, note, None, progress)
        await self._mark_spent(note, submission.signature)
        status = "duplicate" if submission.duplicate else "success"
        logger.info(f"Withdrawal {status} for {note.commitment[:18]}...: {submission.signature[:16]}...")
        return WithdrawalOutcome(note.commitment, status, signature=submission.signature,
                                 stage=WithdrawalStage.DONE, recovered_path=recovered)

    async def _mark_spent(self, note: Note, signature: Optional[str]) -> None:
        if self.note_store is not None:
            await self.note_store.mark_spent(note.commitment, signature)

    # ======== entry points ========

    async def withdraw(
        self,
        note: Note,
        recipient: str,
        *,
        fee_bps: Optional[int] = None,
        cancel: Optional[CancelToken] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> WithdrawalOutcome:
        """
        Withdraw one note to recipient.

        Raises:
            CommitmentMismatch: the stored note is corrupt (never retried)
            WorkflowCancelled: cancelled before anything was submitted
            TransactionFailedError: the program rejected the transaction
        """
        if await self.already_spent(note):
            await self._mark_spent(note, note.spent_tx)
            return WithdrawalOutcome(note.commitment, "already_spent", stage=WithdrawalStage.DONE)
        prepared = await self.prepare(note, recipient, fee_bps=fee_bps, cancel=cancel, progress=progress)
        return await self.settle(prepared, cancel=cancel, progress=progress)

    async def withdraw_batch(
        self,
        notes: Sequence[Note],
        recipient: str,
        *,
        fee_bps: Optional[int] = None,
        cancel: Optional[CancelToken] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> BatchWithdrawalResult:
        proof_pool = WorkerPool(1, delay_after=self.proof_delay, sleep=self._sleep, name="proof")
        confirm_pool = WorkerPool(self.confirm_concurrency, delay_after=self.submission_delay,
                                  sleep=self._sleep, name="confirm")

        async def process(note: Note) -> WithdrawalOutcome:
            stage = WithdrawalStage.CHECK_ROOT

            def track(commitment: str, current: WithdrawalStage) -> None:
                nonlocal stage
                stage = current
                if progress is not None:
                    progress(commitment, current)

            try:
                if await self.already_spent(note):
                    await self._mark_spent(note, note.spent_tx)
                    return WithdrawalOutcome(note.commitment, "already_spent", stage=WithdrawalStage.DONE)
                prepared = await proof_pool.run(
                    lambda: self.prepare(note, recipient, fee_bps=fee_bps, cancel=cancel, progress=track)
                )
                return await confirm_pool.run(lambda: self.settle(prepared, cancel=cancel, progress=track))
            except WorkflowCancelled as e:
                return WithdrawalOutcome(note.commitment, "cancelled", stage=stage, error=str(e),
                                         error_type=type(e).__name__)
            except Exception as e:
                logger.error(f"Withdrawal failed for {note.commitment[:18]}... at {stage.value}: {e}")
                return WithdrawalOutcome(note.commitment, "failed", stage=stage, error=str(e),
                                         error_type=type(e).__name__)

        outcomes = await asyncio.gather(*(process(note) for note in notes))
        result = BatchWithdrawalResult(list(outcomes))
        logger.info(
            f"Batch withdrawal finished: {len(result.succeeded)} succeeded, "
            f"{len(result.failed)} failed, {len(result.pending)} pending/cancelled"
        )
        return result
