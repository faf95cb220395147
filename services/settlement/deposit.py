"""
Deposit orchestration: GENERATE_PAYLOAD -> SUBMIT -> PARSE_EVENT -> FINALIZE_NOTE

The pending note is written to the store before anything is sent, so the
secrets survive a crash between submission and event parsing.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from solders.keypair import Keypair

from services.api.logging_config import get_logger
from services.crypto_core.field_codec import bytes_to_hex, field_to_hex, hex_to_bytes32
from services.crypto_core.hashing import Hasher, random_field_element
from services.crypto_core.layouts import DEPOSIT_EVENT_SIZE, DepositEvent, LayoutError, program_data_payloads
from services.rpc.confirmation import ConfirmationTracker
from services.rpc.errors import TransientNetworkError
from services.rpc.executor import RateLimitedExecutor
from services.rpc.retry import RetryPolicy, deposit_event_policy
from services.settlement.errors import DepositEventUnavailable
from services.settlement.instruction import InstructionBuilder
from services.settlement.note_status import NoteStatusService
from services.settlement.pools import PoolRegistry
from services.settlement.submit import DirectSubmitter
from services.settlement.types import Note, NoteStatus
from services.settlement.workers import CancelToken, WorkflowCancelled

logger = get_logger("deposit")


class DepositStage(str, Enum):
    GENERATE_PAYLOAD = "generate_payload"
    SUBMIT = "submit"
    CONFIRM = "confirm"
    PARSE_EVENT = "parse_event"
    FINALIZE_NOTE = "finalize_note"


@dataclass(frozen=True)
class DepositPayload:
    nullifier: int
    secret: int
    commitment: int
    nullifier_hash: int

    def to_note(self, pool_id: str) -> Note:
        return Note(
            pool_id=pool_id,
            commitment=field_to_hex(self.commitment),
            nullifier_secret=str(self.nullifier),
            note_secret=str(self.secret),
            nullifier_hash=field_to_hex(self.nullifier_hash),
            status=NoteStatus.PENDING,
        )


class DepositOrchestrator:
    def __init__(
        self,
        *,
        pools: PoolRegistry,
        executor: RateLimitedExecutor,
        hasher: Hasher,
        tracker: ConfirmationTracker,
        status_service: NoteStatusService,
        note_store=None,
        event_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.pools = pools
        self.executor = executor
        self.hasher = hasher
        self.tracker = tracker
        self.status_service = status_service
        self.note_store = note_store
        self.event_policy = event_policy or deposit_event_policy()
        self._sleep = sleep

    async def generate_payload(self) -> DepositPayload:
        nullifier = random_field_element()
        secret = random_field_element()
        commitment, nullifier_hash = await self.hasher.hash_many([[nullifier, secret], [nullifier]])
        return DepositPayload(nullifier, secret, commitment, nullifier_hash)

    async def parse_deposit_event(self, signature: str) -> DepositEvent:
        """
        Read the deposit event from the transaction logs, retrying while the
        RPC node catches up.

        Raises:
            DepositEventUnavailable: retries exhausted
        """

        async def attempt() -> DepositEvent:
            logs = await self.executor.execute(
                lambda rpc: rpc.get_transaction_logs(signature),
                description="getTransaction",
                prefer_non_primary=True,
            )
            if logs is None:
                raise TransientNetworkError(f"transaction {signature[:16]}... not available yet")
            for payload in program_data_payloads(logs):
                try:
                    data = base64.b64decode(payload)
                except (binascii.Error, ValueError):
                    continue
                if len(data) >= DEPOSIT_EVENT_SIZE:
                    return DepositEvent.decode(data)
            raise LayoutError(f"no deposit event in {len(logs)} log lines")

        try:
            return await self.event_policy.run(attempt, description="deposit event", sleep=self._sleep)
        except Exception as e:
            raise DepositEventUnavailable(signature, str(e)) from e

    async def finalize(self, note: Note, signature: str) -> Note:
        """Parse the event for a submitted deposit and complete the note."""
        event = await self.parse_deposit_event(signature)
        finalized = note.model_copy(update={
            "leaf_index": event.leaf_index,
            "root_after": bytes_to_hex(event.root_after),
            "siblings": [bytes_to_hex(s) for s in event.siblings],
            "deposit_tx": signature,
            "status": NoteStatus.CONFIRMED,
        })
        if self.note_store is not None:
            await self.note_store.finalize_deposit(finalized)
        logger.info(f"Deposit finalized: leaf {event.leaf_index}, commitment {note.commitment[:18]}...")
        return finalized

    async def resume(self, note: Note) -> Note:
        """Complete a note whose deposit landed but whose event was never parsed."""
        if note.status is not NoteStatus.PENDING or not note.deposit_tx:
            raise ValueError("only pending notes with a deposit signature can be resumed")
        return await self.finalize(note, note.deposit_tx)

    async def deposit(
        self,
        pool_id: str,
        depositor: Keypair,
        *,
        cancel: Optional[CancelToken] = None,
        progress: Optional[Callable[[str, DepositStage], None]] = None,
    ) -> Note:
        """
        Deposit one denomination into pool_id and return the confirmed note.

        Raises:
            TransactionFailedError: the program rejected the deposit
            DepositEventUnavailable: the deposit landed but the event was not readable;
                the stored note keeps its signature for resume()
        """
        pool = self.pools.get(pool_id)

        def enter(stage: DepositStage, commitment: str, check_cancel: bool = True) -> None:
            if check_cancel and cancel is not None and cancel.cancelled:
                raise WorkflowCancelled(stage.value, cancel.reason)
            if progress is not None:
                progress(commitment, stage)

        payload = await self.generate_payload()
        note = payload.to_note(pool.pool_id)
        enter(DepositStage.GENERATE_PAYLOAD, note.commitment)
        if self.note_store is not None:
            await self.note_store.save(note)

        enter(DepositStage.SUBMIT, note.commitment)
        active_shard = await self.status_service.fetch_active_shard(pool)
        built = InstructionBuilder(pool).build_deposit(
            commitment=hex_to_bytes32(note.commitment),
            depositor=depositor.pubkey(),
            active_shard_index=active_shard,
        )
        submission = await DirectSubmitter(self.executor, depositor).submit(pool, built)
        note = note.model_copy(update={"deposit_tx": submission.signature})
        if self.note_store is not None:
            await self.note_store.set_deposit_tx(note.commitment, submission.signature)

        # past this point the deposit is on its way; cancellation no longer applies
        enter(DepositStage.CONFIRM, note.commitment, check_cancel=False)
        confirmation = await self.tracker.confirm(submission.signature)
        if not confirmation.confirmed:
            logger.warning(f"Deposit {submission.signature[:16]}... unconfirmed; parsing event anyway")

        enter(DepositStage.PARSE_EVENT, note.commitment, check_cancel=False)
        finalized = await self.finalize(note, submission.signature)
        enter(DepositStage.FINALIZE_NOTE, note.commitment, check_cancel=False)
        return finalized
