"""
Wiring: builds the executor, tracker, clients, store and orchestrators from
Settings. The API holds one SettlementRuntime for its lifetime.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional

from solders.keypair import Keypair

from services.api.config import Settings
from services.api.logging_config import get_logger
from services.crypto_core.hashing import NodePoseidonHasher
from services.database import config as db_config
from services.database.backup import BackupScheduler, NoteDatabaseBackup
from services.database.note_store import NoteStore
from services.rpc.confirmation import ConfirmationTracker
from services.rpc.executor import RateLimitedExecutor
from services.rpc.rate_limit import LeakyBucketRateLimiter
from services.settlement.deposit import DepositOrchestrator
from services.settlement.note_status import NoteStatusService
from services.settlement.pools import PoolRegistry
from services.settlement.prover import SnarkjsProver
from services.settlement.recovery import RecoveryClient
from services.settlement.relay import RelayClient
from services.settlement.submit import DirectSubmitter, RelaySubmitter, Submitter, load_keypair
from services.settlement.withdrawal import WithdrawalOrchestrator
from services.settlement.witness import WitnessBuilder

logger = get_logger("runtime")


@dataclass
class SettlementRuntime:
    settings: Settings
    pools: PoolRegistry
    executor: RateLimitedExecutor
    tracker: ConfirmationTracker
    status_service: NoteStatusService
    note_store: Optional[NoteStore] = None
    recovery: Optional[RecoveryClient] = None
    relay: Optional[RelayClient] = None
    withdrawals: Optional[WithdrawalOrchestrator] = None
    deposits: Optional[DepositOrchestrator] = None
    depositor: Optional[Keypair] = None
    backup: Optional[NoteDatabaseBackup] = None
    scheduler: Optional[BackupScheduler] = None
    disabled: List[str] = field(default_factory=list)

    async def aclose(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.stop()
        for client in (self.recovery, self.relay):
            if client is not None:
                await client.aclose()
        await self.executor.aclose()
        if self.note_store is not None:
            await db_config.close_database()


def build_executor(settings: Settings) -> RateLimitedExecutor:
    return RateLimitedExecutor(
        settings.rpc_urls,
        rate_limiter=LeakyBucketRateLimiter(capacity=settings.rpc_burst, refill_rate=settings.rpc_max_rps),
        max_concurrent=settings.rpc_max_concurrent,
        cooldown=settings.rpc_cooldown_sec,
    )


def _build_submitter(relay: Optional[RelayClient], executor: RateLimitedExecutor,
                     payer: Optional[Keypair]) -> Optional[Submitter]:
    if relay is not None:
        return RelaySubmitter(relay)
    if payer is not None:
        return DirectSubmitter(executor, payer)
    return None


async def build_runtime(settings: Settings, start_backups: bool = True) -> SettlementRuntime:
    pools = PoolRegistry.from_file(settings.pools_config_path)
    executor = build_executor(settings)
    tracker = ConfirmationTracker(
        executor,
        poll_interval=settings.confirm_poll_sec,
        timeout=settings.confirm_timeout_sec,
    )
    runtime = SettlementRuntime(
        settings=settings,
        pools=pools,
        executor=executor,
        tracker=tracker,
        status_service=NoteStatusService(executor, pools),
    )

    if settings.note_encryption_key or os.getenv("NOTE_ENCRYPTION_PASSPHRASE"):
        await db_config.init_database(settings.database_url, settings.note_encryption_key)
        runtime.note_store = NoteStore(db_config.get_session_factory(), db_config.get_encryptor())
        if settings.sqlite_path is not None:
            runtime.backup = NoteDatabaseBackup(str(settings.sqlite_path), str(settings.backup_dir))
            if start_backups:
                runtime.scheduler = BackupScheduler(runtime.backup)
                runtime.scheduler.start()
    else:
        runtime.disabled.append("note_store")
        logger.warning("NOTE_ENCRYPTION_KEY not set; note store disabled")

    if settings.recovery_url:
        runtime.recovery = RecoveryClient(settings.recovery_url)
    if settings.relay_url:
        runtime.relay = RelayClient(settings.relay_url)
    if settings.fee_payer_keypair:
        runtime.depositor = load_keypair(settings.fee_payer_keypair)

    hasher = NodePoseidonHasher(settings.scripts_dir, node_bin=settings.node_bin)
    submitter = _build_submitter(runtime.relay, executor, runtime.depositor)

    if settings.prover_wasm and settings.prover_zkey and submitter is not None:
        runtime.withdrawals = WithdrawalOrchestrator(
            pools=pools,
            executor=executor,
            witness_builder=WitnessBuilder(hasher),
            prover=SnarkjsProver(settings.prover_wasm, settings.prover_zkey, settings.scripts_dir,
                                 node_bin=settings.node_bin),
            submitter=submitter,
            tracker=tracker,
            recovery=runtime.recovery,
            note_store=runtime.note_store,
            status_service=runtime.status_service,
            proof_delay=settings.proof_delay_sec,
            confirm_concurrency=settings.confirm_concurrency,
        )
    else:
        runtime.disabled.append("withdrawals")
        logger.warning("Withdrawals disabled: prover artifacts or a submitter (relay / fee payer) missing")

    if runtime.depositor is not None:
        runtime.deposits = DepositOrchestrator(
            pools=pools,
            executor=executor,
            hasher=hasher,
            tracker=tracker,
            status_service=runtime.status_service,
            note_store=runtime.note_store,
        )
    else:
        runtime.disabled.append("deposits")

    logger.info(
        f"Runtime ready: {len(pools)} pool(s), {len(settings.rpc_urls)} RPC endpoint(s), "
        f"disabled={runtime.disabled or 'none'}"
    )
    return runtime
