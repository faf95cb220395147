# services/api/app.py
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from services.api.config import Settings
from services.api.health_checks import comprehensive_health_check, readiness_check
from services.api.logging_config import get_logger, setup_logging
from services.api.runtime import SettlementRuntime, build_runtime
from services.api.schemas_api import (
    BackupRes,
    BatchWithdrawReq,
    BatchWithdrawRes,
    DepositReq,
    DepositRes,
    DepositResumeReq,
    NoteHealthView,
    NotesRes,
    NoteStatusReq,
    NoteStatusRes,
    NoteStatusRow,
    NoteView,
    PoolsRes,
    PoolView,
    RootCheckReq,
    RootCheckRes,
    WithdrawReq,
    WithdrawRes,
)
from services.database.note_store import NoteNotFound, NoteStore
from services.rpc.errors import TransactionFailedError, TransientNetworkError
from services.settlement.errors import (
    CommitmentMismatch,
    DepositEventUnavailable,
    ProverError,
    RecoveryError,
    RelayError,
    UnknownPool,
)
from services.settlement.root_acceptance import RootAcceptanceOracle
from services.settlement.types import Note, NoteStatus
from services.settlement.withdrawal import WithdrawalOutcome
from services.settlement.workers import WorkflowCancelled

logger = get_logger("api")


def create_app(runtime: Optional[SettlementRuntime] = None) -> FastAPI:
    """
    Build the API. With a runtime given the app uses it as is (tests);
    otherwise one is built from the environment at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "runtime", None) is not None:
            yield
            return
        settings = Settings.from_env()
        setup_logging(settings.env, settings.log_level)
        app.state.runtime = await build_runtime(settings)
        try:
            yield
        finally:
            await app.state.runtime.aclose()

    app = FastAPI(title="Shielded Pool Settlement API", version="0.1.0", lifespan=lifespan)
    app.state.runtime = runtime
    _register_error_handlers(app)
    app.include_router(_routes())
    return app


# =========================
# Dependencies
# =========================

def get_runtime(request: Request) -> SettlementRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Service is starting")
    return runtime


def get_store(runtime: SettlementRuntime = Depends(get_runtime)) -> NoteStore:
    if runtime.note_store is None:
        raise HTTPException(status_code=503, detail="Note store disabled (NOTE_ENCRYPTION_KEY not set)")
    return runtime.note_store


# =========================
# Error mapping
# =========================

_STATUS_BY_ERROR = (
    (UnknownPool, 404),
    (NoteNotFound, 404),
    (CommitmentMismatch, 409),
    (WorkflowCancelled, 409),
    (TransactionFailedError, 400),
    (ValueError, 400),
    (RelayError, 502),
    (RecoveryError, 502),
    (ProverError, 502),
    (DepositEventUnavailable, 502),
    (TransientNetworkError, 503),
)


def _register_error_handlers(app: FastAPI) -> None:
    for exc_type, status_code in _STATUS_BY_ERROR:
        async def handler(request: Request, exc: Exception, status_code: int = status_code) -> JSONResponse:
            logger.warning(f"{request.method} {request.url.path} -> {status_code}: {type(exc).__name__}: {exc}")
            return JSONResponse(status_code=status_code,
                                content={"detail": str(exc), "error_type": type(exc).__name__})
        app.add_exception_handler(exc_type, handler)


# =========================
# Helpers
# =========================

def _note_view(note: Note) -> NoteView:
    return NoteView.model_validate(note.model_dump())


def _withdraw_res(outcome: WithdrawalOutcome) -> WithdrawRes:
    return WithdrawRes(
        commitment=outcome.commitment,
        status=outcome.status,
        signature=outcome.signature,
        stage=outcome.stage.value if outcome.stage else None,
        error=outcome.error,
        error_type=outcome.error_type,
        recovered_path=outcome.recovered_path,
    )


def _require(component, name: str):
    if component is None:
        raise HTTPException(status_code=503, detail=f"{name} disabled by configuration")
    return component


# =========================
# Routes
# =========================

def _routes() -> APIRouter:
    router = APIRouter()

    @router.get("/health/live")
    async def health_live():
        return {"status": "alive"}

    @router.get("/health/ready")
    async def health_ready(runtime: SettlementRuntime = Depends(get_runtime)):
        if not await readiness_check(runtime):
            raise HTTPException(status_code=503, detail="Not ready")
        return {"status": "ready"}

    @router.get("/health")
    async def health(runtime: SettlementRuntime = Depends(get_runtime)):
        return await comprehensive_health_check(runtime)

    @router.get("/rpc/endpoints")
    async def rpc_endpoints(runtime: SettlementRuntime = Depends(get_runtime)):
        return {"endpoints": runtime.executor.health_status()}

    @router.get("/pools", response_model=PoolsRes)
    async def list_pools(runtime: SettlementRuntime = Depends(get_runtime)):
        return PoolsRes(pools=[
            PoolView(
                pool_id=p.pool_id,
                label=p.label,
                program_id=p.program_id,
                denomination_lamports=p.denomination_lamports,
                ring_capacity=p.ring_capacity,
                shard_count=len(p.shard_addresses),
                max_fee_bps=p.max_fee_bps,
            )
            for p in runtime.pools
        ])

    @router.post("/roots/check", response_model=RootCheckRes)
    async def check_root(req: RootCheckReq, runtime: SettlementRuntime = Depends(get_runtime)):
        pool = runtime.pools.get(req.pool_id)
        result = await RootAcceptanceOracle(runtime.executor, pool).is_accepted_root(req.root)
        return RootCheckRes(found=result.found, source=result.source.value, shard_index=result.shard_index)

    @router.get("/notes", response_model=NotesRes)
    async def list_notes(pool_id: Optional[str] = None, status: Optional[NoteStatus] = None,
                         store: NoteStore = Depends(get_store)):
        notes = await store.list(pool_id=pool_id, status=status)
        return NotesRes(notes=[_note_view(n) for n in notes], count=len(notes))

    @router.get("/notes/{commitment}", response_model=NoteView)
    async def get_note(commitment: str, store: NoteStore = Depends(get_store)):
        return _note_view(await store.require(commitment))

    @router.post("/notes/status", response_model=NoteStatusRes)
    async def notes_status(req: NoteStatusReq, runtime: SettlementRuntime = Depends(get_runtime),
                           store: NoteStore = Depends(get_store)):
        if req.commitments:
            notes = [await store.require(c) for c in req.commitments]
        else:
            notes = await store.list()
        reports = await runtime.status_service.report(notes)
        for report in reports:
            if report.spent:
                await store.mark_spent(report.commitment)
        return NoteStatusRes(notes=[
            NoteStatusRow(
                commitment=r.commitment,
                status=r.status,
                health=NoteHealthView(**vars(r.health)) if r.health else None,
                error=r.error,
            )
            for r in reports
        ])

    @router.post("/withdraw", response_model=WithdrawRes)
    async def withdraw(req: WithdrawReq, runtime: SettlementRuntime = Depends(get_runtime),
                       store: NoteStore = Depends(get_store)):
        orchestrator = _require(runtime.withdrawals, "Withdrawals")
        note = await store.require(req.commitment)
        if note.status is NoteStatus.SPENT:
            return WithdrawRes(commitment=note.commitment, status="already_spent", signature=note.spent_tx)
        if note.status is NoteStatus.PENDING:
            raise HTTPException(status_code=409, detail="Deposit not finalized; resume it first")
        outcome = await orchestrator.withdraw(note, req.recipient, fee_bps=req.fee_bps)
        return _withdraw_res(outcome)

    @router.post("/withdraw/batch", response_model=BatchWithdrawRes)
    async def withdraw_batch(req: BatchWithdrawReq, runtime: SettlementRuntime = Depends(get_runtime),
                             store: NoteStore = Depends(get_store)):
        orchestrator = _require(runtime.withdrawals, "Withdrawals")
        notes = [await store.require(c) for c in req.commitments]
        result = await orchestrator.withdraw_batch(notes, req.recipient, fee_bps=req.fee_bps)
        return BatchWithdrawRes(
            succeeded=len(result.succeeded),
            failed=len(result.failed),
            pending=len(result.pending),
            results=[_withdraw_res(o) for o in result.outcomes],
        )

    @router.post("/deposit", response_model=DepositRes)
    async def deposit(req: DepositReq, runtime: SettlementRuntime = Depends(get_runtime)):
        orchestrator = _require(runtime.deposits, "Deposits")
        note = await orchestrator.deposit(req.pool_id, runtime.depositor)
        return DepositRes(note=_note_view(note), root_after=note.root_after)

    @router.post("/deposit/resume", response_model=DepositRes)
    async def deposit_resume(req: DepositResumeReq, runtime: SettlementRuntime = Depends(get_runtime),
                             store: NoteStore = Depends(get_store)):
        orchestrator = _require(runtime.deposits, "Deposits")
        note = await store.require(req.commitment)
        if note.status is not NoteStatus.PENDING or not note.deposit_tx:
            raise HTTPException(status_code=409, detail="Only submitted, unfinalized deposits can be resumed")
        finalized = await orchestrator.resume(note)
        return DepositRes(note=_note_view(finalized), root_after=finalized.root_after)

    @router.post("/admin/backup", response_model=BackupRes)
    async def create_backup(runtime: SettlementRuntime = Depends(get_runtime)):
        backup = _require(runtime.backup, "Backups")
        info = await backup.create_backup(description="Manual backup")
        return BackupRes(filename=info["filename"], size_bytes=info["size_bytes"], timestamp=info["timestamp"])

    return router


app = create_app()
