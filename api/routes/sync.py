"""
Sync trigger endpoints: start, step, reconcile, cancel, status and history
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from api.dependencies import get_db, get_fetcher, get_tenant_directory
from core.tenants import TenantDirectory
from gallery_sync.coordinator import SyncSessionCoordinator
from gallery_sync.executor import StageExecutor
from gallery_sync.fetcher import TenantFetcher
from gallery_sync.reconciler import OrphanReconciler
from gallery_sync.registry import IdentityRegistry
from models.base import ReconcileMode, SyncTrigger
from schemas.sync import (
    CancelResponse,
    DeleteOrphansRequest,
    ErrorInfo,
    ReconciliationReport,
    SessionRequest,
    StartSyncRequest,
    StartSyncResponse,
    StepResponse,
    SyncHistoryResponse,
    SyncRunSummary,
    SyncStatusResponse,
)
from typing import Optional
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["Sync"])


@router.post("/start", response_model=StartSyncResponse)
async def start_sync(
    request: StartSyncRequest,
    db: AsyncSession = Depends(get_db),
    tenants: TenantDirectory = Depends(get_tenant_directory)
):
    """
    Start a sync session for a tenant, or resume the live one.

    Calling this twice while a session is live returns the same token.
    """
    tenants.get(request.tenant_key)

    coordinator = SyncSessionCoordinator(db)
    session = await coordinator.start_or_resume(request.tenant_key, SyncTrigger.MANUAL)

    return StartSyncResponse(
        session_token=session.session_token,
        tenant_key=session.tenant_key,
        stage=session.stage.value,
        resumed=coordinator.resumed,
    )


@router.post("/step", response_model=StepResponse)
async def step_sync(
    request: SessionRequest,
    db: AsyncSession = Depends(get_db),
    fetcher: TenantFetcher = Depends(get_fetcher)
):
    """Advance the session by one page (or run reconciliation when it is due)"""
    executor = StageExecutor(db, fetcher)
    return await executor.step(request.session_token)


@router.post("/reconcile/detect", response_model=ReconciliationReport)
async def detect_orphans(request: SessionRequest, db: AsyncSession = Depends(get_db)):
    """List orphans of a completed session and flag them pending_deletion"""
    coordinator = SyncSessionCoordinator(db)
    session = await coordinator.get_session(request.session_token)
    return await OrphanReconciler(db).detect(session, ReconcileMode.MANUAL)


@router.post("/reconcile/delete", response_model=ReconciliationReport)
async def delete_orphans(request: DeleteOrphansRequest, db: AsyncSession = Depends(get_db)):
    """
    Delete operator-approved orphans.

    With automatic=true every pending orphan of the tenant is deleted;
    otherwise only the given local entity ids.
    """
    coordinator = SyncSessionCoordinator(db)
    session = await coordinator.get_session(request.session_token)

    local_ids = None if request.automatic else request.entity_ids
    report = ReconciliationReport(
        session_token=session.session_token,
        tenant_key=session.tenant_key,
        mode=(ReconcileMode.AUTOMATIC if request.automatic else ReconcileMode.MANUAL).value,
    )
    if local_ids is not None and not local_ids:
        return report

    return await OrphanReconciler(db).delete(session, local_ids, report=report)


@router.post("/cancel", response_model=CancelResponse)
async def cancel_sync(request: SessionRequest, db: AsyncSession = Depends(get_db)):
    """Request cooperative cancellation, honored at the next step"""
    session = await SyncSessionCoordinator(db).request_cancel(request.session_token)
    return CancelResponse(
        session_token=session.session_token,
        stage=session.stage.value,
        cancel_requested=session.cancel_requested,
    )


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status(
    tenant_key: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
    tenants: TenantDirectory = Depends(get_tenant_directory)
):
    """Current stage, cursor, progress and last error of the tenant's latest session"""
    tenants.get(tenant_key)

    coordinator = SyncSessionCoordinator(db)
    live = await coordinator.get_live_session(tenant_key)
    session = live or await coordinator.latest_session(tenant_key)
    last_success = await coordinator.history.last_success(tenant_key)
    registry_counts = await IdentityRegistry(db).counts_by_status(tenant_key)

    response = SyncStatusResponse(
        tenant_key=tenant_key,
        live=live is not None,
        last_success_at=last_success.completed_at if last_success else None,
        registry=registry_counts,
    )
    if session is None:
        return response

    response.session_token = session.session_token
    response.stage = session.stage.value
    response.cursor = session.cursor
    response.percent_complete = session.percent_complete
    response.records_processed = session.records_processed or 0
    response.records_failed = session.records_failed or 0
    response.started_at = session.started_at
    response.last_heartbeat_at = session.last_heartbeat_at
    response.cancel_requested = bool(session.cancel_requested)
    if session.last_error_class:
        response.last_error = ErrorInfo(
            error_class=session.last_error_class,
            message=session.last_error_message,
            retryable=bool(session.last_error_retryable),
        )
    return response


@router.get("/history", response_model=SyncHistoryResponse)
async def sync_history(
    tenant_key: Optional[str] = Query(None),
    limit: int = Query(10, ge=1, le=100, description="Number of recent runs to return"),
    db: AsyncSession = Depends(get_db)
):
    """Recent sync runs, newest first"""
    runs = await SyncSessionCoordinator(db).history.recent_runs(tenant_key, limit)
    return SyncHistoryResponse(
        tenant_key=tenant_key,
        runs=[SyncRunSummary.model_validate(run) for run in runs],
    )
