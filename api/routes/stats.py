"""
Sync statistics and metrics endpoint
"""
from datetime import datetime
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, and_
from api.dependencies import get_db
from gallery_sync.history import SyncHistory
from gallery_sync.registry import IdentityRegistry
from models.audit_log import DeletionAuditLog
from models.base import EntityType, RunStatus
from models.local_entity import LocalEntity
from models.sync_run import SyncRun
from schemas.api import StatsResponse
from schemas.sync import SyncRunSummary
from typing import Optional
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Statistics"])


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    tenant_key: Optional[str] = Query(None, description="Limit statistics to one tenant"),
    limit: int = Query(10, ge=1, le=100, description="Number of recent runs to return"),
    db: AsyncSession = Depends(get_db)
):
    """
    Get sync statistics and metrics.

    Returns:
    - Local entity counts by type
    - Registry entry counts by status
    - Deletion totals from the audit log
    - Run counts, durations and recent run history
    """
    request_id = f"req_{uuid.uuid4().hex[:12]}"

    logger.info(f"[{request_id}] GET /stats")

    def scoped(query, column):
        return query.where(column == tenant_key) if tenant_key else query

    # ========== Entities ==========

    entity_result = await db.execute(
        scoped(
            select(LocalEntity.entity_type, func.count()).group_by(LocalEntity.entity_type),
            LocalEntity.tenant_key
        )
    )
    entities_by_type = {t.value: 0 for t in EntityType}
    for entity_type, count in entity_result.all():
        entities_by_type[entity_type.value] = count

    registry_by_status = await IdentityRegistry(db).counts_by_status(tenant_key)

    deletions_result = await db.execute(
        scoped(select(func.count()).select_from(DeletionAuditLog), DeletionAuditLog.tenant_key)
    )
    total_deletions = deletions_result.scalar() or 0

    # ========== Runs ==========

    runs_result = await db.execute(
        scoped(
            select(SyncRun.status, func.count()).group_by(SyncRun.status),
            SyncRun.tenant_key
        )
    )
    runs_by_status = {s.value: 0 for s in RunStatus}
    for status, count in runs_result.all():
        runs_by_status[status.value] = count
    total_runs = sum(runs_by_status.values())

    avg_duration_result = await db.execute(
        scoped(
            select(func.avg(SyncRun.duration_seconds)).where(
                and_(
                    SyncRun.status == RunStatus.SUCCESS,
                    SyncRun.duration_seconds.isnot(None)
                )
            ),
            SyncRun.tenant_key
        )
    )
    avg_duration = avg_duration_result.scalar()

    last_success_result = await db.execute(
        scoped(
            select(func.max(SyncRun.completed_at)).where(
                SyncRun.status.in_([RunStatus.SUCCESS, RunStatus.PARTIAL])
            ),
            SyncRun.tenant_key
        )
    )
    last_failure_result = await db.execute(
        scoped(
            select(func.max(SyncRun.completed_at)).where(SyncRun.status == RunStatus.FAILED),
            SyncRun.tenant_key
        )
    )

    # ========== Recent Runs ==========

    recent_runs = await SyncHistory(db).recent_runs(tenant_key, limit)

    logger.info(
        f"[{request_id}] Stats: {sum(entities_by_type.values())} entities, "
        f"{total_runs} runs, {total_deletions} deletions"
    )

    return StatsResponse(
        timestamp=datetime.utcnow(),
        entities_by_type=entities_by_type,
        registry_by_status=registry_by_status,
        total_deletions=total_deletions,
        total_runs=total_runs,
        runs_by_status=runs_by_status,
        avg_run_duration_seconds=round(avg_duration, 2) if avg_duration else None,
        last_success_at=last_success_result.scalar(),
        last_failure_at=last_failure_result.scalar(),
        recent_runs=[SyncRunSummary.model_validate(run) for run in recent_runs],
        request_id=request_id
    )
