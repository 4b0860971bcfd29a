"""
Health check endpoint with database and per-tenant sync status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError
from api.dependencies import get_db, get_tenant_directory
from core.database import check_connection
from core.tenants import TenantDirectory
from gallery_sync.coordinator import SyncSessionCoordinator
from models.base import RunStatus
from schemas.api import HealthCheckResponse, TenantSyncInfo
from datetime import datetime
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    tenants: TenantDirectory = Depends(get_tenant_directory)
):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Live session and last run for every configured tenant
    """

    db_connected = await check_connection(db)

    tenant_infos = []
    failed_tenants = 0

    if db_connected:
        coordinator = SyncSessionCoordinator(db)
        try:
            for tenant in tenants.all():
                live = await coordinator.get_live_session(tenant.key)
                runs = await coordinator.history.recent_runs(tenant.key, limit=1)
                last_run = runs[0] if runs else None
                last_success = await coordinator.history.last_success(tenant.key)

                if last_run is not None and last_run.status == RunStatus.FAILED:
                    failed_tenants += 1

                tenant_infos.append(TenantSyncInfo(
                    tenant_key=tenant.key,
                    name=tenant.name or None,
                    live_session_token=live.session_token if live else None,
                    live_stage=live.stage.value if live else None,
                    last_run_status=last_run.status.value if last_run else None,
                    last_run_at=last_run.completed_at if last_run else None,
                    last_success_at=last_success.completed_at if last_success else None,
                    last_error_class=last_run.error_class if last_run else None,
                ))
        except SQLAlchemyError as e:
            logger.error(f"Failed to fetch tenant sync status: {str(e)}")

    # Status calculation is handled by the validator in HealthCheckResponse
    return HealthCheckResponse(
        status="healthy",
        timestamp=datetime.utcnow(),
        database_connected=db_connected,
        tenants=tenant_infos,
        total_tenants=len(tenants),
        failed_tenants=failed_tenants
    )
