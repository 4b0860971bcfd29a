"""
Sync run history with retention-based cleanup
"""

from typing import List, Optional
from datetime import datetime, timedelta
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete
from core.exceptions import SyncException
from models.base import RunStatus
from models.sync_run import SyncRun
from models.sync_session import SyncSession
import logging

logger = logging.getLogger(__name__)


class SyncHistory:
    """Writes one SyncRun per ended session and answers history queries"""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    def record_run(
        self,
        session: SyncSession,
        status: RunStatus,
        entities_deleted: int = 0,
        pending_deletion: int = 0,
        error: Optional[SyncException] = None
    ) -> SyncRun:
        """Add the history row for an ending session (caller commits)"""
        completed_at = session.completed_at or datetime.utcnow()
        run = SyncRun(
            session_token=session.session_token,
            tenant_key=session.tenant_key,
            trigger=session.trigger,
            status=status,
            started_at=session.started_at,
            completed_at=completed_at,
            duration_seconds=(completed_at - session.started_at).total_seconds(),
            records_processed=session.records_processed,
            records_failed=session.records_failed,
            records_skipped=session.records_skipped,
            entities_created=session.entities_created,
            entities_updated=session.entities_updated,
            entities_deleted=entities_deleted,
            pending_deletion=pending_deletion,
            error_class=type(error).__name__ if error else session.last_error_class,
            error_message=error.message if error else session.last_error_message,
        )
        self.db.add(run)
        return run

    async def recent_runs(self, tenant_key: Optional[str] = None, limit: int = 10) -> List[SyncRun]:
        query = select(SyncRun).order_by(SyncRun.completed_at.desc(), SyncRun.id.desc()).limit(limit)
        if tenant_key:
            query = query.where(SyncRun.tenant_key == tenant_key)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def last_success(self, tenant_key: str) -> Optional[SyncRun]:
        result = await self.db.execute(
            select(SyncRun).where(
                SyncRun.tenant_key == tenant_key,
                SyncRun.status.in_([RunStatus.SUCCESS, RunStatus.PARTIAL])
            ).order_by(SyncRun.completed_at.desc(), SyncRun.id.desc()).limit(1)
        )
        return result.scalar_one_or_none()

    async def prune(self, retention_days: int) -> int:
        """Delete history rows older than the retention window"""
        cutoff = datetime.utcnow() - timedelta(days=retention_days)
        result = await self.db.execute(delete(SyncRun).where(SyncRun.completed_at < cutoff))
        await self.db.commit()
        removed = result.rowcount or 0
        if removed:
            logger.info(f"Pruned {removed} sync runs older than {retention_days} days")
        return removed
