import logging
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import async_sessionmaker
from core.config import settings
from core.database import build_engine, build_session_maker
from core.exceptions import LockContention
from core.tenants import TenantDirectory
from gallery_sync.coordinator import SyncSessionCoordinator
from gallery_sync.executor import StageExecutor
from gallery_sync.fetcher import TenantFetcher
from gallery_sync.history import SyncHistory
from models.base import SyncTrigger

logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        tenants: Optional[TenantDirectory] = None,
        fetcher: Optional[TenantFetcher] = None
    ):
        self.scheduler = AsyncIOScheduler()
        self.engine = None
        if session_factory is None:
            self.engine = build_engine()
            session_factory = build_session_maker(self.engine)
        self.SessionLocal = session_factory
        self.tenants = tenants or TenantDirectory.from_settings()
        self.fetcher = fetcher or TenantFetcher(tenants=self.tenants)

    async def run_sync_job(self):
        """Start or resume an automatic session per tenant and step it until blocked"""
        logger.info(f"Scheduler: Starting sync job for {len(self.tenants)} tenants")
        results = {}
        for tenant in self.tenants.all():
            async with self.SessionLocal() as session:
                try:
                    coordinator = SyncSessionCoordinator(session)
                    sync_session = await coordinator.start_or_resume(tenant.key, SyncTrigger.AUTOMATIC)
                    executor = StageExecutor(session, self.fetcher, coordinator=coordinator)
                    summary = await executor.run_until_blocked(
                        sync_session.session_token, settings.SCHEDULER_MAX_STEPS
                    )
                    results[tenant.key] = summary.status
                    logger.info(
                        f"Scheduler: {tenant.key} session {summary.session_token} "
                        f"at {summary.stage} ({summary.status})"
                    )
                except LockContention as e:
                    results[tenant.key] = "locked"
                    logger.info(f"Scheduler: {tenant.key} skipped - {e.message}")
                except Exception as e:
                    results[tenant.key] = "error"
                    logger.error(f"Scheduler: sync job failed for {tenant.key} - {e}")
        return results

    async def prune_history_job(self):
        """Drop sync run rows past the retention window"""
        async with self.SessionLocal() as session:
            try:
                removed = await SyncHistory(session).prune(settings.HISTORY_RETENTION_DAYS)
                logger.info(f"Scheduler: history prune removed {removed} runs")
                return removed
            except Exception as e:
                logger.error(f"Scheduler: history prune failed - {e}")
                return 0

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_sync_job,
            trigger=IntervalTrigger(minutes=settings.SYNC_INTERVAL_MINUTES),
            id="gallery_sync_job",
            replace_existing=True,
            max_instances=1
        )
        self.scheduler.add_job(
            self.prune_history_job,
            trigger=CronTrigger(hour=3, minute=0),
            id="sync_history_prune",
            replace_existing=True
        )
        self.scheduler.start()
        logger.info(f"Sync Scheduler started (every {settings.SYNC_INTERVAL_MINUTES} minutes)")

    async def stop(self):
        self.scheduler.shutdown()
        if self.engine is not None:
            await self.engine.dispose()
        logger.info("Sync Scheduler stopped")
