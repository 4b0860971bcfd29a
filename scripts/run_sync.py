"""
Script to run a sync for all configured tenants (or one) until each blocks
"""

import argparse
import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.database import build_engine, build_session_maker
from core.exceptions import SyncException
from core.logging import setup_logging
from core.tenants import TenantDirectory
from gallery_sync.coordinator import SyncSessionCoordinator
from gallery_sync.executor import StageExecutor
from gallery_sync.fetcher import TenantFetcher
from models.base import ReconcileMode, SyncTrigger

setup_logging()
logger = logging.getLogger(__name__)


async def run_sync(tenant_key=None, reconcile_mode=None, max_steps=None):
    """Start or resume a session per tenant and step it until it blocks"""

    engine = build_engine()
    AsyncSessionLocal = build_session_maker(engine)

    tenants = TenantDirectory.from_settings()
    selected = [tenants.get(tenant_key)] if tenant_key else tenants.all()
    if not selected:
        logger.warning("No tenants configured (SYNC_TENANTS). Skipping sync.")
        await engine.dispose()
        return

    fetcher = TenantFetcher(tenants=tenants)
    failures = 0

    try:
        for tenant in selected:
            async with AsyncSessionLocal() as session:
                try:
                    coordinator = SyncSessionCoordinator(session)
                    sync_session = await coordinator.start_or_resume(tenant.key, SyncTrigger.MANUAL)
                    executor = StageExecutor(
                        session, fetcher, coordinator=coordinator, reconcile_mode=reconcile_mode
                    )
                    summary = await executor.run_until_blocked(sync_session.session_token, max_steps)
                    logger.info(
                        f"Sync for {tenant.key}: session={summary.session_token}, "
                        f"stage={summary.stage}, status={summary.status}"
                    )
                    if summary.reconciliation is not None:
                        report = summary.reconciliation
                        logger.info(
                            f"Orphans for {tenant.key}: {report.total} found, "
                            f"{report.deleted_count} deleted, {report.pending_count} pending"
                        )
                    if summary.status == "failed":
                        failures += 1
                except SyncException as e:
                    failures += 1
                    logger.error(f"Sync failed for {tenant.key}: {e}")
                    continue

        logger.info("All sync jobs completed")
    finally:
        await engine.dispose()

    if failures:
        sys.exit(1)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run gallery sync")
    parser.add_argument("--tenant", help="Tenant key (default: every configured tenant)")
    parser.add_argument("--mode", choices=[m.value for m in ReconcileMode], help="Orphan reconciliation mode")
    parser.add_argument("--max-steps", type=int, default=None, help="Step budget per tenant")
    args = parser.parse_args()

    asyncio.run(run_sync(
        tenant_key=args.tenant,
        reconcile_mode=ReconcileMode(args.mode) if args.mode else None,
        max_steps=args.max_steps,
    ))
