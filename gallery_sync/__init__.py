"""
Incremental gallery sync engine.

This package mirrors an upstream gallery API (procedures, doctors, cases)
into local entities, one resumable page at a time:

Modules:
    coordinator: Session lifecycle and the per-tenant lock
    fetcher: Tenant-scoped, rate-limited upstream reader
    executor: Stage state machine (procedures -> manifest -> cases -> reconciling)
    materializer: Idempotent upsert of upstream records into local entities
    registry: Durable remote id -> local entity mapping
    reconciler: Orphan detection and audited deletion
    history: Sync run history and retention
    migrations: One-time registry key migration
    scheduler: APScheduler integration for automatic syncs
    rate_limit: Per-tenant token buckets

Architecture:
    Every invocation of StageExecutor.step() fetches and writes one page,
    then commits. Orphans are only detected after all stages complete in
    the same session, so an incomplete run can never delete local data.

Usage:
    coordinator = SyncSessionCoordinator(session)
    sync_session = await coordinator.start_or_resume(tenant.key)

    executor = StageExecutor(session, TenantFetcher(), coordinator=coordinator)
    summary = await executor.step(sync_session.session_token)
"""

__all__ = [
    "SyncSessionCoordinator",
    "TenantFetcher",
    "StageExecutor",
    "EntityMaterializer",
    "IdentityRegistry",
    "OrphanReconciler",
    "SyncHistory",
    "SyncScheduler",
]
