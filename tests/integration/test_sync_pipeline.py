"""
Integration tests for the complete sync pipeline

Tests the full flow: Procedures -> Manifest -> Cases -> Reconciling -> Done
"""

import pytest
from sqlalchemy import select, func
from gallery_sync.coordinator import SyncSessionCoordinator
from gallery_sync.executor import StageExecutor
from models.base import EntityType, ReconcileMode, RegistryStatus, RunStatus, SyncStage
from models.local_entity import LocalEntity
from models.registry import RegistryEntry
from models.sync_run import SyncRun


async def entity_counts(db):
    result = await db.execute(
        select(LocalEntity.entity_type, func.count()).group_by(LocalEntity.entity_type)
    )
    return {entity_type.value: count for entity_type, count in result.all()}


async def live_registry_keys(db):
    result = await db.execute(
        select(RegistryEntry.entity_type, RegistryEntry.remote_id)
        .where(RegistryEntry.status == RegistryStatus.ACTIVE)
    )
    return {(entity_type.value, remote_id) for entity_type, remote_id in result.all()}


@pytest.mark.asyncio
async def test_complete_sync(db_session, tenant, fake_upstream, run_sync):
    """Test the complete pipeline with a fresh database"""
    summary = await run_sync(fake_upstream)

    assert summary.status == "completed"
    assert summary.stage == SyncStage.DONE.value
    assert summary.percent_complete == 100.0
    assert summary.reconciliation.total == 0

    assert await entity_counts(db_session) == {"procedure": 5, "case": 3, "doctor": 1}
    assert await live_registry_keys(db_session) == {
        ("procedure", "1"), ("procedure", "11"), ("procedure", "111"),
        ("procedure", "12"), ("procedure", "2"), ("procedure", "21"),
        ("case", "101"), ("case", "102"), ("case", "103"),
        ("doctor", "7"),
    }

    titles = (await db_session.execute(
        select(LocalEntity.name, LocalEntity.slug)
        .where(LocalEntity.entity_type == EntityType.CASE)
        .order_by(LocalEntity.origin_remote_id)
    )).all()
    assert [tuple(row) for row in titles] == [
        ("Rhinoplasty #101", "rhino-101"),
        ("Rhinoplasty #102", "102"),
        ("Facelift #103", "103"),
    ]

    run = (await db_session.execute(select(SyncRun))).scalar_one()
    assert run.status == RunStatus.SUCCESS
    assert run.records_processed == 5  # 2 categories + 3 cases
    assert run.records_failed == 0
    assert run.entities_created == 9
    assert run.entities_deleted == 0


@pytest.mark.asyncio
async def test_stages_advance_one_page_per_step(db_session, tenant, fake_upstream):
    coordinator = SyncSessionCoordinator(db_session)
    session = await coordinator.start_or_resume(tenant.key)
    executor = StageExecutor(db_session, fake_upstream, coordinator=coordinator, reconcile_mode=ReconcileMode.MANUAL)

    steps = []
    for _ in range(7):
        summary = await executor.step(session.session_token)
        steps.append((summary.status, summary.stage))

    assert steps == [
        ("progressed", "manifest"),
        ("progressed", "manifest"),
        ("progressed", "manifest"),
        ("progressed", "cases"),
        ("progressed", "cases"),
        ("progressed", "reconciling"),
        ("completed", "done"),
    ]

    # One fetch per page; reconciliation never touches upstream
    assert [stage for stage, _ in fake_upstream.calls] == [
        SyncStage.PROCEDURES,
        SyncStage.MANIFEST, SyncStage.MANIFEST, SyncStage.MANIFEST,
        SyncStage.CASES, SyncStage.CASES,
    ]

    session = await coordinator.get_session(session.session_token)
    assert session.procedure_plan == [11, 111, 12]
    assert session.manifest == {"11": [101, 102], "111": [], "12": [103]}
    assert session.manifest_total == 3

    # Ended sessions stay ended
    summary = await executor.step(session.session_token)
    assert summary.status == "idle"


@pytest.mark.asyncio
async def test_progress_is_reported_during_cases(db_session, tenant, fake_upstream):
    coordinator = SyncSessionCoordinator(db_session)
    session = await coordinator.start_or_resume(tenant.key)
    executor = StageExecutor(db_session, fake_upstream, coordinator=coordinator)

    for _ in range(4):
        summary = await executor.step(session.session_token)
    assert summary.percent_complete == 0.0

    summary = await executor.step(session.session_token)
    assert summary.stage == "cases"
    assert summary.percent_complete == 66.7
    assert summary.processed == 2
    assert summary.created == 3  # doctor + two cases


@pytest.mark.asyncio
async def test_resume_across_invocations(session_factory, tenant, fake_upstream):
    """Every step may run in a different request with a fresh database session"""
    async with session_factory() as db:
        session = await SyncSessionCoordinator(db).start_or_resume(tenant.key)
        token = session.session_token
        await StageExecutor(db, fake_upstream).step(token)
        await StageExecutor(db, fake_upstream).step(token)

    statuses = []
    for _ in range(10):
        async with session_factory() as db:
            coordinator = SyncSessionCoordinator(db)
            resumed = await coordinator.start_or_resume(tenant.key)
            assert resumed.session_token == token

            summary = await StageExecutor(db, fake_upstream, coordinator=coordinator).step(token)
            statuses.append(summary.status)
            if summary.status == "completed":
                break

    assert statuses[-1] == "completed"
    assert len(statuses) == 5

    async with session_factory() as db:
        assert await entity_counts(db) == {"procedure": 5, "case": 3, "doctor": 1}


@pytest.mark.asyncio
async def test_repeated_sync_is_idempotent(db_session, tenant, fake_upstream, run_sync):
    """Running the same sync twice must not duplicate anything"""
    first = await run_sync(fake_upstream)
    second = await run_sync(fake_upstream)

    assert first.session_token != second.session_token
    assert second.status == "completed"
    assert second.reconciliation.total == 0

    assert await entity_counts(db_session) == {"procedure": 5, "case": 3, "doctor": 1}
    registry_total = (await db_session.execute(
        select(func.count()).select_from(RegistryEntry)
    )).scalar()
    assert registry_total == 10

    runs = (await db_session.execute(select(SyncRun).order_by(SyncRun.id))).scalars().all()
    assert [run.status for run in runs] == [RunStatus.SUCCESS, RunStatus.SUCCESS]
    assert runs[1].entities_created == 0
    assert runs[1].entities_updated == 11

    # Every live entry now carries the second session's token
    stale = (await db_session.execute(
        select(func.count()).select_from(RegistryEntry)
        .where(RegistryEntry.session_token != second.session_token)
    )).scalar()
    assert stale == 0


@pytest.mark.asyncio
async def test_upstream_changes_are_applied(db_session, tenant, fake_upstream, run_sync, case_payload):
    await run_sync(fake_upstream)

    fake_upstream.cases[101] = case_payload(101, [11], seo_suffix="new-rhino-slug", age=50)
    await run_sync(fake_upstream)

    case = (await db_session.execute(
        select(LocalEntity).where(
            LocalEntity.entity_type == EntityType.CASE,
            LocalEntity.origin_remote_id == "101"
        ).execution_options(populate_existing=True)
    )).scalar_one()
    assert case.slug == "new-rhino-slug"
    assert case.content["age"] == 50


@pytest.mark.asyncio
async def test_tenants_are_isolated(db_session, tenant, other_tenant, fake_upstream, run_sync):
    await run_sync(fake_upstream)
    await run_sync(fake_upstream, tenant_key=other_tenant.key)

    result = await db_session.execute(
        select(LocalEntity.tenant_key, func.count()).group_by(LocalEntity.tenant_key)
    )
    assert dict(result.all()) == {tenant.key: 9, other_tenant.key: 9}


async def case_rows(db, origin):
    result = await db.execute(
        select(LocalEntity.id, LocalEntity.procedure_index, LocalEntity.name)
        .where(LocalEntity.entity_type == EntityType.CASE, LocalEntity.origin_remote_id == origin)
        .order_by(LocalEntity.procedure_index)
        .execution_options(populate_existing=True)
    )
    return [tuple(row) for row in result.all()]


async def live_case_keys(db, origin):
    result = await db.execute(
        select(RegistryEntry.remote_id, RegistryEntry.local_id, RegistryEntry.status)
        .where(
            RegistryEntry.entity_type == EntityType.CASE,
            RegistryEntry.remote_id.like(f"{origin}%"),
            RegistryEntry.status != RegistryStatus.DELETED
        )
        .order_by(RegistryEntry.remote_id)
        .execution_options(populate_existing=True)
    )
    return [tuple(row) for row in result.all()]


@pytest.mark.asyncio
async def test_case_gaining_a_procedure_keeps_its_entity(db_session, tenant, fake_upstream, run_sync, case_payload):
    await run_sync(fake_upstream)
    [(original_id, _, _)] = await case_rows(db_session, "101")

    fake_upstream.cases[101] = case_payload(101, [11, 12], seo_suffix="rhino-101")
    summary = await run_sync(fake_upstream)

    assert summary.reconciliation.total == 0
    rows = await case_rows(db_session, "101")
    assert len(rows) == 2
    assert rows[0] == (original_id, 0, "Rhinoplasty #101")
    assert rows[1][1:] == (1, "Facelift #101")

    keys = await live_case_keys(db_session, "101")
    assert keys == [
        ("101:0", original_id, RegistryStatus.ACTIVE),
        ("101:1", rows[1][0], RegistryStatus.ACTIVE),
    ]


@pytest.mark.asyncio
async def test_case_losing_a_procedure_keeps_its_first_entity(db_session, tenant, fake_upstream, run_sync, case_payload):
    fake_upstream.cases[101] = case_payload(101, [11, 12])
    await run_sync(fake_upstream)
    first, second = await case_rows(db_session, "101")

    fake_upstream.cases[101] = case_payload(101, [11])
    summary = await run_sync(fake_upstream)

    # Only the dropped procedure's entity is an orphan
    assert summary.reconciliation.total == 1
    assert summary.reconciliation.by_type["case"].items[0].remote_id == "101:1"

    keys = await live_case_keys(db_session, "101")
    assert keys == [
        ("101", first[0], RegistryStatus.ACTIVE),
        ("101:1", second[0], RegistryStatus.PENDING_DELETION),
    ]
    rows = await case_rows(db_session, "101")
    assert rows[0] == (first[0], 0, "Rhinoplasty #101")
