"""
Integration tests for orphan detection and deletion
"""

import pytest
from unittest.mock import patch
from sqlalchemy import select, func
from sqlalchemy.exc import OperationalError
from core.exceptions import ReconciliationNotAllowed, UpstreamRejected
from gallery_sync.coordinator import SyncSessionCoordinator
from gallery_sync.executor import StageExecutor
from gallery_sync.reconciler import OrphanReconciler
from models.audit_log import DeletionAuditLog
from models.base import EntityType, ReconcileMode, RegistryStatus, RunStatus, SyncStage
from models.local_entity import LocalEntity
from models.registry import RegistryEntry
from models.sync_run import SyncRun


async def entry_for(db, entity_type, remote_id):
    result = await db.execute(
        select(RegistryEntry)
        .where(RegistryEntry.entity_type == entity_type, RegistryEntry.remote_id == remote_id)
        .order_by(RegistryEntry.id.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def count(db, model, *criteria):
    result = await db.execute(select(func.count()).select_from(model).where(*criteria))
    return result.scalar()


async def latest_session(db, tenant):
    return await SyncSessionCoordinator(db).latest_session(tenant.key)


class TestDetection:
    """Orphans are flagged, never deleted, in manual mode"""

    @pytest.mark.asyncio
    async def test_case_removed_upstream_is_reported(self, db_session, tenant, fake_upstream, run_sync):
        await run_sync(fake_upstream)
        fake_upstream.remove_case(102)

        summary = await run_sync(fake_upstream)

        report = summary.reconciliation
        assert summary.status == "completed"
        assert report.mode == "manual"
        assert report.total == 1
        assert report.by_type["case"].count == 1
        assert report.by_type["procedure"].count == 0
        assert report.by_type["doctor"].count == 0

        orphan = report.by_type["case"].items[0]
        assert orphan.remote_id == "102"
        assert orphan.name == "Rhinoplasty #102"

        # Flagged only; still present until an operator approves
        entry = await entry_for(db_session, EntityType.CASE, "102")
        assert entry.status == RegistryStatus.PENDING_DELETION
        assert await db_session.get(LocalEntity, orphan.local_id) is not None
        assert await count(db_session, DeletionAuditLog) == 0

        run = (await db_session.execute(
            select(SyncRun).where(SyncRun.session_token == summary.session_token)
        )).scalar_one()
        assert run.status == RunStatus.SUCCESS
        assert run.pending_deletion == 1
        assert run.entities_deleted == 0

    @pytest.mark.asyncio
    async def test_operator_approved_deletion(self, db_session, tenant, fake_upstream, run_sync):
        await run_sync(fake_upstream)
        fake_upstream.remove_case(102)
        summary = await run_sync(fake_upstream)
        orphan = summary.reconciliation.by_type["case"].items[0]

        session = await latest_session(db_session, tenant)
        report = await OrphanReconciler(db_session).delete(session, [orphan.local_id])

        assert [item.remote_id for item in report.deleted] == ["102"]
        assert report.errors == []
        assert await db_session.get(LocalEntity, orphan.local_id) is None

        entry = await entry_for(db_session, EntityType.CASE, "102")
        assert entry.status == RegistryStatus.DELETED
        assert entry.deleted_at is not None

        audit = (await db_session.execute(select(DeletionAuditLog))).scalar_one()
        assert audit.entity_type == EntityType.CASE
        assert audit.local_id == orphan.local_id
        assert audit.session_token == session.session_token
        assert audit.tenant_key == tenant.key

        # Cases still upstream are untouched
        for remote_id in ("101", "103"):
            assert (await entry_for(db_session, EntityType.CASE, remote_id)).status == RegistryStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_case_answering_not_found_is_an_orphan(self, db_session, tenant, fake_upstream, run_sync):
        await run_sync(fake_upstream)
        # Still listed, but the detail endpoint no longer knows it
        fake_upstream.cases.pop(103)

        summary = await run_sync(fake_upstream)

        assert summary.reconciliation.total == 1
        assert summary.reconciliation.by_type["case"].items[0].remote_id == "103"
        run = (await db_session.execute(
            select(SyncRun).where(SyncRun.session_token == summary.session_token)
        )).scalar_one()
        assert run.records_skipped == 1

    @pytest.mark.asyncio
    async def test_reappearing_record_is_restored(self, db_session, tenant, fake_upstream, run_sync):
        await run_sync(fake_upstream)
        removed = fake_upstream.cases[102]
        fake_upstream.remove_case(102)
        await run_sync(fake_upstream)
        assert (await entry_for(db_session, EntityType.CASE, "102")).status == RegistryStatus.PENDING_DELETION

        fake_upstream.listings[11].append(102)
        fake_upstream.cases[102] = removed
        summary = await run_sync(fake_upstream)

        assert summary.reconciliation.total == 0
        assert (await entry_for(db_session, EntityType.CASE, "102")).status == RegistryStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_detect_is_repeatable(self, db_session, tenant, fake_upstream, run_sync):
        await run_sync(fake_upstream)
        fake_upstream.remove_case(102)
        await run_sync(fake_upstream)

        session = await latest_session(db_session, tenant)
        report = await OrphanReconciler(db_session).detect(session)

        assert report.total == 1
        assert report.by_type["case"].items[0].remote_id == "102"


class TestAutomaticDeletion:
    """Automatic mode deletes right after detection"""

    @pytest.mark.asyncio
    async def test_three_of_ten_cases_removed(self, db_session, tenant, fake_upstream, run_sync, case_payload):
        case_ids = list(range(201, 211))
        fake_upstream.listings = {11: list(case_ids), 12: []}
        fake_upstream.cases = {case_id: case_payload(case_id, [11]) for case_id in case_ids}
        await run_sync(fake_upstream)
        assert await count(db_session, LocalEntity, LocalEntity.entity_type == EntityType.CASE) == 10

        for case_id in (203, 206, 209):
            fake_upstream.remove_case(case_id)
        summary = await run_sync(fake_upstream, mode=ReconcileMode.AUTOMATIC)

        report = summary.reconciliation
        assert report.mode == "automatic"
        assert report.total == 3
        assert sorted(item.remote_id for item in report.deleted) == ["203", "206", "209"]
        assert report.pending_count == 0

        remaining = (await db_session.execute(
            select(LocalEntity.origin_remote_id).where(LocalEntity.entity_type == EntityType.CASE)
        )).scalars().all()
        assert sorted(remaining) == [str(c) for c in case_ids if c not in (203, 206, 209)]
        assert await count(db_session, DeletionAuditLog) == 3

        run = (await db_session.execute(
            select(SyncRun).where(SyncRun.session_token == summary.session_token)
        )).scalar_one()
        assert run.status == RunStatus.SUCCESS
        assert run.entities_deleted == 3
        assert run.pending_deletion == 0

    @pytest.mark.asyncio
    async def test_removed_category_deletes_children_first(self, db_session, tenant, fake_upstream, run_sync):
        await run_sync(fake_upstream)
        body = await entry_for(db_session, EntityType.PROCEDURE, "2")
        liposuction = await entry_for(db_session, EntityType.PROCEDURE, "21")

        fake_upstream.sidebar = [c for c in fake_upstream.sidebar if c["id"] != 2]
        summary = await run_sync(fake_upstream, mode=ReconcileMode.AUTOMATIC)

        assert summary.reconciliation.by_type["procedure"].count == 2
        audit = (await db_session.execute(
            select(DeletionAuditLog.local_id).order_by(DeletionAuditLog.id)
        )).scalars().all()
        assert audit == [liposuction.local_id, body.local_id]
        assert await db_session.get(LocalEntity, body.local_id) is None

    @pytest.mark.asyncio
    async def test_alias_removal_keeps_shared_entity(self, db_session, tenant, fake_upstream, run_sync):
        await run_sync(fake_upstream)
        rhinoplasty = await entry_for(db_session, EntityType.PROCEDURE, "11")

        fake_upstream.sidebar[0]["procedures"][0]["ids"] = [11]
        summary = await run_sync(fake_upstream, mode=ReconcileMode.AUTOMATIC)

        assert [item.remote_id for item in summary.reconciliation.deleted] == ["111"]
        assert (await entry_for(db_session, EntityType.PROCEDURE, "111")).status == RegistryStatus.DELETED

        # The primary id still maps to the entity, so it stays
        assert await db_session.get(LocalEntity, rhinoplasty.local_id) is not None
        assert (await entry_for(db_session, EntityType.PROCEDURE, "11")).status == RegistryStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_failed_deletion_stays_pending(self, db_session, tenant, fake_upstream, run_sync):
        await run_sync(fake_upstream)
        fake_upstream.remove_case(101)
        fake_upstream.remove_case(102)
        summary = await run_sync(fake_upstream)
        orphans = {item.remote_id: item.local_id for item in summary.reconciliation.by_type["case"].items}

        real_delete = db_session.delete
        calls = []

        async def flaky_delete(instance):
            calls.append(instance.id)
            if len(calls) == 1:
                raise OperationalError("DELETE FROM local_entities", {}, Exception("database is locked"))
            await real_delete(instance)

        session = await latest_session(db_session, tenant)
        with patch.object(db_session, "delete", new=flaky_delete):
            report = await OrphanReconciler(db_session).delete(session)

        assert len(report.deleted) == 1
        assert len(report.errors) == 1
        assert report.errors[0]["error_type"] == "ReconciliationPartialFailure"

        failed_id = report.errors[0]["local_id"]
        failed_remote = next(remote for remote, local in orphans.items() if local == failed_id)
        assert (await entry_for(db_session, EntityType.CASE, failed_remote)).status == RegistryStatus.PENDING_DELETION
        assert await count(db_session, DeletionAuditLog) == 1

        # The next pass picks up what is left
        session = await latest_session(db_session, tenant)
        retry = await OrphanReconciler(db_session).delete(session)
        assert [item.local_id for item in retry.deleted] == [failed_id]

    @pytest.mark.asyncio
    async def test_failed_deletion_makes_run_partial(self, db_session, tenant, fake_upstream, run_sync):
        await run_sync(fake_upstream)
        fake_upstream.remove_case(103)

        async def failing_delete(instance):
            raise OperationalError("DELETE FROM local_entities", {}, Exception("database is locked"))

        with patch.object(db_session, "delete", new=failing_delete):
            summary = await run_sync(fake_upstream, mode=ReconcileMode.AUTOMATIC)

        assert summary.status == "completed"
        assert len(summary.errors) == 1
        run = (await db_session.execute(
            select(SyncRun).where(SyncRun.session_token == summary.session_token)
        )).scalar_one()
        assert run.status == RunStatus.PARTIAL
        assert run.pending_deletion == 1


class TestReconciliationGuards:
    """Only a complete, current session may reconcile"""

    @pytest.mark.asyncio
    async def test_failed_session_cannot_reconcile(self, db_session, tenant, fake_upstream, run_sync):
        await run_sync(fake_upstream)
        fake_upstream.remove_case(102)
        fake_upstream.fail_next(SyncStage.CASES, UpstreamRejected("Invalid property"))

        summary = await run_sync(fake_upstream)
        assert summary.status == "failed"

        session = await latest_session(db_session, tenant)
        with pytest.raises(ReconciliationNotAllowed):
            await OrphanReconciler(db_session).detect(session)

        # Nothing was flagged by the failed run
        assert (await entry_for(db_session, EntityType.CASE, "102")).status == RegistryStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_incomplete_session_cannot_reconcile(self, db_session, tenant, fake_upstream):
        coordinator = SyncSessionCoordinator(db_session)
        session = await coordinator.start_or_resume(tenant.key)
        await StageExecutor(db_session, fake_upstream, coordinator=coordinator).step(session.session_token)

        with pytest.raises(ReconciliationNotAllowed):
            await OrphanReconciler(db_session).detect(session)

    @pytest.mark.asyncio
    async def test_superseded_session_cannot_reconcile(self, db_session, tenant, fake_upstream, run_sync):
        first = await run_sync(fake_upstream)
        await run_sync(fake_upstream)

        old = await SyncSessionCoordinator(db_session).get_session(first.session_token)
        with pytest.raises(ReconciliationNotAllowed):
            await OrphanReconciler(db_session).delete(old)
