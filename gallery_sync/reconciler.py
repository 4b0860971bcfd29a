"""
Orphan detection and reconciliation.

After a session has confirmed everything upstream returned, every live
registry entry it did not confirm is an orphan candidate. Candidates move
to pending_deletion and are reported; deletion happens right away in
automatic mode or later for an operator-approved subset.
"""

from typing import Dict, Iterable, List, Optional, Tuple
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import select
from core.exceptions import ReconciliationNotAllowed, ReconciliationPartialFailure
from core.logging import get_audit_logger
from gallery_sync.registry import IdentityRegistry
from models.audit_log import DeletionAuditLog
from models.base import EntityType, ReconcileMode, RegistryStatus, SyncStage
from models.local_entity import LocalEntity
from models.registry import RegistryEntry
from models.sync_session import SyncSession
from schemas.sync import OrphanItem, ReconciliationReport
import logging

logger = logging.getLogger(__name__)
audit_logger = get_audit_logger()

# Cases go first so procedures and doctors are no longer referenced
DELETE_ORDER = {EntityType.CASE: 0, EntityType.DOCTOR: 1, EntityType.PROCEDURE: 2}

RECONCILABLE_STAGES = (SyncStage.RECONCILING, SyncStage.DONE)


class OrphanReconciler:
    """
    Detect and delete local entities whose upstream record disappeared.

    Guarantees:
    - Only the tenant's latest session, once it reached reconciling, may
      reconcile; failed, cancelled or superseded sessions cannot
    - Reports and audit records carry ids and display names only
    - One failed deletion never aborts the batch; it stays pending_deletion
    """

    def __init__(self, db_session: AsyncSession, registry: Optional[IdentityRegistry] = None):
        self.db = db_session
        self.registry = registry or IdentityRegistry(db_session)

    async def _check_allowed(self, session: SyncSession) -> None:
        if session.stage not in RECONCILABLE_STAGES:
            raise ReconciliationNotAllowed(
                f"Session at stage {session.stage.value} has not completed all sync stages",
                context={"session_token": session.session_token, "stage": session.stage.value}
            )

        result = await self.db.execute(
            select(SyncSession.session_token)
            .where(SyncSession.tenant_key == session.tenant_key)
            .order_by(SyncSession.started_at.desc(), SyncSession.id.desc())
            .limit(1)
        )
        latest = result.scalar_one_or_none()
        if latest != session.session_token:
            raise ReconciliationNotAllowed(
                "A newer session exists for this tenant",
                context={"session_token": session.session_token, "latest_session_token": latest}
            )

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    async def detect(self, session: SyncSession, mode: ReconcileMode = ReconcileMode.MANUAL) -> ReconciliationReport:
        """Flag every live entry the session did not confirm as pending_deletion"""
        await self._check_allowed(session)

        entries = await self.registry.unconfirmed(session.tenant_key, session.session_token)
        self.registry.mark_pending(entries)
        await self.db.commit()

        report = ReconciliationReport(
            session_token=session.session_token,
            tenant_key=session.tenant_key,
            mode=mode.value,
        )
        names = await self._names([e.local_id for e in entries])
        for entry in entries:
            item = OrphanItem(
                local_id=entry.local_id,
                remote_id=entry.remote_id,
                name=names.get(entry.local_id, f"{entry.entity_type.value} {entry.remote_id}"),
            )
            group = report.by_type[entry.entity_type.value]
            group.items.append(item)
            group.count += 1
        report.total = len(entries)

        if entries:
            logger.info(
                f"Orphan detection for {session.tenant_key}: {report.total} pending deletion "
                f"({', '.join(f'{k}={v.count}' for k, v in report.by_type.items())})"
            )
        else:
            logger.info(f"Orphan detection for {session.tenant_key}: nothing to delete")
        return report

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    async def delete(
        self,
        session: SyncSession,
        local_ids: Optional[Iterable[int]] = None,
        report: Optional[ReconciliationReport] = None
    ) -> ReconciliationReport:
        """
        Delete pending orphans: the given local ids, or all of them.

        Each entity is committed on its own so a failure only affects that
        entity, which stays pending_deletion for the next pass.
        """
        await self._check_allowed(session)

        # Plain values only: a rollback below expires ORM state
        tenant_key = session.tenant_key
        session_token = session.session_token

        if report is None:
            report = ReconciliationReport(session_token=session_token, tenant_key=tenant_key, mode="manual")

        entries = await self.registry.pending(tenant_key, local_ids)
        plan = await self._deletion_plan(entries)

        for entry_id, entity_type, local_id, remote_id, name in plan:
            item = OrphanItem(local_id=local_id, remote_id=remote_id, name=name)
            try:
                entry = await self.db.get(RegistryEntry, entry_id, populate_existing=True)
                if entry is None or entry.status != RegistryStatus.PENDING_DELETION:
                    continue

                shared = await self.registry.other_live_mappings(local_id, entry_id)
                if not shared:
                    entity = await self.db.get(LocalEntity, local_id)
                    if entity is not None:
                        await self.db.delete(entity)

                self.registry.mark_deleted(entry)
                deleted_at = entry.deleted_at
                self.db.add(DeletionAuditLog(
                    tenant_key=tenant_key,
                    entity_type=entity_type,
                    local_id=local_id,
                    session_token=session_token,
                    deleted_at=deleted_at,
                ))
                await self.db.commit()
            except SQLAlchemyError as e:
                await self.db.rollback()
                failure = ReconciliationPartialFailure(
                    f"Failed to delete orphaned {entity_type.value}",
                    context={"entity_type": entity_type.value, "local_id": local_id},
                    original_exception=e
                )
                logger.error(str(failure), extra={"error_context": failure.to_dict()})
                report.errors.append({
                    "entity_type": entity_type.value,
                    "local_id": local_id,
                    "error_type": type(failure).__name__,
                    "error_message": failure.message,
                })
                continue

            audit_logger.info(
                f"Orphan deleted: entity_type={entity_type.value}, local_id={local_id}, "
                f"deleted_at={deleted_at.isoformat()}, session_token={session_token}"
            )
            report.deleted.append(item)

        logger.info(
            f"Deleted {len(report.deleted)} orphans for {tenant_key} "
            f"({len(report.errors)} failed)"
        )
        return report

    async def reconcile(self, session: SyncSession, mode: ReconcileMode) -> ReconciliationReport:
        """Detect orphans, and delete them all when running in automatic mode"""
        report = await self.detect(session, mode)
        if mode == ReconcileMode.AUTOMATIC and report.total:
            report = await self.delete(session, report=report)
        return report

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _names(self, local_ids: List[int]) -> Dict[int, str]:
        if not local_ids:
            return {}
        result = await self.db.execute(
            select(LocalEntity.id, LocalEntity.name).where(LocalEntity.id.in_(set(local_ids)))
        )
        return {row.id: row.name for row in result.all()}

    async def _deletion_plan(
        self,
        entries: List[RegistryEntry]
    ) -> List[Tuple[int, EntityType, int, str, str]]:
        """(entry_id, type, local_id, remote_id, name), cases first, child procedures before parents"""
        if not entries:
            return []

        result = await self.db.execute(
            select(LocalEntity.id, LocalEntity.name, LocalEntity.parent_id)
            .where(LocalEntity.id.in_({e.local_id for e in entries}))
        )
        entities = {row.id: row for row in result.all()}

        def sort_key(entry: RegistryEntry):
            row = entities.get(entry.local_id)
            is_parent = 1 if row is not None and row.parent_id is None else 0
            return (DELETE_ORDER[entry.entity_type], is_parent, entry.id)

        plan = []
        for entry in sorted(entries, key=sort_key):
            row = entities.get(entry.local_id)
            name = row.name if row is not None else f"{entry.entity_type.value} {entry.remote_id}"
            plan.append((entry.id, entry.entity_type, entry.local_id, entry.remote_id, name))
        return plan
