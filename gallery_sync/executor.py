"""
Stage Executor - advances one sync session by one page per invocation.

This module provides the resumable state machine with:
- One page fetched and written per call, committed together
- Partial failure support (continue on individual record failures)
- Pause-and-resume on throttling and transient fetch errors
- Session abort on non-retryable fetch errors, skipping reconciliation
- Orphan reconciliation once every stage has completed
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError
from core.config import settings
from core.exceptions import (
    SyncException,
    FetchFailed,
    Throttled,
    UpstreamRejected,
    MaterializeFailed,
    DatabaseError,
)
from gallery_sync.coordinator import NEXT_STAGE, SyncSessionCoordinator
from gallery_sync.fetcher import FetchPage, TenantFetcher
from gallery_sync.materializer import EntityMaterializer, MaterializeResult
from gallery_sync.reconciler import OrphanReconciler
from gallery_sync.registry import IdentityRegistry
from models.base import EntityType, ReconcileMode, RunStatus, SyncStage
from models.sync_session import SyncSession
from schemas.sync import ErrorInfo, ReconciliationReport, StepResponse
from schemas.upstream import listed_procedure_ids
import logging

logger = logging.getLogger(__name__)

# Statuses after which run_until_blocked stops
BLOCKING_STATUSES = {"throttled", "retrying", "completed", "failed", "cancelled", "idle"}


@dataclass
class PageCounts:
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    created: int = 0
    updated: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)


class StageExecutor:
    """
    Resumable executor for the procedures -> manifest -> cases -> reconciling
    state machine.

    Responsibilities:
    - Fetch the page at the session cursor and dispatch its records
    - Persist the next cursor, or advance the stage when the cursor runs out
    - Keep the lock alive with a heartbeat on every invocation
    - Turn fetch and database errors into paused or failed sessions
    """

    def __init__(
        self,
        db_session: AsyncSession,
        fetcher: TenantFetcher,
        coordinator: Optional[SyncSessionCoordinator] = None,
        materializer: Optional[EntityMaterializer] = None,
        reconciler: Optional[OrphanReconciler] = None,
        reconcile_mode: Optional[ReconcileMode] = None
    ):
        self.db = db_session
        self.fetcher = fetcher
        self.coordinator = coordinator or SyncSessionCoordinator(db_session)
        registry = IdentityRegistry(db_session)
        self.materializer = materializer or EntityMaterializer(db_session, registry)
        self.reconciler = reconciler or OrphanReconciler(db_session, registry)
        self.reconcile_mode = ReconcileMode(reconcile_mode or settings.RECONCILE_MODE)

    async def step(self, session_token: str) -> StepResponse:
        """
        Run one invocation for a session.

        Returns:
            StepResponse with status:
            - progressed: a page was written
            - throttled / retrying: paused, cursor untouched
            - completed: reconciliation ran and the session ended
            - failed / cancelled: the session ended without reconciliation
            - idle: the session had already ended

        Raises:
            SessionNotFound: Unknown token
            LockContention: The session lost its tenant lock
        """
        session = await self.coordinator.get_session(session_token)

        if session.is_terminal:
            return self._summary(session, "idle")

        if session.cancel_requested:
            logger.info(f"Session {session_token} cancelled at stage {session.stage.value}")
            await self.coordinator.end(session, RunStatus.CANCELLED)
            return self._summary(session, "cancelled")

        await self.coordinator.assert_lock(session)

        if session.stage == SyncStage.RECONCILING:
            return await self._reconcile(session)

        return await self._run_page(session)

    async def run_until_blocked(self, session_token: str, max_steps: Optional[int] = None) -> StepResponse:
        """Step until the session ends, pauses, or the step budget runs out"""
        if max_steps is None:
            max_steps = settings.SCHEDULER_MAX_STEPS
        if max_steps < 1:
            raise ValueError(f"max_steps must be positive, got {max_steps}")
        summary = None
        for _ in range(max_steps):
            summary = await self.step(session_token)
            if summary.status in BLOCKING_STATUSES:
                break
        return summary

    # ------------------------------------------------------------------
    # Fetch + apply
    # ------------------------------------------------------------------

    async def _run_page(self, session: SyncSession) -> StepResponse:
        # Plain values survive a rollback; ORM state does not
        session_token = session.session_token
        tenant_key = session.tenant_key
        stage = session.stage
        cursor = dict(session.cursor) if session.cursor else None
        plan = self._plan_for(session)

        try:
            page = await self.fetcher.fetch_page(tenant_key, stage, cursor, plan)
            if stage == SyncStage.PROCEDURES and not page.records:
                raise UpstreamRejected(
                    "Upstream returned no procedures",
                    context={"tenant_key": tenant_key, "stage": stage.value}
                )
        except Throttled as e:
            logger.info(f"Session {session_token} throttled at stage {stage.value}, retry after {e.retry_after}s")
            return await self._pause(session, e, "throttled")
        except FetchFailed as e:
            if e.retryable:
                logger.warning(str(e), extra={"error_context": e.to_dict()})
                return await self._pause(session, e, "retrying")
            logger.error(
                f"Non-retryable fetch failure, ending session {session_token} without reconciliation: {e}",
                extra={"error_context": e.to_dict()}
            )
            await self.coordinator.end(session, RunStatus.FAILED, error=e)
            return self._summary(session, "failed", error=e)

        counts = PageCounts()
        try:
            if stage == SyncStage.PROCEDURES:
                await self._apply_procedures(session, page, counts)
            elif stage == SyncStage.MANIFEST:
                await self._apply_manifest(session, page, cursor, counts)
            else:
                await self._apply_cases(session, page, counts)

            # Manifest pages count listed case ids, not records
            if stage != SyncStage.MANIFEST:
                session.records_processed += counts.processed
            session.records_failed += counts.failed
            session.records_skipped += counts.skipped
            session.entities_created += counts.created
            session.entities_updated += counts.updated

            self._move_cursor(session, page, plan)

            if page.throttled is not None:
                self.coordinator.record_error(session, page.throttled)
            else:
                self.coordinator.clear_error(session)

            await self.coordinator.heartbeat(session)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            error = DatabaseError(
                "Failed to write sync page",
                context={"tenant_key": tenant_key, "stage": stage.value, "cursor": cursor},
                original_exception=e
            )
            logger.error(str(error), extra={"error_context": error.to_dict()})
            session = await self.coordinator.get_session(session_token)
            return await self._pause(session, error, "retrying")

        status = "throttled" if page.throttled is not None else "progressed"
        logger.info(
            f"Session {session_token} {stage.value} page: {counts.processed} processed, "
            f"{counts.failed} failed, {counts.skipped} skipped; now at {session.stage.value}"
        )
        return self._summary(session, status, counts=counts, error=page.throttled)

    async def _apply_procedures(self, session: SyncSession, page: FetchPage, counts: PageCounts) -> None:
        procedure_plan: List[int] = []
        for record in page.records:
            procedure_plan.extend(i for i in listed_procedure_ids(record) if i not in procedure_plan)
            await self._materialize(session, EntityType.PROCEDURE, record, counts)
        session.procedure_plan = procedure_plan
        session.manifest = {}
        logger.info(f"Procedure plan for {session.tenant_key}: {len(procedure_plan)} procedures with cases")

    async def _apply_manifest(
        self,
        session: SyncSession,
        page: FetchPage,
        cursor: Optional[Dict[str, Any]],
        counts: PageCounts
    ) -> None:
        first_page = int((cursor or {}).get("count", 1)) == 1
        manifest = dict(session.manifest or {})

        for record in page.records:
            procedure_id = int(record["procedure_id"])
            key = str(procedure_id)
            case_ids = [] if first_page else list(manifest.get(key) or [])
            case_ids.extend(c for c in record.get("case_ids") or [] if c not in case_ids)
            manifest[key] = case_ids
            counts.processed += len(record.get("case_ids") or [])
            await self.materializer.record_case_order(session, procedure_id, case_ids)

        session.manifest = manifest

    async def _apply_cases(self, session: SyncSession, page: FetchPage, counts: PageCounts) -> None:
        for record in page.records:
            await self._materialize(session, EntityType.CASE, record, counts)

        for case_id in page.absent:
            counts.skipped += 1
            logger.info(f"Case {case_id} is gone upstream; leaving it for reconciliation")

    async def _materialize(
        self,
        session: SyncSession,
        entity_type: EntityType,
        record: Dict[str, Any],
        counts: PageCounts
    ) -> Optional[MaterializeResult]:
        """Materialize one record; record-level failures are counted, never raised"""
        remote_id = record.get("id") if isinstance(record, dict) else None
        try:
            result = await self.materializer.materialize(session, entity_type, record)
        except SQLAlchemyError:
            raise
        except MaterializeFailed as e:
            self._count_failure(counts, entity_type, remote_id, e)
            logger.warning(str(e), extra={"error_context": e.to_dict()})
            return None
        except Exception as e:
            self._count_failure(counts, entity_type, remote_id, e)
            logger.error(
                f"Unexpected error materializing {entity_type.value} {remote_id}: {e}",
                extra={"error_context": counts.errors[-1]}
            )
            return None

        counts.processed += 1
        if result.skipped:
            counts.skipped += 1
        counts.created += result.created
        counts.updated += result.updated
        for failure in result.failures:
            counts.failed += 1
            counts.errors.append(failure)
        return result

    @staticmethod
    def _count_failure(counts: PageCounts, entity_type: EntityType, remote_id: Any, error: Exception) -> None:
        counts.processed += 1
        counts.failed += 1
        counts.errors.append({
            "entity_type": entity_type.value,
            "remote_id": remote_id,
            "error_type": type(error).__name__,
            "error_message": error.message if isinstance(error, SyncException) else str(error),
        })

    # ------------------------------------------------------------------
    # Cursor / plan
    # ------------------------------------------------------------------

    def _move_cursor(self, session: SyncSession, page: FetchPage, plan: Optional[List[Any]]) -> None:
        if session.stage == SyncStage.CASES:
            work_size = len(plan or [])
            session.cases_processed = page.next_cursor["offset"] if page.next_cursor else work_size

        if page.next_cursor is not None:
            session.cursor = dict(page.next_cursor)
            return

        next_stage = NEXT_STAGE[session.stage]
        self.coordinator.advance_stage(session, next_stage)
        if next_stage == SyncStage.CASES:
            session.manifest_total = len(self.case_work(session))
            session.cases_processed = 0

    def _plan_for(self, session: SyncSession) -> Optional[List[Any]]:
        if session.stage == SyncStage.MANIFEST:
            return list(session.procedure_plan or [])
        if session.stage == SyncStage.CASES:
            return self.case_work(session)
        return None

    @staticmethod
    def case_work(session: SyncSession) -> List[List[int]]:
        """De-duplicated [case_id, procedure_id] pairs in procedure plan order"""
        manifest = session.manifest or {}
        work: List[List[int]] = []
        seen = set()
        for procedure_id in session.procedure_plan or []:
            for case_id in manifest.get(str(procedure_id)) or []:
                if case_id in seen:
                    continue
                seen.add(case_id)
                work.append([case_id, procedure_id])
        return work

    # ------------------------------------------------------------------
    # Reconcile / pause / summary
    # ------------------------------------------------------------------

    async def _reconcile(self, session: SyncSession) -> StepResponse:
        session_token = session.session_token
        report: ReconciliationReport = await self.reconciler.reconcile(session, self.reconcile_mode)

        # Per-entity rollbacks inside the reconciler expire the session
        session = await self.coordinator.get_session(session_token)
        self.coordinator.advance_stage(session, SyncStage.DONE)

        outcome = RunStatus.PARTIAL if (session.records_failed or report.errors) else RunStatus.SUCCESS
        await self.coordinator.end(
            session,
            outcome,
            entities_deleted=report.deleted_count,
            pending_deletion=report.pending_count,
        )

        summary = self._summary(session, "completed")
        summary.reconciliation = report
        summary.errors = list(report.errors)
        return summary

    async def _pause(self, session: SyncSession, error: SyncException, status: str) -> StepResponse:
        """Record the error, keep the lock alive and leave the cursor untouched"""
        self.coordinator.record_error(session, error)
        await self.coordinator.heartbeat(session)
        await self.db.commit()
        return self._summary(session, status, error=error)

    @staticmethod
    def _summary(
        session: SyncSession,
        status: str,
        counts: Optional[PageCounts] = None,
        error: Optional[Exception] = None
    ) -> StepResponse:
        counts = counts or PageCounts()
        last_error = None
        if error is not None:
            last_error = ErrorInfo(
                error_class=type(error).__name__,
                message=error.message if isinstance(error, SyncException) else str(error),
                retryable=bool(getattr(error, "retryable", False)),
            )
        elif session.last_error_class:
            last_error = ErrorInfo(
                error_class=session.last_error_class,
                message=session.last_error_message,
                retryable=bool(session.last_error_retryable),
            )

        return StepResponse(
            session_token=session.session_token,
            tenant_key=session.tenant_key,
            stage=session.stage.value,
            status=status,
            processed=counts.processed,
            failed=counts.failed,
            skipped=counts.skipped,
            created=counts.created,
            updated=counts.updated,
            percent_complete=session.percent_complete,
            last_error=last_error,
            errors=counts.errors,
        )
