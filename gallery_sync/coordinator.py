"""
Sync session coordinator: session lifecycle and the per-tenant lock.
"""

from typing import Optional
from datetime import datetime, timedelta
import uuid
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError
from sqlalchemy import select, update, delete
from core.config import settings
from core.exceptions import (
    SyncException,
    LockContention,
    StaleLockReleased,
    InvalidStageTransition,
    SessionNotFound,
)
from gallery_sync.history import SyncHistory
from models.base import STAGE_ORDER, RunStatus, SyncStage, SyncTrigger
from models.sync_session import SyncLock, SyncSession
import logging

logger = logging.getLogger(__name__)

# Forward transitions of the stage machine
NEXT_STAGE = dict(zip(STAGE_ORDER, STAGE_ORDER[1:]))

OUTCOME_STAGE = {
    RunStatus.SUCCESS: SyncStage.DONE,
    RunStatus.PARTIAL: SyncStage.DONE,
    RunStatus.FAILED: SyncStage.FAILED,
    RunStatus.CANCELLED: SyncStage.CANCELLED,
}


class SyncSessionCoordinator:
    """
    Issues session tokens and guards the one-live-session-per-tenant rule.

    Responsibilities:
    - Start a session or resume the live one (lock acquired by compare-and-set)
    - Force-release locks whose heartbeat went stale
    - Validate stage transitions
    - End sessions: history row first, lock release last
    """

    def __init__(self, db_session: AsyncSession, stale_after_seconds: Optional[int] = None):
        self.db = db_session
        self.stale_after = timedelta(
            seconds=stale_after_seconds if stale_after_seconds is not None else settings.SYNC_STALE_AFTER_SECONDS
        )
        self.history = SyncHistory(db_session)
        self.resumed = False

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_session(self, session_token: str) -> SyncSession:
        session = await self._find(session_token)
        if session is None:
            raise SessionNotFound(
                "Unknown sync session",
                context={"session_token": session_token}
            )
        return session

    async def get_lock(self, tenant_key: str) -> Optional[SyncLock]:
        result = await self.db.execute(
            select(SyncLock)
            .where(SyncLock.tenant_key == tenant_key)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_live_session(self, tenant_key: str) -> Optional[SyncSession]:
        """Session holding an unexpired lock for the tenant, if any"""
        lock = await self.get_lock(tenant_key)
        if lock is None or lock.expires_at <= datetime.utcnow():
            return None
        session = await self._find(lock.session_token)
        if session is None or session.is_terminal:
            return None
        return session

    async def latest_session(self, tenant_key: str) -> Optional[SyncSession]:
        result = await self.db.execute(
            select(SyncSession)
            .where(SyncSession.tenant_key == tenant_key)
            .order_by(SyncSession.started_at.desc(), SyncSession.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _find(self, session_token: str) -> Optional[SyncSession]:
        result = await self.db.execute(
            select(SyncSession)
            .where(SyncSession.session_token == session_token)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Start / resume
    # ------------------------------------------------------------------

    async def start_or_resume(
        self,
        tenant_key: str,
        trigger: SyncTrigger = SyncTrigger.MANUAL
    ) -> SyncSession:
        """
        Return the tenant's live session, or start a new one.

        A stale lock (no heartbeat within the staleness threshold) is
        force-released: its session is marked failed and a warning logged.
        When two callers race, the loser gets the winner's session.
        """
        if not tenant_key:
            raise ValueError("tenant_key must not be empty")

        self.resumed = False
        now = datetime.utcnow()
        lock = await self.get_lock(tenant_key)

        if lock is not None and lock.expires_at > now:
            live = await self._find(lock.session_token)
            if live is not None and not live.is_terminal:
                self.resumed = True
                logger.info(f"Resuming sync session {live.session_token} for {tenant_key} at stage {live.stage.value}")
                return live

        session = SyncSession(
            session_token=uuid.uuid4().hex,
            tenant_key=tenant_key,
            trigger=trigger,
            stage=SyncStage.PROCEDURES,
            started_at=now,
            last_heartbeat_at=now,
        )

        if lock is None:
            self.db.add(SyncLock(
                tenant_key=tenant_key,
                session_token=session.session_token,
                acquired_at=now,
                expires_at=now + self.stale_after,
            ))
            try:
                await self.db.flush()
            except IntegrityError:
                await self.db.rollback()
                return await self._winner(tenant_key)
        else:
            stale_token = lock.session_token
            expired = lock.expires_at <= now
            # Compare-and-set: only succeeds while the stale holder still owns the row
            result = await self.db.execute(
                update(SyncLock)
                .where(SyncLock.tenant_key == tenant_key, SyncLock.session_token == stale_token)
                .values(session_token=session.session_token, acquired_at=now, expires_at=now + self.stale_after)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self.db.rollback()
                return await self._winner(tenant_key)
            if expired:
                await self._fail_stale_session(stale_token, tenant_key, now)
            else:
                # Holder already ended or vanished without releasing its lock
                logger.info(f"Replacing leftover lock of session {stale_token} for {tenant_key}")

        self.db.add(session)
        await self.db.commit()
        logger.info(f"Started sync session {session.session_token} for {tenant_key} ({trigger.value})")
        return session

    async def _winner(self, tenant_key: str) -> SyncSession:
        live = await self.get_live_session(tenant_key)
        if live is None:
            raise LockContention(
                "Another session acquired the tenant lock",
                context={"tenant_key": tenant_key}
            )
        self.resumed = True
        logger.info(f"Lost lock race for {tenant_key}; joining session {live.session_token}")
        return live

    async def _fail_stale_session(self, stale_token: str, tenant_key: str, now: datetime) -> None:
        warning = StaleLockReleased(
            "Abandoned sync session force-released",
            context={
                "tenant_key": tenant_key,
                "session_token": stale_token,
                "stale_after_seconds": int(self.stale_after.total_seconds()),
            }
        )
        logger.warning(str(warning), extra={"error_context": warning.to_dict()})

        stale = await self._find(stale_token)
        if stale is None or stale.is_terminal:
            return
        stale.stage = SyncStage.FAILED
        stale.completed_at = now
        self.record_error(stale, warning)
        self.history.record_run(stale, RunStatus.FAILED, error=warning)

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    async def heartbeat(self, session: SyncSession) -> None:
        """Stamp the session and extend the lock (caller commits)"""
        now = datetime.utcnow()
        result = await self.db.execute(
            update(SyncLock)
            .where(SyncLock.tenant_key == session.tenant_key, SyncLock.session_token == session.session_token)
            .values(expires_at=now + self.stale_after)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise LockContention(
                "Session no longer holds the tenant lock",
                context={"tenant_key": session.tenant_key, "session_token": session.session_token}
            )
        session.last_heartbeat_at = now

    async def assert_lock(self, session: SyncSession) -> None:
        lock = await self.get_lock(session.tenant_key)
        if lock is None or lock.session_token != session.session_token:
            raise LockContention(
                "Session no longer holds the tenant lock",
                context={"tenant_key": session.tenant_key, "session_token": session.session_token}
            )

    def advance_stage(self, session: SyncSession, next_stage: SyncStage) -> None:
        """Move to the next stage and reset the cursor (caller commits)"""
        allowed = (
            NEXT_STAGE.get(session.stage) == next_stage
            or (not session.is_terminal and next_stage in (SyncStage.FAILED, SyncStage.CANCELLED))
        )
        if not allowed:
            raise InvalidStageTransition(
                f"Cannot move from {session.stage.value} to {next_stage.value}",
                context={
                    "session_token": session.session_token,
                    "from_stage": session.stage.value,
                    "to_stage": next_stage.value,
                }
            )
        logger.info(f"Session {session.session_token}: {session.stage.value} -> {next_stage.value}")
        session.stage = next_stage
        session.cursor = None

    def record_error(self, session: SyncSession, error: Exception) -> None:
        session.last_error_class = type(error).__name__
        session.last_error_message = (error.message if isinstance(error, SyncException) else str(error))[:2000]
        session.last_error_retryable = bool(getattr(error, "retryable", False))

    def clear_error(self, session: SyncSession) -> None:
        session.last_error_class = None
        session.last_error_message = None
        session.last_error_retryable = None

    async def request_cancel(self, session_token: str) -> SyncSession:
        """Cooperative cancel, honored at the next step"""
        session = await self.get_session(session_token)
        if not session.is_terminal and not session.cancel_requested:
            session.cancel_requested = True
            await self.db.commit()
            logger.info(f"Cancel requested for session {session_token}")
        return session

    # ------------------------------------------------------------------
    # End
    # ------------------------------------------------------------------

    async def end(
        self,
        session: SyncSession,
        outcome: RunStatus,
        error: Optional[SyncException] = None,
        entities_deleted: int = 0,
        pending_deletion: int = 0
    ) -> SyncSession:
        """Finish the session, write its history row and release the lock"""
        if session.is_terminal and session.completed_at is not None:
            return session

        target = OUTCOME_STAGE[outcome]
        if session.stage != target:
            self.advance_stage(session, target)

        session.completed_at = datetime.utcnow()
        if error is not None:
            self.record_error(session, error)

        self.history.record_run(
            session,
            outcome,
            entities_deleted=entities_deleted,
            pending_deletion=pending_deletion,
            error=error,
        )

        # Lock release is always the final statement of the transaction
        await self.db.execute(
            delete(SyncLock).where(
                SyncLock.tenant_key == session.tenant_key,
                SyncLock.session_token == session.session_token
            )
        )
        await self.db.commit()

        logger.info(f"Sync session {session.session_token} ended: {outcome.value}")
        return session
