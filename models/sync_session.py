from sqlalchemy import Column, String, Integer, DateTime, Boolean, Text, Index
from datetime import datetime
from models.base import (
    Base, BigIntegerType, JSONType, SyncStage, SyncTrigger, TERMINAL_STAGES, enum_column
)


class SyncSession(Base):
    """
    One logical end-to-end sync run for a tenant.

    Purpose:
    - Persist cross-request progress so each HTTP-bound invocation can resume
    - Carry the session token that stamps every confirmed registry entry
    - Surface the last error (class + retryable flag) to the status endpoint

    Design:
    - cursor is owned by the stage executor and reset on every stage change
    - procedure_plan and manifest are filled by the procedures and manifest
      stages and read back by the later stages
    - cancel_requested is observed at the next invocation boundary
    """
    __tablename__ = "sync_sessions"

    id = Column(BigIntegerType, primary_key=True, autoincrement=True)
    session_token = Column(String(64), unique=True, nullable=False, index=True)
    tenant_key = Column(String(128), nullable=False)
    trigger = Column(enum_column(SyncTrigger, "sync_trigger"), nullable=False, default=SyncTrigger.MANUAL)

    # State machine
    stage = Column(enum_column(SyncStage, "sync_stage"), nullable=False, default=SyncStage.PROCEDURES)
    cursor = Column(JSONType, nullable=True)

    # Work discovered by earlier stages
    procedure_plan = Column(JSONType, nullable=True)  # [procedure_id, ...]
    manifest = Column(JSONType, nullable=True)  # {procedure_id: [case_id, ...]}
    manifest_total = Column(Integer, nullable=True)

    # Counters
    records_processed = Column(Integer, nullable=False, default=0)
    records_failed = Column(Integer, nullable=False, default=0)
    records_skipped = Column(Integer, nullable=False, default=0)
    entities_created = Column(Integer, nullable=False, default=0)
    entities_updated = Column(Integer, nullable=False, default=0)
    cases_processed = Column(Integer, nullable=False, default=0)

    # Timestamps
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    last_heartbeat_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    # Control / error reporting
    cancel_requested = Column(Boolean, nullable=False, default=False)
    last_error_class = Column(String(100), nullable=True)
    last_error_message = Column(Text, nullable=True)
    last_error_retryable = Column(Boolean, nullable=True)

    __table_args__ = (
        Index("idx_sync_session_tenant_started", "tenant_key", "started_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    @property
    def percent_complete(self):
        """Case progress once the manifest total is known"""
        if not self.manifest_total:
            return None
        return round(min(self.cases_processed, self.manifest_total) * 100.0 / self.manifest_total, 1)


class SyncLock(Base):
    """
    Advisory lock guaranteeing one live session per tenant.

    Acquired by INSERT (primary key conflict = contention), taken over from a
    stale holder by an UPDATE that matches the stale holder's token, extended
    by heartbeats and deleted when the session ends.
    """
    __tablename__ = "sync_locks"

    tenant_key = Column(String(128), primary_key=True)
    session_token = Column(String(64), nullable=False)
    acquired_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=False)
