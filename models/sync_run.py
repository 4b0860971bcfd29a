from sqlalchemy import Column, String, DateTime, Float, Integer, Text, Index
from datetime import datetime
from models.base import Base, BigIntegerType, RunStatus, SyncTrigger, enum_column


class SyncRun(Base):
    """
    Tracks the outcome of each ended sync session.

    Purpose:
    - History of automatic and manual runs per tenant
    - "Last successful completion" for the status endpoint
    - Error tracking for failed runs

    Rows older than the retention window are pruned by the scheduler.
    """
    __tablename__ = "sync_runs"

    id = Column(BigIntegerType, primary_key=True, autoincrement=True)
    session_token = Column(String(64), unique=True, nullable=False)
    tenant_key = Column(String(128), nullable=False)
    trigger = Column(enum_column(SyncTrigger, "sync_trigger"), nullable=False, default=SyncTrigger.MANUAL)

    status = Column(enum_column(RunStatus, "run_status"), nullable=False)

    # Timestamps
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    duration_seconds = Column(Float, nullable=True)

    # Statistics
    records_processed = Column(Integer, default=0)
    records_failed = Column(Integer, default=0)
    records_skipped = Column(Integer, default=0)
    entities_created = Column(Integer, default=0)
    entities_updated = Column(Integer, default=0)
    entities_deleted = Column(Integer, default=0)
    pending_deletion = Column(Integer, default=0)

    # Error tracking
    error_class = Column(String(100), nullable=True)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_sync_run_tenant_completed", "tenant_key", "completed_at"),
        Index("idx_sync_run_status", "status", "completed_at"),
    )
