from sqlalchemy import Column, String, DateTime, Index
from datetime import datetime
from models.base import Base, BigIntegerType, EntityType, enum_column


class DeletionAuditLog(Base):
    """
    Append-only trail of orphan deletions.

    Only identifiers and timestamps are stored; upstream content (and any
    patient data it could contain) never reaches this table.
    """
    __tablename__ = "deletion_audit_log"

    id = Column(BigIntegerType, primary_key=True, autoincrement=True)
    tenant_key = Column(String(128), nullable=False)
    entity_type = Column(enum_column(EntityType, "entity_type"), nullable=False)
    local_id = Column(BigIntegerType, nullable=False)
    session_token = Column(String(64), nullable=False)
    deleted_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_audit_tenant_deleted", "tenant_key", "deleted_at"),
    )
