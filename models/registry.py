from sqlalchemy import Column, String, DateTime, Index, CheckConstraint, text
from datetime import datetime
from models.base import Base, BigIntegerType, EntityType, RegistryStatus, enum_column


class RegistryEntry(Base):
    """
    Durable mapping of (tenant, entity_type, remote_id) to a local entity.

    Purpose:
    - Single source of truth for "have we seen this remote record before"
    - Idempotent upsert key for the materializer
    - Input for orphan detection (entries not confirmed by the current session)

    Design:
    - remote_id holds the derived key: the upstream id, or "case_id:index"
      for cases split across several procedures
    - last_confirmed_at only moves when upstream positively returned the record
    - Rows are never physically removed; deleted entries stay as history, so
      uniqueness is enforced only over non-deleted rows
    - local_id keeps pointing at the (possibly deleted) local entity id
    """
    __tablename__ = "registry_entries"

    id = Column(BigIntegerType, primary_key=True, autoincrement=True)

    # Identity
    tenant_key = Column(String(128), nullable=False)
    entity_type = Column(enum_column(EntityType, "entity_type"), nullable=False)
    remote_id = Column(String(64), nullable=False)
    local_id = Column(BigIntegerType, nullable=False, index=True)

    # Confirmation
    session_token = Column(String(64), nullable=False)
    first_seen_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    last_confirmed_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    # Lifecycle
    status = Column(
        enum_column(RegistryStatus, "registry_status"),
        nullable=False,
        default=RegistryStatus.ACTIVE,
    )
    deleted_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("tenant_key <> ''", name="ck_registry_tenant_key_not_empty"),
        Index(
            "uq_registry_live_key",
            "tenant_key", "entity_type", "remote_id",
            unique=True,
            postgresql_where=text("status <> 'deleted'"),
            sqlite_where=text("status <> 'deleted'"),
        ),
        Index("idx_registry_tenant_session", "tenant_key", "session_token"),
        Index("idx_registry_tenant_status", "tenant_key", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<RegistryEntry {self.entity_type.value}:{self.remote_id} "
            f"-> {self.local_id} ({self.status.value})>"
        )
