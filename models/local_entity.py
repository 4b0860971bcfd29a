from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Index
from datetime import datetime
from models.base import Base, BigIntegerType, JSONType, EntityType, enum_column


class LocalEntity(Base):
    """
    Materialized mirror of an upstream case, procedure or doctor.

    Purpose:
    - The read-only local copy consumed by presentation, search and sitemaps
    - Split cases: one row per procedure, sharing origin_remote_id and
      distinguished by procedure_index

    Design:
    - Written only by the materializer, removed only by the reconciler
    - content holds the canonical per-type payload (no legacy duplicates)
    - References (parent category, case procedure, case doctor) point at
      other local entities
    """
    __tablename__ = "local_entities"

    id = Column(BigIntegerType, primary_key=True, autoincrement=True)
    tenant_key = Column(String(128), nullable=False)
    entity_type = Column(enum_column(EntityType, "entity_type"), nullable=False)

    # Upstream origin
    origin_remote_id = Column(String(64), nullable=False)
    procedure_index = Column(Integer, nullable=False, default=0)

    # Display
    name = Column(String(500), nullable=False)
    slug = Column(String(255), nullable=True)
    display_order = Column(Integer, nullable=True)
    content = Column(JSONType, nullable=True)

    # References
    parent_id = Column(BigIntegerType, ForeignKey("local_entities.id"), nullable=True)
    procedure_entity_id = Column(BigIntegerType, ForeignKey("local_entities.id"), nullable=True)
    doctor_entity_id = Column(BigIntegerType, ForeignKey("local_entities.id"), nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_local_entity_origin", "tenant_key", "entity_type", "origin_remote_id"),
    )
