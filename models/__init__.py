"""
SQLAlchemy ORM models for database tables.

This package defines the database schema using SQLAlchemy ORM models:

Models:
    base: Base declarative class and shared enums (EntityType, RegistryStatus, SyncStage, ...)
    registry: Identity registry entries (remote id -> local entity)
    local_entity: Materialized cases, procedures and doctors
    sync_session: Sync sessions and the per-tenant advisory lock
    audit_log: Append-only deletion audit trail
    sync_run: History of ended sync runs

Database Schema:
    All models inherit from the Base declarative class. JSON columns use
    JSONB on PostgreSQL and plain JSON on other dialects.

Usage:
    from models import RegistryEntry, LocalEntity, SyncSession
    from models.base import EntityType, RegistryStatus, SyncStage

Relationships:
    - RegistryEntry.local_id -> LocalEntity.id (kept after deletion as history)
    - LocalEntity (case) -> LocalEntity (procedure, doctor)
    - SyncSession.session_token stamps RegistryEntry, DeletionAuditLog and SyncRun rows
"""

from models.base import (
    Base,
    EntityType,
    RegistryStatus,
    SyncStage,
    SyncTrigger,
    ReconcileMode,
    RunStatus,
)
from models.registry import RegistryEntry
from models.local_entity import LocalEntity
from models.sync_session import SyncSession, SyncLock
from models.audit_log import DeletionAuditLog
from models.sync_run import SyncRun

__all__ = [
    "Base",
    "EntityType",
    "RegistryStatus",
    "SyncStage",
    "SyncTrigger",
    "ReconcileMode",
    "RunStatus",
    "RegistryEntry",
    "LocalEntity",
    "SyncSession",
    "SyncLock",
    "DeletionAuditLog",
    "SyncRun",
]
