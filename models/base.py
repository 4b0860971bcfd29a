from sqlalchemy import BigInteger, Enum, Integer, JSON
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")

# SQLite only auto-increments INTEGER primary keys
BigIntegerType = BigInteger().with_variant(Integer(), "sqlite")


def enum_column(enum_cls, name: str) -> Enum:
    """Enum column persisted by value ("pending_deletion"), not by member name"""
    return Enum(enum_cls, name=name, values_callable=lambda members: [m.value for m in members])


# ============================================================================
# ENUMS
# ============================================================================

class EntityType(str, enum.Enum):
    """Kinds of upstream records mirrored locally"""
    CASE = "case"
    PROCEDURE = "procedure"
    DOCTOR = "doctor"


class RegistryStatus(str, enum.Enum):
    """Identity registry entry status"""
    ACTIVE = "active"
    PENDING_DELETION = "pending_deletion"
    DELETED = "deleted"


class SyncStage(str, enum.Enum):
    """Stage executor state"""
    PROCEDURES = "procedures"
    MANIFEST = "manifest"
    CASES = "cases"
    RECONCILING = "reconciling"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SyncTrigger(str, enum.Enum):
    """Who started a session"""
    MANUAL = "manual"
    AUTOMATIC = "automatic"


class ReconcileMode(str, enum.Enum):
    """Whether orphans are deleted right after detection"""
    MANUAL = "manual"
    AUTOMATIC = "automatic"


class RunStatus(str, enum.Enum):
    """Final outcome of a sync run"""
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Forward order of the live stages
STAGE_ORDER = [
    SyncStage.PROCEDURES,
    SyncStage.MANIFEST,
    SyncStage.CASES,
    SyncStage.RECONCILING,
    SyncStage.DONE,
]

TERMINAL_STAGES = frozenset({SyncStage.DONE, SyncStage.FAILED, SyncStage.CANCELLED})
