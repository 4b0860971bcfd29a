"""
Pydantic schemas for the sync trigger surface and reconciliation reports
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import EntityType, RunStatus, SyncTrigger


# ============================================================================
# Reconciliation
# ============================================================================

class OrphanItem(BaseModel):
    """Human-readable orphan reference; never carries upstream content"""
    local_id: int
    remote_id: str
    name: str


class OrphanGroup(BaseModel):
    count: int = 0
    items: List[OrphanItem] = Field(default_factory=list)


class ReconciliationReport(BaseModel):
    """Orphans found for a session, and what happened to them"""
    session_token: str
    tenant_key: str
    mode: str
    total: int = 0
    by_type: Dict[str, OrphanGroup] = Field(
        default_factory=lambda: {t.value: OrphanGroup() for t in EntityType}
    )
    deleted: List[OrphanItem] = Field(default_factory=list)
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def deleted_count(self) -> int:
        return len(self.deleted)

    @property
    def pending_count(self) -> int:
        return max(self.total - self.deleted_count, 0)

    class Config:
        json_schema_extra = {
            "example": {
                "session_token": "3f2c9d0e8b7a4c1d9e6f5a4b3c2d1e0f",
                "tenant_key": "1234:9f86d081884c7d65",
                "mode": "manual",
                "total": 1,
                "by_type": {
                    "case": {"count": 1, "items": [{"local_id": 42, "remote_id": "102", "name": "Rhinoplasty #102"}]},
                    "procedure": {"count": 0, "items": []},
                    "doctor": {"count": 0, "items": []}
                },
                "deleted": [],
                "errors": []
            }
        }


# ============================================================================
# Requests
# ============================================================================

class StartSyncRequest(BaseModel):
    tenant_key: str = Field(..., min_length=1)


class SessionRequest(BaseModel):
    session_token: str = Field(..., min_length=1)


class DeleteOrphansRequest(BaseModel):
    session_token: str = Field(..., min_length=1)
    entity_ids: List[int] = Field(default_factory=list, description="Local entity ids approved for deletion")
    automatic: bool = Field(False, description="Delete every pending orphan instead of entity_ids")


# ============================================================================
# Responses
# ============================================================================

class ErrorInfo(BaseModel):
    error_class: str
    message: Optional[str] = None
    retryable: bool = False


class StartSyncResponse(BaseModel):
    session_token: str
    tenant_key: str
    stage: str
    resumed: bool


class StepResponse(BaseModel):
    """Progress summary of one stage-executor invocation"""
    session_token: str
    tenant_key: str
    stage: str
    status: str = Field(..., description="progressed, throttled, retrying, completed, failed, cancelled or idle")
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    created: int = 0
    updated: int = 0
    percent_complete: Optional[float] = None
    last_error: Optional[ErrorInfo] = None
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    reconciliation: Optional[ReconciliationReport] = None

    class Config:
        json_schema_extra = {
            "example": {
                "session_token": "3f2c9d0e8b7a4c1d9e6f5a4b3c2d1e0f",
                "tenant_key": "1234:9f86d081884c7d65",
                "stage": "cases",
                "status": "progressed",
                "processed": 5,
                "failed": 0,
                "skipped": 1,
                "created": 4,
                "updated": 2,
                "percent_complete": 37.5
            }
        }


class CancelResponse(BaseModel):
    session_token: str
    stage: str
    cancel_requested: bool


class SyncStatusResponse(BaseModel):
    tenant_key: str
    live: bool
    session_token: Optional[str] = None
    stage: Optional[str] = None
    cursor: Optional[Dict[str, Any]] = None
    percent_complete: Optional[float] = None
    records_processed: int = 0
    records_failed: int = 0
    started_at: Optional[datetime] = None
    last_heartbeat_at: Optional[datetime] = None
    cancel_requested: bool = False
    last_error: Optional[ErrorInfo] = None
    last_success_at: Optional[datetime] = None
    registry: Dict[str, int] = Field(default_factory=dict)


class SyncRunSummary(BaseModel):
    session_token: str
    tenant_key: str
    trigger: SyncTrigger
    status: RunStatus
    started_at: datetime
    completed_at: datetime
    duration_seconds: Optional[float] = None
    records_processed: int = 0
    records_failed: int = 0
    records_skipped: int = 0
    entities_created: int = 0
    entities_updated: int = 0
    entities_deleted: int = 0
    pending_deletion: int = 0
    error_class: Optional[str] = None
    error_message: Optional[str] = None

    class Config:
        from_attributes = True
        use_enum_values = True


class SyncHistoryResponse(BaseModel):
    tenant_key: Optional[str] = None
    runs: List[SyncRunSummary] = Field(default_factory=list)
