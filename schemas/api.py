"""
Pydantic schemas for the health and statistics endpoints
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict
from datetime import datetime
from schemas.sync import SyncRunSummary


# ============================================================================
# Health Check Schemas
# ============================================================================

class TenantSyncInfo(BaseModel):
    """Per-tenant sync status for health check"""
    tenant_key: str
    name: Optional[str] = None
    live_session_token: Optional[str] = None
    live_stage: Optional[str] = None
    last_run_status: Optional[str] = None
    last_run_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_error_class: Optional[str] = None


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    tenants: List[TenantSyncInfo] = Field(default_factory=list)
    total_tenants: int = 0
    failed_tenants: int = 0
    # Declared last so the validator sees the fields above
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Determine overall health status"""
        if not values.get("database_connected", False):
            return "unhealthy"

        failed = values.get("failed_tenants", 0)
        total = values.get("total_tenants", 0)

        if total == 0 or failed == 0:
            return "healthy"
        elif failed < total:
            return "degraded"
        else:
            return "unhealthy"

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "total_tenants": 1,
                "failed_tenants": 0,
                "tenants": [
                    {
                        "tenant_key": "1234:9f86d081884c7d65",
                        "name": "Main practice",
                        "live_stage": None,
                        "last_run_status": "success",
                        "last_run_at": "2024-01-15T10:00:00Z",
                        "last_success_at": "2024-01-15T10:00:00Z"
                    }
                ]
            }
        }


# ============================================================================
# Statistics Schemas
# ============================================================================

class StatsResponse(BaseModel):
    """Sync statistics response"""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    entities_by_type: Dict[str, int] = Field(default_factory=dict)
    registry_by_status: Dict[str, int] = Field(default_factory=dict)
    total_deletions: int = 0
    total_runs: int = 0
    runs_by_status: Dict[str, int] = Field(default_factory=dict)
    avg_run_duration_seconds: Optional[float] = None
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    recent_runs: List[SyncRunSummary] = Field(default_factory=list)
    request_id: str
