"""
Pydantic schemas for API request/response models.

These schemas define the structure of data sent to and received from
the API endpoints, providing validation and serialization.
"""

from pydantic import BaseModel, Field, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime

from job_monitor.models import PriorityBucket


# ============================================================================
# Monitoring Schemas
# ============================================================================

class MonitoringUpdate(BaseModel):
    """Schema for updating a job's monitoring settings. Omitted fields stay as they are."""
    monitoring_enabled: Optional[bool] = None
    frequency_hours: Optional[int] = Field(None, ge=1, le=24 * 365)
    priority_override: Optional[PriorityBucket] = None
    clear_priority_override: bool = False

    @model_validator(mode="after")
    def _override_or_clear(self) -> "MonitoringUpdate":
        if self.clear_priority_override and self.priority_override is not None:
            raise ValueError("priority_override and clear_priority_override are mutually exclusive")
        return self


class MonitoringRunResponse(BaseModel):
    """Schema for a monitoring run summary."""
    run_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    jobs_checked: int
    jobs_updated: int
    errors_encountered: int
    total_jobs_eligible: int
    next_run_needed: bool
    status: str
    error: Optional[str] = None


class MonitoringStatusResponse(BaseModel):
    """Schema for the monitoring overview."""
    active_jobs_monitored: int
    jobs_needing_check: int
    last_updated: Optional[datetime] = None
    last_run: Optional[MonitoringRunResponse] = None


class MonitoringQueueResponse(BaseModel):
    """Schema for the ordered monitoring queue."""
    total_jobs: int
    returned_jobs: int
    jobs: List[Dict[str, Any]]


# ============================================================================
# Tracking Schemas
# ============================================================================

class JobTrackingResponse(BaseModel):
    """Schema for a job's full tracking history."""
    job: Dict[str, Any]
    timeline: List[Dict[str, Any]]
    snapshots: List[Dict[str, Any]]
    changes: List[Dict[str, Any]]


class ChangeFeedResponse(BaseModel):
    """Schema for the change feed."""
    changes: List[Dict[str, Any]]
    count: int
