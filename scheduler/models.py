"""
Models for the scheduled jobs.

This module defines Pydantic models for:
- Sync classification and summaries
- Sync results and error codes
- Scheduler configuration
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field


class SyncStatus(str, Enum):
    """Classification of one local/remote pairing."""
    ADDED = "added"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    RETURNED = "returned"


class SyncErrorCode(str, Enum):
    """Why a sync run was aborted."""
    AUTH_FAILED = "AUTH_FAILED"
    LIBRARY_UNAVAILABLE = "LIBRARY_UNAVAILABLE"
    LIBRARY_ERROR = "LIBRARY_ERROR"
    EXTERNAL_TIMEOUT = "EXTERNAL_TIMEOUT"
    PERSISTENCE_FAILED = "PERSISTENCE_FAILED"
    UNKNOWN = "UNKNOWN"


# HTTP status reported to API callers for each error code
SYNC_ERROR_HTTP_STATUS = {
    SyncErrorCode.AUTH_FAILED: 401,
    SyncErrorCode.LIBRARY_UNAVAILABLE: 503,
    SyncErrorCode.LIBRARY_ERROR: 502,
    SyncErrorCode.EXTERNAL_TIMEOUT: 504,
    SyncErrorCode.PERSISTENCE_FAILED: 500,
    SyncErrorCode.UNKNOWN: 500,
}


class SyncSummary(BaseModel):
    """
    Counters for one sync run.

    ``added + updated + unchanged == total_charges``; ``returned`` counts
    local rows closed this run and is disjoint from the active-charge tally.
    """
    total_charges: int = Field(default=0, ge=0)
    added: int = Field(default=0, ge=0)
    updated: int = Field(default=0, ge=0)
    unchanged: int = Field(default=0, ge=0)
    returned: int = Field(default=0, ge=0)

    def record(self, status: SyncStatus) -> None:
        setattr(self, status.value, getattr(self, status.value) + 1)


class SyncError(BaseModel):
    """Terminal failure of a sync run."""
    code: SyncErrorCode = Field(...)
    message: str = Field(...)

    @property
    def http_status(self) -> int:
        return SYNC_ERROR_HTTP_STATUS[self.code]


class SyncResponse(BaseModel):
    """Sync summary surface exposed to API and CLI callers."""
    message: str = Field(...)
    summary: SyncSummary = Field(...)


class SyncResult(BaseModel):
    """Result of one reconciliation run."""
    run_id: str = Field(..., description="Unique run identifier")
    run_timestamp: datetime = Field(default_factory=datetime.utcnow)
    duration_seconds: float = Field(default=0.0)
    success: bool = Field(default=True)
    summary: SyncSummary = Field(default_factory=SyncSummary)
    error: Optional[SyncError] = Field(default=None)
    warnings: List[str] = Field(default_factory=list, description="Recovered partial failures")

    def to_response(self) -> SyncResponse:
        if self.summary.total_charges == 0:
            message = "Sync completed - no books to sync"
        else:
            message = "Sync completed successfully"
        return SyncResponse(message=message, summary=self.summary)


class SchedulerConfig(BaseModel):
    """Configuration for the scheduler system."""
    # Scheduling
    sync_schedule_hour: int = Field(default=3, ge=0, le=23, description="Hour to run the sync job (24h format)")
    sync_schedule_minute: int = Field(default=0, ge=0, le=59)
    digest_schedule_hour: int = Field(default=3, ge=0, le=23, description="Hour to send the daily note")
    digest_schedule_minute: int = Field(default=5, ge=0, le=59)
    timezone: str = Field(default="Asia/Seoul", description="Timezone for scheduling")

    # Jobs
    enable_sync_job: bool = Field(default=True)
    enable_digest_job: bool = Field(default=True)
