"""
Pydantic schemas for job records, queue work items and API payloads.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from webanalyzer.config.settings import BackoffType
from webanalyzer.jobs.models import JobStatus, ensure_utc


class JobRecord(BaseModel):
    """A stored job as read from the job store."""

    model_config = ConfigDict(from_attributes=True)

    job_id: str
    url: str
    # Kept as plain text so corrupted rows surface as unknown statuses
    status: str
    created_at: datetime
    updated_at: datetime | None = None
    results: dict[str, Any] | None = None
    error: str | None = None
    error_type: str | None = None
    http_status_code: int | None = None

    @field_validator("created_at", "updated_at")
    @classmethod
    def _as_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED.value, JobStatus.FAILED.value)


class JobStatusView(BaseModel):
    """What a polling client sees for a job."""

    job_id: str
    status: JobStatus
    url: str
    results: dict[str, Any] | None = None
    error: str | None = None


class AnalyseRequest(BaseModel):
    """Body of ``POST /api/analyse``; the URL itself is checked by the validator."""

    url: Any = Field(default=None, description="URL to analyse")


class AnalyseResponse(BaseModel):
    job_id: str
    status: JobStatus
    message: str


class WorkItem(BaseModel):
    """Queue payload plus the delivery metadata the adapter attaches."""

    job_id: str
    url: str
    attempts_made: int = 0
    max_attempts: int = 1
    last_error: str | None = None
    last_error_type: str | None = None

    def payload(self) -> dict[str, str]:
        return {"job_id": self.job_id, "url": self.url}

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts_made >= self.max_attempts


class BackoffPolicy(BaseModel):
    type: BackoffType = BackoffType.EXPONENTIAL
    delay_ms: int = Field(default=1000, ge=0)


class EnqueueOptions(BaseModel):
    timeout_ms: int | None = Field(default=None, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)


class DeliveryHandle(BaseModel):
    """Returned by enqueue: identifies the work item and its delivery state."""

    id: str
    state: str
    attempts_made: int
    max_attempts: int
    created: bool = Field(
        default=True, description="False when an item for the job already existed"
    )


class QueueInfo(BaseModel):
    """Live queue view of a work item."""

    found: bool
    state: str | None = None
    # 0 = being processed, >0 = place in the wait line, -1 = not waiting
    position: int = -1
    estimated_wait: int = 0
    error: str | None = None


class CleanupStats(BaseModel):
    total_runs_completed: int = 0
    total_jobs_cleaned: int = 0
    last_run_at: datetime | None = None
    last_run_duration_ms: int = 0
    last_run_cleaned: int = 0
    last_error: str | None = None
