"""
Job system Pydantic schemas.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from api.v1.infra.jobs.models import ERROR_JOB, JobStatus, JobType, LogLevel


class JobCreate(BaseModel):
    """Validated parameters for a new job."""

    job_type: JobType = Field(..., description="Job type identifier")
    params: dict[str, Any] = Field(default_factory=dict, description="Job parameters")
    priority: int | None = Field(
        default=None, ge=1, le=10, description="Priority (10=most urgent)"
    )
    scheduled_for: datetime | None = Field(
        default=None, description="Earliest time to run job"
    )
    max_retries: int | None = Field(
        default=None, ge=0, le=10, description="Automatic retries after failure"
    )


class JobSubmitRequest(JobCreate):
    """Schema for submitting jobs via API."""

    dedupe: bool = Field(
        default=True,
        description="Reuse an identical pending/processing job instead of creating one",
    )
    dedupe_window_s: int | None = Field(
        default=None, ge=0, description="Override the dedupe window in seconds"
    )


class JobSubmitResponse(BaseModel):
    """Result of Submit / SubmitOrReuse."""

    job_id: UUID
    is_new: bool = Field(default=True, description="False when an existing job was reused")
    status: str = Field(..., description="Status of the returned job")


class JobResponse(BaseModel):
    """Schema for job API responses."""

    id: UUID
    owner_id: UUID
    job_type: str
    priority: int
    params: dict[str, Any]
    status: str
    progress_percent: int
    progress_message: str | None = None

    started_at: datetime | None = None
    completed_at: datetime | None = None
    worker_id: str | None = None

    error_code: str | None = None
    error_message: str | None = None
    error_details: dict[str, Any] | None = None
    retry_count: int
    max_retries: int

    result: dict[str, Any] | None = None

    scheduled_for: datetime
    expires_at: datetime
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class JobListResponse(BaseModel):
    """Schema for job list API response."""

    jobs: list[JobResponse]
    total: int
    limit: int
    offset: int


class JobLogResponse(BaseModel):
    id: UUID
    job_id: UUID
    level: str
    message: str
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="meta")
    created_at: datetime

    class Config:
        from_attributes = True
        populate_by_name = True


class JobLogListResponse(BaseModel):
    logs: list[JobLogResponse]
    total: int
    limit: int
    offset: int


class JobTypeInfo(BaseModel):
    """A submittable job type with its display metadata."""

    job_type: JobType
    display_name: str
    description: str


class JobTypeStats(BaseModel):
    total: int = 0
    pending: int = 0
    completed: int = 0
    failed: int = 0


class JobStatsResponse(BaseModel):
    """Schema for job statistics."""

    total_jobs: int
    by_status: dict[str, int]
    by_type: dict[str, JobTypeStats]
    queue_depth: int  # pending + processing
    total_errors: int
    avg_processing_seconds: float | None = None


class CachedResultResponse(BaseModel):
    """Outcome of a result-cache lookup."""

    hit: bool
    job_id: UUID | None = None
    result: dict[str, Any] | None = None
    completed_at: datetime | None = None
    age_seconds: float | None = None


# Worker-facing payloads


class ClaimRequest(BaseModel):
    worker_id: str = Field(..., min_length=1, max_length=255)


class ClaimNextRequest(ClaimRequest):
    job_types: list[JobType] | None = Field(
        default=None, description="Restrict dequeue to these job types"
    )


class ProgressRequest(BaseModel):
    percent: int = Field(..., ge=0, le=100)
    message: str | None = None


class CompleteRequest(BaseModel):
    result: dict[str, Any] | None = None


class FailRequest(BaseModel):
    error_code: str = Field(default=ERROR_JOB, min_length=1)
    error_message: str = Field(..., min_length=1)
    error_details: dict[str, Any] | None = None


class AppendLogRequest(BaseModel):
    level: LogLevel = LogLevel.INFO
    message: str = Field(..., min_length=1)
    metadata: dict[str, Any] | None = None


class WorkerActionResponse(BaseModel):
    """A benign no-op reports success=False rather than an error."""

    job_id: UUID
    success: bool


class SweepResponse(BaseModel):
    operation: str
    count: int
    job_ids: list[UUID] = Field(default_factory=list)


class JobSnapshot(BaseModel):
    """Change notification published after every job mutation."""

    job_id: UUID
    owner_id: UUID
    job_type: str
    status: JobStatus
    progress_percent: int
    progress_message: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    result: dict[str, Any] | None = None
    updated_at: datetime
