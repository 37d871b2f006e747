"""
Job queue models: jobs and their append-only execution logs.
"""

from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from api.infra.database import Base, UTCDateTime, utcnow


class JobStatus(str, Enum):
    """Job status enumeration."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)
FINISHED_STATUSES = (
    JobStatus.COMPLETED.value,
    JobStatus.FAILED.value,
    JobStatus.CANCELLED.value,
)


class JobType(str, Enum):
    """Closed set of job types producers may submit."""

    PLATFORM_SYNC = "platform_sync"
    AI_ANALYSIS = "ai_analysis"
    SEO_SUBMISSION = "seo_submission"
    QUOTA_RESET = "quota_reset"
    TOKEN_REFRESH = "token_refresh"

    @property
    def display_name(self) -> str:
        return JOB_TYPE_INFO[self][0]

    @property
    def description(self) -> str:
        return JOB_TYPE_INFO[self][1]


JOB_TYPE_INFO: dict[JobType, tuple[str, str]] = {
    JobType.PLATFORM_SYNC: (
        "Platform Sync",
        "Sync content from social media platform",
    ),
    JobType.AI_ANALYSIS: ("AI Analysis", "Analyze content with AI"),
    JobType.SEO_SUBMISSION: ("SEO Submission", "Submit URL to search engines"),
    JobType.QUOTA_RESET: ("Quota Reset", "Reset monthly quotas"),
    JobType.TOKEN_REFRESH: ("Token Refresh", "Refresh OAuth tokens"),
}


class LogLevel(str, Enum):
    """Severity of a job log entry."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


# Error codes written by the engine itself
ERROR_JOB = "JOB_ERROR"
ERROR_EXPIRED = "JOB_EXPIRED"
ERROR_TIMEOUT = "JOB_TIMEOUT"
ERROR_NO_HANDLER = "NO_HANDLER"


def _in_list(values) -> str:
    return ", ".join(f"'{v}'" for v in values)


class Job(Base):
    """
    A unit of asynchronous work submitted by an owner.

    Rows are only ever mutated through conditional updates guarded on the
    current status, so concurrent workers and the sweeper never need locks.
    """

    __tablename__ = "job_queue"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    owner_id: Mapped[UUID] = mapped_column(
        Uuid, nullable=False, comment="Owning user"
    )
    job_type: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Job type identifier"
    )
    priority: Mapped[int] = mapped_column(
        SmallInteger,
        nullable=False,
        default=5,
        comment="Priority 1-10, higher is more urgent",
    )
    params: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        comment="Job-specific parameters",
    )
    params_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="SHA-256 of canonical params, used for dedupe and result lookups",
    )

    # Status tracking
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.PENDING.value,
        comment="pending|processing|completed|failed|cancelled",
    )
    progress_percent: Mapped[int] = mapped_column(
        SmallInteger, nullable=False, default=0
    )
    progress_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Execution metadata
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    worker_id: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Worker that claimed the job"
    )

    # Error handling
    error_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_details: Mapped[dict[str, Any] | None] = mapped_column(
        JSON(none_as_null=True), nullable=True
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)

    result: Mapped[dict[str, Any] | None] = mapped_column(
        JSON(none_as_null=True), nullable=True
    )

    # Scheduling
    scheduled_for: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    expires_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=lambda: datetime.now(UTC) + timedelta(hours=24),
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    logs: Mapped[list["JobLog"]] = relationship(
        back_populates="job",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    # Indexes only carry static predicates; clock-dependent conditions
    # (expiry, cooldowns, windows) are applied at query time.
    __table_args__ = (
        CheckConstraint(
            f"status IN ({_in_list(s.value for s in JobStatus)})",
            name="job_queue_status_check",
        ),
        CheckConstraint(
            f"job_type IN ({_in_list(t.value for t in JobType)})",
            name="job_queue_type_check",
        ),
        CheckConstraint("priority BETWEEN 1 AND 10", name="job_queue_priority_check"),
        CheckConstraint(
            "progress_percent BETWEEN 0 AND 100", name="job_queue_progress_check"
        ),
        CheckConstraint(
            f"(status IN ({_in_list(FINISHED_STATUSES)}) AND completed_at IS NOT NULL)"
            f" OR (status IN ({_in_list(ACTIVE_STATUSES)}) AND completed_at IS NULL)",
            name="job_queue_valid_completion",
        ),
        Index("ix_job_queue_owner_status_created", "owner_id", "status", "created_at"),
        Index(
            "ix_job_queue_dedupe",
            "owner_id",
            "job_type",
            "params_hash",
            "status",
        ),
        Index(
            "ix_job_queue_pending_pickup",
            "priority",
            "created_at",
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("ix_job_queue_stuck_detection", "status", "started_at"),
        Index("ix_job_queue_expiration", "status", "expires_at"),
        Index("ix_job_queue_retry_eligible", "status", "retry_count", "updated_at"),
        Index("ix_job_queue_cleanup", "status", "completed_at"),
    )

    def is_terminal(self) -> bool:
        """Completed, cancelled, or failed with no retries left."""
        if self.status == JobStatus.FAILED.value:
            return self.retry_count >= self.max_retries
        return self.status in (JobStatus.COMPLETED.value, JobStatus.CANCELLED.value)

