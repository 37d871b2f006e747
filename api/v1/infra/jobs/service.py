"""
Job lifecycle service: submission, deduplication, state transitions, reads.

Every transition is a single conditional UPDATE guarded on the current
status. Exactly one affected row means the caller won; zero rows is a
benign no-op (a lost race, a cancelled job, a stale worker) reported as
``False``, never raised.
"""

import logging
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import and_, case, delete, desc, func, select, true, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from api.config.settings import Settings
from api.infra.database import utcnow
from api.v1.core.exceptions import NotFoundError, QuotaExceededError, ValidationError
from api.v1.infra.jobs.models import (
    ACTIVE_STATUSES,
    ERROR_JOB,
    Job,
    JobLog,
    JobStatus,
    JobType,
    LogLevel,
)
from api.v1.infra.jobs.notifier import JobNotifier, snapshot_from_row
from api.v1.infra.jobs.params import params_equal, params_hash
from api.v1.infra.jobs.schemas import (
    JobCreate,
    JobStatsResponse,
    JobSubmitResponse,
    JobTypeStats,
)

logger = logging.getLogger(__name__)

# Columns returned by every conditional update, enough for a change snapshot
SNAPSHOT_COLUMNS = (
    Job.id,
    Job.owner_id,
    Job.job_type,
    Job.status,
    Job.progress_percent,
    Job.progress_message,
    Job.error_code,
    Job.error_message,
    Job.result,
    Job.updated_at,
)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class JobService:
    """Service for submitting and transitioning background jobs."""

    def __init__(self, settings: Settings, notifier: JobNotifier | None = None):
        self.settings = settings
        self.notifier = notifier or JobNotifier()

    # Submission

    async def submit(
        self, session: AsyncSession, owner_id: UUID, job_create: JobCreate
    ) -> JobSubmitResponse:
        """
        Create a new pending job unconditionally.

        Raises:
            QuotaExceededError: owner already has the maximum active jobs
        """
        job_type = JobType(job_create.job_type)
        await self._check_quota(session, owner_id)

        now = utcnow()
        scheduled_for = _as_utc(job_create.scheduled_for) or now
        priority = job_create.priority or self.settings.job_default_priority
        max_retries = (
            job_create.max_retries
            if job_create.max_retries is not None
            else self.settings.job_default_max_retries
        )

        job = Job(
            id=uuid4(),
            owner_id=owner_id,
            job_type=job_type.value,
            priority=priority,
            params=job_create.params,
            params_hash=params_hash(job_create.params),
            status=JobStatus.PENDING.value,
            progress_percent=0,
            retry_count=0,
            max_retries=max_retries,
            scheduled_for=scheduled_for,
            expires_at=max(now, scheduled_for)
            + timedelta(hours=self.settings.job_expiry_hours),
            created_at=now,
            updated_at=now,
        )

        session.add(job)
        await session.flush()
        await self.notifier.publish(session, snapshot_from_row(job))
        await session.commit()

        logger.info(
            "Job submitted",
            extra={
                "job_id": str(job.id),
                "job_type": job.job_type,
                "priority": job.priority,
                "owner_id": str(owner_id),
            },
        )

        return JobSubmitResponse(job_id=job.id, is_new=True, status=job.status)

    async def submit_or_reuse(
        self,
        session: AsyncSession,
        owner_id: UUID,
        job_create: JobCreate,
        dedupe_window_s: int | None = None,
    ) -> JobSubmitResponse:
        """
        Return an identical active job created within the dedupe window, or
        submit a new one.

        Two concurrent submissions can both miss and both insert; that window
        is accepted in exchange for a lock-free lookup.
        """
        window = (
            self.settings.job_dedupe_window_s
            if dedupe_window_s is None
            else dedupe_window_s
        )
        existing = await self._find_duplicate(
            session, owner_id, JobType(job_create.job_type), job_create.params, window
        )
        if existing is not None:
            logger.info(
                "Job deduplicated",
                extra={
                    "job_id": str(existing.id),
                    "job_type": existing.job_type,
                    "owner_id": str(owner_id),
                    "existing_status": existing.status,
                },
            )
            return JobSubmitResponse(
                job_id=existing.id, is_new=False, status=existing.status
            )

        return await self.submit(session, owner_id, job_create)

    async def count_active(self, session: AsyncSession, owner_id: UUID) -> int:
        result = await session.execute(
            select(func.count(Job.id)).where(
                Job.owner_id == owner_id, Job.status.in_(ACTIVE_STATUSES)
            )
        )
        return result.scalar() or 0

    async def _check_quota(self, session: AsyncSession, owner_id: UUID) -> None:
        limit = self.settings.job_max_active_per_owner
        active = await self.count_active(session, owner_id)
        if active >= limit:
            logger.warning(
                "Job quota exceeded",
                extra={"owner_id": str(owner_id), "active": active, "limit": limit},
            )
            raise QuotaExceededError(limit=limit, active=active)

    async def _find_duplicate(
        self,
        session: AsyncSession,
        owner_id: UUID,
        job_type: JobType,
        params: dict[str, Any],
        window_s: int,
    ) -> Job | None:
        cutoff = utcnow() - timedelta(seconds=window_s)
        result = await session.execute(
            select(Job)
            .where(
                and_(
                    Job.owner_id == owner_id,
                    Job.job_type == job_type.value,
                    Job.params_hash == params_hash(params),
                    Job.status.in_(ACTIVE_STATUSES),
                    Job.created_at > cutoff,
                )
            )
            .order_by(desc(Job.created_at))
            .execution_options(populate_existing=True)
        )
        for candidate in result.scalars():
            if params_equal(candidate.params, params):
                return candidate
        return None

    # Transitions

    async def _transition(
        self,
        session: AsyncSession,
        job_id: UUID,
        expected: Iterable[str],
        values: dict[str, Any],
        *criteria: Any,
    ) -> bool:
        """Apply ``values`` only if the job is in one of ``expected`` states."""
        stmt = (
            update(Job)
            .where(Job.id == job_id, Job.status.in_(list(expected)), *criteria)
            .values(**values)
            .returning(*SNAPSHOT_COLUMNS)
            .execution_options(synchronize_session=False)
        )
        row = (await session.execute(stmt)).first()
        if row is None:
            await session.rollback()
            return False

        await self.notifier.publish(session, snapshot_from_row(row))
        await session.commit()
        return True

    async def claim(self, session: AsyncSession, job_id: UUID, worker_id: str) -> bool:
        """pending -> processing. At most one concurrent caller wins."""
        now = utcnow()
        claimed = await self._transition(
            session,
            job_id,
            [JobStatus.PENDING.value],
            {
                "status": JobStatus.PROCESSING.value,
                "started_at": now,
                "worker_id": worker_id,
                "updated_at": now,
            },
        )
        if claimed:
            logger.info(
                "Job claimed", extra={"job_id": str(job_id), "worker_id": worker_id}
            )
        else:
            logger.debug(
                "Job no longer claimable",
                extra={"job_id": str(job_id), "worker_id": worker_id},
            )
        return claimed

    async def claim_next(
        self,
        session: AsyncSession,
        worker_id: str,
        job_types: Sequence[JobType] | None = None,
    ) -> Job | None:
        """
        Claim the most urgent runnable job.

        Candidates are read without locks (priority desc, then submission
        order) and claimed one at a time with the conditional update; a lost
        race simply moves on to the next candidate.
        """
        now = utcnow()
        query = select(Job.id).where(
            Job.status == JobStatus.PENDING.value,
            Job.scheduled_for <= now,
            Job.expires_at > now,
        )
        if job_types:
            query = query.where(Job.job_type.in_([JobType(t).value for t in job_types]))
        query = query.order_by(
            desc(Job.priority), Job.created_at, Job.id
        ).limit(self.settings.job_claim_batch_size)

        candidate_ids = list((await session.execute(query)).scalars())
        # Release the read transaction before claiming
        await session.rollback()

        for candidate_id in candidate_ids:
            if await self.claim(session, candidate_id, worker_id):
                return await self.get_job(session, candidate_id)

        if candidate_ids:
            logger.debug(
                "All dequeue candidates taken by other workers",
                extra={"worker_id": worker_id, "candidates": len(candidate_ids)},
            )
        return None

    async def report_progress(
        self,
        session: AsyncSession,
        job_id: UUID,
        percent: int,
        message: str | None = None,
    ) -> bool:
        """Update progress of a processing job; False if it is not processing."""
        if not 0 <= percent <= 100:
            raise ValidationError(
                "Progress percent must be between 0 and 100",
                details={"percent": percent},
            )
        values: dict[str, Any] = {"progress_percent": percent, "updated_at": utcnow()}
        if message is not None:
            values["progress_message"] = message
        return await self._transition(
            session, job_id, [JobStatus.PROCESSING.value], values
        )

    async def complete(
        self,
        session: AsyncSession,
        job_id: UUID,
        result: dict[str, Any] | None = None,
    ) -> bool:
        """processing -> completed with the worker's result."""
        now = utcnow()
        completed = await self._transition(
            session,
            job_id,
            [JobStatus.PROCESSING.value],
            {
                "status": JobStatus.COMPLETED.value,
                "completed_at": now,
                "progress_percent": 100,
                "result": result,
                "updated_at": now,
            },
        )
        if completed:
            logger.info("Job completed", extra={"job_id": str(job_id)})
        return completed

    async def fail(
        self,
        session: AsyncSession,
        job_id: UUID,
        error_code: str | None,
        error_message: str,
        error_details: dict[str, Any] | None = None,
    ) -> bool:
        """processing -> failed; retries are scheduled later by the sweeper."""
        now = utcnow()
        failed = await self._transition(
            session,
            job_id,
            [JobStatus.PROCESSING.value],
            {
                "status": JobStatus.FAILED.value,
                "completed_at": now,
                "error_code": error_code or ERROR_JOB,
                "error_message": error_message,
                "error_details": error_details,
                "updated_at": now,
            },
        )
        if failed:
            logger.info(
                "Job failed",
                extra={"job_id": str(job_id), "error_code": error_code or ERROR_JOB},
            )
        return failed

    async def cancel(self, session: AsyncSession, job_id: UUID, owner_id: UUID) -> bool:
        """Owner-initiated cancel of a pending or processing job."""
        now = utcnow()
        cancelled = await self._transition(
            session,
            job_id,
            ACTIVE_STATUSES,
            {
                "status": JobStatus.CANCELLED.value,
                "completed_at": now,
                "updated_at": now,
            },
            Job.owner_id == owner_id,
        )
        if cancelled:
            logger.info(
                "Job cancelled",
                extra={"job_id": str(job_id), "owner_id": str(owner_id)},
            )
        return cancelled

    async def append_log(
        self,
        session: AsyncSession,
        job_id: UUID,
        level: LogLevel | str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> UUID:
        """Append a log entry; allowed in any job state."""
        try:
            level_value = LogLevel(level).value
        except ValueError:
            raise ValidationError(f"Unknown log level: {level}") from None

        entry = JobLog(
            id=uuid4(),
            job_id=job_id,
            level=level_value,
            message=message,
            meta=metadata,
            created_at=utcnow(),
        )
        session.add(entry)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            raise NotFoundError(
                "Job not found", details={"job_id": str(job_id)}
            ) from None
        return entry.id

    # Reads

    async def get_job(self, session: AsyncSession, job_id: UUID) -> Job | None:
        result = await session.execute(
            select(Job)
            .where(Job.id == job_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_jobs(
        self,
        session: AsyncSession,
        owner_id: UUID,
        status: JobStatus | str | None = None,
        job_type: JobType | str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        """Owner's jobs newest first, with the unpaginated total."""
        base_query = select(Job).where(Job.owner_id == owner_id)
        if status:
            base_query = base_query.where(Job.status == JobStatus(status).value)
        if job_type:
            base_query = base_query.where(Job.job_type == JobType(job_type).value)

        count_query = select(func.count()).select_from(base_query.subquery())
        total = (await session.execute(count_query)).scalar() or 0

        jobs_query = (
            base_query.order_by(desc(Job.created_at), Job.id)
            .offset(offset)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        jobs = list((await session.execute(jobs_query)).scalars())
        return jobs, total

    async def list_job_logs(
        self,
        session: AsyncSession,
        job_id: UUID,
        level: LogLevel | str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[JobLog], int]:
        base_query = select(JobLog).where(JobLog.job_id == job_id)
        if level:
            base_query = base_query.where(JobLog.level == LogLevel(level).value)

        count_query = select(func.count()).select_from(base_query.subquery())
        total = (await session.execute(count_query)).scalar() or 0

        logs_query = (
            base_query.order_by(desc(JobLog.created_at), desc(JobLog.id))
            .offset(offset)
            .limit(limit)
        )
        logs = list((await session.execute(logs_query)).scalars())
        return logs, total

    async def get_job_stats(
        self, session: AsyncSession, owner_id: UUID | None = None
    ) -> JobStatsResponse:
        """Aggregate counts, optionally scoped to one owner."""
        base_filter = Job.owner_id == owner_id if owner_id else true()

        rows = await session.execute(
            select(Job.job_type, Job.status, func.count(Job.id))
            .where(base_filter)
            .group_by(Job.job_type, Job.status)
        )

        by_status: dict[str, int] = {}
        by_type: dict[str, JobTypeStats] = {}
        for job_type, status, count in rows.all():
            by_status[status] = by_status.get(status, 0) + count
            stats = by_type.setdefault(job_type, JobTypeStats())
            stats.total += count
            if status in ("pending", "completed", "failed"):
                setattr(stats, status, getattr(stats, status) + count)

        errors = await session.execute(
            select(func.count(Job.id)).where(
                base_filter, Job.error_message.is_not(None)
            )
        )

        if session.get_bind().dialect.name == "postgresql":
            duration = func.extract("epoch", Job.completed_at - Job.started_at)
        else:
            duration = (
                func.julianday(Job.completed_at) - func.julianday(Job.started_at)
            ) * 86400.0
        avg_result = await session.execute(
            select(
                func.avg(
                    case(
                        (
                            and_(
                                Job.completed_at.is_not(None),
                                Job.started_at.is_not(None),
                            ),
                            duration,
                        ),
                        else_=None,
                    )
                )
            ).where(base_filter)
        )
        avg_seconds = avg_result.scalar()

        return JobStatsResponse(
            total_jobs=sum(by_status.values()),
            by_status=by_status,
            by_type=by_type,
            queue_depth=sum(by_status.get(s, 0) for s in ACTIVE_STATUSES),
            total_errors=errors.scalar() or 0,
            avg_processing_seconds=(
                round(float(avg_seconds), 3) if avg_seconds is not None else None
            ),
        )

    async def delete_jobs(self, session: AsyncSession, job_ids: Sequence[UUID]) -> int:
        """Delete jobs and their log entries in one transaction."""
        if not job_ids:
            return 0
        await session.execute(
            delete(JobLog)
            .where(JobLog.job_id.in_(job_ids))
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(
            delete(Job)
            .where(Job.id.in_(job_ids))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
