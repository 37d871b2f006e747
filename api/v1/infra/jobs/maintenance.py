"""
Maintenance sweeps over the job table.

Each sweep is idempotent and safe to run concurrently with workers: rows are
selected with query-time clock conditions and mutated with status-guarded
updates, so a job that moved on in the meantime is simply skipped.
"""

import logging
from collections import defaultdict
from datetime import timedelta
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from api.config.settings import Settings
from api.infra.database import utcnow
from api.v1.infra.jobs.models import (
    ERROR_EXPIRED,
    ERROR_TIMEOUT,
    Job,
    JobStatus,
)
from api.v1.infra.jobs.notifier import JobNotifier, snapshot_from_row
from api.v1.infra.jobs.service import SNAPSHOT_COLUMNS, JobService

if TYPE_CHECKING:
    from api.v1.infra.cache.service import TTLCache

logger = logging.getLogger(__name__)

EXPIRED_MESSAGE = "Job expired before processing"
STUCK_MESSAGE = "Job stuck in processing state"


class MaintenanceSweeper:
    """Retry, expiry, stuck detection and retention for background jobs."""

    def __init__(
        self,
        settings: Settings,
        notifier: JobNotifier | None = None,
        cache: "TTLCache | None" = None,
    ):
        self.settings = settings
        self.notifier = notifier or JobNotifier()
        self.jobs = JobService(settings, self.notifier)
        self.cache = cache

    async def retry_eligible(self, session: AsyncSession) -> list[UUID]:
        """
        Reset retryable failed jobs to pending with linear backoff.

        A job qualifies when it still has retries left, has not been touched
        for the cooldown period and has not expired. The next attempt is
        scheduled at ``now + new_retry_count * base_delay``.
        """
        now = utcnow()
        cooldown_cutoff = now - timedelta(seconds=self.settings.job_retry_cooldown_s)

        candidates = await session.execute(
            select(Job.id, Job.retry_count).where(
                Job.status == JobStatus.FAILED.value,
                Job.retry_count < Job.max_retries,
                Job.updated_at < cooldown_cutoff,
                Job.expires_at > now,
            )
        )

        by_attempt: dict[int, list[UUID]] = defaultdict(list)
        for job_id, retry_count in candidates.all():
            by_attempt[retry_count].append(job_id)

        base_delay = self.settings.job_retry_base_delay_s
        rows = []
        for retry_count, job_ids in sorted(by_attempt.items()):
            next_attempt = retry_count + 1
            result = await session.execute(
                update(Job)
                .where(
                    Job.id.in_(job_ids),
                    Job.status == JobStatus.FAILED.value,
                    Job.retry_count == retry_count,
                    Job.retry_count < Job.max_retries,
                )
                .values(
                    status=JobStatus.PENDING.value,
                    retry_count=next_attempt,
                    scheduled_for=now + timedelta(seconds=next_attempt * base_delay),
                    error_code=None,
                    error_message=None,
                    error_details=None,
                    completed_at=None,
                    started_at=None,
                    worker_id=None,
                    progress_percent=0,
                    progress_message=None,
                    updated_at=now,
                )
                .returning(*SNAPSHOT_COLUMNS)
                .execution_options(synchronize_session=False)
            )
            rows.extend(result.all())

        return await self._finish(session, "retry", rows)

    async def expire_stale(self, session: AsyncSession) -> list[UUID]:
        """Fail pending jobs whose expiry has passed; no retry is consumed."""
        now = utcnow()
        result = await session.execute(
            update(Job)
            .where(
                Job.status == JobStatus.PENDING.value,
                Job.expires_at <= now,
            )
            .values(
                status=JobStatus.FAILED.value,
                completed_at=now,
                error_code=ERROR_EXPIRED,
                error_message=EXPIRED_MESSAGE,
                updated_at=now,
            )
            .returning(*SNAPSHOT_COLUMNS)
            .execution_options(synchronize_session=False)
        )
        return await self._finish(session, "expire", result.all())

    async def detect_stuck(self, session: AsyncSession) -> list[UUID]:
        """Fail processing jobs whose worker has been silent past the timeout."""
        now = utcnow()
        cutoff = now - timedelta(seconds=self.settings.job_stuck_timeout_s)
        result = await session.execute(
            update(Job)
            .where(
                Job.status == JobStatus.PROCESSING.value,
                Job.started_at < cutoff,
            )
            .values(
                status=JobStatus.FAILED.value,
                completed_at=now,
                error_code=ERROR_TIMEOUT,
                error_message=STUCK_MESSAGE,
                updated_at=now,
            )
            .returning(*SNAPSHOT_COLUMNS)
            .execution_options(synchronize_session=False)
        )
        return await self._finish(session, "stuck", result.all())

    async def purge_old(self, session: AsyncSession) -> int:
        """
        Delete terminal jobs finished before the retention window.

        Terminal means completed, cancelled, or failed with no retry left
        (retries exhausted or the job has expired). Log entries go with them.
        """
        now = utcnow()
        cutoff = now - timedelta(days=self.settings.job_retention_days)
        result = await session.execute(
            select(Job.id).where(
                Job.completed_at < cutoff,
                or_(
                    Job.status.in_(
                        [JobStatus.COMPLETED.value, JobStatus.CANCELLED.value]
                    ),
                    and_(
                        Job.status == JobStatus.FAILED.value,
                        or_(
                            Job.retry_count >= Job.max_retries,
                            Job.expires_at <= now,
                        ),
                    ),
                ),
            )
        )
        job_ids = list(result.scalars())
        deleted = await self.jobs.delete_jobs(session, job_ids)
        await session.commit()

        if deleted:
            logger.info(
                "Purged old jobs",
                extra={
                    "count": deleted,
                    "retention_days": self.settings.job_retention_days,
                },
            )
        return deleted

    async def run_all(self, session: AsyncSession) -> dict[str, int]:
        """Run every sweep once, in dependency order."""
        summary = {
            "stuck": len(await self.detect_stuck(session)),
            "expire": len(await self.expire_stale(session)),
            "retry": len(await self.retry_eligible(session)),
            "purge": await self.purge_old(session),
        }
        if self.cache is not None:
            summary["cache"] = await self.cache.purge_expired(session)
        return summary

    async def _finish(self, session: AsyncSession, operation: str, rows) -> list[UUID]:
        await self.notifier.publish_many(
            session, [snapshot_from_row(row) for row in rows]
        )
        await session.commit()

        job_ids = [row.id for row in rows]
        if job_ids:
            logger.info(
                "Maintenance sweep applied",
                extra={"operation": operation, "count": len(job_ids)},
            )
        return job_ids
