import logging
from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from api.config.settings import Settings, SettingsDep
from api.infra.database import get_session
from api.v1.core.exceptions import create_success_response
from api.v1.infra.jobs.models import ACTIVE_STATUSES, Job, JobStatus

logger = logging.getLogger(__name__)
router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class QueueHealth(BaseModel):
    """Job queue health, derived from the job table."""

    active_workers: int
    last_activity_age_seconds: int | None = None
    stuck_jobs_count: int = 0
    queue_depth: int = 0
    ready_jobs: int = 0


class HealthResponse(BaseModel):
    """Health response with database and queue status."""

    ok: bool
    version: str
    environment: str
    timestamp: str
    database: DatabaseHealth
    queue: QueueHealth | None = None


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep, session: AsyncSession = Depends(get_session)
):
    """Health check endpoint with database and queue status."""

    timestamp = datetime.now(UTC).isoformat()

    db_health = await _check_database_health(session)

    queue_health = None
    if db_health.connected:
        try:
            queue_health = await _check_queue_health(session, settings)
        except Exception:
            # Queue statistics are informational and never fail the check
            logger.warning("Queue health check failed", exc_info=True)
            await session.rollback()

    health_data = HealthResponse(
        ok=db_health.connected,
        version=settings.version,
        environment=settings.environment,
        timestamp=timestamp,
        database=db_health,
        queue=queue_health,
    )

    return create_success_response(data=health_data.model_dump())


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await session.execute(text("SELECT 1"))

        end_time = datetime.now(UTC)
        response_time_ms = (end_time - start_time).total_seconds() * 1000

        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except Exception as e:
        return DatabaseHealth(connected=False, error=str(e))


async def _check_queue_health(session: AsyncSession, settings: Settings) -> QueueHealth:
    """Summarise worker activity and backlog."""
    now = datetime.now(UTC)
    stuck_cutoff = now - timedelta(seconds=settings.job_stuck_timeout_s)

    # Workers holding a job that is not yet considered stuck
    active_workers_result = await session.execute(
        select(func.count(func.distinct(Job.worker_id))).where(
            Job.status == JobStatus.PROCESSING.value, Job.started_at >= stuck_cutoff
        )
    )
    active_workers = active_workers_result.scalar() or 0

    last_activity_result = await session.execute(
        select(func.max(Job.updated_at)).where(
            Job.status == JobStatus.PROCESSING.value
        )
    )
    last_activity = last_activity_result.scalar()
    last_activity_age_seconds = None
    if last_activity is not None:
        if last_activity.tzinfo is None:
            last_activity = last_activity.replace(tzinfo=UTC)
        last_activity_age_seconds = int((now - last_activity).total_seconds())

    stuck_jobs_result = await session.execute(
        select(func.count(Job.id)).where(
            Job.status == JobStatus.PROCESSING.value, Job.started_at < stuck_cutoff
        )
    )

    queue_depth_result = await session.execute(
        select(func.count(Job.id)).where(Job.status.in_(ACTIVE_STATUSES))
    )

    ready_result = await session.execute(
        select(func.count(Job.id)).where(
            Job.status == JobStatus.PENDING.value,
            Job.scheduled_for <= now,
            Job.expires_at > now,
        )
    )

    return QueueHealth(
        active_workers=active_workers,
        last_activity_age_seconds=last_activity_age_seconds,
        stuck_jobs_count=stuck_jobs_result.scalar() or 0,
        queue_depth=queue_depth_result.scalar() or 0,
        ready_jobs=ready_result.scalar() or 0,
    )
