"""
Read-through result cache over completed jobs.

The job history is the cache: a fresh completed job with structurally equal
parameters answers the request without new work being submitted.
"""

import logging
from datetime import timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.config.settings import Settings
from api.infra.database import utcnow
from api.v1.infra.jobs.models import Job, JobStatus, JobType
from api.v1.infra.jobs.params import params_equal, params_hash
from api.v1.infra.jobs.schemas import CachedResultResponse

logger = logging.getLogger(__name__)


class ResultCache:
    def __init__(self, settings: Settings):
        self.settings = settings

    async def get_cached_result(
        self,
        session: AsyncSession,
        owner_id: UUID,
        job_type: JobType | str,
        params: dict[str, Any],
        ttl_s: int | None = None,
    ) -> CachedResultResponse:
        """Newest completed result within ``ttl_s`` of now, or a miss."""
        ttl = self.settings.job_result_cache_ttl_s if ttl_s is None else ttl_s
        now = utcnow()

        result = await session.execute(
            select(Job)
            .where(
                Job.owner_id == owner_id,
                Job.job_type == JobType(job_type).value,
                Job.params_hash == params_hash(params),
                Job.status == JobStatus.COMPLETED.value,
                Job.completed_at >= now - timedelta(seconds=ttl),
                Job.result.is_not(None),
            )
            .order_by(desc(Job.completed_at))
        )

        for job in result.scalars():
            if params_equal(job.params, params):
                age = (now - job.completed_at).total_seconds()
                logger.debug(
                    "Result cache hit",
                    extra={"job_id": str(job.id), "age_seconds": age},
                )
                return CachedResultResponse(
                    hit=True,
                    job_id=job.id,
                    result=job.result,
                    completed_at=job.completed_at,
                    age_seconds=age,
                )

        return CachedResultResponse(hit=False)
