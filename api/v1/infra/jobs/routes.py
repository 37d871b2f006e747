"""
Job API endpoints.

Owner endpoints live under ``/jobs`` and only ever touch the caller's jobs.
Worker and maintenance endpoints run with service trust and are not owner
scoped.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from api.config.settings import Settings, SettingsDep
from api.infra.database import get_session
from api.v1.core.exceptions import (
    ForbiddenError,
    NotFoundError,
    ValidationError,
    create_success_response,
)
from api.v1.core.security import (
    Principal,
    PrincipalDep,
    ServicePrincipalDep,
    ensure_owner,
)
from api.v1.infra.cache.service import TTLCache
from api.v1.infra.jobs.maintenance import MaintenanceSweeper
from api.v1.infra.jobs.models import Job, JobStatus, JobType, LogLevel
from api.v1.infra.jobs.notifier import JobEventBroker, job_events
from api.v1.infra.jobs.results import ResultCache
from api.v1.infra.jobs.schemas import (
    AppendLogRequest,
    ClaimNextRequest,
    ClaimRequest,
    CompleteRequest,
    FailRequest,
    JobListResponse,
    JobLogListResponse,
    JobLogResponse,
    JobResponse,
    JobSnapshot,
    JobSubmitRequest,
    JobTypeInfo,
    ProgressRequest,
    SweepResponse,
    WorkerActionResponse,
)
from api.v1.infra.jobs.service import JobService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])
worker_router = APIRouter(prefix="/workers/jobs", tags=["workers"])
maintenance_router = APIRouter(prefix="/admin/maintenance", tags=["maintenance"])

SSE_KEEPALIVE_S = 15.0


def get_event_broker() -> JobEventBroker:
    return job_events


async def _get_owned_job(
    service: JobService,
    session: AsyncSession,
    job_id: UUID,
    principal: Principal,
    allow_service: bool = True,
) -> Job:
    """Load a job the caller owns; service callers may read any job."""
    job = await service.get_job(session, job_id)
    if job is None:
        raise NotFoundError("Job not found", details={"job_id": str(job_id)})
    if not (allow_service and principal.is_service):
        ensure_owner(job.owner_id, principal)
    return job


def format_sse(snapshot: JobSnapshot) -> str:
    """Encode a snapshot as one Server-Sent Events message."""
    return f"id: {snapshot.job_id}\nevent: job\ndata: {snapshot.model_dump_json()}\n\n"


# Owner endpoints


@router.post("", response_model=dict)
async def submit_job(
    job_request: JobSubmitRequest,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Submit a job, reusing an identical active one unless ``dedupe`` is off."""

    job_service = JobService(settings)
    owner_id = principal.owner_uuid

    if job_request.dedupe:
        result = await job_service.submit_or_reuse(
            session, owner_id, job_request, job_request.dedupe_window_s
        )
    else:
        result = await job_service.submit(session, owner_id, job_request)

    logger.info(
        "Job submitted via API",
        extra={
            "job_id": str(result.job_id),
            "job_type": job_request.job_type.value,
            "owner_id": str(owner_id),
            "is_new": result.is_new,
        },
    )

    return create_success_response(data=result.model_dump(mode="json"))


@router.get("", response_model=dict)
async def list_jobs(
    status: JobStatus | None = Query(default=None, description="Filter by status"),
    job_type: JobType | None = Query(default=None, description="Filter by job type"),
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """List the caller's jobs, newest first."""

    job_service = JobService(settings)
    jobs, total = await job_service.list_jobs(
        session, principal.owner_uuid, status, job_type, limit, offset
    )

    response_data = JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        total=total,
        limit=limit,
        offset=offset,
    )

    return create_success_response(data=response_data.model_dump(mode="json"))


@router.get("/cached-result", response_model=dict)
async def get_cached_result(
    job_type: JobType = Query(..., description="Job type"),
    params: str = Query(default="{}", description="Job parameters as JSON"),
    ttl_s: int | None = Query(default=None, ge=0, description="Freshness window"),
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Result of a fresh completed job with identical parameters, if any."""

    try:
        parsed = json.loads(params)
    except ValueError:
        raise ValidationError("params must be valid JSON") from None
    if not isinstance(parsed, dict):
        raise ValidationError("params must be a JSON object")

    cache = ResultCache(settings)
    result = await cache.get_cached_result(
        session, principal.owner_uuid, job_type, parsed, ttl_s
    )

    return create_success_response(data=result.model_dump(mode="json"))


@router.get("/types", response_model=dict)
async def list_job_types(principal: Principal = PrincipalDep) -> dict[str, Any]:
    """Job types that can be submitted, with display names."""

    types = [
        JobTypeInfo(
            job_type=job_type,
            display_name=job_type.display_name,
            description=job_type.description,
        ).model_dump(mode="json")
        for job_type in JobType
    ]
    return create_success_response(data={"job_types": types})


@router.get("/stats/overview", response_model=dict)
async def get_job_stats(
    all_owners: bool = Query(
        default=False, description="Aggregate across owners (service only)"
    ),
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Job statistics for the caller, or globally for service callers."""

    if all_owners and not principal.is_service:
        raise ForbiddenError("Global statistics require service credentials")

    job_service = JobService(settings)
    stats = await job_service.get_job_stats(
        session, None if all_owners else principal.owner_uuid
    )

    return create_success_response(data=stats.model_dump())


@router.get("/events")
async def stream_job_events(
    request: Request,
    principal: Principal = PrincipalDep,
    broker: JobEventBroker = Depends(get_event_broker),
) -> StreamingResponse:
    """
    Server-Sent Events stream of the caller's job changes.

    Best-effort: a client that misses messages reconciles with ``GET /jobs``.
    """
    owner_id = principal.owner_uuid

    async def event_stream() -> AsyncIterator[str]:
        async with broker.subscribe(owner_id) as queue:
            yield ": connected\n\n"
            while not await request.is_disconnected():
                try:
                    snapshot = await asyncio.wait_for(
                        queue.get(), timeout=SSE_KEEPALIVE_S
                    )
                except TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield format_sse(snapshot)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/{job_id}", response_model=dict)
async def get_job(
    job_id: UUID,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get a specific job by ID."""

    job_service = JobService(settings)
    job = await _get_owned_job(job_service, session, job_id, principal)

    return create_success_response(
        data=JobResponse.model_validate(job).model_dump(mode="json")
    )


@router.get("/{job_id}/logs", response_model=dict)
async def list_job_logs(
    job_id: UUID,
    level: LogLevel | None = Query(default=None, description="Filter by level"),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Execution log of a job, newest first."""

    job_service = JobService(settings)
    await _get_owned_job(job_service, session, job_id, principal)
    logs, total = await job_service.list_job_logs(
        session, job_id, level, limit, offset
    )

    response_data = JobLogListResponse(
        logs=[JobLogResponse.model_validate(entry) for entry in logs],
        total=total,
        limit=limit,
        offset=offset,
    )

    return create_success_response(data=response_data.model_dump(mode="json"))


@router.post("/{job_id}/cancel", response_model=dict)
async def cancel_job(
    job_id: UUID,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Cancel a pending or processing job."""

    job_service = JobService(settings)
    # Cancellation is owner-initiated only, service credentials included
    await _get_owned_job(
        job_service, session, job_id, principal, allow_service=False
    )
    success = await job_service.cancel(session, job_id, principal.owner_uuid)

    if not success:
        raise NotFoundError(
            "Job not found or not eligible for cancellation",
            details={"job_id": str(job_id)},
        )

    logger.info(
        "Job cancelled via API",
        extra={"job_id": str(job_id), "user_id": principal.user_id},
    )

    return create_success_response(data={"success": True, "job_id": str(job_id)})


# Worker endpoints


def _action(job_id: UUID, success: bool) -> dict[str, Any]:
    return create_success_response(
        data=WorkerActionResponse(job_id=job_id, success=success).model_dump(
            mode="json"
        )
    )


@worker_router.post("/claim-next", response_model=dict)
async def claim_next_job(
    request: ClaimNextRequest,
    principal: Principal = ServicePrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Claim the most urgent runnable job, or return null when idle."""

    job_service = JobService(settings)
    job = await job_service.claim_next(session, request.worker_id, request.job_types)
    data = JobResponse.model_validate(job).model_dump(mode="json") if job else None
    return create_success_response(data=data)


@worker_router.post("/{job_id}/claim", response_model=dict)
async def claim_job(
    job_id: UUID,
    request: ClaimRequest,
    principal: Principal = ServicePrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    job_service = JobService(settings)
    return _action(job_id, await job_service.claim(session, job_id, request.worker_id))


@worker_router.post("/{job_id}/progress", response_model=dict)
async def report_progress(
    job_id: UUID,
    request: ProgressRequest,
    principal: Principal = ServicePrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    job_service = JobService(settings)
    success = await job_service.report_progress(
        session, job_id, request.percent, request.message
    )
    return _action(job_id, success)


@worker_router.post("/{job_id}/complete", response_model=dict)
async def complete_job(
    job_id: UUID,
    request: CompleteRequest,
    principal: Principal = ServicePrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    job_service = JobService(settings)
    return _action(job_id, await job_service.complete(session, job_id, request.result))


@worker_router.post("/{job_id}/fail", response_model=dict)
async def fail_job(
    job_id: UUID,
    request: FailRequest,
    principal: Principal = ServicePrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    job_service = JobService(settings)
    success = await job_service.fail(
        session,
        job_id,
        request.error_code,
        request.error_message,
        request.error_details,
    )
    return _action(job_id, success)


@worker_router.post("/{job_id}/logs", response_model=dict)
async def append_job_log(
    job_id: UUID,
    request: AppendLogRequest,
    principal: Principal = ServicePrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    job_service = JobService(settings)
    log_id = await job_service.append_log(
        session, job_id, request.level, request.message, request.metadata
    )
    return create_success_response(data={"log_id": str(log_id), "job_id": str(job_id)})


# Maintenance endpoints


def _sweep(operation: str, job_ids: list[UUID]) -> dict[str, Any]:
    return create_success_response(
        data=SweepResponse(
            operation=operation, count=len(job_ids), job_ids=job_ids
        ).model_dump(mode="json")
    )


@maintenance_router.post("/retry", response_model=dict)
async def retry_failed_jobs(
    principal: Principal = ServicePrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Reschedule failed jobs that still have retries left."""
    sweeper = MaintenanceSweeper(settings)
    return _sweep("retry", await sweeper.retry_eligible(session))


@maintenance_router.post("/expire", response_model=dict)
async def expire_stale_jobs(
    principal: Principal = ServicePrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Fail pending jobs past their expiry."""
    sweeper = MaintenanceSweeper(settings)
    return _sweep("expire", await sweeper.expire_stale(session))


@maintenance_router.post("/stuck", response_model=dict)
async def fail_stuck_jobs(
    principal: Principal = ServicePrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Fail processing jobs whose worker went silent."""
    sweeper = MaintenanceSweeper(settings)
    return _sweep("stuck", await sweeper.detect_stuck(session))


@maintenance_router.post("/purge", response_model=dict)
async def purge_old_jobs(
    principal: Principal = ServicePrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Delete terminal jobs older than the retention window."""
    sweeper = MaintenanceSweeper(settings)
    count = await sweeper.purge_old(session)
    return create_success_response(
        data=SweepResponse(operation="purge", count=count).model_dump(mode="json")
    )


@maintenance_router.post("/cache", response_model=dict)
async def purge_expired_cache(
    principal: Principal = ServicePrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Physically remove expired cache entries."""
    count = await TTLCache(settings).purge_expired(session)
    return create_success_response(
        data=SweepResponse(operation="cache", count=count).model_dump(mode="json")
    )


@maintenance_router.post("/run-all", response_model=dict)
async def run_all_sweeps(
    principal: Principal = ServicePrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Run every sweep once."""
    sweeper = MaintenanceSweeper(settings, cache=TTLCache(settings))
    summary = await sweeper.run_all(session)
    logger.info("Maintenance run completed", extra=summary)
    return create_success_response(data=summary)
