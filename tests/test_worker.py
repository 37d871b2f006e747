from typing import Any

import pytest

from api.v1.core.registries import JobRegistry
from api.v1.infra.jobs.models import (
    ERROR_JOB,
    ERROR_NO_HANDLER,
    JobStatus,
    JobType,
)
from api.v1.infra.jobs.schemas import JobCreate
from api.v1.infra.jobs.service import JobService
from api.v1.infra.jobs.worker import JobFailure, JobWorker


class EchoHandler:
    """Reports progress, logs, and echoes its params back as the result."""

    def __init__(self):
        self.calls: list[dict[str, Any]] = []

    async def handle(self, context, params):
        self.calls.append(params)
        await context.progress(50, "halfway")
        await context.log("synced posts", count=3)
        return {"echo": params, "attempt": context.attempt}


class QuotaHandler:
    async def handle(self, context, params):
        raise JobFailure(
            "Monthly quota reached",
            error_code="QUOTA_EXCEEDED",
            error_details={"limit": 100},
        )


class BrokenHandler:
    async def handle(self, context, params):
        raise ValueError("unexpected payload")


class CancellingHandler:
    """Simulates the owner cancelling while the handler is running."""

    def __init__(self, service: JobService, session_factory):
        self.service = service
        self.session_factory = session_factory
        self.progress_accepted: bool | None = None

    async def handle(self, context, params):
        async with self.session_factory() as session:
            assert await self.service.cancel(session, context.job_id, context.owner_id)
        self.progress_accepted = await context.progress(90)
        assert await context.is_cancelled()
        return {"late": True}


@pytest.fixture
def registry():
    return JobRegistry()


@pytest.fixture
def job_service(test_settings):
    return JobService(test_settings)


@pytest.fixture
def worker(test_settings, session_factory, registry):
    return JobWorker(test_settings, session_factory=session_factory, registry=registry)


async def submit(service, session, owner_id, job_type, params=None):
    submitted = await service.submit(
        session, owner_id, JobCreate(job_type=job_type, params=params or {})
    )
    return submitted.job_id


async def test_run_once_when_idle(worker):
    assert await worker.run_once() is None


async def test_handler_result_completes_job(
    worker, registry, job_service, db_session, owner_id
):
    handler = EchoHandler()
    registry.register(JobType.PLATFORM_SYNC.value, handler)
    job_id = await submit(
        job_service, db_session, owner_id, JobType.PLATFORM_SYNC, {"account": "acc1"}
    )

    assert await worker.run_once() == job_id

    assert handler.calls == [{"account": "acc1"}]
    job = await job_service.get_job(db_session, job_id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.result == {"echo": {"account": "acc1"}, "attempt": 0}
    assert job.progress_percent == 100
    assert job.worker_id == worker.worker_id

    logs, total = await job_service.list_job_logs(db_session, job_id)
    assert total == 1
    assert logs[0].message == "synced posts"
    assert logs[0].level == "info"
    assert logs[0].meta == {"count": 3}


async def test_missing_handler_fails_job(worker, job_service, db_session, owner_id):
    job_id = await submit(job_service, db_session, owner_id, JobType.TOKEN_REFRESH)

    assert await worker.run_once() == job_id

    job = await job_service.get_job(db_session, job_id)
    assert job.status == JobStatus.FAILED.value
    assert job.error_code == ERROR_NO_HANDLER
    assert "token_refresh" in job.error_message


async def test_job_failure_carries_code_and_details(
    worker, registry, job_service, db_session, owner_id
):
    registry.register(JobType.QUOTA_RESET.value, QuotaHandler())
    job_id = await submit(job_service, db_session, owner_id, JobType.QUOTA_RESET)

    await worker.run_once()

    job = await job_service.get_job(db_session, job_id)
    assert job.status == JobStatus.FAILED.value
    assert job.error_code == "QUOTA_EXCEEDED"
    assert job.error_message == "Monthly quota reached"
    assert job.error_details == {"limit": 100}
    assert job.retry_count == 0


async def test_unexpected_exception_fails_job(
    worker, registry, job_service, db_session, owner_id
):
    registry.register(JobType.AI_ANALYSIS.value, BrokenHandler())
    job_id = await submit(job_service, db_session, owner_id, JobType.AI_ANALYSIS)

    await worker.run_once()

    job = await job_service.get_job(db_session, job_id)
    assert job.status == JobStatus.FAILED.value
    assert job.error_code == ERROR_JOB
    assert job.error_message == "unexpected payload"
    assert job.error_details == {"exception": "ValueError"}


async def test_cancelled_job_discards_result(
    worker, registry, job_service, session_factory, db_session, owner_id
):
    handler = CancellingHandler(job_service, session_factory)
    registry.register(JobType.SEO_SUBMISSION.value, handler)
    job_id = await submit(job_service, db_session, owner_id, JobType.SEO_SUBMISSION)

    await worker.run_once()

    assert handler.progress_accepted is False
    job = await job_service.get_job(db_session, job_id)
    assert job.status == JobStatus.CANCELLED.value
    assert job.result is None


async def test_worker_restricted_to_job_types(
    test_settings, session_factory, registry, job_service, db_session, owner_id
):
    registry.register(JobType.SEO_SUBMISSION.value, EchoHandler())
    await submit(job_service, db_session, owner_id, JobType.PLATFORM_SYNC)
    seo_id = await submit(job_service, db_session, owner_id, JobType.SEO_SUBMISSION)

    worker = JobWorker(
        test_settings,
        session_factory=session_factory,
        registry=registry,
        job_types=[JobType.SEO_SUBMISSION],
    )

    assert await worker.run_once() == seo_id
    assert await worker.run_once() is None


async def test_start_twice_is_rejected(worker):
    worker.running = True
    with pytest.raises(RuntimeError, match="already running"):
        await worker.start()
