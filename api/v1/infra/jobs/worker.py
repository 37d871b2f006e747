"""
Job worker: claims pending jobs and runs the registered handler for each.

Workers coordinate only through the job table. Dequeue reads candidate ids
and claims them one at a time with a conditional update, so any number of
worker processes can poll the same queue. A worker never forces a state on
a job it lost: if the owner cancelled it or the sweeper timed it out, the
final Complete/Fail is a no-op.
"""

import asyncio
import logging
import os
import socket
from collections.abc import Callable, Sequence
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from api.config.logging import add_worker_context, get_logger
from api.config.settings import Settings
from api.infra.database import Database
from api.v1.core.registries import JobRegistry, job_registry
from api.v1.infra.jobs.models import (
    ERROR_JOB,
    ERROR_NO_HANDLER,
    Job,
    JobStatus,
    JobType,
    LogLevel,
)
from api.v1.infra.jobs.notifier import JobNotifier
from api.v1.infra.jobs.service import JobService

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]


class JobFailure(Exception):
    """Raised by handlers to fail a job with a specific error code."""

    def __init__(
        self,
        message: str,
        error_code: str = ERROR_JOB,
        error_details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.error_details = error_details


class JobContext:
    """Handle given to job handlers for reporting back on their job."""

    def __init__(self, job: Job, service: JobService, session_factory: SessionFactory):
        self.job_id: UUID = job.id
        self.owner_id: UUID = job.owner_id
        self.job_type: str = job.job_type
        self.attempt: int = job.retry_count
        self._service = service
        self._session_factory = session_factory
        self.cancelled = False

    async def progress(self, percent: int, message: str | None = None) -> bool:
        """
        Report progress. Returns False once the job has left processing
        (cancelled by its owner or timed out); handlers should stop then.
        """
        async with self._session_factory() as session:
            accepted = await self._service.report_progress(
                session, self.job_id, percent, message
            )
        if not accepted:
            self.cancelled = True
        return accepted

    async def log(
        self, message: str, level: LogLevel | str = LogLevel.INFO, **metadata: Any
    ) -> None:
        async with self._session_factory() as session:
            await self._service.append_log(
                session, self.job_id, level, message, metadata or None
            )

    async def is_cancelled(self) -> bool:
        """Re-read the job and check whether it is still ours to run."""
        if self.cancelled:
            return True
        async with self._session_factory() as session:
            job = await self._service.get_job(session, self.job_id)
        self.cancelled = job is None or job.status != JobStatus.PROCESSING.value
        return self.cancelled


class JobWorker:
    """
    Polling job worker.

    Features:
    - Race-free dequeue by priority then submission order
    - Bounded concurrency per process
    - Handler errors recorded as job failures, retried by the sweeper
    - Graceful shutdown that fails in-flight jobs so they can be retried
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: SessionFactory | None = None,
        registry: JobRegistry | None = None,
        notifier: JobNotifier | None = None,
        job_types: Sequence[JobType] | None = None,
    ):
        self.settings = settings
        if session_factory is None:
            self._database: Database | None = Database(settings)
            session_factory = self._database.SessionLocal
        else:
            self._database = None
        self.session_factory = session_factory
        self.registry = registry or job_registry
        self.service = JobService(settings, notifier)
        self.job_types = list(job_types) if job_types else None
        self.worker_id = f"{socket.gethostname()}-{os.getpid()}-{id(self):x}"
        self.running = False
        self.active_tasks: dict[UUID, asyncio.Task] = {}

    async def start(self) -> None:
        """Run the poll loop until ``stop`` is called."""
        if self.running:
            raise RuntimeError("Worker is already running")

        self.running = True
        add_worker_context(self.worker_id)
        logger.info(
            "Starting job worker",
            extra={
                "worker_id": self.worker_id,
                "concurrency": self.settings.job_concurrency,
                "poll_interval_ms": self.settings.job_poll_interval_ms,
                "handlers": self.registry.list(),
            },
        )

        poll_interval = self.settings.job_poll_interval_ms / 1000
        try:
            while self.running:
                if len(self.active_tasks) >= self.settings.job_concurrency:
                    await asyncio.sleep(poll_interval)
                    continue

                try:
                    job = await self.claim_next()
                except Exception:
                    logger.exception(
                        "Error claiming job", extra={"worker_id": self.worker_id}
                    )
                    await asyncio.sleep(5)
                    continue

                if job is None:
                    await asyncio.sleep(poll_interval)
                    continue

                task = asyncio.create_task(self.process_job(job))
                self.active_tasks[job.id] = task
                task.add_done_callback(
                    lambda _, job_id=job.id: self.active_tasks.pop(job_id, None)
                )
        finally:
            self.running = False

    async def stop(self, timeout_s: float = 30) -> None:
        """Stop polling and wait for in-flight jobs, cancelling stragglers."""
        logger.info("Stopping job worker", extra={"worker_id": self.worker_id})
        self.running = False

        tasks = list(self.active_tasks.values())
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout_s)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning(
                    "Worker stopped with active jobs",
                    extra={"worker_id": self.worker_id, "active_jobs": len(pending)},
                )

        if self._database is not None:
            await self._database.close()

    async def claim_next(self) -> Job | None:
        async with self.session_factory() as session:
            return await self.service.claim_next(
                session, self.worker_id, self.job_types
            )

    async def run_once(self) -> UUID | None:
        """Claim and run a single job inline; returns its id or None."""
        job = await self.claim_next()
        if job is None:
            return None
        await self.process_job(job)
        return job.id

    async def process_job(self, job: Job) -> None:
        """Run the handler for a claimed job and record the outcome."""
        job_logger = get_logger(__name__).bind(
            job_id=str(job.id), job_type=job.job_type, worker_id=self.worker_id
        )

        if not self.registry.has(job.job_type):
            job_logger.warning("No handler registered for job type")
            await self._fail(
                job.id,
                ERROR_NO_HANDLER,
                f"No handler registered for job type: {job.job_type}",
            )
            return

        handler = self.registry.get(job.job_type)
        context = JobContext(job, self.service, self.session_factory)

        try:
            job_logger.info("Processing job started", attempt=job.retry_count)
            result = await handler.handle(context, dict(job.params or {}))
        except asyncio.CancelledError:
            job_logger.warning("Job interrupted by worker shutdown")
            await self._fail(job.id, ERROR_JOB, "Worker shut down during processing")
            raise
        except Exception as e:
            error_code = getattr(e, "error_code", None) or ERROR_JOB
            error_details = getattr(e, "error_details", None) or {
                "exception": type(e).__name__
            }
            job_logger.exception("Job processing failed", error_code=error_code)
            await self._fail(job.id, error_code, str(e) or type(e).__name__, error_details)
            return

        async with self.session_factory() as session:
            completed = await self.service.complete(session, job.id, result)

        if completed:
            job_logger.info("Processing job completed successfully")
        else:
            job_logger.info("Job left processing before completion, result discarded")

    async def _fail(
        self,
        job_id: UUID,
        error_code: str,
        error_message: str,
        error_details: dict[str, Any] | None = None,
    ) -> bool:
        async with self.session_factory() as session:
            return await self.service.fail(
                session, job_id, error_code, error_message, error_details
            )
