"""Worker Commands - run a job worker process"""

import asyncio
import importlib
import signal

import typer
from rich.console import Console

from ..utils.formatting import print_error, print_info, print_success

console = Console()
app = typer.Typer(name="worker", help="Job worker processes")


async def _serve(worker) -> None:
    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except NotImplementedError:
            # Signal handlers are unavailable on some platforms
            pass

    runner = asyncio.create_task(worker.start())
    stopper = asyncio.create_task(stop_requested.wait())
    await asyncio.wait({runner, stopper}, return_when=asyncio.FIRST_COMPLETED)

    await worker.stop()
    stopper.cancel()
    if not runner.done():
        runner.cancel()
    await asyncio.gather(runner, stopper, return_exceptions=True)


@app.command("run")
def run(
    handlers: list[str] = typer.Option(
        [],
        "--handlers",
        "-H",
        help="Module that registers job handlers on import (repeatable)",
    ),
    job_types: list[str] = typer.Option(
        [], "--type", "-t", help="Only claim these job types (repeatable)"
    ),
    concurrency: int | None = typer.Option(
        None, "--concurrency", "-c", min=1, help="In-flight jobs"
    ),
    once: bool = typer.Option(False, "--once", help="Run a single job then exit"),
):
    """👷 Claim and run jobs until interrupted"""
    from api.config.logging import setup_logging
    from api.config.settings import settings
    from api.v1.core.registries import job_registry
    from api.v1.infra.jobs.models import JobType
    from api.v1.infra.jobs.worker import JobWorker

    for module in handlers:
        try:
            importlib.import_module(module)
        except ImportError as e:
            print_error(f"Cannot import handler module {module}: {e}")
            raise typer.Exit(1) from None

    try:
        types = [JobType(t) for t in job_types]
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(1) from None

    setup_logging(service="worker")
    worker_settings = (
        settings.model_copy(update={"job_concurrency": concurrency})
        if concurrency
        else settings
    )
    worker = JobWorker(worker_settings, job_types=types or None)

    if not job_registry.list():
        print_info("No job handlers registered; claimed jobs will fail with NO_HANDLER")

    if once:
        async def run_single():
            try:
                return await worker.run_once()
            finally:
                await worker.stop()

        job_id = asyncio.run(run_single())
        if job_id is None:
            print_info("No runnable job")
        else:
            print_success(f"Processed job {job_id}")
        return

    print_info(f"Starting worker {worker.worker_id}")
    asyncio.run(_serve(worker))
    print_success("Worker stopped")
