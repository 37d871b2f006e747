"""Job Commands - submit, inspect and cancel background jobs"""

import json

import typer
from rich.console import Console

from ..client.base import StreamVibeError
from ..client.endpoints import StreamVibeClient
from ..utils.config_manager import config
from ..utils.formatting import (
    create_job_panel,
    create_job_type_catalog_table,
    create_job_types_table,
    create_jobs_table,
    create_logs_table,
    create_stats_panel,
    print_error,
    print_info,
    print_success,
    print_warning,
)

console = Console()
app = typer.Typer(name="jobs", help="Background job management")


@app.command("list")
def list_jobs(
    status: str | None = typer.Option(None, "--status", "-s", help="Filter by status"),
    job_type: str | None = typer.Option(None, "--type", "-t", help="Filter by job type"),
    limit: int | None = typer.Option(None, "--limit", "-l", help="Page size"),
    offset: int = typer.Option(0, "--offset", help="Results offset"),
):
    """📋 List your jobs, newest first"""
    page_size = limit or int(config.get("display.items_per_page", 20))
    try:
        with StreamVibeClient() as client:
            data = client.list_jobs(status, job_type, page_size, offset)
    except StreamVibeError as e:
        print_error(f"Failed to list jobs: {e}")
        raise typer.Exit(1) from None

    jobs = data.get("jobs", [])
    if not jobs:
        print_info("No jobs found")
        return
    console.print(create_jobs_table(jobs, data.get("total")))


@app.command("show")
def show_job(job_id: str = typer.Argument(..., help="Job ID")):
    """🔍 Show job details"""
    try:
        with StreamVibeClient() as client:
            job = client.get_job(job_id)
    except StreamVibeError as e:
        print_error(f"Failed to get job: {e}")
        raise typer.Exit(1) from None

    console.print(create_job_panel(job))


@app.command("logs")
def job_logs(
    job_id: str = typer.Argument(..., help="Job ID"),
    level: str | None = typer.Option(None, "--level", help="Filter by level"),
    limit: int = typer.Option(50, "--limit", "-l", help="Entries to show"),
):
    """📜 Show a job's execution log"""
    try:
        with StreamVibeClient() as client:
            data = client.get_job_logs(job_id, level, limit)
    except StreamVibeError as e:
        print_error(f"Failed to get job logs: {e}")
        raise typer.Exit(1) from None

    logs = data.get("logs", [])
    if not logs:
        print_info("No log entries")
        return
    console.print(create_logs_table(logs))


@app.command("submit")
def submit_job(
    job_type: str = typer.Argument(..., help="Job type, e.g. platform_sync"),
    params: str = typer.Option("{}", "--params", "-p", help="Parameters as JSON"),
    priority: int | None = typer.Option(
        None, "--priority", min=1, max=10, help="1-10, higher is more urgent"
    ),
    no_dedupe: bool = typer.Option(
        False, "--no-dedupe", help="Always create a new job"
    ),
):
    """🚀 Submit a job"""
    try:
        parsed = json.loads(params)
    except ValueError:
        print_error("--params must be valid JSON")
        raise typer.Exit(1) from None
    if not isinstance(parsed, dict):
        print_error("--params must be a JSON object")
        raise typer.Exit(1)

    try:
        with StreamVibeClient() as client:
            result = client.submit_job(job_type, parsed, priority, dedupe=not no_dedupe)
    except StreamVibeError as e:
        print_error(f"Failed to submit job: {e}")
        if e.error_type == "QUOTA_EXCEEDED":
            print_info("Wait for active jobs to finish or cancel some first")
        raise typer.Exit(1) from None

    if result.get("is_new", True):
        print_success(f"Job submitted: {result['job_id']}")
    else:
        print_warning(
            f"Identical job already {result.get('status')}: {result['job_id']}"
        )


@app.command("cancel")
def cancel_job(job_id: str = typer.Argument(..., help="Job ID")):
    """🛑 Cancel a pending or processing job"""
    try:
        with StreamVibeClient() as client:
            client.cancel_job(job_id)
    except StreamVibeError as e:
        print_error(f"Failed to cancel job: {e}")
        raise typer.Exit(1) from None

    print_success(f"Job cancelled: {job_id}")


@app.command("stats")
def job_stats(
    all_owners: bool = typer.Option(
        False, "--all", help="Global statistics (service token required)"
    ),
):
    """📊 Show job statistics"""
    try:
        with StreamVibeClient() as client:
            stats = client.get_job_stats(all_owners)
    except StreamVibeError as e:
        print_error(f"Failed to get job statistics: {e}")
        raise typer.Exit(1) from None

    console.print(create_stats_panel(stats))
    if stats.get("by_type"):
        console.print(create_job_types_table(stats["by_type"]))


@app.command("types")
def job_types():
    """🗂️ List the job types you can submit"""
    try:
        with StreamVibeClient() as client:
            types = client.list_job_types()
    except StreamVibeError as e:
        print_error(f"Failed to list job types: {e}")
        raise typer.Exit(1) from None

    console.print(create_job_type_catalog_table(types))
