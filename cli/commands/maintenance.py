"""Maintenance Commands - trigger sweeps from cron or by hand"""

import typer
from rich.console import Console

from ..client.base import StreamVibeError
from ..client.endpoints import StreamVibeClient
from ..utils.formatting import create_summary_table, print_error, print_success

console = Console()
app = typer.Typer(name="maintenance", help="Job queue maintenance sweeps")


def _run(operation: str, label: str):
    try:
        with StreamVibeClient() as client:
            result = client.run_maintenance(operation)
    except StreamVibeError as e:
        print_error(f"{label} failed: {e}")
        raise typer.Exit(1) from None

    print_success(f"{label}: {result.get('count', 0)} affected")
    return result


@app.command("retry")
def retry():
    """🔁 Reschedule failed jobs that still have retries left"""
    _run("retry", "Retry sweep")


@app.command("expire")
def expire():
    """⌛ Fail pending jobs past their expiry"""
    _run("expire", "Expiry sweep")


@app.command("stuck")
def stuck():
    """🧯 Fail processing jobs whose worker went silent"""
    _run("stuck", "Stuck job sweep")


@app.command("purge")
def purge():
    """🧹 Delete old terminal jobs"""
    _run("purge", "Job purge")


@app.command("purge-cache")
def purge_cache():
    """🧹 Delete expired cache entries"""
    _run("cache", "Cache purge")


@app.command("run-all")
def run_all():
    """⚙️ Run every sweep once"""
    try:
        with StreamVibeClient() as client:
            summary = client.run_maintenance("run-all")
    except StreamVibeError as e:
        print_error(f"Maintenance run failed: {e}")
        raise typer.Exit(1) from None

    console.print(create_summary_table("Maintenance Run", summary))
