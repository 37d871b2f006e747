"""StreamVibe Jobs CLI - Main Entry Point"""

from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as package_version

import typer
from rich.console import Console
from rich.panel import Panel

# Import command modules
from .commands import config, jobs, maintenance, webhooks, worker
from .client.base import StreamVibeError
from .client.endpoints import StreamVibeClient
from .utils.config_manager import config as config_manager
from .utils.formatting import print_error, print_info

console = Console()

# Create main Typer app
app = typer.Typer(
    name="streamvibe",
    help="⚙️ StreamVibe Jobs - job queue and webhook ledger operations",
    rich_markup_mode="rich",
)

# Add command subapps
app.add_typer(jobs.app, name="jobs")
app.add_typer(maintenance.app, name="maintenance")
app.add_typer(webhooks.app, name="webhooks")
app.add_typer(worker.app, name="worker")
app.add_typer(config.app, name="config")


def _cli_version() -> str:
    try:
        return package_version("streamvibe-jobs")
    except PackageNotFoundError:
        return "unknown"


@app.command()
def status():
    """📊 Check API connectivity and queue health"""
    base_url = config_manager.get("api.base_url")
    print_info(f"Checking connection to: {base_url}")

    try:
        with StreamVibeClient(base_url) as client:
            health = client.health_check()
    except StreamVibeError as e:
        print_error(f"Failed to connect: {e}")
        console.print(
            Panel(
                f"🚫 [red]Connection Failed[/red]\n\n"
                f"Make sure the StreamVibe API is running at:\n"
                f"[blue]{base_url}[/blue]\n\n"
                f"You can update the API URL with:\n"
                f"[cyan]streamvibe config set api.base_url <url>[/cyan]",
                title="Connection Error",
                border_style="red",
            )
        )
        raise typer.Exit(1) from None

    queue = health.get("queue") or {}
    healthy = health.get("ok", False)
    console.print(
        Panel(
            f"{'🚀 [green]Healthy[/green]' if healthy else '⚠️ [red]Degraded[/red]'}\n\n"
            f"• Version: [cyan]{health.get('version', 'unknown')}[/cyan]\n"
            f"• Environment: [yellow]{health.get('environment', 'unknown')}[/yellow]\n"
            f"• Queue depth: [cyan]{queue.get('queue_depth', '—')}[/cyan]\n"
            f"• Ready jobs: [cyan]{queue.get('ready_jobs', '—')}[/cyan]\n"
            f"• Active workers: [cyan]{queue.get('active_workers', '—')}[/cyan]\n"
            f"• Stuck jobs: [red]{queue.get('stuck_jobs_count', '—')}[/red]\n"
            f"• API URL: [blue]{base_url}[/blue]",
            title="System Status",
            border_style="green" if healthy else "red",
        )
    )
    if not healthy:
        raise typer.Exit(1)


def version_callback(value: bool):
    if value:
        console.print(f"StreamVibe Jobs CLI v{_cli_version()}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
):
    """
    ⚙️ StreamVibe Jobs CLI

    Submit and inspect background jobs, trigger maintenance sweeps, manage
    the billing webhook ledger and run worker processes.
    """


if __name__ == "__main__":
    app()
