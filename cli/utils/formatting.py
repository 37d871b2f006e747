"""Rich Formatting Utilities for CLI Output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "pending": "yellow",
    "processing": "blue",
    "completed": "green",
    "failed": "red",
    "cancelled": "dim",
}


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    """Print warning message with yellow styling"""
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def format_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def create_jobs_table(jobs: list[dict[str, Any]], total: int | None = None) -> Table:
    """Create a formatted table for a jobs page"""
    title = "Jobs" if total is None else f"Jobs ({len(jobs)} of {total})"
    table = Table(title=title, box=box.ROUNDED)

    table.add_column("ID", justify="left", style="cyan", no_wrap=True)
    table.add_column("Type", justify="left", style="magenta")
    table.add_column("Status", justify="center")
    table.add_column("Priority", justify="center", style="yellow")
    table.add_column("Progress", justify="right")
    table.add_column("Retries", justify="center")
    table.add_column("Created", justify="left", style="dim")

    for job in jobs:
        table.add_row(
            str(job.get("id", ""))[:8],
            job.get("job_type", ""),
            format_status(job.get("status", "")),
            str(job.get("priority", "—")),
            f"{job.get('progress_percent', 0)}%",
            f"{job.get('retry_count', 0)}/{job.get('max_retries', 0)}",
            str(job.get("created_at", ""))[:19],
        )

    return table


def create_job_panel(job: dict[str, Any]) -> Panel:
    """Create a detail panel for a single job"""
    lines = [
        f"• Type: [magenta]{job.get('job_type', '')}[/magenta]",
        f"• Status: {format_status(job.get('status', ''))}",
        f"• Priority: [yellow]{job.get('priority', '—')}[/yellow]",
        f"• Progress: [cyan]{job.get('progress_percent', 0)}%[/cyan]"
        + (f" ({job['progress_message']})" if job.get("progress_message") else ""),
        f"• Retries: {job.get('retry_count', 0)}/{job.get('max_retries', 0)}",
        f"• Worker: {job.get('worker_id') or '—'}",
        f"• Scheduled for: {job.get('scheduled_for', '—')}",
        f"• Expires at: {job.get('expires_at', '—')}",
        f"• Created: {job.get('created_at', '—')}",
    ]
    if job.get("completed_at"):
        lines.append(f"• Completed: {job['completed_at']}")
    if job.get("error_code") or job.get("error_message"):
        lines.append(
            f"• Error: [red]{job.get('error_code') or ''} {job.get('error_message') or ''}[/red]"
        )
    if job.get("result") is not None:
        lines.append(f"• Result: [green]{job['result']}[/green]")
    lines.append(f"• Params: [dim]{job.get('params', {})}[/dim]")

    return Panel(
        "\n".join(lines),
        title=f"Job {job.get('id', '')}",
        border_style=STATUS_STYLES.get(job.get("status", ""), "white"),
    )


def create_logs_table(logs: list[dict[str, Any]]) -> Table:
    table = Table(title="Job Log", box=box.ROUNDED)

    table.add_column("Time", justify="left", style="dim", no_wrap=True)
    table.add_column("Level", justify="center")
    table.add_column("Message", justify="left", style="white")

    level_styles = {"debug": "dim", "info": "blue", "warning": "yellow", "error": "red"}
    for entry in logs:
        level = entry.get("level", "")
        style = level_styles.get(level, "white")
        table.add_row(
            str(entry.get("created_at", ""))[:19],
            f"[{style}]{level}[/{style}]",
            entry.get("message", ""),
        )

    return table


def create_stats_panel(stats: dict[str, Any]) -> Panel:
    """Create formatted panel for job statistics"""
    by_status = stats.get("by_status", {})
    avg = stats.get("avg_processing_seconds")
    content = (
        f"📊 [bold blue]Job Statistics[/bold blue]\n\n"
        f"• Total jobs: [cyan]{stats.get('total_jobs', 0)}[/cyan]\n"
        f"• Queue depth: [yellow]{stats.get('queue_depth', 0)}[/yellow]\n"
        f"• With errors: [red]{stats.get('total_errors', 0)}[/red]\n"
        f"• Avg processing: [green]{f'{avg:.1f}s' if avg is not None else '—'}[/green]\n"
    )
    for status, count in sorted(by_status.items()):
        content += f"  {format_status(status)}: {count}\n"

    return Panel(content, title="Job Statistics", border_style="green")


def create_job_types_table(by_type: dict[str, dict[str, int]]) -> Table:
    table = Table(title="By Job Type", box=box.ROUNDED)

    table.add_column("Type", style="magenta")
    table.add_column("Total", justify="right")
    table.add_column("Pending", justify="right", style="yellow")
    table.add_column("Completed", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")

    for job_type, counts in sorted(by_type.items()):
        table.add_row(
            job_type,
            str(counts.get("total", 0)),
            str(counts.get("pending", 0)),
            str(counts.get("completed", 0)),
            str(counts.get("failed", 0)),
        )

    return table


def create_job_type_catalog_table(job_types: list[dict[str, Any]]) -> Table:
    table = Table(title="Job Types", box=box.ROUNDED)

    table.add_column("Type", style="magenta", no_wrap=True)
    table.add_column("Name", style="cyan")
    table.add_column("Description")

    for info in job_types:
        table.add_row(info["job_type"], info["display_name"], info["description"])

    return table


def create_summary_table(title: str, summary: dict[str, Any]) -> Table:
    """Two-column table for sweep and retry summaries"""
    table = Table(title=title, box=box.ROUNDED)
    table.add_column("Operation", style="cyan")
    table.add_column("Count", justify="right", style="yellow")

    for key, value in summary.items():
        table.add_row(key, str(value))

    return table
