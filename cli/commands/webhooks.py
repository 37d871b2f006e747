"""Webhook Ledger Commands"""

import typer
from rich.console import Console

from ..client.base import StreamVibeError
from ..client.endpoints import StreamVibeClient
from ..utils.formatting import create_summary_table, print_error, print_success

console = Console()
app = typer.Typer(name="webhooks", help="Billing webhook ledger administration")


@app.command("retry")
def retry(
    max_retries: int | None = typer.Option(
        None, "--max-retries", min=0, help="Override the attempt cap"
    ),
):
    """🔁 Reprocess unprocessed billing events"""
    try:
        with StreamVibeClient() as client:
            result = client.retry_webhooks(max_retries)
    except StreamVibeError as e:
        print_error(f"Webhook retry failed: {e}")
        raise typer.Exit(1) from None

    console.print(
        create_summary_table(
            "Webhook Retry",
            {
                "attempted": result.get("attempted", 0),
                "succeeded": result.get("succeeded", 0),
                "failed": result.get("failed", 0),
            },
        )
    )


@app.command("purge")
def purge(
    days: int | None = typer.Option(None, "--days", min=1, help="Retention in days"),
):
    """🧹 Delete processed events past retention"""
    try:
        with StreamVibeClient() as client:
            result = client.purge_webhooks(days)
    except StreamVibeError as e:
        print_error(f"Webhook purge failed: {e}")
        raise typer.Exit(1) from None

    print_success(
        f"Purged {result.get('count', 0)} events older than "
        f"{result.get('retention_days')} days"
    )
