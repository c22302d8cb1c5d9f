"""Maintenance Commands - Sweeps and timed out job recovery"""

import typer
from rich.console import Console

from ..client.endpoints import TaskLedgerClient, TaskLedgerError
from ..utils.config_manager import config
from ..utils.formatting import create_sweep_panel, print_error, print_info, print_success

console = Console()
app = typer.Typer(name="maintenance", help="Operational maintenance commands")


@app.command("sweep")
def run_sweep(
    jobs_older_than: str | None = typer.Option(
        None, "--jobs-older-than", help="Delete terminal jobs updated before (ISO 8601)"
    ),
    ledger_older_than: str | None = typer.Option(
        None,
        "--ledger-older-than",
        help="Delete successful ledger records processed before (ISO 8601)",
    ),
):
    """🧹 Delete expired cache entries and rows past retention"""
    base_url = config.get("api.base_url")

    try:
        with TaskLedgerClient(base_url) as client:
            report = client.run_sweep(jobs_older_than, ledger_older_than)
    except TaskLedgerError as e:
        print_error(f"Sweep failed: {e}")
        raise typer.Exit(1) from None

    console.print(create_sweep_panel(report))
    if report.get("errors"):
        raise typer.Exit(1)


@app.command("reclaim")
def reclaim_timed_out(
    limit: int = typer.Option(100, "--limit", "-l", help="Maximum jobs per pass"),
):
    """⏱️ Fail processing jobs whose lease expired"""
    base_url = config.get("api.base_url")

    try:
        with TaskLedgerClient(base_url) as client:
            result = client.reclaim_timed_out(limit=limit)
    except TaskLedgerError as e:
        print_error(f"Reclaim failed: {e}")
        raise typer.Exit(1) from None

    count = result.get("reclaimed_count", 0)
    if count:
        print_success(f"Reclaimed {count} timed out job(s)")
        for job_id in result.get("job_ids", []):
            console.print(f"  • [cyan]{job_id}[/cyan]")
    else:
        print_info("No timed out jobs")
