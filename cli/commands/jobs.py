"""Job Commands - Enqueue, inspect and cancel background jobs"""

import json

import typer
from rich.console import Console

from ..client.endpoints import TaskLedgerClient, TaskLedgerError
from ..utils.config_manager import config
from ..utils.formatting import (
    create_job_panel,
    create_jobs_table,
    create_stats_table,
    print_error,
    print_info,
    print_success,
)

console = Console()
app = typer.Typer(name="jobs", help="Background job queue commands")


@app.command("enqueue")
def enqueue_job(
    type: str = typer.Argument(..., help="Job type (handler name)"),
    payload: str = typer.Option("{}", "--payload", "-p", help="JSON payload"),
    priority: str | None = typer.Option(
        None, "--priority", help="low, normal, high or urgent"
    ),
    max_retries: int | None = typer.Option(None, "--max-retries", help="Retry budget"),
    timeout: int | None = typer.Option(
        None, "--timeout", help="Processing timeout in seconds"
    ),
    scheduled_for: str | None = typer.Option(
        None, "--at", help="Earliest run time (ISO 8601)"
    ),
):
    """➕ Enqueue a new job"""
    try:
        payload_data = json.loads(payload)
    except json.JSONDecodeError as e:
        print_error(f"Payload is not valid JSON: {e}")
        raise typer.Exit(1) from None
    if not isinstance(payload_data, dict):
        print_error("Payload must be a JSON object")
        raise typer.Exit(1)

    priority = priority or config.get("jobs.default_priority", "normal")
    base_url = config.get("api.base_url")

    try:
        with TaskLedgerClient(base_url) as client:
            result = client.enqueue_job(
                type,
                payload_data,
                priority=priority,
                max_retries=max_retries,
                timeout_seconds=timeout,
                scheduled_for=scheduled_for,
            )
    except TaskLedgerError as e:
        print_error(f"Failed to enqueue job: {e}")
        raise typer.Exit(1) from None

    print_success(f"Enqueued job {result['job_id']} ({result['status']})")


@app.command("show")
def show_job(job_id: str = typer.Argument(..., help="Job ID")):
    """🔍 Show a job"""
    base_url = config.get("api.base_url")

    try:
        with TaskLedgerClient(base_url) as client:
            job = client.get_job(job_id)
    except TaskLedgerError as e:
        print_error(f"Failed to get job: {e}")
        raise typer.Exit(1) from None

    console.print(create_job_panel(job))


@app.command("list")
def list_jobs(
    status: list[str] | None = typer.Option(
        None, "--status", "-s", help="Filter by status (repeatable)"
    ),
    type: str | None = typer.Option(None, "--type", "-t", help="Filter by job type"),
    limit: int | None = typer.Option(None, "--limit", "-l", help="Maximum results"),
    offset: int = typer.Option(0, "--offset", help="Results offset"),
):
    """📋 List jobs"""
    base_url = config.get("api.base_url")
    limit = limit or int(config.get("display.jobs_per_page", 20))

    try:
        with TaskLedgerClient(base_url) as client:
            data = client.list_jobs(status=status, type=type, limit=limit, offset=offset)
    except TaskLedgerError as e:
        print_error(f"Failed to list jobs: {e}")
        raise typer.Exit(1) from None

    jobs = data.get("jobs", [])
    if not jobs:
        print_info("No jobs found")
        return

    console.print(create_jobs_table(jobs, data.get("total")))


@app.command("cancel")
def cancel_job(job_id: str = typer.Argument(..., help="Job ID")):
    """🛑 Cancel a pending job"""
    base_url = config.get("api.base_url")

    try:
        with TaskLedgerClient(base_url) as client:
            job = client.cancel_job(job_id)
    except TaskLedgerError as e:
        print_error(f"Failed to cancel job: {e}")
        raise typer.Exit(1) from None

    print_success(f"Job {job['id']} cancelled")


@app.command("stats")
def show_stats(
    type: str | None = typer.Option(None, "--type", "-t", help="Restrict to a job type"),
):
    """📊 Show job counts per status"""
    base_url = config.get("api.base_url")

    try:
        with TaskLedgerClient(base_url) as client:
            stats = client.get_job_stats(type=type)
    except TaskLedgerError as e:
        print_error(f"Failed to get job statistics: {e}")
        raise typer.Exit(1) from None

    console.print(create_stats_table(stats))
