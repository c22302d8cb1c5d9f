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
    """Create a formatted table for a jobs list"""
    title = "Jobs" if total is None else f"Jobs ({len(jobs)} of {total})"
    table = Table(title=title, box=box.ROUNDED)

    table.add_column("ID", justify="left", style="cyan", no_wrap=True)
    table.add_column("Type", justify="left", style="magenta")
    table.add_column("Status", justify="center")
    table.add_column("Priority", justify="center", style="yellow")
    table.add_column("Retries", justify="right")
    table.add_column("Progress", justify="right")
    table.add_column("Created", justify="left", style="dim")

    for job in jobs:
        table.add_row(
            str(job.get("id", ""))[:8],  # Short ID
            job.get("type", ""),
            format_status(job.get("status", "")),
            str(job.get("priority", "")),
            f"{job.get('retries', 0)}/{job.get('max_retries', 0)}",
            f"{job.get('progress', 0)}%",
            str(job.get("created_at", ""))[:19],
        )

    return table


def create_job_panel(job: dict[str, Any]) -> Panel:
    """Create a detail panel for a single job"""
    lines = [
        f"• ID: [cyan]{job.get('id')}[/cyan]",
        f"• Type: [magenta]{job.get('type')}[/magenta]",
        f"• Status: {format_status(job.get('status', ''))}",
        f"• Priority: [yellow]{job.get('priority')}[/yellow]",
        f"• Retries: {job.get('retries', 0)}/{job.get('max_retries', 0)}"
        f" (claims: {job.get('attempts', 0)})",
        f"• Progress: {job.get('progress', 0)}%",
        f"• Timeout: {job.get('timeout_seconds')}s",
    ]
    if job.get("locked_by"):
        lines.append(f"• Worker: [blue]{job['locked_by']}[/blue]")
        lines.append(f"• Lease expires: {job.get('lease_expires_at')}")
    if job.get("scheduled_for"):
        lines.append(f"• Scheduled for: {job['scheduled_for']}")
    if job.get("error"):
        lines.append(f"• Error: [red]{job['error']}[/red] ({job.get('error_code')})")
    if job.get("result") is not None:
        lines.append(f"• Result: [green]{job['result']}[/green]")
    lines.append(f"• Created: [dim]{job.get('created_at')}[/dim]")
    if job.get("completed_at"):
        lines.append(f"• Finished: [dim]{job['completed_at']}[/dim]")

    return Panel("\n".join(lines), title="Job", border_style="cyan")


def create_stats_table(stats: dict[str, Any]) -> Table:
    """Create a table of job counts per status"""
    table = Table(title="Job Statistics", box=box.ROUNDED)
    table.add_column("Status", justify="left")
    table.add_column("Count", justify="right", style="cyan")

    for status, count in stats.get("by_status", {}).items():
        table.add_row(format_status(status), str(count))

    table.add_section()
    table.add_row("[bold]total[/bold]", str(stats.get("total_jobs", 0)))
    table.add_row("queue depth", str(stats.get("queue_depth", 0)))
    table.add_row("failed last hour", str(stats.get("failed_last_hour", 0)))
    return table


def create_sweep_panel(report: dict[str, Any]) -> Panel:
    """Create a summary panel for a maintenance sweep report"""
    lines = [
        f"• {store}: [cyan]{count}[/cyan] deleted"
        for store, count in report.get("deleted", {}).items()
    ]
    for store, error in report.get("errors", {}).items():
        lines.append(f"• {store}: [red]failed ({error})[/red]")

    border_style = "red" if report.get("errors") else "green"
    return Panel(
        "\n".join(lines) or "Nothing to sweep",
        title="Maintenance Sweep",
        border_style=border_style,
    )
