"""TaskLedger CLI - Main Entry Point"""

import typer
from rich.console import Console
from rich.panel import Panel

# Import command modules
from .client.endpoints import TaskLedgerClient, TaskLedgerError
from .commands import config, jobs, maintenance, worker
from .utils.config_manager import config as config_manager
from .utils.formatting import print_error, print_info

console = Console()

# Create main Typer app
app = typer.Typer(
    name="taskledger",
    help="TaskLedger - durable job queue, idempotency ledger and result cache",
    rich_markup_mode="rich",
)

# Add command subapps
app.add_typer(jobs.app, name="jobs")
app.add_typer(maintenance.app, name="maintenance")
app.add_typer(config.app, name="config")
app.add_typer(worker.app, name="worker")


@app.command()
def status():
    """📊 Check API connectivity and queue health"""
    base_url = config_manager.get("api.base_url")
    print_info(f"Checking connection to: {base_url}")

    try:
        with TaskLedgerClient(base_url) as client:
            health = client.health_check()
    except TaskLedgerError as e:
        print_error(f"Failed to connect: {e}")
        console.print(
            Panel(
                f"🚫 [red]Connection Failed[/red]\n\n"
                f"Make sure the TaskLedger API is running at:\n"
                f"[blue]{base_url}[/blue]\n\n"
                f"You can update the API URL with:\n"
                f"[cyan]taskledger config set api.base_url <url>[/cyan]",
                title="Connection Error",
                border_style="red",
            )
        )
        raise typer.Exit(1) from None

    database = health.get("database") or {}
    worker_health = health.get("worker") or {}
    healthy = health.get("ok", False)

    console.print(
        Panel(
            f"{'🚀 [green]Healthy[/green]' if healthy else '⚠️ [red]Unhealthy[/red]'}\n\n"
            f"• Version: [cyan]{health.get('version', 'unknown')}[/cyan]\n"
            f"• Environment: [yellow]{health.get('environment', 'unknown')}[/yellow]\n"
            f"• Database: {'[green]connected[/green]' if database.get('connected') else '[red]unreachable[/red]'}\n"
            f"• Queue depth: [cyan]{worker_health.get('queue_depth', 0)}[/cyan]\n"
            f"• Active workers: [cyan]{worker_health.get('active_workers', 0)}[/cyan]\n"
            f"• Expired leases: [cyan]{worker_health.get('expired_leases_count', 0)}[/cyan]\n"
            f"• API URL: [blue]{base_url}[/blue]",
            title="System Status",
            border_style="green" if healthy else "red",
        )
    )
    if not healthy:
        raise typer.Exit(1)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool | None = typer.Option(
        None, "--version", "-v", help="Show version and exit"
    ),
):
    """
    TaskLedger CLI

    Enqueue and inspect background jobs, run workers and trigger
    maintenance sweeps against a TaskLedger API.
    """
    if version:
        from . import __version__

        console.print(f"TaskLedger CLI v{__version__}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


if __name__ == "__main__":
    app()
