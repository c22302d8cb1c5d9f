"""Worker Commands - Run an in-process job worker"""

import asyncio

import typer

from taskledger.config.logging import setup_logging
from taskledger.config.settings import get_settings
from taskledger.v1.infra.jobs.worker import run_worker

from ..utils.formatting import print_error, print_info

app = typer.Typer(name="worker", help="Job worker commands")


@app.command("run")
def run(
    job_type: list[str] | None = typer.Option(
        None, "--type", "-t", help="Only claim these job types (repeatable)"
    ),
    concurrency: int | None = typer.Option(
        None, "--concurrency", "-c", help="Jobs processed at once"
    ),
):
    """⚙️ Run a worker against the configured database until interrupted"""
    settings = get_settings()
    if concurrency is not None:
        if concurrency < 1:
            print_error("Concurrency must be at least 1")
            raise typer.Exit(1)
        settings = settings.model_copy(update={"job_concurrency": concurrency})

    setup_logging()
    print_info(
        f"Starting worker (concurrency {settings.job_concurrency}, "
        f"types {', '.join(job_type) if job_type else 'all'})"
    )
    asyncio.run(run_worker(settings, job_types=job_type))
