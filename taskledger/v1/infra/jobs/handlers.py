"""
Job handlers for background processing.

Handlers implement the JobHandler protocol and are registered in the job
registry under the job type they process.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from taskledger.config.logging import get_logger
from taskledger.config.settings import Settings
from taskledger.infra.database import to_utc
from taskledger.v1.infra.maintenance.sweeper import MaintenanceSweeper

logger = get_logger(__name__)


@dataclass
class JobContext:
    """Identity of the claimed job handed to its handler."""

    job_id: UUID
    job_type: str
    attempt: int
    worker_id: str
    report_progress: Callable[[int], Awaitable[None]]


class MaintenanceSweepHandler:
    """
    Job handler running the maintenance sweep through the queue.

    Payload expected:
    {
        "stores": ["jobs", "ledger", "cache"],  # optional, defaults to all
        "jobs_older_than": "2024-01-01T00:00:00+00:00",  # optional
        "ledger_older_than": "2024-01-01T00:00:00+00:00"  # optional
    }
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    async def handle(
        self,
        session: AsyncSession,
        context: JobContext,
        payload: dict[str, Any],
    ) -> dict[str, Any] | None:
        """Sweep the requested stores and return the report."""

        stores = payload.get("stores") or list(MaintenanceSweeper.STORES)
        unknown = set(stores) - set(MaintenanceSweeper.STORES)
        if unknown:
            raise ValueError(f"Unknown stores in payload: {sorted(unknown)}")

        jobs_older_than = _parse_datetime(payload.get("jobs_older_than"))
        ledger_older_than = _parse_datetime(payload.get("ledger_older_than"))

        logger.info("Starting maintenance sweep job", job_id=str(context.job_id), stores=stores)

        sweeper = MaintenanceSweeper(self.settings)
        report = await sweeper.run(
            session,
            jobs_older_than=jobs_older_than,
            ledger_older_than=ledger_older_than,
            stores=tuple(stores),
        )
        await context.report_progress(100)

        if report.errors:
            # Surface partial failure so the queue retries the sweep
            raise RuntimeError(f"Sweep failed for stores: {sorted(report.errors)}")

        return report.model_dump(mode="json")


def _parse_datetime(value: str | None) -> datetime | None:
    if value is None:
        return None
    return to_utc(datetime.fromisoformat(value))
