"""
Maintenance sweeper.

Each store is swept in its own transaction. A failing store is logged and
reported but does not stop the others, and a concurrent second run simply
finds nothing left to delete.
"""

from collections.abc import Awaitable, Callable
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from taskledger.config.logging import get_logger
from taskledger.config.settings import Settings
from taskledger.v1.infra.cache.service import ResultCacheService
from taskledger.v1.infra.jobs.models import utcnow
from taskledger.v1.infra.jobs.service import JobService
from taskledger.v1.infra.ledger.service import IdempotencyService
from taskledger.v1.infra.maintenance.schemas import SweepReport

logger = get_logger(__name__)


class MaintenanceSweeper:
    """Deletes terminal jobs, aged ledger records and expired cache entries."""

    STORES = ("jobs", "ledger", "cache")

    def __init__(self, settings: Settings):
        self.settings = settings
        self.job_service = JobService(settings)
        self.ledger_service = IdempotencyService(settings)
        self.cache_service = ResultCacheService(settings)

    async def run(
        self,
        session: AsyncSession,
        now: datetime | None = None,
        jobs_older_than: datetime | None = None,
        ledger_older_than: datetime | None = None,
        stores: tuple[str, ...] | None = None,
    ) -> SweepReport:
        """Run every requested sub-sweep and report what each deleted."""
        now = now or utcnow()
        stores = stores or self.STORES
        report = SweepReport(started_at=now)

        tasks: dict[str, Callable[[], Awaitable[int]]] = {
            "jobs": lambda: self.job_service.cleanup_old_jobs(session, jobs_older_than),
            "ledger": lambda: self.ledger_service.cleanup_old_records(
                session, ledger_older_than
            ),
            "cache": lambda: self.cache_service.cleanup_expired(session, now),
        }

        for store in stores:
            if store not in tasks:
                raise ValueError(f"Unknown store: {store}")
            try:
                report.deleted[store] = await tasks[store]()
            except Exception as e:
                await session.rollback()
                report.errors[store] = str(e)
                logger.error(
                    "Sweep of store failed",
                    store=store,
                    error=str(e),
                    exc_info=True,
                )

        report.finished_at = utcnow()
        logger.info(
            "Maintenance sweep completed",
            deleted=report.deleted,
            failed_stores=list(report.errors),
        )
        return report
