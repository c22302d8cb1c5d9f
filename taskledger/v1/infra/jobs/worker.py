"""
Database-backed job worker with heartbeats and a timeout watchdog.
"""

import asyncio
import contextlib
import os
import signal
import socket
from collections.abc import Sequence
from functools import partial
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskledger.config.logging import bind_worker_context, get_logger
from taskledger.config.settings import Settings
from taskledger.infra.database import Database, session_scope
from taskledger.v1.core.exceptions import (
    InvalidTransitionError,
    JobTimeoutError,
    StoreUnavailableError,
)
from taskledger.v1.core.registries import JobRegistry, job_registry
from taskledger.v1.infra.jobs.handlers import JobContext
from taskledger.v1.infra.jobs.models import Job, JobErrorCode
from taskledger.v1.infra.jobs.service import JobService

logger = get_logger(__name__)


class JobWorker:
    """
    Job worker polling the shared store.

    Features:
    - SKIP LOCKED reads plus compare-and-swap claims, safe across processes
    - Heartbeats extending the lease of every job in flight
    - Per-attempt timeout bounding each handler run
    - Watchdog reclaiming jobs whose lease expired (crashed or stuck workers)
    - Exponential idle backoff between polls
    - Graceful shutdown waiting for in-flight jobs
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        registry: JobRegistry | None = None,
        job_types: Sequence[str] | None = None,
        worker_id: str | None = None,
    ):
        self.settings = settings
        self._database: Database | None = None
        if session_factory is None:
            self._database = Database(settings)
            session_factory = self._database.SessionLocal
        self.session_factory = session_factory
        self.registry = registry or job_registry
        self.job_types = list(job_types) if job_types else None
        self.worker_id = worker_id or f"{socket.gethostname()}-{os.getpid()}-{id(self)}"
        self.job_service = JobService(settings)

        self.running = False
        self.active_jobs: dict[UUID, asyncio.Task] = {}
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        """Start the job worker main loop."""
        if self.running:
            raise RuntimeError("Worker is already running")

        self.running = True
        self._stop_event.clear()
        bind_worker_context(self.worker_id)
        logger.info(
            "Starting job worker",
            worker_id=self.worker_id,
            concurrency=self.settings.job_concurrency,
            poll_interval_ms=self.settings.job_poll_interval_ms,
            job_types=self.job_types,
        )

        try:
            await asyncio.gather(
                self._worker_loop(),
                self._heartbeat_loop(),
                self._watchdog_loop(),
            )
        finally:
            self.running = False
            if self._database is not None:
                await self._database.close()

    async def stop(self, timeout_seconds: float = 30) -> None:
        """Stop the worker gracefully."""
        logger.info("Stopping job worker", worker_id=self.worker_id)
        self.running = False
        self._stop_event.set()

        if self.active_jobs:
            _, pending = await asyncio.wait(
                list(self.active_jobs.values()), timeout=timeout_seconds
            )
            if pending:
                # Leases of abandoned jobs run out and the watchdog reclaims them
                logger.warning(
                    "Worker stopped with active jobs",
                    worker_id=self.worker_id,
                    active_jobs=len(pending),
                )
                for task in pending:
                    task.cancel()

    async def run_once(self) -> int:
        """Claim up to the concurrency limit and process the claims to the end.

        Returns the number of jobs claimed.
        """
        jobs = await self._claim_jobs()
        if jobs:
            await asyncio.gather(*(self._spawn(job) for job in jobs))
        return len(jobs)

    async def reclaim_once(self) -> list[UUID]:
        """Run a single watchdog pass."""
        async with session_scope(self.session_factory) as session:
            return await self.job_service.reclaim_timed_out(session)

    async def heartbeat_once(self) -> int:
        """Extend the leases of all jobs in flight."""
        if not self.active_jobs:
            return 0
        job_ids = list(self.active_jobs)
        async with session_scope(self.session_factory) as session:
            extended = await self.job_service.heartbeat(
                session, job_ids, self.worker_id
            )
        if extended < len(job_ids):
            logger.warning(
                "Lost leases on in-flight jobs",
                worker_id=self.worker_id,
                active_jobs=len(job_ids),
                extended=extended,
            )
        return extended

    async def _worker_loop(self) -> None:
        """Main worker loop that claims and processes jobs."""
        poll_interval = self.settings.job_poll_interval_ms / 1000
        max_poll_interval = self.settings.job_max_poll_interval_ms / 1000
        delay = poll_interval

        while self.running:
            try:
                # Check if we can process more jobs
                if len(self.active_jobs) >= self.settings.job_concurrency:
                    await self._sleep(poll_interval)
                    continue

                jobs = await self._claim_jobs()
                for job in jobs:
                    self._spawn(job)

                # Back off while idle, reset as soon as work shows up
                delay = poll_interval if jobs else min(max_poll_interval, delay * 2)
                await self._sleep(delay)

            except StoreUnavailableError as e:
                delay = min(max_poll_interval, delay * 2)
                logger.warning(
                    "Store unavailable, backing off",
                    worker_id=self.worker_id,
                    reason=e.details.get("reason"),
                    delay_s=delay,
                )
                await self._sleep(delay)
            except Exception:
                logger.exception("Error in worker loop", worker_id=self.worker_id)
                await self._sleep(max_poll_interval)

    async def _claim_jobs(self) -> list[Job]:
        """Claim as many jobs as there are free slots."""
        available_slots = max(0, self.settings.job_concurrency - len(self.active_jobs))
        jobs: list[Job] = []
        if available_slots == 0:
            return jobs

        async with session_scope(self.session_factory) as session:
            for _ in range(available_slots):
                job = await self.job_service.claim_next(
                    session, self.worker_id, self.job_types
                )
                if job is None:
                    break
                jobs.append(job)

        return jobs

    def _spawn(self, job: Job) -> asyncio.Task:
        task = asyncio.create_task(self._process_job(job))
        self.active_jobs[job.id] = task
        task.add_done_callback(lambda _, job_id=job.id: self.active_jobs.pop(job_id, None))
        return task

    async def _process_job(self, job: Job) -> None:
        """Process a single job and record its outcome."""
        job_logger = logger.bind(
            job_id=str(job.id), job_type=job.type, worker_id=self.worker_id
        )

        try:
            handler = self.registry.get(job.type)
        except KeyError as e:
            job_logger.error("No handler registered for job type")
            await self._record_failure(job, str(e), JobErrorCode.NO_HANDLER)
            return

        context = JobContext(
            job_id=job.id,
            job_type=job.type,
            attempt=job.attempts,
            worker_id=self.worker_id,
            report_progress=partial(self._report_progress, job.id),
        )

        job_logger.info("Processing job started", attempt=job.attempts)
        # Heartbeats keep the lease alive, so each attempt is bounded here
        deadline = asyncio.timeout(job.timeout_seconds)
        try:
            async with deadline:
                async with session_scope(self.session_factory) as session:
                    result = await handler.handle(session, context, job.payload)
        except asyncio.CancelledError:
            # The claim stays in place until its lease runs out
            job_logger.info("Job processing cancelled")
            raise
        except Exception as e:
            if isinstance(e, TimeoutError) and deadline.expired():
                job_logger.warning(
                    "Job processing timed out", timeout_seconds=job.timeout_seconds
                )
                await self._record_failure(
                    job,
                    JobTimeoutError(job.id, job.timeout_seconds).message,
                    JobErrorCode.TIMEOUT,
                )
                return
            job_logger.exception("Job processing failed", error=str(e))
            await self._record_failure(
                job, str(e) or e.__class__.__name__, JobErrorCode.PROCESSING_ERROR
            )
            return

        await self._record_completion(job, result)
        job_logger.info("Processing job completed successfully")

    async def _report_progress(self, job_id: UUID, percent: int) -> None:
        async with session_scope(self.session_factory) as session:
            await self.job_service.report_progress(
                session, job_id, percent, worker_id=self.worker_id
            )

    async def _record_completion(
        self, job: Job, result: dict[str, Any] | None
    ) -> None:
        try:
            async with session_scope(self.session_factory) as session:
                await self.job_service.complete_job(
                    session, job.id, result, worker_id=self.worker_id
                )
        except InvalidTransitionError as e:
            logger.warning(
                "Could not complete job, claim was lost",
                job_id=str(job.id),
                worker_id=self.worker_id,
                current_status=e.current_status,
            )
        except StoreUnavailableError:
            logger.error(
                "Could not record job completion, lease will expire",
                job_id=str(job.id),
                worker_id=self.worker_id,
            )

    async def _record_failure(
        self, job: Job, error: str, error_code: JobErrorCode
    ) -> None:
        try:
            async with session_scope(self.session_factory) as session:
                await self.job_service.fail_job(
                    session,
                    job.id,
                    error,
                    worker_id=self.worker_id,
                    error_code=error_code,
                )
        except InvalidTransitionError as e:
            logger.warning(
                "Could not fail job, claim was lost",
                job_id=str(job.id),
                worker_id=self.worker_id,
                current_status=e.current_status,
            )
        except StoreUnavailableError:
            logger.error(
                "Could not record job failure, lease will expire",
                job_id=str(job.id),
                worker_id=self.worker_id,
            )

    async def _heartbeat_loop(self) -> None:
        """Update heartbeats for active jobs."""
        interval = self.settings.job_heartbeat_interval_s
        while self.running:
            try:
                await self.heartbeat_once()
            except StoreUnavailableError:
                logger.warning("Heartbeat skipped, store unavailable", worker_id=self.worker_id)
            except Exception:
                logger.exception("Error updating heartbeats", worker_id=self.worker_id)
            await self._sleep(interval)

    async def _watchdog_loop(self) -> None:
        """Reclaim jobs whose lease expired."""
        interval = self.settings.job_watchdog_interval_s
        while self.running:
            try:
                await self.reclaim_once()
            except StoreUnavailableError:
                logger.warning("Watchdog pass skipped, store unavailable", worker_id=self.worker_id)
            except Exception:
                logger.exception("Error in timed out job recovery", worker_id=self.worker_id)
            await self._sleep(interval)

    async def _sleep(self, seconds: float) -> None:
        """Sleep that returns early when the worker is stopped."""
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)


async def run_worker(
    settings: Settings, job_types: Sequence[str] | None = None
) -> None:
    """Run a worker until SIGINT or SIGTERM."""
    # Register built-in handlers
    import taskledger.v1.infra.jobs.registry_init  # noqa: F401

    worker = JobWorker(settings, job_types=job_types)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(worker.stop()))

    await worker.start()
