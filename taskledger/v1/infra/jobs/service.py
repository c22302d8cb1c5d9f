"""
Job service: enqueue, claim, progress, completion and failure of queued jobs.

Every mutation is a single-row compare-and-swap UPDATE guarded by the job's
status (and, once claimed, by its attempt counter), so correctness never
depends on in-process coordination between workers.
"""

from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from taskledger.config.logging import get_logger
from taskledger.config.settings import Settings
from taskledger.v1.core.exceptions import (
    InvalidTransitionError,
    JobTimeoutError,
    NotFoundError,
    ValidationError,
)
from taskledger.v1.infra.jobs.models import (
    Job,
    JobErrorCode,
    JobPriority,
    JobStatus,
    utcnow,
)
from taskledger.v1.infra.jobs.schemas import JobCreate, JobStatsResponse

logger = get_logger(__name__)


class JobService:
    """Service for managing background jobs."""

    def __init__(self, settings: Settings):
        self.settings = settings

    # Producer interface

    async def enqueue_job(
        self,
        session: AsyncSession,
        job_create: JobCreate,
        now: datetime | None = None,
    ) -> Job:
        """
        Enqueue a new pending job.

        Args:
            session: Database session
            job_create: Job creation parameters
            now: Creation time (defaults to the current time)

        Returns:
            The persisted job
        """
        now = now or utcnow()
        max_retries = job_create.max_retries
        if max_retries is None:
            max_retries = self.settings.job_default_max_retries
        timeout_seconds = (
            job_create.timeout_seconds or self.settings.job_default_timeout_s
        )

        job = Job(
            id=uuid4(),
            type=job_create.type,
            payload=job_create.payload,
            status=JobStatus.PENDING.value,
            priority=int(job_create.priority),
            scheduled_for=job_create.scheduled_for,
            retries=0,
            max_retries=max_retries,
            timeout_seconds=timeout_seconds,
            attempts=0,
            progress=0,
            created_at=now,
            updated_at=now,
        )

        session.add(job)
        await session.commit()
        await session.refresh(job)

        logger.info(
            "Job enqueued",
            job_id=str(job.id),
            type=job.type,
            priority=job.priority_level.label,
            scheduled_for=job.scheduled_for.isoformat() if job.scheduled_for else None,
        )

        return job

    async def enqueue(
        self,
        session: AsyncSession,
        job_type: str,
        payload: dict[str, Any] | None = None,
        priority: JobPriority | int | str = JobPriority.NORMAL,
        max_retries: int | None = None,
        timeout: timedelta | int | None = None,
        scheduled_for: datetime | None = None,
        now: datetime | None = None,
    ) -> UUID:
        """Enqueue a job from plain arguments and return its id."""
        if isinstance(timeout, timedelta):
            timeout = int(timeout.total_seconds())
        job_create = JobCreate(
            type=job_type,
            payload=payload or {},
            priority=priority,
            max_retries=max_retries,
            timeout_seconds=timeout,
            scheduled_for=scheduled_for,
        )
        job = await self.enqueue_job(session, job_create, now=now)
        return job.id

    async def cancel_job(
        self, session: AsyncSession, job_id: UUID, now: datetime | None = None
    ) -> Job:
        """Cancel a job that has not been claimed yet."""
        now = now or utcnow()
        result = await session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.PENDING.value)
            .values(
                status=JobStatus.CANCELLED.value,
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        if result.rowcount == 0:
            job = await self._get_or_raise(session, job_id)
            raise InvalidTransitionError(
                f"Job {job_id} cannot be cancelled while {job.status}",
                current_status=job.status,
            )

        logger.info("Job cancelled", job_id=str(job_id))
        return await self._get_or_raise(session, job_id)

    # Worker interface

    async def claim_next(
        self,
        session: AsyncSession,
        worker_id: str,
        job_types: Sequence[str] | None = None,
        now: datetime | None = None,
    ) -> Job | None:
        """
        Atomically claim the next eligible pending job.

        Candidates are read with SELECT FOR UPDATE SKIP LOCKED (a no-op on
        SQLite) and transitioned with an UPDATE that only matches while the
        row is still pending. Losing that race re-runs the selection.

        Args:
            session: Database session
            worker_id: Identity of the claiming worker
            job_types: Restrict claims to these job types (worker capabilities)
            now: Claim time (defaults to the current time)

        Returns:
            The claimed job in processing state, or None if nothing is eligible
        """
        fixed_now = now
        for _ in range(self.settings.job_claim_attempts):
            now = fixed_now or utcnow()
            query = select(Job).where(
                Job.status == JobStatus.PENDING.value,
                or_(Job.scheduled_for.is_(None), Job.scheduled_for <= now),
            )
            if job_types:
                query = query.where(Job.type.in_(list(job_types)))
            query = (
                query.order_by(Job.priority.desc(), Job.created_at, Job.id)
                .limit(1)
                .with_for_update(skip_locked=True)
                .execution_options(populate_existing=True)
            )

            candidate = (await session.execute(query)).scalar_one_or_none()
            if candidate is None:
                await session.commit()
                return None

            result = await session.execute(
                update(Job)
                .where(
                    Job.id == candidate.id,
                    Job.status == JobStatus.PENDING.value,
                )
                .values(
                    status=JobStatus.PROCESSING.value,
                    started_at=now,
                    heartbeat_at=now,
                    lease_expires_at=now
                    + timedelta(seconds=candidate.timeout_seconds),
                    locked_by=worker_id,
                    attempts=Job.attempts + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

            if result.rowcount == 1:
                await session.refresh(candidate)
                logger.info(
                    "Claimed job",
                    job_id=str(candidate.id),
                    type=candidate.type,
                    worker_id=worker_id,
                    attempt=candidate.attempts,
                )
                return candidate

            logger.debug(
                "Lost claim race", job_id=str(candidate.id), worker_id=worker_id
            )

        return None

    async def report_progress(
        self,
        session: AsyncSession,
        job_id: UUID,
        percent: int,
        worker_id: str | None = None,
        now: datetime | None = None,
    ) -> Job:
        """Record progress for a processing job and extend its lease."""
        if not 0 <= percent <= 100:
            raise ValidationError(
                "Progress must be between 0 and 100", {"percent": percent}
            )

        now = now or utcnow()
        job = await self._get_claimed(session, job_id, worker_id)
        await self._swap_claimed(
            session,
            job,
            progress=percent,
            heartbeat_at=now,
            lease_expires_at=now + timedelta(seconds=job.timeout_seconds),
            updated_at=now,
        )

        logger.debug("Job progress", job_id=str(job_id), percent=percent)
        return job

    async def heartbeat(
        self,
        session: AsyncSession,
        job_ids: Sequence[UUID],
        worker_id: str,
        now: datetime | None = None,
    ) -> int:
        """Extend the leases of the worker's processing jobs.

        Returns the number of jobs whose lease was extended; a job missing
        from that count has been reclaimed or finished elsewhere.
        """
        if not job_ids:
            return 0

        now = now or utcnow()
        jobs = (
            (
                await session.execute(
                    select(Job)
                    .where(
                        Job.id.in_(list(job_ids)),
                        Job.status == JobStatus.PROCESSING.value,
                        Job.locked_by == worker_id,
                    )
                    .execution_options(populate_existing=True)
                )
            )
            .scalars()
            .all()
        )

        extended = 0
        for job in jobs:
            result = await session.execute(
                update(Job)
                .where(
                    Job.id == job.id,
                    Job.status == JobStatus.PROCESSING.value,
                    Job.attempts == job.attempts,
                )
                .values(
                    heartbeat_at=now,
                    lease_expires_at=now + timedelta(seconds=job.timeout_seconds),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            extended += result.rowcount
        await session.commit()

        return extended

    async def complete_job(
        self,
        session: AsyncSession,
        job_id: UUID,
        result: dict[str, Any] | None = None,
        worker_id: str | None = None,
        now: datetime | None = None,
    ) -> Job:
        """Mark a processing job completed and store its result."""
        now = now or utcnow()
        job = await self._get_claimed(session, job_id, worker_id)
        await self._swap_claimed(
            session,
            job,
            status=JobStatus.COMPLETED.value,
            result=result,
            progress=100,
            completed_at=now,
            locked_by=None,
            heartbeat_at=None,
            lease_expires_at=None,
            updated_at=now,
        )

        logger.info("Job completed", job_id=str(job_id), type=job.type)
        return job

    async def fail_job(
        self,
        session: AsyncSession,
        job_id: UUID,
        error: str,
        worker_id: str | None = None,
        now: datetime | None = None,
        error_code: JobErrorCode = JobErrorCode.PROCESSING_ERROR,
    ) -> Job:
        """
        Record a failed attempt.

        While retries < max_retries the job goes back to pending with
        retries + 1; otherwise it becomes terminally failed with its error.
        """
        now = now or utcnow()
        job = await self._get_claimed(session, job_id, worker_id)
        await self._swap_claimed(
            session, job, **self._failure_values(job, error, error_code, now)
        )

        if job.status == JobStatus.FAILED.value:
            logger.error(
                "Job failed permanently",
                job_id=str(job_id),
                type=job.type,
                retries=job.retries,
                error=error,
            )
        else:
            logger.warning(
                "Job scheduled for retry",
                job_id=str(job_id),
                type=job.type,
                retries=job.retries,
                max_retries=job.max_retries,
                scheduled_for=job.scheduled_for.isoformat()
                if job.scheduled_for
                else None,
            )
        return job

    # Operational interface

    async def reclaim_timed_out(
        self, session: AsyncSession, now: datetime | None = None, limit: int = 100
    ) -> list[UUID]:
        """
        Watchdog pass: fail every processing job whose lease has expired.

        Each reclaimed job goes through the same retry-or-terminal rule as an
        explicit failure, with a TIMEOUT error code.
        """
        now = now or utcnow()
        stale_jobs = (
            (
                await session.execute(
                    select(Job)
                    .where(
                        Job.status == JobStatus.PROCESSING.value,
                        Job.lease_expires_at < now,
                    )
                    .order_by(Job.lease_expires_at)
                    .limit(limit)
                    .with_for_update(skip_locked=True)
                    .execution_options(populate_existing=True)
                )
            )
            .scalars()
            .all()
        )

        reclaimed: list[UUID] = []
        for job in stale_jobs:
            error = JobTimeoutError(job.id, job.timeout_seconds).message
            result = await session.execute(
                update(Job)
                .where(
                    Job.id == job.id,
                    Job.status == JobStatus.PROCESSING.value,
                    Job.attempts == job.attempts,
                    Job.lease_expires_at < now,
                )
                .values(**self._failure_values(job, error, JobErrorCode.TIMEOUT, now))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                reclaimed.append(job.id)
        await session.commit()

        if reclaimed:
            logger.warning(
                "Reclaimed timed out jobs",
                reclaimed_count=len(reclaimed),
                job_ids=[str(job_id) for job_id in reclaimed],
            )

        return reclaimed

    async def get_job_by_id(self, session: AsyncSession, job_id: UUID) -> Job | None:
        """Get job by ID."""
        return await session.get(Job, job_id, populate_existing=True)

    async def list_jobs(
        self,
        session: AsyncSession,
        statuses: Sequence[JobStatus] | None = None,
        job_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        """List jobs newest first with optional status and type filters."""
        base_query = select(Job)
        if statuses:
            base_query = base_query.where(Job.status.in_([s.value for s in statuses]))
        if job_type:
            base_query = base_query.where(Job.type == job_type)

        total_result = await session.execute(
            select(func.count()).select_from(base_query.subquery())
        )
        total = total_result.scalar() or 0

        jobs_result = await session.execute(
            base_query.order_by(Job.created_at.desc(), Job.id)
            .offset(offset)
            .limit(limit)
        )
        return list(jobs_result.scalars().all()), total

    async def get_job_stats(
        self,
        session: AsyncSession,
        job_type: str | None = None,
        now: datetime | None = None,
    ) -> JobStatsResponse:
        """Aggregate job counts per status, optionally for a single job type."""
        now = now or utcnow()
        filters = [Job.type == job_type] if job_type else []

        status_result = await session.execute(
            select(Job.status, func.count(Job.id))
            .where(*filters)
            .group_by(Job.status)
        )
        by_status = {status.value: 0 for status in JobStatus}
        by_status.update(dict(status_result.all()))

        type_result = await session.execute(
            select(Job.type, func.count(Job.id)).where(*filters).group_by(Job.type)
        )
        by_type = dict(type_result.all())

        failed_recent_result = await session.execute(
            select(func.count(Job.id)).where(
                *filters,
                Job.status == JobStatus.FAILED.value,
                Job.updated_at >= now - timedelta(hours=1),
            )
        )

        return JobStatsResponse(
            total_jobs=sum(by_status.values()),
            by_status=by_status,
            by_type=by_type,
            queue_depth=by_status[JobStatus.PENDING.value]
            + by_status[JobStatus.PROCESSING.value],
            failed_last_hour=failed_recent_result.scalar() or 0,
        )

    async def cleanup_old_jobs(
        self, session: AsyncSession, older_than: datetime | None = None
    ) -> int:
        """Delete terminal jobs last updated before the retention cutoff."""
        cutoff = older_than or utcnow() - timedelta(
            days=self.settings.job_retention_days
        )

        result = await session.execute(
            Job.__table__.delete().where(
                Job.status.in_([s.value for s in JobStatus.terminal()]),
                Job.updated_at < cutoff,
            )
        )
        deleted_count = result.rowcount
        await session.commit()

        if deleted_count > 0:
            logger.info(
                "Cleaned up old jobs",
                deleted_count=deleted_count,
                cutoff=cutoff.isoformat(),
            )

        return deleted_count

    # Internals

    async def _get_or_raise(self, session: AsyncSession, job_id: UUID) -> Job:
        job = await session.get(Job, job_id, populate_existing=True)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found", {"job_id": str(job_id)})
        return job

    async def _get_claimed(
        self, session: AsyncSession, job_id: UUID, worker_id: str | None
    ) -> Job:
        job = await self._get_or_raise(session, job_id)
        if job.status != JobStatus.PROCESSING.value:
            raise InvalidTransitionError(
                f"Job {job_id} is {job.status}, expected processing",
                current_status=job.status,
            )
        if worker_id is not None and job.locked_by != worker_id:
            raise InvalidTransitionError(
                f"Job {job_id} is claimed by another worker",
                current_status=job.status,
                details={"locked_by": job.locked_by},
            )
        return job

    async def _swap_claimed(
        self, session: AsyncSession, job: Job, **values: Any
    ) -> None:
        """Apply values only if the claim observed in `job` is still current."""
        result = await session.execute(
            update(Job)
            .where(
                Job.id == job.id,
                Job.status == JobStatus.PROCESSING.value,
                Job.attempts == job.attempts,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        if result.rowcount == 0:
            current = await self._get_or_raise(session, job.id)
            raise InvalidTransitionError(
                f"Job {job.id} claim was lost",
                current_status=current.status,
            )
        await session.refresh(job)

    def _failure_values(
        self, job: Job, error: str, error_code: JobErrorCode, now: datetime
    ) -> dict[str, Any]:
        released = {
            "locked_by": None,
            "heartbeat_at": None,
            "lease_expires_at": None,
            "error": error,
            "updated_at": now,
        }
        if job.has_retry_budget():
            if error_code == JobErrorCode.PROCESSING_ERROR:
                error_code = JobErrorCode.RETRY_SCHEDULED
            return {
                **released,
                "status": JobStatus.PENDING.value,
                "retries": Job.retries + 1,
                "scheduled_for": self._calculate_retry_time(job.retries + 1, now),
                "error_code": error_code.value,
            }
        return {
            **released,
            "status": JobStatus.FAILED.value,
            "completed_at": now,
            "error_code": error_code.value,
        }

    def _calculate_retry_time(self, retry: int, now: datetime) -> datetime | None:
        """Exponential backoff: base * 2^(retry - 1), capped; None means now."""
        base_delay = self.settings.job_backoff_base_ms / 1000
        if base_delay <= 0:
            return None
        delay = min(self.settings.job_max_backoff_s, base_delay * (2 ** (retry - 1)))
        return now + timedelta(seconds=delay)
