"""Tests for the job queue service: ordering, state machine and retries."""

from datetime import UTC, datetime, timedelta, timezone
from uuid import uuid4

import pytest

from taskledger.infra.database import to_utc
from taskledger.v1.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from taskledger.v1.infra.jobs.models import (
    JobErrorCode,
    JobPriority,
    JobStatus,
)
from taskledger.v1.infra.jobs.schemas import JobCreate
from taskledger.v1.infra.jobs.service import JobService

WORKER = "worker-1"


@pytest.fixture
def job_service(test_settings) -> JobService:
    return JobService(test_settings)


class TestEnqueue:
    async def test_enqueue_applies_defaults(self, job_service, db_session, now):
        job_id = await job_service.enqueue(db_session, "report.build", {"n": 1}, now=now)

        job = await job_service.get_job_by_id(db_session, job_id)
        assert job.status == JobStatus.PENDING.value
        assert job.priority_level == JobPriority.NORMAL
        assert job.payload == {"n": 1}
        assert job.retries == 0
        assert job.attempts == 0
        assert job.progress == 0
        assert job.max_retries == job_service.settings.job_default_max_retries
        assert job.timeout_seconds == job_service.settings.job_default_timeout_s
        assert job.locked_by is None

    async def test_enqueue_accepts_priority_names_and_timedelta(
        self, job_service, db_session, now
    ):
        job_id = await job_service.enqueue(
            db_session,
            "report.build",
            priority="URGENT",
            max_retries=0,
            timeout=timedelta(minutes=2),
            now=now,
        )

        job = await job_service.get_job_by_id(db_session, job_id)
        assert job.priority_level == JobPriority.URGENT
        assert job.max_retries == 0
        assert job.timeout_seconds == 120

    def test_unknown_priority_rejected(self):
        with pytest.raises(ValueError):
            JobCreate(type="report.build", priority="critical")

    async def test_enqueue_job_schema(self, job_service, db_session, now):
        job = await job_service.enqueue_job(
            db_session,
            JobCreate(type="report.build", priority="high", timeout_seconds=5),
            now=now,
        )
        assert job.priority == JobPriority.HIGH.value
        assert job.timeout_seconds == 5


class TestClaimOrdering:
    async def test_priority_then_fifo(self, job_service, db_session, now):
        """A(low, t=1), B(urgent, t=2), C(low, t=3) are claimed B, A, C."""
        a = await job_service.enqueue(
            db_session, "t", priority=JobPriority.LOW, now=now + timedelta(seconds=1)
        )
        b = await job_service.enqueue(
            db_session, "t", priority=JobPriority.URGENT, now=now + timedelta(seconds=2)
        )
        c = await job_service.enqueue(
            db_session, "t", priority=JobPriority.LOW, now=now + timedelta(seconds=3)
        )

        claim_time = now + timedelta(seconds=10)
        claimed = [
            await job_service.claim_next(db_session, WORKER, now=claim_time)
            for _ in range(3)
        ]

        assert [job.id for job in claimed] == [b, a, c]
        assert await job_service.claim_next(db_session, WORKER, now=claim_time) is None

    async def test_claim_sets_lease_and_owner(self, job_service, db_session, now):
        await job_service.enqueue(db_session, "t", timeout=30, now=now)

        job = await job_service.claim_next(db_session, WORKER, now=now)

        assert job.status == JobStatus.PROCESSING.value
        assert job.locked_by == WORKER
        assert job.attempts == 1
        assert to_utc(job.started_at) == now
        assert to_utc(job.lease_expires_at) == now + timedelta(seconds=30)

    async def test_claim_empty_queue(self, job_service, db_session, now):
        assert await job_service.claim_next(db_session, WORKER, now=now) is None

    async def test_scheduled_job_not_eligible_early(self, job_service, db_session, now):
        job_id = await job_service.enqueue(
            db_session, "t", scheduled_for=now + timedelta(minutes=5), now=now
        )

        assert await job_service.claim_next(db_session, WORKER, now=now) is None

        job = await job_service.claim_next(
            db_session, WORKER, now=now + timedelta(minutes=5)
        )
        assert job.id == job_id

    async def test_scheduled_for_with_offset_is_the_same_instant(
        self, job_service, db_session, now
    ):
        plus_five = timezone(timedelta(hours=5))
        job_id = await job_service.enqueue(
            db_session, "t", scheduled_for=now.astimezone(plus_five), now=now
        )

        assert await job_service.claim_next(
            db_session, WORKER, now=now - timedelta(seconds=1)
        ) is None

        job = await job_service.claim_next(
            db_session, WORKER, now=now + timedelta(hours=1)
        )
        assert job.id == job_id
        assert job.scheduled_for == now

    async def test_claim_time_with_offset(self, job_service, db_session, now):
        job_id = await job_service.enqueue(
            db_session, "t", scheduled_for=now + timedelta(minutes=5), now=now
        )
        minus_eight = timezone(timedelta(hours=-8))

        # 04:06-08:00 is 12:06 UTC, after the 12:05 UTC schedule
        job = await job_service.claim_next(
            db_session, WORKER, now=(now + timedelta(minutes=6)).astimezone(minus_eight)
        )

        assert job.id == job_id

    def test_job_create_normalizes_scheduled_for(self):
        job_create = JobCreate(type="t", scheduled_for="2025-01-15T17:00:00+05:00")

        assert job_create.scheduled_for == datetime(2025, 1, 15, 12, 0, tzinfo=UTC)
        assert job_create.scheduled_for.tzinfo is UTC

    def test_job_create_reads_naive_scheduled_for_as_utc(self):
        job_create = JobCreate(type="t", scheduled_for="2025-01-15T12:00:00")

        assert job_create.scheduled_for == datetime(2025, 1, 15, 12, 0, tzinfo=UTC)

    async def test_claim_filters_job_types(self, job_service, db_session, now):
        await job_service.enqueue(db_session, "email.send", now=now)
        wanted = await job_service.enqueue(
            db_session, "report.build", now=now + timedelta(seconds=1)
        )

        job = await job_service.claim_next(
            db_session, WORKER, job_types=["report.build"], now=now + timedelta(seconds=2)
        )

        assert job.id == wanted


class TestTransitions:
    async def test_complete(self, job_service, db_session, now):
        job_id = await job_service.enqueue(db_session, "t", now=now)
        await job_service.claim_next(db_session, WORKER, now=now)

        job = await job_service.complete_job(
            db_session,
            job_id,
            {"rows": 10},
            worker_id=WORKER,
            now=now + timedelta(seconds=5),
        )

        assert job.status == JobStatus.COMPLETED.value
        assert job.result == {"rows": 10}
        assert job.progress == 100
        assert to_utc(job.completed_at) == now + timedelta(seconds=5)
        assert job.locked_by is None
        assert job.lease_expires_at is None

    async def test_complete_pending_job_rejected(self, job_service, db_session, now):
        job_id = await job_service.enqueue(db_session, "t", now=now)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await job_service.complete_job(db_session, job_id, now=now)
        assert exc_info.value.current_status == JobStatus.PENDING.value

    async def test_terminal_job_is_final(self, job_service, db_session, now):
        job_id = await job_service.enqueue(db_session, "t", now=now)
        await job_service.claim_next(db_session, WORKER, now=now)
        await job_service.complete_job(db_session, job_id, now=now)

        with pytest.raises(InvalidTransitionError):
            await job_service.complete_job(db_session, job_id, now=now)
        with pytest.raises(InvalidTransitionError):
            await job_service.fail_job(db_session, job_id, "boom", now=now)
        with pytest.raises(InvalidTransitionError):
            await job_service.cancel_job(db_session, job_id, now=now)
        with pytest.raises(InvalidTransitionError):
            await job_service.report_progress(db_session, job_id, 50, now=now)

    async def test_unknown_job(self, job_service, db_session, now):
        missing = uuid4()

        with pytest.raises(NotFoundError):
            await job_service.complete_job(db_session, missing, now=now)
        with pytest.raises(NotFoundError):
            await job_service.cancel_job(db_session, missing, now=now)
        assert await job_service.get_job_by_id(db_session, missing) is None

    async def test_other_worker_cannot_settle_claim(self, job_service, db_session, now):
        job_id = await job_service.enqueue(db_session, "t", now=now)
        await job_service.claim_next(db_session, WORKER, now=now)

        with pytest.raises(InvalidTransitionError, match="another worker"):
            await job_service.complete_job(
                db_session, job_id, worker_id="worker-2", now=now
            )

    async def test_cancel_pending(self, job_service, db_session, now):
        job_id = await job_service.enqueue(db_session, "t", now=now)

        job = await job_service.cancel_job(db_session, job_id, now=now)

        assert job.status == JobStatus.CANCELLED.value
        assert await job_service.claim_next(db_session, WORKER, now=now) is None

    async def test_cancel_processing_rejected(self, job_service, db_session, now):
        job_id = await job_service.enqueue(db_session, "t", now=now)
        await job_service.claim_next(db_session, WORKER, now=now)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await job_service.cancel_job(db_session, job_id, now=now)
        assert exc_info.value.status_code == 409


class TestProgress:
    async def test_progress_extends_lease(self, job_service, db_session, now):
        job_id = await job_service.enqueue(db_session, "t", timeout=60, now=now)
        await job_service.claim_next(db_session, WORKER, now=now)

        later = now + timedelta(seconds=45)
        job = await job_service.report_progress(
            db_session, job_id, 40, worker_id=WORKER, now=later
        )

        assert job.progress == 40
        assert to_utc(job.heartbeat_at) == later
        assert to_utc(job.lease_expires_at) == later + timedelta(seconds=60)

    @pytest.mark.parametrize("percent", [-1, 101])
    async def test_progress_out_of_range(self, job_service, db_session, now, percent):
        job_id = await job_service.enqueue(db_session, "t", now=now)
        await job_service.claim_next(db_session, WORKER, now=now)

        with pytest.raises(ValidationError):
            await job_service.report_progress(db_session, job_id, percent, now=now)

    async def test_heartbeat_only_touches_own_claims(
        self, job_service, db_session, now
    ):
        mine = await job_service.enqueue(db_session, "t", timeout=10, now=now)
        theirs = await job_service.enqueue(
            db_session, "t", timeout=10, now=now + timedelta(seconds=1)
        )
        await job_service.claim_next(db_session, WORKER, now=now + timedelta(seconds=2))
        await job_service.claim_next(
            db_session, "worker-2", now=now + timedelta(seconds=2)
        )

        later = now + timedelta(seconds=8)
        extended = await job_service.heartbeat(
            db_session, [mine, theirs], WORKER, now=later
        )

        assert extended == 1
        job = await job_service.get_job_by_id(db_session, mine)
        assert to_utc(job.lease_expires_at) == later + timedelta(seconds=10)


class TestRetries:
    async def test_max_retries_two(self, job_service, db_session, now):
        """Three failures yield pending(1), pending(2), failed."""
        job_id = await job_service.enqueue(db_session, "t", max_retries=2, now=now)

        observed = []
        for _ in range(3):
            claimed = await job_service.claim_next(db_session, WORKER, now=now)
            assert claimed.id == job_id
            job = await job_service.fail_job(
                db_session, job_id, "boom", worker_id=WORKER, now=now
            )
            observed.append((job.status, job.retries))
            if job.status == JobStatus.FAILED.value:
                break

        assert observed == [
            (JobStatus.PENDING.value, 1),
            (JobStatus.PENDING.value, 2),
            (JobStatus.FAILED.value, 2),
        ]
        job = await job_service.get_job_by_id(db_session, job_id)
        assert job.error == "boom"
        assert job.error_code == JobErrorCode.PROCESSING_ERROR.value
        assert job.attempts == 3
        assert job.completed_at is not None

    async def test_zero_retries_fails_immediately(self, job_service, db_session, now):
        job_id = await job_service.enqueue(db_session, "t", max_retries=0, now=now)
        await job_service.claim_next(db_session, WORKER, now=now)

        job = await job_service.fail_job(db_session, job_id, "boom", now=now)

        assert job.status == JobStatus.FAILED.value
        assert job.retries == 0

    async def test_retry_clears_claim(self, job_service, db_session, now):
        job_id = await job_service.enqueue(db_session, "t", max_retries=1, now=now)
        await job_service.claim_next(db_session, WORKER, now=now)

        job = await job_service.fail_job(db_session, job_id, "boom", now=now)

        assert job.status == JobStatus.PENDING.value
        assert job.error_code == JobErrorCode.RETRY_SCHEDULED.value
        assert job.locked_by is None
        assert job.lease_expires_at is None
        # No backoff configured: eligible again right away
        assert job.scheduled_for is None

    async def test_retry_backoff(self, test_settings, db_session, now):
        settings = test_settings.model_copy(
            update={"job_backoff_base_ms": 1000, "job_max_backoff_s": 3}
        )
        job_service = JobService(settings)
        job_id = await job_service.enqueue(db_session, "t", max_retries=5, now=now)

        delays = []
        for _ in range(3):
            claimed = await job_service.claim_next(
                db_session, WORKER, now=now + timedelta(hours=1)
            )
            assert claimed.id == job_id
            job = await job_service.fail_job(db_session, job_id, "boom", now=now)
            delays.append((to_utc(job.scheduled_for) - now).total_seconds())

        # 1s, 2s, then capped at 3s
        assert delays == [1, 2, 3]

        # Not eligible before the backoff elapses
        assert await job_service.claim_next(db_session, WORKER, now=now) is None

    async def test_retries_never_exceed_budget(self, job_service, db_session, now):
        job_id = await job_service.enqueue(db_session, "t", max_retries=3, now=now)

        while True:
            claimed = await job_service.claim_next(db_session, WORKER, now=now)
            if claimed is None:
                break
            job = await job_service.fail_job(db_session, job_id, "boom", now=now)
            assert job.retries <= job.max_retries

        job = await job_service.get_job_by_id(db_session, job_id)
        assert job.status == JobStatus.FAILED.value
        assert job.retries == 3
        assert job.attempts == 4


class TestQueries:
    async def test_stats_include_every_status(self, job_service, db_session, now):
        stats = await job_service.get_job_stats(db_session, now=now)

        assert stats.total_jobs == 0
        assert stats.by_status == {status.value: 0 for status in JobStatus}

    async def test_stats_counts(self, job_service, db_session, now):
        done = await job_service.enqueue(db_session, "a", now=now)
        await job_service.enqueue(db_session, "a", now=now + timedelta(seconds=1))
        await job_service.enqueue(db_session, "b", now=now + timedelta(seconds=2))
        await job_service.claim_next(db_session, WORKER, now=now)
        await job_service.complete_job(db_session, done, now=now)
        failed = await job_service.enqueue(
            db_session, "b", max_retries=0, priority="urgent", now=now
        )
        await job_service.claim_next(db_session, WORKER, now=now)
        await job_service.fail_job(db_session, failed, "boom", now=now)

        stats = await job_service.get_job_stats(db_session, now=now)

        assert stats.total_jobs == 4
        assert stats.by_status[JobStatus.COMPLETED.value] == 1
        assert stats.by_status[JobStatus.PENDING.value] == 2
        assert stats.by_status[JobStatus.FAILED.value] == 1
        assert stats.by_type == {"a": 2, "b": 2}
        assert stats.queue_depth == 2
        assert stats.failed_last_hour == 1

        type_stats = await job_service.get_job_stats(db_session, job_type="b", now=now)
        assert type_stats.total_jobs == 2
        assert type_stats.by_status[JobStatus.COMPLETED.value] == 0

    async def test_list_jobs_filters(self, job_service, db_session, now):
        first = await job_service.enqueue(db_session, "a", now=now)
        await job_service.enqueue(db_session, "b", now=now + timedelta(seconds=1))
        await job_service.cancel_job(db_session, first, now=now)

        jobs, total = await job_service.list_jobs(
            db_session, statuses=[JobStatus.CANCELLED]
        )
        assert total == 1
        assert jobs[0].id == first

        jobs, total = await job_service.list_jobs(db_session, job_type="b")
        assert total == 1
        assert jobs[0].type == "b"

        jobs, total = await job_service.list_jobs(db_session, limit=1)
        assert total == 2
        assert len(jobs) == 1

    async def test_cleanup_old_jobs_only_terminal(self, job_service, db_session, now):
        old_done = await job_service.enqueue(db_session, "t", now=now)
        await job_service.cancel_job(db_session, old_done, now=now)
        old_pending = await job_service.enqueue(db_session, "t", now=now)
        recent_done = await job_service.enqueue(db_session, "t", now=now)
        await job_service.cancel_job(
            db_session, recent_done, now=now + timedelta(days=40)
        )

        deleted = await job_service.cleanup_old_jobs(
            db_session, older_than=now + timedelta(days=30)
        )

        assert deleted == 1
        assert await job_service.get_job_by_id(db_session, old_done) is None
        assert await job_service.get_job_by_id(db_session, old_pending) is not None
        assert await job_service.get_job_by_id(db_session, recent_done) is not None

        # Idempotent
        assert (
            await job_service.cleanup_old_jobs(
                db_session, older_than=now + timedelta(days=30)
            )
            == 0
        )
