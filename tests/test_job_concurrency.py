"""Claims racing across independent sessions never hand out a job twice."""

import asyncio
from collections import Counter
from datetime import timedelta

import pytest

from taskledger.v1.core.exceptions import InvalidTransitionError
from taskledger.v1.infra.jobs.models import JobStatus
from taskledger.v1.infra.jobs.service import JobService


@pytest.fixture
def job_service(test_settings) -> JobService:
    return JobService(test_settings)


async def _claim_all(job_service, session_factory, worker_id, now):
    """Drain the queue from a dedicated session, returning claimed ids."""
    claimed = []
    async with session_factory() as session:
        while True:
            job = await job_service.claim_next(session, worker_id, now=now)
            if job is None:
                return claimed
            claimed.append(job.id)


async def test_single_job_claimed_once(job_service, session_factory, now):
    async with session_factory() as session:
        job_id = await job_service.enqueue(session, "t", now=now)

    async def claim(worker_id):
        async with session_factory() as session:
            job = await job_service.claim_next(session, worker_id, now=now)
            return job.id if job else None

    results = await asyncio.gather(*(claim(f"worker-{i}") for i in range(8)))

    winners = [result for result in results if result is not None]
    assert winners == [job_id]

    async with session_factory() as session:
        job = await job_service.get_job_by_id(session, job_id)
        assert job.status == JobStatus.PROCESSING.value
        assert job.attempts == 1


async def test_many_jobs_never_double_claimed(job_service, session_factory, now):
    async with session_factory() as session:
        job_ids = {await job_service.enqueue(session, "t", now=now) for _ in range(20)}

    results = await asyncio.gather(
        *(
            _claim_all(job_service, session_factory, f"worker-{i}", now)
            for i in range(4)
        )
    )

    claimed = [job_id for worker_claims in results for job_id in worker_claims]
    counts = Counter(claimed)
    assert set(counts) == job_ids
    assert all(count == 1 for count in counts.values())


async def test_complete_and_reclaim_race_has_one_winner(
    job_service, session_factory, now
):
    """A worker finishing exactly as the watchdog reclaims: one side loses."""
    async with session_factory() as session:
        job_id = await job_service.enqueue(session, "t", timeout=5, now=now)
        await job_service.claim_next(session, "worker-1", now=now)

    later = now + timedelta(seconds=10)

    async def complete():
        async with session_factory() as session:
            try:
                await job_service.complete_job(
                    session, job_id, {"ok": True}, worker_id="worker-1", now=later
                )
                return "completed"
            except InvalidTransitionError:
                return "lost"

    async def reclaim():
        async with session_factory() as session:
            reclaimed = await job_service.reclaim_timed_out(session, now=later)
            return "reclaimed" if reclaimed else "lost"

    outcomes = sorted(await asyncio.gather(complete(), reclaim()))

    assert outcomes.count("lost") == 1

    async with session_factory() as session:
        job = await job_service.get_job_by_id(session, job_id)
        if "completed" in outcomes:
            assert job.status == JobStatus.COMPLETED.value
        else:
            assert job.status == JobStatus.PENDING.value
            assert job.retries == 1
