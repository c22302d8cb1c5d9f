"""Tests for the maintenance sweeper and the maintenance.sweep job."""

import asyncio
from datetime import timedelta, timezone

import pytest

from taskledger.v1.core.registries import JobRegistry
from taskledger.v1.infra.jobs.handlers import MaintenanceSweepHandler
from taskledger.v1.infra.jobs.models import JobStatus, utcnow
from taskledger.v1.infra.jobs.registry_init import MAINTENANCE_SWEEP
from taskledger.v1.infra.jobs.service import JobService
from taskledger.v1.infra.jobs.worker import JobWorker
from taskledger.v1.infra.ledger.models import LedgerStatus
from taskledger.v1.infra.maintenance.sweeper import MaintenanceSweeper


@pytest.fixture
def sweeper(test_settings) -> MaintenanceSweeper:
    return MaintenanceSweeper(test_settings)


async def _seed(sweeper, session, now):
    """One sweepable row per store, plus one row per store that must survive."""
    done = await sweeper.job_service.enqueue(session, "t", now=now)
    await sweeper.job_service.cancel_job(session, done, now=now)
    await sweeper.job_service.enqueue(session, "t", now=now)

    await sweeper.ledger_service.record_outcome(
        session, "evt_ok", "t", LedgerStatus.SUCCESS, now=now
    )
    await sweeper.ledger_service.record_outcome(
        session, "evt_failed", "t", LedgerStatus.FAILED, "boom", now=now
    )

    await sweeper.cache_service.put(session, "tenant", "fp-old", "ctx", {}, ttl=1, now=now)
    await sweeper.cache_service.put(
        session, "tenant", "fp-live", "ctx", {}, ttl=timedelta(days=365), now=now
    )


async def test_sweep_all_stores(sweeper, db_session, now):
    await _seed(sweeper, db_session, now)
    later = now + timedelta(days=1)

    report = await sweeper.run(
        db_session, now=later, jobs_older_than=later, ledger_older_than=later
    )

    assert report.ok
    assert report.deleted == {"jobs": 1, "ledger": 1, "cache": 1}
    assert report.total_deleted == 3
    assert report.finished_at is not None

    # Nothing left to do on a second run
    again = await sweeper.run(
        db_session, now=later, jobs_older_than=later, ledger_older_than=later
    )
    assert again.deleted == {"jobs": 0, "ledger": 0, "cache": 0}

    assert await sweeper.ledger_service.get_record(db_session, "evt_failed")
    jobs, total = await sweeper.job_service.list_jobs(db_session)
    assert total == 1
    assert jobs[0].status == JobStatus.PENDING.value


async def test_concurrent_sweeps_delete_each_row_once(
    test_settings, session_factory, now
):
    seeder = MaintenanceSweeper(test_settings)
    async with session_factory() as session:
        for i in range(5):
            done = await seeder.job_service.enqueue(session, "t", now=now)
            await seeder.job_service.cancel_job(session, done, now=now)
            await seeder.ledger_service.record_outcome(
                session, f"evt_{i}", "t", LedgerStatus.SUCCESS, now=now
            )
            await seeder.cache_service.put(
                session, "tenant", f"fp-{i}", "ctx", {}, ttl=1, now=now
            )
        await seeder.job_service.enqueue(session, "t", now=now)

    later = now + timedelta(days=1)

    async def sweep():
        async with session_factory() as session:
            return await MaintenanceSweeper(test_settings).run(
                session, now=later, jobs_older_than=later, ledger_older_than=later
            )

    first, second = await asyncio.gather(sweep(), sweep())

    assert first.ok and second.ok
    for store in MaintenanceSweeper.STORES:
        assert first.deleted[store] + second.deleted[store] == 5

    async with session_factory() as session:
        again = await seeder.run(
            session, now=later, jobs_older_than=later, ledger_older_than=later
        )
        assert again.total_deleted == 0
        _, total = await seeder.job_service.list_jobs(session)
        assert total == 1


async def test_offset_cutoff_is_compared_as_an_instant(sweeper, db_session, now):
    await _seed(sweeper, db_session, now)

    # 16:00+05:00 is an hour before the rows were written
    cutoff = (now - timedelta(hours=1)).astimezone(timezone(timedelta(hours=5)))
    report = await sweeper.run(
        db_session, now=now, jobs_older_than=cutoff, ledger_older_than=cutoff
    )

    assert report.deleted == {"jobs": 0, "ledger": 0, "cache": 0}


async def test_sweep_respects_retention_defaults(sweeper, db_session, now):
    """Rows newer than the configured retention survive a default sweep."""
    recent = utcnow()
    await _seed(sweeper, db_session, recent)

    report = await sweeper.run(db_session, now=recent + timedelta(seconds=5))

    assert report.deleted == {"jobs": 0, "ledger": 0, "cache": 1}


async def test_failing_store_does_not_stop_others(
    sweeper, db_session, now, monkeypatch
):
    await _seed(sweeper, db_session, now)
    later = now + timedelta(days=1)

    async def broken(*args, **kwargs):
        raise RuntimeError("ledger table locked")

    monkeypatch.setattr(sweeper.ledger_service, "cleanup_old_records", broken)

    report = await sweeper.run(
        db_session, now=later, jobs_older_than=later, ledger_older_than=later
    )

    assert not report.ok
    assert report.errors == {"ledger": "ledger table locked"}
    assert report.deleted == {"jobs": 1, "cache": 1}


async def test_sweep_selected_stores(sweeper, db_session, now):
    await _seed(sweeper, db_session, now)

    report = await sweeper.run(
        db_session, now=now + timedelta(days=1), stores=("cache",)
    )

    assert report.deleted == {"cache": 1}


async def test_unknown_store_rejected(sweeper, db_session):
    with pytest.raises(ValueError, match="Unknown store"):
        await sweeper.run(db_session, stores=("queue",))


async def test_sweep_runs_as_a_job(test_settings, session_factory, now):
    """The sweep can be queued like any other job and reports its deletions."""
    sweeper = MaintenanceSweeper(test_settings)
    async with session_factory() as session:
        await _seed(sweeper, session, now)
        job_id = await sweeper.job_service.enqueue(
            session,
            MAINTENANCE_SWEEP,
            {
                "stores": ["jobs", "ledger"],
                "jobs_older_than": (now + timedelta(days=1)).isoformat(),
                "ledger_older_than": (now + timedelta(days=1)).isoformat(),
            },
            priority="low",
        )

    registry = JobRegistry()
    registry.register(MAINTENANCE_SWEEP, MaintenanceSweepHandler(test_settings))
    worker = JobWorker(
        test_settings,
        session_factory=session_factory,
        registry=registry,
        job_types=[MAINTENANCE_SWEEP],
    )

    assert await worker.run_once() == 1

    async with session_factory() as session:
        job = await JobService(test_settings).get_job_by_id(session, job_id)
        assert job.status == JobStatus.COMPLETED.value
        assert job.result["deleted"] == {"jobs": 1, "ledger": 1}
        assert job.result["errors"] == {}


async def test_sweep_job_rejects_unknown_store(test_settings, session_factory):
    job_service = JobService(test_settings)
    async with session_factory() as session:
        job_id = await job_service.enqueue(
            session, MAINTENANCE_SWEEP, {"stores": ["queue"]}, max_retries=0
        )

    registry = JobRegistry()
    registry.register(MAINTENANCE_SWEEP, MaintenanceSweepHandler(test_settings))
    worker = JobWorker(
        test_settings,
        session_factory=session_factory,
        registry=registry,
        job_types=[MAINTENANCE_SWEEP],
    )
    await worker.run_once()

    async with session_factory() as session:
        job = await job_service.get_job_by_id(session, job_id)
        assert job.status == JobStatus.FAILED.value
        assert "queue" in job.error
