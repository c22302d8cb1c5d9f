from datetime import UTC, datetime, timedelta

from fastapi import APIRouter
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from taskledger.config.logging import get_logger
from taskledger.config.settings import Settings, SettingsDep
from taskledger.infra.database import SessionDep, to_utc
from taskledger.v1.core.exceptions import create_success_response
from taskledger.v1.infra.jobs.models import Job, JobStatus

logger = get_logger(__name__)
router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class WorkerHealth(BaseModel):
    """Worker health status."""

    active_workers: int
    last_heartbeat_age_seconds: int | None = None
    expired_leases_count: int = 0
    queue_depth: int = 0


class HealthResponse(BaseModel):
    """Health response with worker and database status."""

    ok: bool
    version: str
    environment: str
    timestamp: str
    database: DatabaseHealth
    worker: WorkerHealth | None = None


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep, session: AsyncSession = SessionDep
):
    """Health check endpoint with database and worker status."""

    timestamp = datetime.now(UTC).isoformat()

    # Check database health
    db_health = await _check_database_health(session)

    # Worker health failures don't fail overall health
    worker_health = None
    if db_health.connected:
        try:
            worker_health = await _check_worker_health(session, settings)
        except Exception as e:
            logger.warning("Worker health check failed", error=str(e))
            worker_health = WorkerHealth(active_workers=0)

    health = HealthResponse(
        ok=db_health.connected,
        version=settings.version,
        environment=settings.environment,
        timestamp=timestamp,
        database=db_health,
        worker=worker_health,
    )

    return create_success_response(data=health.model_dump())


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        # Simple query to test database connectivity
        await session.execute(text("SELECT 1"))

        end_time = datetime.now(UTC)
        response_time_ms = (end_time - start_time).total_seconds() * 1000

        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except Exception as e:
        logger.error("Database health check failed", error=str(e))
        return DatabaseHealth(connected=False, error=str(e))


async def _check_worker_health(
    session: AsyncSession, settings: Settings
) -> WorkerHealth:
    """Check job worker health and queue status."""
    now = datetime.now(UTC)

    # Count active workers based on recent heartbeats
    heartbeat_cutoff = now - timedelta(seconds=settings.job_heartbeat_interval_s * 10)

    active_workers_result = await session.execute(
        select(func.count(func.distinct(Job.locked_by))).where(
            Job.status == JobStatus.PROCESSING.value, Job.heartbeat_at > heartbeat_cutoff
        )
    )
    active_workers = active_workers_result.scalar() or 0

    # Find most recent heartbeat
    last_heartbeat_result = await session.execute(
        select(func.max(Job.heartbeat_at)).where(
            Job.status == JobStatus.PROCESSING.value, Job.heartbeat_at.is_not(None)
        )
    )
    last_heartbeat = to_utc(last_heartbeat_result.scalar())

    last_heartbeat_age_seconds = None
    if last_heartbeat:
        last_heartbeat_age_seconds = int((now - last_heartbeat).total_seconds())

    # Processing jobs the watchdog has yet to reclaim
    expired_leases_result = await session.execute(
        select(func.count(Job.id)).where(
            Job.status == JobStatus.PROCESSING.value, Job.lease_expires_at < now
        )
    )
    expired_leases_count = expired_leases_result.scalar() or 0

    # Calculate queue depth
    queue_depth_result = await session.execute(
        select(func.count(Job.id)).where(
            Job.status.in_([JobStatus.PENDING.value, JobStatus.PROCESSING.value])
        )
    )
    queue_depth = queue_depth_result.scalar() or 0

    return WorkerHealth(
        active_workers=active_workers,
        last_heartbeat_age_seconds=last_heartbeat_age_seconds,
        expired_leases_count=expired_leases_count,
        queue_depth=queue_depth,
    )
