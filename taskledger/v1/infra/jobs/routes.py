"""
Job management API endpoints.

Provides producer endpoints for enqueueing and monitoring jobs, plus worker
endpoints so out-of-process workers can claim and settle jobs over HTTP.
"""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Query
from sqlalchemy.ext.asyncio import AsyncSession

from taskledger.config.logging import get_logger
from taskledger.config.settings import Settings, SettingsDep
from taskledger.infra.database import SessionDep
from taskledger.v1.core.exceptions import NotFoundError, create_success_response
from taskledger.v1.infra.jobs.models import JobStatus
from taskledger.v1.infra.jobs.schemas import (
    JobClaimRequest,
    JobCompleteRequest,
    JobCreate,
    JobEnqueueResponse,
    JobFailRequest,
    JobListResponse,
    JobProgressRequest,
    JobResponse,
)
from taskledger.v1.infra.jobs.service import JobService

logger = get_logger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])


def _job_data(job) -> dict[str, Any]:
    return JobResponse.model_validate(job).model_dump(mode="json")


@router.post("", response_model=dict, status_code=201)
async def enqueue_job(
    job_create: JobCreate,
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Enqueue a new background job."""

    job_service = JobService(settings)
    job = await job_service.enqueue_job(session, job_create)

    logger.info("Job enqueued via API", job_id=str(job.id), type=job.type)

    response = JobEnqueueResponse(job_id=job.id, status=JobStatus(job.status))
    return create_success_response(data=response.model_dump(mode="json"))


@router.get("", response_model=dict)
async def list_jobs(
    status: list[JobStatus] | None = Query(
        default=None, description="Filter by status"
    ),
    type: str | None = Query(default=None, description="Filter by job type"),
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """List jobs with filtering and pagination."""

    job_service = JobService(settings)
    jobs, total = await job_service.list_jobs(
        session, statuses=status, job_type=type, limit=limit, offset=offset
    )

    response_data = JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        total=total,
        limit=limit,
        offset=offset,
    )
    return create_success_response(data=response_data.model_dump(mode="json"))


@router.get("/stats/overview", response_model=dict)
async def get_job_stats(
    type: str | None = Query(default=None, description="Restrict to a job type"),
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get job counts per status."""

    job_service = JobService(settings)
    stats = await job_service.get_job_stats(session, job_type=type)

    return create_success_response(data=stats.model_dump())


@router.post("/claim", response_model=dict)
async def claim_job(
    request: JobClaimRequest,
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Claim the next eligible job; data is null when the queue is empty."""

    job_service = JobService(settings)
    job = await job_service.claim_next(session, request.worker_id, request.job_types)

    return create_success_response(data=_job_data(job) if job else None)


@router.get("/{job_id}", response_model=dict)
async def get_job(
    job_id: UUID,
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get a specific job by ID."""

    job_service = JobService(settings)
    job = await job_service.get_job_by_id(session, job_id)

    if not job:
        raise NotFoundError(f"Job {job_id} not found", {"job_id": str(job_id)})

    return create_success_response(data=_job_data(job))


@router.post("/{job_id}/cancel", response_model=dict)
async def cancel_job(
    job_id: UUID,
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Cancel a job that has not been claimed yet."""

    job_service = JobService(settings)
    job = await job_service.cancel_job(session, job_id)

    return create_success_response(data=_job_data(job))


@router.post("/{job_id}/progress", response_model=dict)
async def report_progress(
    job_id: UUID,
    request: JobProgressRequest,
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Record progress for a claimed job and extend its lease."""

    job_service = JobService(settings)
    job = await job_service.report_progress(
        session, job_id, request.percent, worker_id=request.worker_id
    )

    return create_success_response(data=_job_data(job))


@router.post("/{job_id}/complete", response_model=dict)
async def complete_job(
    job_id: UUID,
    request: JobCompleteRequest,
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Mark a claimed job completed."""

    job_service = JobService(settings)
    job = await job_service.complete_job(
        session, job_id, request.result, worker_id=request.worker_id
    )

    return create_success_response(data=_job_data(job))


@router.post("/{job_id}/fail", response_model=dict)
async def fail_job(
    job_id: UUID,
    request: JobFailRequest,
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Record a failed attempt; the job is retried while budget remains."""

    job_service = JobService(settings)
    job = await job_service.fail_job(
        session, job_id, request.error, worker_id=request.worker_id
    )

    return create_success_response(data=_job_data(job))
