"""
Operational endpoints invoked by an external scheduler.
"""

from typing import Any

from fastapi import APIRouter, Query
from sqlalchemy.ext.asyncio import AsyncSession

from taskledger.config.settings import Settings, SettingsDep
from taskledger.infra.database import SessionDep
from taskledger.v1.core.exceptions import create_success_response
from taskledger.v1.infra.jobs.service import JobService
from taskledger.v1.infra.maintenance.schemas import ReclaimResponse, SweepRequest
from taskledger.v1.infra.maintenance.sweeper import MaintenanceSweeper

router = APIRouter(prefix="/maintenance", tags=["maintenance"])


@router.post("/sweep", response_model=dict)
async def run_sweep(
    request: SweepRequest | None = None,
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Delete terminal jobs, aged ledger records and expired cache entries."""

    request = request or SweepRequest()
    sweeper = MaintenanceSweeper(settings)
    report = await sweeper.run(
        session,
        jobs_older_than=request.jobs_older_than,
        ledger_older_than=request.ledger_older_than,
    )

    return create_success_response(data=report.model_dump(mode="json"))


@router.post("/reclaim", response_model=dict)
async def reclaim_timed_out(
    limit: int = Query(default=100, ge=1, le=1000),
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Run one watchdog pass over processing jobs with expired leases."""

    job_service = JobService(settings)
    job_ids = await job_service.reclaim_timed_out(session, limit=limit)

    response = ReclaimResponse(
        reclaimed_count=len(job_ids), job_ids=[str(job_id) for job_id in job_ids]
    )
    return create_success_response(data=response.model_dump())
