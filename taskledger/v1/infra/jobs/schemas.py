"""
Job queue Pydantic schemas.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from taskledger.infra.database import to_utc
from taskledger.v1.infra.jobs.models import JobPriority, JobStatus


class JobCreate(BaseModel):
    """Schema for creating a new job."""

    type: str = Field(..., min_length=1, description="Job type identifier")
    payload: dict[str, Any] = Field(default_factory=dict, description="Job parameters")
    priority: JobPriority = Field(
        default=JobPriority.NORMAL, description="low, normal, high or urgent"
    )
    max_retries: int | None = Field(
        default=None, ge=0, description="Retry budget (defaults from settings)"
    )
    timeout_seconds: int | None = Field(
        default=None, gt=0, description="Processing timeout (defaults from settings)"
    )
    scheduled_for: datetime | None = Field(
        default=None, description="Earliest time the job may be claimed"
    )

    @field_validator("priority", mode="before")
    @classmethod
    def parse_priority(cls, value: Any) -> JobPriority:
        return JobPriority.parse(value)

    @field_validator("scheduled_for")
    @classmethod
    def scheduled_for_utc(cls, value: datetime | None) -> datetime | None:
        return to_utc(value)


class JobResponse(BaseModel):
    """Schema for job API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    payload: dict[str, Any]
    status: JobStatus
    priority: JobPriority
    retries: int
    max_retries: int
    timeout_seconds: int
    attempts: int
    progress: int

    locked_by: str | None = None
    heartbeat_at: datetime | None = None
    lease_expires_at: datetime | None = None

    result: dict[str, Any] | None = None
    error: str | None = None
    error_code: str | None = None

    scheduled_for: datetime | None = None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @field_serializer("priority")
    def serialize_priority(self, priority: JobPriority) -> str:
        return priority.label


class JobListResponse(BaseModel):
    """Schema for job list API response."""

    jobs: list[JobResponse]
    total: int
    limit: int
    offset: int


class JobStatsResponse(BaseModel):
    """Schema for job statistics."""

    total_jobs: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    queue_depth: int  # pending + processing
    failed_last_hour: int


class JobEnqueueResponse(BaseModel):
    """Schema for job enqueue response."""

    job_id: UUID
    status: JobStatus


class JobClaimRequest(BaseModel):
    """Schema for a remote worker claiming its next job."""

    worker_id: str = Field(..., min_length=1, description="Claiming worker identity")
    job_types: list[str] | None = Field(
        default=None, description="Job types the worker can handle"
    )


class JobProgressRequest(BaseModel):
    worker_id: str | None = None
    percent: int = Field(..., ge=0, le=100)


class JobCompleteRequest(BaseModel):
    worker_id: str | None = None
    result: dict[str, Any] | None = None


class JobFailRequest(BaseModel):
    worker_id: str | None = None
    error: str = Field(..., min_length=1)
