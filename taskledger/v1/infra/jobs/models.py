"""
Job queue models.
"""

from datetime import UTC, datetime
from enum import Enum, IntEnum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Index,
    Integer,
    SmallInteger,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from taskledger.infra.database import Base, UTCDateTime, to_utc


class JobStatus(str, Enum):
    """Job status enumeration."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @classmethod
    def terminal(cls) -> list["JobStatus"]:
        return [cls.COMPLETED, cls.FAILED, cls.CANCELLED]


class JobPriority(IntEnum):
    """Job priority; higher values are claimed first."""

    LOW = 0
    NORMAL = 1
    HIGH = 2
    URGENT = 3

    @classmethod
    def parse(cls, value: "JobPriority | int | str") -> "JobPriority":
        """Accept a member, its rank, or its name in any case."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"Unknown job priority: {value}") from None
        return cls(value)

    @property
    def label(self) -> str:
        return self.name.lower()


class JobErrorCode(str, Enum):
    """Structured error identifiers stored alongside a job's last error."""

    PROCESSING_ERROR = "PROCESSING_ERROR"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    TIMEOUT = "TIMEOUT"
    NO_HANDLER = "NO_HANDLER"


def utcnow() -> datetime:
    return datetime.now(UTC)


class Job(Base):
    """
    A unit of asynchronous work tracked through its status lifecycle.

    pending -> processing -> completed | failed | cancelled, with failed
    attempts looping back to pending while the retry budget lasts.
    """

    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    type: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Handler identifier"
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        comment="Opaque job parameters",
    )

    # Job state
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.PENDING.value,
        comment="pending|processing|completed|failed|cancelled",
    )
    priority: Mapped[int] = mapped_column(
        SmallInteger,
        nullable=False,
        default=JobPriority.NORMAL.value,
        comment="0=low 1=normal 2=high 3=urgent, higher is claimed first",
    )
    scheduled_for: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="Earliest eligibility time"
    )

    # Retry and timeout budget
    retries: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Failures retried so far"
    )
    max_retries: Mapped[int] = mapped_column(
        Integer, nullable=False, default=3, comment="Retry budget"
    )
    timeout_seconds: Mapped[int] = mapped_column(
        Integer, nullable=False, default=300, comment="Processing timeout"
    )
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Number of claims made"
    )

    # Worker coordination
    locked_by: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Worker holding the claim"
    )
    heartbeat_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="Last worker heartbeat"
    )
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
        comment="Claim is reclaimable by the watchdog after this instant",
    )

    # Results and progress
    result: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True, comment="Job result data"
    )
    progress: Mapped[int] = mapped_column(
        SmallInteger, nullable=False, default=0, comment="Percent complete 0-100"
    )
    error: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Last error message"
    )
    error_code: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Structured error identifier"
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    started_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')",
            name="jobs_status_check",
        ),
        CheckConstraint("priority BETWEEN 0 AND 3", name="jobs_priority_check"),
        CheckConstraint("progress BETWEEN 0 AND 100", name="jobs_progress_check"),
        CheckConstraint(
            "retries >= 0 AND retries <= max_retries", name="jobs_retries_check"
        ),
        Index("ix_jobs_status_priority_created_at", "status", "priority", "created_at"),
        Index("ix_jobs_status_lease_expires_at", "status", "lease_expires_at"),
        Index("ix_jobs_type_status", "type", "status"),
        Index("ix_jobs_updated_at", "updated_at"),
    )

    @property
    def priority_level(self) -> JobPriority:
        return JobPriority(self.priority)

    def is_terminal(self) -> bool:
        return self.status in {s.value for s in JobStatus.terminal()}

    def has_retry_budget(self) -> bool:
        """Whether the next failure returns the job to pending."""
        return self.retries < self.max_retries

    def is_lease_expired(self, now: datetime | None = None) -> bool:
        """Check if a processing job outlived its lease."""
        if self.status != JobStatus.PROCESSING.value or self.lease_expires_at is None:
            return False
        return to_utc(self.lease_expires_at) < (now or utcnow())
