from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import CheckConstraint, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from taskledger.infra.database import Base, UTCDateTime


class LedgerStatus(str, Enum):
    """Outcome of an event processing attempt.

    PROCESSING marks an open reservation; callers only ever record SUCCESS
    or FAILED.
    """

    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


class IdempotencyRecord(Base):
    """One row per external event identifier."""

    __tablename__ = "idempotency_ledger"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(
        Text, nullable=False, default=LedgerStatus.PROCESSING.value
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    processed_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('processing', 'success', 'failed')",
            name="idempotency_ledger_status_check",
        ),
        CheckConstraint(
            "attempt_count >= 1", name="idempotency_ledger_attempt_count_check"
        ),
        Index("ix_idempotency_ledger_status_processed_at", "status", "processed_at"),
    )

    def is_success(self) -> bool:
        return self.status == LedgerStatus.SUCCESS.value
