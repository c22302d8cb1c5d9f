from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class ReservationStatus(str, Enum):
    """Tagged result of a reservation attempt."""

    NOT_SEEN = "not_seen"
    ALREADY_PROCESSED = "already_processed"


class IdempotencyRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event_id: str
    event_type: str | None = None
    status: str
    error_message: str | None = None
    attempt_count: int
    processed_at: datetime
    created_at: datetime
    updated_at: datetime


class ReserveRequest(BaseModel):
    event_type: str | None = Field(default=None, max_length=100)


class ReservationResponse(BaseModel):
    """Result of a reservation; `proceed` is true for exactly one caller."""

    status: ReservationStatus
    proceed: bool
    record: IdempotencyRecordResponse | None = None


class OutcomeRequest(BaseModel):
    event_type: str = Field(..., min_length=1, max_length=100)
    status: Literal["success", "failed"]
    error_message: str | None = None
