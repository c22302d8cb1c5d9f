"""
Idempotency ledger API endpoints.

Lets out-of-process consumers reserve external event ids and record the
outcome of processing them.
"""

from typing import Any

from fastapi import APIRouter, Path
from sqlalchemy.ext.asyncio import AsyncSession

from taskledger.config.settings import Settings, SettingsDep
from taskledger.infra.database import SessionDep
from taskledger.v1.core.exceptions import NotFoundError, create_success_response
from taskledger.v1.infra.ledger.schemas import (
    IdempotencyRecordResponse,
    OutcomeRequest,
    ReservationResponse,
    ReserveRequest,
)
from taskledger.v1.infra.ledger.service import IdempotencyService

router = APIRouter(prefix="/ledger", tags=["ledger"])

EventIdPath = Path(..., min_length=1, max_length=255)


@router.post("/{event_id}/reserve", response_model=dict)
async def reserve_event(
    request: ReserveRequest,
    event_id: str = EventIdPath,
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Reserve an event id; `proceed` is true for exactly one caller."""

    service = IdempotencyService(settings)
    reservation = await service.check_and_reserve(
        session, event_id, request.event_type
    )

    response = ReservationResponse(
        status=reservation.status,
        proceed=reservation.proceed,
        record=IdempotencyRecordResponse.model_validate(reservation.record)
        if reservation.record
        else None,
    )
    return create_success_response(data=response.model_dump(mode="json"))


@router.put("/{event_id}/outcome", response_model=dict)
async def record_outcome(
    request: OutcomeRequest,
    event_id: str = EventIdPath,
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Record the final outcome of processing an event."""

    service = IdempotencyService(settings)
    record = await service.record_outcome(
        session,
        event_id,
        request.event_type,
        request.status,
        request.error_message,
    )

    data = IdempotencyRecordResponse.model_validate(record)
    return create_success_response(data=data.model_dump(mode="json"))


@router.get("/{event_id}", response_model=dict)
async def get_record(
    event_id: str = EventIdPath,
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get the ledger record for an event id."""

    service = IdempotencyService(settings)
    record = await service.get_record(session, event_id)
    if record is None:
        raise NotFoundError(
            f"Event {event_id} not found", {"event_id": event_id}
        )

    data = IdempotencyRecordResponse.model_validate(record)
    return create_success_response(data=data.model_dump(mode="json"))
