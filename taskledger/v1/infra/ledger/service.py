"""
Idempotency ledger service.

A uniqueness constraint on the event id turns "have I seen this event" into
an atomic insert-or-detect-conflict: of any number of concurrent callers
racing on the same event id, exactly one observes NOT_SEEN.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

from sqlalchemy import and_, case, delete, insert, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from taskledger.config.logging import get_logger
from taskledger.config.settings import Settings
from taskledger.infra.database import dialect_insert
from taskledger.v1.core.exceptions import ValidationError
from taskledger.v1.infra.ledger.models import IdempotencyRecord, LedgerStatus
from taskledger.v1.infra.ledger.schemas import ReservationStatus

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class Reservation:
    """Tagged reservation result with the ledger row it observed."""

    status: ReservationStatus
    record: IdempotencyRecord | None

    @property
    def proceed(self) -> bool:
        """Whether the caller owns the event and should do the work."""
        return self.status == ReservationStatus.NOT_SEEN


class IdempotencyService:
    """Service for recording and checking processed external events."""

    def __init__(self, settings: Settings):
        self.settings = settings

    async def check_and_reserve(
        self,
        session: AsyncSession,
        event_id: str,
        event_type: str | None = None,
        now: datetime | None = None,
    ) -> Reservation:
        """
        Reserve an event id for processing.

        Returns NOT_SEEN to exactly one caller per event id. An existing
        failed record (when retrying failures is enabled) or a reservation
        older than the reservation timeout can be taken over by exactly one
        caller as well; every other caller gets ALREADY_PROCESSED with the
        existing record.
        """
        if not event_id:
            raise ValidationError("event_id is required")

        now = now or datetime.now(UTC)
        record: IdempotencyRecord | None = None

        # A row deleted between the conflict and the lookup gets one more insert
        for _ in range(2):
            try:
                await session.execute(
                    insert(IdempotencyRecord).values(
                        event_id=event_id,
                        event_type=event_type,
                        status=LedgerStatus.PROCESSING.value,
                        attempt_count=1,
                        processed_at=now,
                        created_at=now,
                        updated_at=now,
                    )
                )
                await session.commit()
            except IntegrityError:
                await session.rollback()
            else:
                record = await self.get_record(session, event_id)
                logger.info(
                    "Event reserved", event_id=event_id, event_type=event_type
                )
                return Reservation(ReservationStatus.NOT_SEEN, record)

            taken_over = await self._take_over(session, event_id, event_type, now)
            record = await self.get_record(session, event_id)
            if taken_over:
                logger.info(
                    "Event re-reserved",
                    event_id=event_id,
                    attempt_count=record.attempt_count if record else None,
                )
                return Reservation(ReservationStatus.NOT_SEEN, record)
            if record is not None:
                break

        logger.info(
            "Duplicate event skipped",
            event_id=event_id,
            status=record.status if record else None,
        )
        return Reservation(ReservationStatus.ALREADY_PROCESSED, record)

    async def record_outcome(
        self,
        session: AsyncSession,
        event_id: str,
        event_type: str,
        status: LedgerStatus | str,
        error_message: str | None = None,
        now: datetime | None = None,
    ) -> IdempotencyRecord:
        """
        Upsert the final outcome of processing an event.

        Closing the caller's own open reservation keeps its attempt count;
        recording over any other existing outcome counts a new attempt.
        """
        status = LedgerStatus(status)
        if status == LedgerStatus.PROCESSING:
            raise ValidationError(
                "Outcome must be success or failed", {"status": status.value}
            )

        now = now or datetime.now(UTC)
        insert_stmt = dialect_insert(session, IdempotencyRecord).values(
            event_id=event_id,
            event_type=event_type,
            status=status.value,
            error_message=error_message,
            attempt_count=1,
            processed_at=now,
            created_at=now,
            updated_at=now,
        )
        upsert_stmt = insert_stmt.on_conflict_do_update(
            index_elements=["event_id"],
            set_={
                "event_type": insert_stmt.excluded.event_type,
                "status": insert_stmt.excluded.status,
                "error_message": insert_stmt.excluded.error_message,
                "processed_at": insert_stmt.excluded.processed_at,
                "updated_at": insert_stmt.excluded.updated_at,
                "attempt_count": case(
                    (
                        IdempotencyRecord.status == LedgerStatus.PROCESSING.value,
                        IdempotencyRecord.attempt_count,
                    ),
                    else_=IdempotencyRecord.attempt_count + 1,
                ),
            },
        )
        await session.execute(upsert_stmt)
        await session.commit()

        record = await self.get_record(session, event_id)

        log = logger.info if status == LedgerStatus.SUCCESS else logger.warning
        log(
            "Event outcome recorded",
            event_id=event_id,
            event_type=event_type,
            status=status.value,
            attempt_count=record.attempt_count,
            error=error_message,
        )
        return record

    async def get_record(
        self, session: AsyncSession, event_id: str
    ) -> IdempotencyRecord | None:
        return await session.get(IdempotencyRecord, event_id, populate_existing=True)

    async def is_processed(self, session: AsyncSession, event_id: str) -> bool:
        """Whether the event already has a successful outcome."""
        record = await self.get_record(session, event_id)
        return record is not None and record.is_success()

    async def run_idempotent(
        self,
        session: AsyncSession,
        event_id: str,
        event_type: str,
        handler: Callable[[], Awaitable[T]],
    ) -> tuple[Reservation, T | None]:
        """
        Run `handler` at most once per successful outcome of `event_id`.

        Returns the reservation and the handler result (None when skipped).
        Handler exceptions are recorded as a failed outcome and re-raised.
        """
        reservation = await self.check_and_reserve(session, event_id, event_type)
        if not reservation.proceed:
            return reservation, None

        try:
            result = await handler()
        except Exception as e:
            await session.rollback()
            await self.record_outcome(
                session, event_id, event_type, LedgerStatus.FAILED, str(e)
            )
            raise

        await self.record_outcome(session, event_id, event_type, LedgerStatus.SUCCESS)
        return reservation, result

    async def cleanup_old_records(
        self, session: AsyncSession, older_than: datetime | None = None
    ) -> int:
        """Delete successful records processed before the retention cutoff.

        Failed records are kept for manual inspection; see purge_failed.
        """
        cutoff = older_than or datetime.now(UTC) - timedelta(
            days=self.settings.ledger_retention_days
        )
        result = await session.execute(
            delete(IdempotencyRecord).where(
                IdempotencyRecord.status == LedgerStatus.SUCCESS.value,
                IdempotencyRecord.processed_at < cutoff,
            )
        )
        deleted_count = result.rowcount
        await session.commit()

        if deleted_count > 0:
            logger.info(
                "Cleaned up ledger records",
                deleted_count=deleted_count,
                cutoff=cutoff.isoformat(),
            )
        return deleted_count

    async def purge_failed(
        self, session: AsyncSession, older_than: datetime | None = None
    ) -> int:
        """Explicitly delete failed records, optionally only older ones."""
        filters: list[Any] = [IdempotencyRecord.status == LedgerStatus.FAILED.value]
        if older_than is not None:
            filters.append(IdempotencyRecord.processed_at < older_than)

        result = await session.execute(delete(IdempotencyRecord).where(*filters))
        deleted_count = result.rowcount
        await session.commit()

        logger.info("Purged failed ledger records", deleted_count=deleted_count)
        return deleted_count

    async def _take_over(
        self,
        session: AsyncSession,
        event_id: str,
        event_type: str | None,
        now: datetime,
    ) -> bool:
        """Compare-and-swap a retryable record back into a reservation."""
        stale_cutoff = now - timedelta(
            seconds=self.settings.ledger_reservation_timeout_s
        )
        reclaimable = [
            and_(
                IdempotencyRecord.status == LedgerStatus.PROCESSING.value,
                IdempotencyRecord.updated_at < stale_cutoff,
            )
        ]
        if self.settings.ledger_retry_failed:
            reclaimable.append(IdempotencyRecord.status == LedgerStatus.FAILED.value)

        values: dict[str, Any] = {
            "status": LedgerStatus.PROCESSING.value,
            "attempt_count": IdempotencyRecord.attempt_count + 1,
            "processed_at": now,
            "updated_at": now,
        }
        if event_type is not None:
            values["event_type"] = event_type

        result = await session.execute(
            update(IdempotencyRecord)
            .where(IdempotencyRecord.event_id == event_id, or_(*reclaimable))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return result.rowcount == 1
