from datetime import datetime

from pydantic import BaseModel, Field


class SweepRequest(BaseModel):
    """Optional overrides for a single sweep run."""

    jobs_older_than: datetime | None = Field(
        default=None, description="Delete terminal jobs updated before this instant"
    )
    ledger_older_than: datetime | None = Field(
        default=None, description="Delete successful ledger records processed before this instant"
    )


class SweepReport(BaseModel):
    """Rows deleted per store, plus the error of any store that failed."""

    deleted: dict[str, int] = Field(default_factory=dict)
    errors: dict[str, str] = Field(default_factory=dict)
    started_at: datetime
    finished_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def total_deleted(self) -> int:
        return sum(self.deleted.values())


class ReclaimResponse(BaseModel):
    reclaimed_count: int
    job_ids: list[str]
