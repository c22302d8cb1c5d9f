from datetime import datetime
from typing import Any

from sqlalchemy import JSON, CheckConstraint, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from taskledger.infra.database import Base, UTCDateTime
from taskledger.v1.infra.jobs.models import utcnow


class CacheEntry(Base):
    """A computed result keyed by (tenant, content fingerprint, context)."""

    __tablename__ = "result_cache"

    tenant_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    fingerprint: Mapped[str] = mapped_column(
        String(128), primary_key=True, comment="Caller-supplied content hash"
    )
    context: Mapped[str] = mapped_column(
        String(100), primary_key=True, comment="Label of the computation"
    )
    analysis: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, comment="Opaque computed result"
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    expires_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False
    )

    hit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_hit_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )

    __table_args__ = (
        CheckConstraint("hit_count >= 0", name="result_cache_hit_count_check"),
        Index("ix_result_cache_expires_at", "expires_at"),
    )
