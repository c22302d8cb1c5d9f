"""
Result cache service.

Expired entries are filtered at read time, so a lookup never serves a stale
result while waiting for the next sweep.
"""

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from taskledger.config.logging import get_logger
from taskledger.config.settings import Settings
from taskledger.infra.database import dialect_insert
from taskledger.v1.infra.cache.models import CacheEntry
from taskledger.v1.infra.cache.schemas import CacheStatsResponse
from taskledger.v1.infra.jobs.models import utcnow

logger = get_logger(__name__)


class ResultCacheService:
    """Tenant-scoped cache of computed results."""

    def __init__(self, settings: Settings):
        self.settings = settings

    async def get(
        self,
        session: AsyncSession,
        tenant_id: str,
        fingerprint: str,
        context: str,
        now: datetime | None = None,
    ) -> CacheEntry | None:
        """
        Look up a live entry, counting the hit.

        The hit counter is bumped by an atomic UPDATE that also enforces
        expiry, so only live rows are ever returned.
        """
        now = now or utcnow()
        key_filter = (
            CacheEntry.tenant_id == tenant_id,
            CacheEntry.fingerprint == fingerprint,
            CacheEntry.context == context,
        )

        result = await session.execute(
            update(CacheEntry)
            .where(*key_filter, CacheEntry.expires_at >= now)
            .values(hit_count=CacheEntry.hit_count + 1, last_hit_at=now)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        if result.rowcount == 0:
            logger.debug(
                "Cache miss", tenant_id=tenant_id, fingerprint=fingerprint, context=context
            )
            return None

        entry = (
            await session.execute(
                select(CacheEntry)
                .where(*key_filter)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()

        logger.debug(
            "Cache hit",
            tenant_id=tenant_id,
            fingerprint=fingerprint,
            context=context,
            hit_count=entry.hit_count if entry else None,
        )
        return entry

    async def put(
        self,
        session: AsyncSession,
        tenant_id: str,
        fingerprint: str,
        context: str,
        analysis: dict[str, Any],
        ttl: timedelta | int | None = None,
        now: datetime | None = None,
    ) -> CacheEntry:
        """Store a result, overwriting any entry under the same key.

        An overwrite resets the expiry but keeps hit_count and created_at.
        """
        now = now or utcnow()
        if ttl is None:
            ttl = self.settings.cache_default_ttl_s
        if not isinstance(ttl, timedelta):
            ttl = timedelta(seconds=ttl)
        expires_at = now + ttl

        insert_stmt = dialect_insert(session, CacheEntry).values(
            tenant_id=tenant_id,
            fingerprint=fingerprint,
            context=context,
            analysis=analysis,
            created_at=now,
            updated_at=now,
            expires_at=expires_at,
            hit_count=0,
        )
        await session.execute(
            insert_stmt.on_conflict_do_update(
                index_elements=["tenant_id", "fingerprint", "context"],
                set_={
                    "analysis": insert_stmt.excluded.analysis,
                    "expires_at": insert_stmt.excluded.expires_at,
                    "updated_at": insert_stmt.excluded.updated_at,
                },
            )
        )
        await session.commit()

        entry = await session.get(
            CacheEntry, (tenant_id, fingerprint, context), populate_existing=True
        )

        logger.info(
            "Cached result",
            tenant_id=tenant_id,
            fingerprint=fingerprint,
            context=context,
            expires_at=expires_at.isoformat(),
        )
        return entry

    async def invalidate(
        self,
        session: AsyncSession,
        tenant_id: str,
        fingerprint: str,
        context: str | None = None,
    ) -> int:
        """Delete the entry for a key, or every context of a fingerprint."""
        filters = [
            CacheEntry.tenant_id == tenant_id,
            CacheEntry.fingerprint == fingerprint,
        ]
        if context is not None:
            filters.append(CacheEntry.context == context)

        result = await session.execute(delete(CacheEntry).where(*filters))
        deleted_count = result.rowcount
        await session.commit()

        logger.info(
            "Invalidated cache entries",
            tenant_id=tenant_id,
            fingerprint=fingerprint,
            context=context,
            deleted_count=deleted_count,
        )
        return deleted_count

    async def cleanup_expired(
        self, session: AsyncSession, now: datetime | None = None
    ) -> int:
        """Delete every entry that expired before `now`."""
        now = now or utcnow()
        result = await session.execute(
            delete(CacheEntry).where(CacheEntry.expires_at < now)
        )
        deleted_count = result.rowcount
        await session.commit()

        if deleted_count > 0:
            logger.info("Cleaned up expired cache entries", deleted_count=deleted_count)
        return deleted_count

    async def get_stats(
        self,
        session: AsyncSession,
        tenant_id: str | None = None,
        now: datetime | None = None,
    ) -> CacheStatsResponse:
        now = now or utcnow()
        filters = [CacheEntry.tenant_id == tenant_id] if tenant_id else []

        totals = (
            await session.execute(
                select(
                    func.count(),
                    func.coalesce(func.sum(CacheEntry.hit_count), 0),
                )
                .select_from(CacheEntry)
                .where(*filters)
            )
        ).one()
        expired = (
            await session.execute(
                select(func.count())
                .select_from(CacheEntry)
                .where(*filters, CacheEntry.expires_at < now)
            )
        ).scalar() or 0

        return CacheStatsResponse(
            entries=totals[0], expired=expired, total_hits=int(totals[1])
        )
