"""
Result cache API endpoints.
"""

from typing import Any

from fastapi import APIRouter, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from taskledger.config.settings import Settings, SettingsDep
from taskledger.infra.database import SessionDep
from taskledger.v1.core.exceptions import NotFoundError, create_success_response
from taskledger.v1.infra.cache.schemas import CacheEntryResponse, CachePutRequest
from taskledger.v1.infra.cache.service import ResultCacheService

router = APIRouter(prefix="/cache", tags=["cache"])


@router.get("/stats/overview", response_model=dict)
async def get_cache_stats(
    tenant_id: str | None = Query(default=None, description="Restrict to a tenant"),
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get cache entry and hit counts."""

    service = ResultCacheService(settings)
    stats = await service.get_stats(session, tenant_id)
    return create_success_response(data=stats.model_dump())


@router.get("/{tenant_id}/{context}/{fingerprint}", response_model=dict)
async def get_entry(
    tenant_id: str = Path(..., max_length=255),
    context: str = Path(..., max_length=100),
    fingerprint: str = Path(..., max_length=128),
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Look up a cached result; expired entries are reported as missing."""

    service = ResultCacheService(settings)
    entry = await service.get(session, tenant_id, fingerprint, context)
    if entry is None:
        raise NotFoundError(
            "Cache entry not found",
            {"tenant_id": tenant_id, "context": context, "fingerprint": fingerprint},
        )

    data = CacheEntryResponse.model_validate(entry)
    return create_success_response(data=data.model_dump(mode="json"))


@router.put("/{tenant_id}/{context}/{fingerprint}", response_model=dict)
async def put_entry(
    request: CachePutRequest,
    tenant_id: str = Path(..., max_length=255),
    context: str = Path(..., max_length=100),
    fingerprint: str = Path(..., max_length=128),
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Store a computed result under the key."""

    service = ResultCacheService(settings)
    entry = await service.put(
        session,
        tenant_id,
        fingerprint,
        context,
        request.analysis,
        ttl=request.ttl_seconds,
    )

    data = CacheEntryResponse.model_validate(entry)
    return create_success_response(data=data.model_dump(mode="json"))


@router.delete("/{tenant_id}/{context}/{fingerprint}", response_model=dict)
async def delete_entry(
    tenant_id: str = Path(..., max_length=255),
    context: str = Path(..., max_length=100),
    fingerprint: str = Path(..., max_length=128),
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Invalidate a cached result."""

    service = ResultCacheService(settings)
    deleted = await service.invalidate(session, tenant_id, fingerprint, context)
    return create_success_response(data={"deleted": deleted})
