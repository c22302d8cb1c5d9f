from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class CacheEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tenant_id: str
    fingerprint: str
    context: str
    analysis: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    hit_count: int
    last_hit_at: datetime | None = None


class CachePutRequest(BaseModel):
    analysis: dict[str, Any] = Field(..., description="Computed result to store")
    ttl_seconds: int | None = Field(
        default=None, gt=0, description="Time to live (defaults from settings)"
    )


class CacheStatsResponse(BaseModel):
    entries: int
    expired: int
    total_hits: int
