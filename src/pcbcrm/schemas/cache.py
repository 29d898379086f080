"""Schemas for cached-resource freshness and cache statistics."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pcbcrm.cache.tiered import CacheStats, CacheStatus
from pcbcrm.schemas.base import CamelModel


class CacheStatusResponse(CamelModel):
    """When a cached value was computed and whether it is still fresh."""

    cached_at: datetime | None = None
    expires_at: datetime | None = None
    is_stale: bool

    @classmethod
    def from_status(cls, status: CacheStatus) -> CacheStatusResponse:
        return cls(
            cached_at=status.cached_at,
            expires_at=status.expires_at,
            is_stale=status.is_stale,
        )


class CachedDataResponse(CamelModel):
    """A cached value with its freshness window.

    Returned by refresh endpoints and by reads of cached aggregates.
    """

    data: Any
    cached_at: datetime | None = None
    expires_at: datetime | None = None
    is_stale: bool = False


class IntelligenceResponse(CachedDataResponse):
    merchant_id: str
    sections: dict[str, CacheStatusResponse]


class IntelligenceStatusResponse(CacheStatusResponse):
    merchant_id: str
    sections: dict[str, CacheStatusResponse]


class RefreshIntelligenceRequest(CamelModel):
    """Optional body for a refresh; omitted ``sections`` means all of them."""

    sections: list[str] | None = None


class InvalidatedResponse(CamelModel):
    invalidated_entries: int


class CacheStatsResponse(CamelModel):
    hits: int
    misses: int
    hit_rate: float
    evictions: int
    expirations: int
    refreshes: int
    size: int
    max_size: int
    categories: dict[str, int]
    ttl_seconds: dict[str, float]
    broadcasting: bool

    @classmethod
    def from_stats(
        cls,
        stats: CacheStats,
        max_size: int,
        ttl_seconds: dict[str, Any],
        broadcasting: bool,
    ) -> CacheStatsResponse:
        return cls(
            hits=stats.hits,
            misses=stats.misses,
            hit_rate=round(stats.hit_rate, 4),
            evictions=stats.evictions,
            expirations=stats.expirations,
            refreshes=stats.refreshes,
            size=stats.size,
            max_size=max_size,
            categories=stats.categories,
            ttl_seconds=ttl_seconds,
            broadcasting=broadcasting,
        )
