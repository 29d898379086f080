"""Cache statistics for monitoring."""

from fastapi import APIRouter, Depends

from pcbcrm.api.deps import get_cache, get_invalidator
from pcbcrm.cache.broadcast import CacheInvalidator
from pcbcrm.cache.tiered import TieredCache
from pcbcrm.schemas.cache import CacheStatsResponse

router = APIRouter()


@router.get("/stats")
async def cache_stats(
    cache: TieredCache = Depends(get_cache),
    invalidator: CacheInvalidator = Depends(get_invalidator),
) -> CacheStatsResponse:
    """Hit rate, evictions, and entry counts per category for this instance."""
    return CacheStatsResponse.from_stats(
        cache.stats(),
        max_size=cache.max_size,
        ttl_seconds=cache.policy.as_dict(),
        broadcasting=invalidator.broadcasting,
    )
