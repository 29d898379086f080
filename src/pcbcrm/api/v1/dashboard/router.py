"""Dashboard summary endpoints backed by the ``dashboard_summary`` cache tier."""

from fastapi import APIRouter, Depends

from pcbcrm.api.deps import get_dashboard_service
from pcbcrm.schemas.cache import CachedDataResponse, CacheStatusResponse
from pcbcrm.services.dashboard_service import DashboardService

router = APIRouter()


@router.get("/summary")
async def get_summary(
    service: DashboardService = Depends(get_dashboard_service),
) -> CachedDataResponse:
    """Return the pipeline summary, computing it if the cache has none."""
    read = await service.summary()
    return CachedDataResponse(
        data=read.value,
        cached_at=read.status.cached_at,
        expires_at=read.status.expires_at,
        is_stale=read.served_stale,
    )


@router.post("/summary/refresh")
async def refresh_summary(
    service: DashboardService = Depends(get_dashboard_service),
) -> CachedDataResponse:
    """Recompute the summary now, ignoring the remaining TTL."""
    entry = await service.refresh()
    return CachedDataResponse(
        data=entry.value,
        cached_at=entry.computed_at,
        expires_at=entry.expires_at,
    )


@router.get("/summary/cache-status")
async def summary_cache_status(
    service: DashboardService = Depends(get_dashboard_service),
) -> CacheStatusResponse:
    return CacheStatusResponse.from_status(service.cache_status())
