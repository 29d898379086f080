"""Merchant intelligence endpoints with per-section cache tiers."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from pcbcrm.api.deps import get_intelligence_service
from pcbcrm.schemas.cache import (
    CacheStatusResponse,
    IntelligenceResponse,
    IntelligenceStatusResponse,
    InvalidatedResponse,
    RefreshIntelligenceRequest,
)
from pcbcrm.services.merchant_intelligence import (
    IntelligenceReport,
    MerchantIntelligenceService,
)

router = APIRouter()


def _report_response(report: IntelligenceReport) -> IntelligenceResponse:
    status = report.status
    return IntelligenceResponse(
        merchant_id=report.merchant_id,
        data=report.data,
        cached_at=status.cached_at,
        expires_at=status.expires_at,
        is_stale=status.is_stale,
        sections={
            name: CacheStatusResponse.from_status(read.status)
            for name, read in report.sections.items()
        },
    )


@router.get("/{merchant_id}/intelligence")
async def get_intelligence(
    merchant_id: str,
    refresh: bool = Query(default=False),
    sections: list[str] | None = Query(default=None),
    service: MerchantIntelligenceService = Depends(get_intelligence_service),
) -> IntelligenceResponse:
    """Return merchant intelligence; each section honours its own TTL.

    ``refresh=true`` recomputes every requested section first.
    """
    if refresh:
        report = await service.refresh(merchant_id, sections)
    else:
        report = await service.get(merchant_id, sections)
    return _report_response(report)


@router.post("/{merchant_id}/intelligence/refresh")
async def refresh_intelligence(
    merchant_id: str,
    body: RefreshIntelligenceRequest | None = None,
    service: MerchantIntelligenceService = Depends(get_intelligence_service),
) -> IntelligenceResponse:
    """Recompute the requested sections (all when none are named)."""
    sections = body.sections if body is not None else None
    report = await service.refresh(merchant_id, sections)
    return _report_response(report)


@router.get("/{merchant_id}/intelligence/cache-status")
async def intelligence_cache_status(
    merchant_id: str,
    service: MerchantIntelligenceService = Depends(get_intelligence_service),
) -> IntelligenceStatusResponse:
    overall, per_section = service.cache_status(merchant_id)
    return IntelligenceStatusResponse(
        merchant_id=merchant_id,
        cached_at=overall.cached_at,
        expires_at=overall.expires_at,
        is_stale=overall.is_stale,
        sections={
            name: CacheStatusResponse.from_status(status)
            for name, status in per_section.items()
        },
    )


@router.delete("/{merchant_id}/intelligence/cache")
async def invalidate_intelligence(
    merchant_id: str,
    service: MerchantIntelligenceService = Depends(get_intelligence_service),
) -> InvalidatedResponse:
    """Drop every cached section for the merchant on all instances."""
    removed = await service.invalidate(merchant_id)
    return InvalidatedResponse(invalidated_entries=removed)
