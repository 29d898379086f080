"""Merchant intelligence assembled from independently cached sections.

Each section (basic info, hours, reviews, ...) has its own cache
category and therefore its own TTL: reviews go stale in minutes, contact
details in a day. Sections are fetched from the intelligence provider
concurrently and cached under ``merchant:<id>:<section>``.

Whether a section may be served stale when its refresh fails is decided
here, per section, in ``SECTIONS``.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx

from pcbcrm.cache.broadcast import CacheInvalidator
from pcbcrm.cache.categories import CacheCategory
from pcbcrm.cache.tiered import CacheStatus, TieredCache
from pcbcrm.errors import InvalidQueryError
from pcbcrm.services.cache_policy import CachedRead, read_through

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Section:
    category: CacheCategory
    serve_stale: bool


SECTIONS: dict[str, Section] = {
    "overview": Section(CacheCategory.MERCHANT_INTEL, serve_stale=True),
    "merchant_info": Section(CacheCategory.MERCHANT_INFO, serve_stale=True),
    "business_hours": Section(CacheCategory.BUSINESS_HOURS, serve_stale=True),
    "reviews": Section(CacheCategory.REVIEWS, serve_stale=True),
    "competitors": Section(CacheCategory.COMPETITORS, serve_stale=True),
    "social_media": Section(CacheCategory.SOCIAL_MEDIA, serve_stale=True),
    "contact_info": Section(CacheCategory.CONTACT_INFO, serve_stale=True),
    # Quoted numbers must be current; an old estimate is worse than none.
    "pricing": Section(CacheCategory.PRICING, serve_stale=False),
    "financial_estimates": Section(CacheCategory.FINANCIAL_ESTIMATES, serve_stale=False),
}


class IntelligenceProvider(ABC):
    """Source of merchant intelligence sections."""

    @abstractmethod
    async def fetch(self, merchant_id: str, section: str) -> Any:
        """Return the current data for one section of one merchant."""
        ...


class HttpIntelligenceProvider(IntelligenceProvider):
    """Fetches sections from the intelligence service over HTTP.

    Args:
        client: Shared async HTTP client (owned by the app lifespan).
        base_url: Service base URL; sections live at
            ``<base_url>/<merchant_id>/<section>``.
        timeout: Per-request timeout in seconds.
    """

    def __init__(self, client: httpx.AsyncClient, base_url: str, timeout: float = 20.0) -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def fetch(self, merchant_id: str, section: str) -> Any:
        response = await self.client.get(
            f"{self.base_url}/{merchant_id}/{section}", timeout=self.timeout
        )
        response.raise_for_status()
        return response.json()


@dataclass(frozen=True)
class IntelligenceReport:
    merchant_id: str
    sections: dict[str, CachedRead]

    @property
    def data(self) -> dict[str, Any]:
        return {name: read.value for name, read in self.sections.items()}

    @property
    def status(self) -> CacheStatus:
        return combine_status([read.status for read in self.sections.values()])


def combine_status(statuses: list[CacheStatus]) -> CacheStatus:
    """Summarise section freshness: oldest computation, earliest expiry.

    The whole report is stale if any section is stale or missing.
    """
    cached = [s.cached_at for s in statuses if s.cached_at is not None]
    expires = [s.expires_at for s in statuses if s.expires_at is not None]
    return CacheStatus(
        cached_at=min(cached) if len(cached) == len(statuses) and cached else None,
        expires_at=min(expires) if len(expires) == len(statuses) and expires else None,
        is_stale=any(s.is_stale for s in statuses) or not statuses,
    )


class MerchantIntelligenceService:
    """Reads, refreshes, and inspects cached merchant intelligence.

    Args:
        cache: The app's tiered cache.
        provider: Where section data comes from on a miss.
        invalidator: Propagates invalidations to peer instances.
    """

    def __init__(
        self,
        cache: TieredCache,
        provider: IntelligenceProvider,
        invalidator: CacheInvalidator | None = None,
    ) -> None:
        self.cache = cache
        self.provider = provider
        self.invalidator = invalidator

    @staticmethod
    def prefix(merchant_id: str) -> str:
        _check_merchant_id(merchant_id)
        return TieredCache.key("merchant", merchant_id) + ":"

    @staticmethod
    def section_key(merchant_id: str, section: str) -> str:
        _check_merchant_id(merchant_id)
        return TieredCache.key("merchant", merchant_id, section)

    async def get(
        self,
        merchant_id: str,
        sections: list[str] | None = None,
        force_refresh: bool = False,
    ) -> IntelligenceReport:
        """Return the requested sections, computing any that are missing.

        Raises:
            InvalidQueryError: If a requested section name is unknown.
            ComputeError: If a section without stale fallback fails.
        """
        _check_merchant_id(merchant_id)
        names = self._resolve(sections)
        reads = await asyncio.gather(
            *(self._read(merchant_id, name, force_refresh) for name in names)
        )
        return IntelligenceReport(merchant_id, dict(zip(names, reads)))

    async def refresh(
        self, merchant_id: str, sections: list[str] | None = None
    ) -> IntelligenceReport:
        """Recompute sections now and tell peers to drop their copies."""
        report = await self.get(merchant_id, sections, force_refresh=True)
        if self.invalidator is not None:
            if sections is None:
                await self.invalidator.broadcast_prefix(self.prefix(merchant_id))
            else:
                for name in report.sections:
                    await self.invalidator.broadcast_key(self.section_key(merchant_id, name))
        logger.info(
            "Refreshed %d intelligence sections for merchant %s",
            len(report.sections),
            merchant_id,
        )
        return report

    def cache_status(self, merchant_id: str) -> tuple[CacheStatus, dict[str, CacheStatus]]:
        per_section = {
            name: self.cache.status(self.section_key(merchant_id, name)) for name in SECTIONS
        }
        return combine_status(list(per_section.values())), per_section

    async def invalidate(self, merchant_id: str) -> int:
        prefix = self.prefix(merchant_id)
        if self.invalidator is not None:
            return await self.invalidator.invalidate_prefix(prefix)
        return self.cache.invalidate_prefix(prefix)

    async def _read(self, merchant_id: str, name: str, force_refresh: bool) -> CachedRead:
        section = SECTIONS[name]

        async def compute() -> Any:
            return await self.provider.fetch(merchant_id, name)

        return await read_through(
            self.cache,
            self.section_key(merchant_id, name),
            section.category,
            compute,
            serve_stale=section.serve_stale,
            force_refresh=force_refresh,
        )

    @staticmethod
    def _resolve(sections: list[str] | None) -> list[str]:
        if not sections:
            return list(SECTIONS)
        unknown = [name for name in sections if name not in SECTIONS]
        if unknown:
            raise InvalidQueryError(
                f"Unknown intelligence sections: {', '.join(unknown)}. "
                f"Allowed: {', '.join(SECTIONS)}"
            )
        return list(dict.fromkeys(sections))


def _check_merchant_id(merchant_id: str) -> None:
    """Keys are ``merchant:<id>:<section>``, so an id must not contain ``:``."""
    if not merchant_id or ":" in merchant_id:
        raise InvalidQueryError(f"Invalid merchant id: {merchant_id!r}")
