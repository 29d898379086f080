"""Pipeline dashboard summary, cached in the ``dashboard_summary`` tier.

The summary aggregates every deal, so it is computed with one GROUP BY
query and cached for a short TTL. Creating a deal invalidates it.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pcbcrm.cache.broadcast import CacheInvalidator
from pcbcrm.cache.categories import CacheCategory
from pcbcrm.cache.tiered import CacheEntry, CacheStatus, TieredCache
from pcbcrm.models.deal import DEAL_STAGES, Deal
from pcbcrm.services.cache_policy import CachedRead, read_through

logger = logging.getLogger(__name__)

DASHBOARD_SUMMARY_KEY = TieredCache.key("dashboard", "summary")
CLOSED_STAGES = ("closed_won", "closed_lost")


class DashboardService:
    """Computes and caches the pipeline summary.

    Args:
        db: Async SQLAlchemy session for database operations.
        cache: The app's tiered cache.
        invalidator: Broadcasts refreshes to peer instances.
    """

    def __init__(
        self,
        db: AsyncSession,
        cache: TieredCache,
        invalidator: CacheInvalidator | None = None,
    ) -> None:
        self.db = db
        self.cache = cache
        self.invalidator = invalidator

    async def summary(self) -> CachedRead:
        # Counts a few seconds old beat an error on the home screen.
        return await read_through(
            self.cache,
            DASHBOARD_SUMMARY_KEY,
            CacheCategory.DASHBOARD_SUMMARY,
            self.compute_summary,
            serve_stale=True,
        )

    async def refresh(self) -> CacheEntry:
        """Recompute the summary now and tell peers to drop their copy."""
        entry = await self.cache.refresh(
            DASHBOARD_SUMMARY_KEY,
            CacheCategory.DASHBOARD_SUMMARY,
            self.compute_summary,
        )
        if self.invalidator is not None:
            await self.invalidator.broadcast_key(DASHBOARD_SUMMARY_KEY)
        return entry

    def cache_status(self) -> CacheStatus:
        return self.cache.status(DASHBOARD_SUMMARY_KEY)

    async def compute_summary(self) -> dict[str, Any]:
        weighted = Deal.estimated_monthly_volume * Deal.deal_probability / 100.0
        result = await self.db.execute(
            select(
                Deal.stage,
                func.count(),
                func.coalesce(func.sum(Deal.estimated_monthly_volume), 0.0),
                func.coalesce(func.sum(weighted), 0.0),
                func.coalesce(func.sum(case((Deal.temperature == "hot", 1), else_=0)), 0),
            ).group_by(Deal.stage)
        )

        stages = {stage: {"count": 0, "volume": 0.0} for stage in DEAL_STAGES}
        open_deals = open_volume = weighted_pipeline = 0.0
        hot_deals = 0
        for stage, count, volume, weighted_volume, hot in result.all():
            stages[stage] = {"count": count, "volume": float(volume)}
            if stage not in CLOSED_STAGES:
                open_deals += count
                open_volume += float(volume)
                weighted_pipeline += float(weighted_volume)
                hot_deals += int(hot)

        won = stages.get("closed_won", {}).get("count", 0)
        lost = stages.get("closed_lost", {}).get("count", 0)
        closed = won + lost
        summary = {
            "total_deals": sum(s["count"] for s in stages.values()),
            "open_deals": int(open_deals),
            "open_volume": round(open_volume, 2),
            "weighted_pipeline": round(weighted_pipeline, 2),
            "hot_deals": hot_deals,
            "won_deals": won,
            "win_rate": round(won / closed, 4) if closed else 0.0,
            "stages": stages,
        }
        logger.debug("Computed dashboard summary: %d deals", summary["total_deals"])
        return summary
