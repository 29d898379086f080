"""Cache categories and their time-to-live policies.

A category is static configuration: every entry stored under it expires
``ttl`` after it was computed. TTLs come from settings so operators can
tune freshness per data type without a deploy.
"""

from __future__ import annotations

import enum
from collections.abc import Mapping
from datetime import timedelta

from pcbcrm.config import Settings


class CacheCategory(str, enum.Enum):
    """Named TTL tiers for cached aggregates."""

    DEFAULT = "default"
    MERCHANT_INTEL = "merchant_intel"
    DASHBOARD_SUMMARY = "dashboard_summary"
    MERCHANT_INFO = "merchant_info"
    BUSINESS_HOURS = "business_hours"
    REVIEWS = "reviews"
    COMPETITORS = "competitors"
    PRICING = "pricing"
    SOCIAL_MEDIA = "social_media"
    CONTACT_INFO = "contact_info"
    FINANCIAL_ESTIMATES = "financial_estimates"


def ttl_policy_from_settings(settings: Settings) -> dict[CacheCategory, timedelta]:
    """Build the category -> TTL map from ``PCB_CACHE_*_TTL`` settings."""
    return {
        category: timedelta(seconds=getattr(settings, f"cache_{category.value}_ttl"))
        for category in CacheCategory
    }


class TTLPolicy:
    """Resolves a category to its TTL, falling back to the default tier.

    Args:
        ttls: Category -> TTL. Must contain ``CacheCategory.DEFAULT``.
    """

    def __init__(self, ttls: Mapping[CacheCategory, timedelta]) -> None:
        if CacheCategory.DEFAULT not in ttls:
            raise ValueError("TTL policy needs a default category")
        for category, ttl in ttls.items():
            if ttl <= timedelta(0):
                raise ValueError(f"TTL for {category.value} must be positive")
        self._ttls = dict(ttls)

    @classmethod
    def from_settings(cls, settings: Settings) -> TTLPolicy:
        return cls(ttl_policy_from_settings(settings))

    def ttl(self, category: CacheCategory) -> timedelta:
        return self._ttls.get(category, self._ttls[CacheCategory.DEFAULT])

    def as_dict(self) -> dict[str, float]:
        return {c.value: ttl.total_seconds() for c, ttl in self._ttls.items()}
