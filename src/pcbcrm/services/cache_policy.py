"""Read-through helper that applies a caller-chosen serve-stale policy.

The cache itself never decides whether stale data is acceptable. Each
service passes ``serve_stale`` explicitly for the category it reads.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pcbcrm.cache.categories import CacheCategory
from pcbcrm.cache.tiered import CacheStatus, TieredCache
from pcbcrm.errors import ComputeError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedRead:
    """A value plus the freshness of the entry it came from."""

    value: Any
    status: CacheStatus
    served_stale: bool = False


async def read_through(
    cache: TieredCache,
    key: str,
    category: CacheCategory,
    compute_fn: Callable[[], Awaitable[Any]],
    *,
    serve_stale: bool,
    force_refresh: bool = False,
) -> CachedRead:
    """Get ``key`` from the cache, computing it on a miss.

    Args:
        cache: The tiered cache.
        key: Cache key.
        category: TTL tier for the entry.
        compute_fn: Produces the value on a miss.
        serve_stale: Whether the last good value may be returned when the
            recompute fails.
        force_refresh: Recompute even if a fresh entry exists.

    Raises:
        ComputeError: If the compute fails and stale data is not allowed
            or not available.
    """
    try:
        if force_refresh:
            entry = await cache.refresh(key, category, compute_fn)
            value = entry.value
        else:
            value = await cache.get_or_compute(key, category, compute_fn)
    except ComputeError as exc:
        if not serve_stale or exc.stale is None:
            raise
        logger.warning("Serving stale '%s' after failed recompute", key)
        return CachedRead(
            value=exc.stale.value,
            status=CacheStatus(
                cached_at=exc.stale.computed_at,
                expires_at=exc.stale.expires_at,
                is_stale=True,
            ),
            served_stale=True,
        )
    return CachedRead(value=value, status=cache.status(key))
