"""In-memory tiered cache for expensive aggregate reads.

Entries expire according to their category's TTL. The cache is
disposable: every value must be reproducible from the database or the
upstream service, so losing it on restart only costs latency.

Concurrent :meth:`TieredCache.get_or_compute` calls for the same missing
key share one in-flight computation (single-flight). A failed
computation never overwrites the previous entry; it raises
:class:`~pcbcrm.errors.ComputeError` carrying that entry so the caller
can decide, explicitly, whether to serve it.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pcbcrm.cache.categories import CacheCategory, TTLPolicy
from pcbcrm.errors import ComputeError
from pcbcrm.models.base import utcnow

logger = logging.getLogger(__name__)


class _Miss:
    """Sentinel returned by :meth:`TieredCache.get` for absent or expired keys."""

    _instance: _Miss | None = None

    def __new__(cls) -> _Miss:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISS"


MISS = _Miss()


@dataclass
class CacheEntry:
    """A cached value and its freshness window."""

    key: str
    value: Any
    category: CacheCategory
    computed_at: datetime
    expires_at: datetime
    access_count: int = 0
    last_accessed_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class CacheStatus:
    """Freshness of one key, for debugging and "last updated" UI."""

    cached_at: datetime | None
    expires_at: datetime | None
    is_stale: bool


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0
    refreshes: int = 0
    size: int = 0
    categories: dict[str, int] = field(default_factory=dict)

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class TieredCache:
    """Category-aware TTL cache with LRU bounding and single-flight compute.

    Not thread-safe: use from one event loop.

    Args:
        policy: Category -> TTL resolution.
        max_size: Maximum number of entries; the least recently used entry
            is evicted when a new key would exceed it.
        clock: Returns the current aware datetime (injectable for tests).
    """

    def __init__(
        self,
        policy: TTLPolicy,
        max_size: int = 10000,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.policy = policy
        self.max_size = max_size
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._inflight: dict[str, asyncio.Future[CacheEntry]] = {}
        self._stats = CacheStats()

    @staticmethod
    def key(prefix: str, *parts: object) -> str:
        """Build a ``prefix:part:part`` cache key."""
        return ":".join([prefix, *(str(p) for p in parts)])

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, key: str) -> Any:
        """Return the fresh value for ``key`` or :data:`MISS`.

        Expired entries read as misses but stay in place until the sweep
        or the next write, so a failed recompute can still hand them out
        as stale data.
        """
        entry = self._entries.get(key)
        now = self._clock()
        if entry is None:
            self._stats.misses += 1
            return MISS
        if entry.is_expired(now):
            self._stats.misses += 1
            return MISS

        self._entries.move_to_end(key)
        entry.access_count += 1
        entry.last_accessed_at = now
        self._stats.hits += 1
        return entry.value

    def peek(self, key: str) -> CacheEntry | None:
        """Return the entry for ``key`` even if expired, without touching stats.

        Used by callers that decide to serve stale data explicitly.
        """
        return self._entries.get(key)

    def status(self, key: str) -> CacheStatus:
        """Report when ``key`` was computed and whether it is still fresh.

        A key with no entry is reported as stale with null timestamps.
        """
        entry = self._entries.get(key)
        if entry is None:
            return CacheStatus(cached_at=None, expires_at=None, is_stale=True)
        return CacheStatus(
            cached_at=entry.computed_at,
            expires_at=entry.expires_at,
            is_stale=entry.is_expired(self._clock()),
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set(
        self,
        key: str,
        value: Any,
        category: CacheCategory = CacheCategory.DEFAULT,
    ) -> CacheEntry:
        """Store ``value``, replacing any previous entry unconditionally."""
        now = self._clock()
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            self._stats.evictions += 1
            logger.debug("Evicted least recently used cache key '%s'", evicted)

        entry = self._new_entry(key, value, category, now)
        self._entries[key] = entry
        return entry

    def _new_entry(
        self, key: str, value: Any, category: CacheCategory, now: datetime
    ) -> CacheEntry:
        return CacheEntry(
            key=key,
            value=value,
            category=category,
            computed_at=now,
            expires_at=now + self.policy.ttl(category),
            last_accessed_at=now,
        )

    def invalidate(self, key: str) -> bool:
        """Drop ``key`` regardless of its remaining TTL."""
        return self._entries.pop(key, None) is not None

    def invalidate_category(self, category: CacheCategory) -> int:
        """Drop every entry of ``category``; returns the number removed."""
        keys = [k for k, e in self._entries.items() if e.category == category]
        for key in keys:
            del self._entries[key]
        logger.info("Invalidated %d '%s' cache entries", len(keys), category.value)
        return len(keys)

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every key starting with ``prefix`` (e.g. one merchant)."""
        keys = [k for k in self._entries if k.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def cleanup(self) -> int:
        """Remove all expired entries; returns the number removed."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]
        self._stats.expirations += len(expired)
        if expired:
            logger.debug("Cache sweep removed %d expired entries", len(expired))
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
        self._stats = CacheStats()

    # ------------------------------------------------------------------
    # Compute-through
    # ------------------------------------------------------------------

    async def get_or_compute(
        self,
        key: str,
        category: CacheCategory,
        compute_fn: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Return the fresh cached value, computing and storing it on a miss.

        Concurrent callers for the same missing key wait on one
        computation.

        Raises:
            ComputeError: If ``compute_fn`` fails. The previous entry is
                left in place and attached as ``stale``.
        """
        value = self.get(key)
        if value is not MISS:
            return value
        entry = await self._compute(key, category, compute_fn)
        return entry.value

    async def refresh(
        self,
        key: str,
        category: CacheCategory,
        compute_fn: Callable[[], Awaitable[Any]],
    ) -> CacheEntry:
        """Invalidate ``key`` and recompute it eagerly.

        Raises:
            ComputeError: If recomputation fails; ``stale`` holds the entry
                that was invalidated.
        """
        previous = self._entries.pop(key, None)
        self._stats.refreshes += 1
        try:
            return await self._compute(key, category, compute_fn, join=False)
        except ComputeError as exc:
            if exc.stale is None:
                exc.stale = previous
            raise

    async def _compute(
        self,
        key: str,
        category: CacheCategory,
        compute_fn: Callable[[], Awaitable[Any]],
        join: bool = True,
    ) -> CacheEntry:
        """Run ``compute_fn`` once per key, sharing the result with waiters.

        With ``join=False`` a computation already in flight is superseded
        rather than joined: its result still reaches its own waiters but is
        not stored.
        """
        inflight = self._inflight.get(key) if join else None
        if inflight is not None:
            try:
                return await asyncio.shield(inflight)
            except asyncio.CancelledError:
                if not inflight.cancelled():
                    raise
            # The leading caller was cancelled; take over the computation.
            return await self._compute(key, category, compute_fn)

        future: asyncio.Future[CacheEntry] = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            value = await compute_fn()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            error = ComputeError(key, stale=self.peek(key))
            error.__cause__ = exc
            future.set_exception(error)
            # Mark retrieved so an unobserved failure is not logged twice.
            future.exception()
            logger.warning("Cache compute failed for '%s': %s", key, exc)
            raise error from exc
        else:
            if self._inflight.get(key) is future:
                entry = self.set(key, value, category)
            else:
                entry = self._new_entry(key, value, category, self._clock())
            future.set_result(entry)
            return entry
        finally:
            if self._inflight.get(key) is future:
                del self._inflight[key]

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def stats(self) -> CacheStats:
        counts: dict[str, int] = {}
        for entry in self._entries.values():
            counts[entry.category.value] = counts.get(entry.category.value, 0) + 1
        return CacheStats(
            hits=self._stats.hits,
            misses=self._stats.misses,
            evictions=self._stats.evictions,
            expirations=self._stats.expirations,
            refreshes=self._stats.refreshes,
            size=len(self._entries),
            categories=counts,
        )

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not entry.is_expired(self._clock())
