"""Redis pub/sub fan-out of cache invalidations across app instances.

Each instance keeps its own in-memory :class:`TieredCache`. When a user
hits "Refresh" on one instance, the invalidation is applied locally and
published on ``cache:invalidate`` so the other instances drop the same
keys. Publishing is best-effort: a lost message costs freshness until
the TTL runs out, never correctness, so failures are logged and the
request carries on.
"""

from __future__ import annotations

import asyncio
import json
import logging
from uuid import uuid4

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from pcbcrm.cache.categories import CacheCategory
from pcbcrm.cache.tiered import TieredCache

logger = logging.getLogger(__name__)

KIND_KEY = "key"
KIND_CATEGORY = "category"
KIND_PREFIX = "prefix"


class CacheInvalidator:
    """Applies invalidations locally and broadcasts them to peer instances.

    Works without Redis: until :meth:`start` succeeds every invalidation
    stays local.

    Args:
        cache: This instance's cache.
        redis_url: Redis URL for the dedicated pub/sub connection, or None
            to disable broadcasting.
    """

    CHANNEL: str = "cache:invalidate"

    def __init__(self, cache: TieredCache, redis_url: str | None = None) -> None:
        self.cache = cache
        self.instance_id = uuid4().hex
        self._redis_url = redis_url
        self._redis: aioredis.Redis | None = None
        self._pubsub: aioredis.client.PubSub | None = None
        self._listener_task: asyncio.Task | None = None

    @property
    def broadcasting(self) -> bool:
        return self._redis is not None

    async def start(self) -> None:
        """Open a dedicated pub/sub connection and start listening.

        Connection failures leave the invalidator in local-only mode.
        """
        if not self._redis_url:
            return
        # Subscribing blocks the connection, so never share app.state.redis.
        client = aioredis.from_url(self._redis_url, decode_responses=True)
        try:
            pubsub = client.pubsub()
            await pubsub.subscribe(self.CHANNEL)
        except (RedisError, OSError):
            logger.warning(
                "Cache invalidation broadcast unavailable; invalidations stay local",
                exc_info=True,
            )
            await client.aclose()
            return
        self._redis = client
        self._pubsub = pubsub
        self._listener_task = asyncio.create_task(self._listen())
        logger.info("Cache invalidator listening on %s", self.CHANNEL)

    async def stop(self) -> None:
        """Shut down the listener, unsubscribe, and close the connection."""
        if self._listener_task is not None:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None
        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe()
                await self._pubsub.aclose()
            except Exception:
                logger.debug("Error closing pubsub connection", exc_info=True)
            self._pubsub = None
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except Exception:
                logger.debug("Error closing redis connection", exc_info=True)
            self._redis = None
        logger.info("Cache invalidator stopped")

    # ------------------------------------------------------------------
    # Local + broadcast invalidation
    # ------------------------------------------------------------------

    async def invalidate_key(self, key: str) -> bool:
        removed = self.cache.invalidate(key)
        await self._publish(KIND_KEY, key)
        return removed

    async def invalidate_category(self, category: CacheCategory) -> int:
        removed = self.cache.invalidate_category(category)
        await self._publish(KIND_CATEGORY, category.value)
        return removed

    async def invalidate_prefix(self, prefix: str) -> int:
        removed = self.cache.invalidate_prefix(prefix)
        await self._publish(KIND_PREFIX, prefix)
        return removed

    async def broadcast_key(self, key: str) -> None:
        """Tell peers to drop ``key`` without touching the local entry.

        Used after a local refresh, when this instance already holds the
        fresh value.
        """
        await self._publish(KIND_KEY, key)

    async def broadcast_prefix(self, prefix: str) -> None:
        await self._publish(KIND_PREFIX, prefix)

    def apply(self, message: dict) -> int:
        """Apply an invalidation received from a peer.

        Messages published by this instance and malformed messages are
        ignored.

        Returns:
            Number of local entries removed.
        """
        if message.get("origin") == self.instance_id:
            return 0
        kind, value = message.get("kind"), message.get("value")
        if not isinstance(value, str):
            logger.warning("Ignoring cache invalidation without a value: %r", message)
            return 0
        if kind == KIND_KEY:
            return int(self.cache.invalidate(value))
        if kind == KIND_CATEGORY:
            try:
                category = CacheCategory(value)
            except ValueError:
                logger.warning("Ignoring invalidation for unknown category '%s'", value)
                return 0
            return self.cache.invalidate_category(category)
        if kind == KIND_PREFIX:
            return self.cache.invalidate_prefix(value)
        logger.warning("Ignoring cache invalidation of unknown kind: %r", kind)
        return 0

    async def _publish(self, kind: str, value: str) -> None:
        """Best-effort publish; never raises into the request."""
        if self._redis is None:
            return
        payload = json.dumps({"origin": self.instance_id, "kind": kind, "value": value})
        try:
            await self._redis.publish(self.CHANNEL, payload)
        except (RedisError, OSError):
            logger.warning(
                "Failed to broadcast cache invalidation %s=%s", kind, value, exc_info=True
            )

    async def _listen(self) -> None:
        """Background loop: apply every invalidation published by peers."""
        try:
            async for message in self._pubsub.listen():
                if message["type"] != "message":
                    continue
                try:
                    data = json.loads(message["data"])
                except (json.JSONDecodeError, TypeError):
                    logger.warning("Invalid JSON in cache invalidation message")
                    continue
                if not isinstance(data, dict):
                    continue
                try:
                    self.apply(data)
                except Exception:
                    logger.exception("Failed to apply cache invalidation %r", data)
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Cache invalidation listener crashed")
