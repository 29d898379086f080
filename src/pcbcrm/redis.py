"""Async Redis client lifecycle.

Redis only carries cache invalidation fan-out between instances, so an
unreachable server degrades the app to single-instance invalidation
instead of preventing startup.
"""

import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


async def init_redis(redis_url: str) -> aioredis.Redis | None:
    """Create an async Redis client and verify connectivity with a ping.

    Returns:
        The connected client, or None if the server could not be reached.
    """
    client = aioredis.from_url(
        redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    try:
        await client.ping()
    except (RedisError, OSError):
        logger.warning(
            "Redis unreachable at startup; cache invalidation stays local",
            exc_info=True,
        )
        await client.aclose()
        return None
    return client


async def close_redis(client: aioredis.Redis | None) -> None:
    """Close the async Redis client connection, if one was opened."""
    if client is not None:
        await client.aclose()
