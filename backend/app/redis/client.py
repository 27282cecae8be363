"""
Redis async client for the presence cache.

Optional: with REDIS_URL empty or Redis unreachable, ``get_redis()`` returns
None and the presence cache turns into a no-op.  Database presence columns
and socket fan-out keep working either way.
"""

import logging

import redis.asyncio as aioredis

from app.config import settings

logger = logging.getLogger(__name__)

_client: aioredis.Redis | None = None


async def init_redis() -> None:
    """Connect and ping. Call once from the app lifespan."""
    global _client
    if not settings.REDIS_URL:
        logger.info("REDIS_URL is empty, presence cache disabled")
        return
    try:
        client = aioredis.from_url(settings.REDIS_URL, decode_responses=True, max_connections=20)
        await client.ping()
    except Exception as exc:
        logger.warning("Redis unavailable (%s), presence cache disabled", exc)
        return
    _client = client
    logger.info("Redis connected: %s", settings.REDIS_URL)


async def close_redis() -> None:
    """Close the client and its pool. Call once at app shutdown."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


def get_redis() -> aioredis.Redis | None:
    """Return the live Redis client, or None if unavailable."""
    return _client
