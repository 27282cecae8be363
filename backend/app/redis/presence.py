"""
Explicit-status cache.

Connection state ("is this user connected?") is owned by the process's
ConnectionRegistry and the ``users.is_online`` column.  This cache holds only
the status a connected user *chose* (online / away / dnd) so other workers can
read it without a database round trip:

  {SERVER_DOMAIN}:presence:{user_id}  →  "online" | "away" | "dnd"

Entries expire after REDIS_PRESENCE_TTL seconds unless a heartbeat refreshes
them, so a crashed worker's users age out on their own.  Every operation is
optional: with Redis unavailable writes are skipped and ``lookup`` reports no
hits, leaving PresenceTracker to answer from the registry and the database.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

import redis.asyncio as aioredis

from app.config import settings
from app.redis.client import get_redis

logger = logging.getLogger(__name__)

CACHEABLE_STATUSES = frozenset({"online", "away", "dnd"})


def _key(user_id: int) -> str:
    return f"{settings.SERVER_DOMAIN}:presence:{user_id}"


async def _run(what: str, op: Callable[[aioredis.Redis], Awaitable[Any]]) -> Any:
    """Run ``op`` against the live client; None if Redis is off or failing."""
    client = get_redis()
    if client is None:
        return None
    try:
        return await op(client)
    except Exception as exc:
        logger.warning("presence cache %s failed: %s", what, exc)
        return None


async def remember(user_id: int, status: str) -> None:
    """Cache a connected user's chosen status. "offline" clears the entry."""
    if status == "offline":
        await forget(user_id)
        return
    if status not in CACHEABLE_STATUSES:
        logger.warning("presence cache: refusing to store status %r for user %s", status, user_id)
        return
    await _run("remember", lambda r: r.set(_key(user_id), status, ex=settings.REDIS_PRESENCE_TTL))


async def forget(user_id: int) -> None:
    await _run("forget", lambda r: r.delete(_key(user_id)))


async def refresh(user_id: int) -> None:
    """Heartbeat: extend the entry's lifetime without touching its value."""
    await _run("refresh", lambda r: r.expire(_key(user_id), settings.REDIS_PRESENCE_TTL))


async def lookup(user_ids: list[int]) -> dict[int, str]:
    """Return cached statuses for the users that have one; misses are omitted."""
    if not user_ids:
        return {}
    values = await _run("lookup", lambda r: r.mget([_key(uid) for uid in user_ids]))
    if not values:
        return {}
    return {uid: value for uid, value in zip(user_ids, values) if value in CACHEABLE_STATUSES}
