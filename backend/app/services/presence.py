"""
Presence propagation.

Two independent signals reach workspace rooms:

* connect / disconnect of a user's socket → ``user_online`` / ``user_offline``
* explicit status changes (online/away/dnd/offline + message) →
  ``user_status_changed``

They are written and broadcast separately and may briefly disagree (a user
can be "dnd" and just disconnected); clients treat them as separate fields.
"""

import logging

from app.core import events
from app.core.errors import PersistenceFailure
from app.datastore import Datastore
from app.redis import presence as presence_cache
from app.websocket.manager import ConnectionManager, manager
from app.websocket.rooms import workspace_room

logger = logging.getLogger(__name__)


class PresenceTracker:
    def __init__(self, datastore: Datastore, connections: ConnectionManager = manager) -> None:
        self.datastore = datastore
        self.connections = connections

    def _workspace_ids(self, user_id: int) -> list[int]:
        try:
            return sorted(set(self.datastore.workspace_ids_for_user(user_id)))
        except PersistenceFailure as exc:
            logger.warning("Could not load workspaces of user %s: %s", user_id, exc)
            return []

    async def _fan_out(self, user_id: int, event: str, data: dict, exclude: str | None = None) -> None:
        for workspace_id in self._workspace_ids(user_id):
            await self.connections.broadcast(workspace_room(workspace_id), event, data, exclude=exclude)

    async def connect(self, user_id: int, connection_id: str) -> None:
        """Session start: persist online, announce to every workspace but self."""
        try:
            self.datastore.set_online(user_id, True)
        except PersistenceFailure as exc:
            logger.warning("Could not mark user %s online: %s", user_id, exc)
        await presence_cache.remember(user_id, "online")
        await self._fan_out(
            user_id,
            events.USER_ONLINE,
            {"user_id": user_id, "status": "online"},
            exclude=connection_id,
        )

    async def disconnect(self, user_id: int) -> None:
        """Session end: persist offline + last_seen, announce once per workspace."""
        last_seen = None
        try:
            last_seen = self.datastore.set_online(user_id, False)
        except PersistenceFailure as exc:
            logger.warning("Could not mark user %s offline: %s", user_id, exc)
        await presence_cache.forget(user_id)
        await self._fan_out(user_id, events.USER_OFFLINE, {"user_id": user_id, "last_seen": last_seen})

    async def update_status(self, user_id: int, status: str, status_message: str | None = None) -> None:
        self.datastore.update_status(user_id, status, status_message)
        await presence_cache.remember(user_id, status)
        await self._fan_out(
            user_id,
            events.USER_STATUS_CHANGED,
            {"user_id": user_id, "status": status, "status_message": status_message},
        )

    async def heartbeat(self, user_id: int) -> None:
        await presence_cache.refresh(user_id)

    async def snapshot(self, user_ids: list[int]) -> dict[int, str]:
        """Current status of each user, for the joined_workspace payload.

        A user connected here reports their chosen status (cache first, then
        the ``users.status`` column), never "offline".  Anyone else is
        offline unless another worker keeps a live cache entry for them.
        """
        cached = await presence_cache.lookup(user_ids)
        try:
            stored = self.datastore.user_statuses(user_ids)
        except PersistenceFailure as exc:
            logger.warning("Could not load stored statuses: %s", exc)
            stored = {}

        result: dict[int, str] = {}
        for user_id in user_ids:
            if self.connections.registry.lookup(user_id) is None:
                result[user_id] = cached.get(user_id, "offline")
                continue
            chosen = cached.get(user_id) or stored.get(user_id)
            result[user_id] = chosen if chosen in presence_cache.CACHEABLE_STATUSES else "online"
        return result
