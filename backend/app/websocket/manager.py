import json
import logging
import uuid
from typing import Any

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

from app.websocket.registry import ConnectionRegistry
from app.websocket.rooms import RoomMembership

logger = logging.getLogger(__name__)


def encode_frame(event: str, data: Any) -> str:
    return json.dumps(jsonable_encoder({"type": event, "data": data}))


class ConnectionManager:
    """Owns every live socket plus the registry and room maps built on them.

    Sockets are keyed by a per-connection id.  ``registry`` answers "where is
    user X" for targeted delivery; ``rooms`` answers "who is in room R" for
    fan-out.  Only the websocket layer mutates this state.

    NOTE: in-memory singleton, assumes a single-process deployment (one
    uvicorn worker).  Fan-out across processes would need an external pub/sub.
    """

    def __init__(self) -> None:
        # connection_id -> WebSocket
        self._sockets: dict[str, WebSocket] = {}
        # connection_id -> user_id
        self._owners: dict[str, int] = {}
        self.registry = ConnectionRegistry()
        self.rooms = RoomMembership()

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self, websocket: WebSocket, user_id: int) -> str:
        """Register an already-accepted, authenticated socket. Returns its id."""
        connection_id = uuid.uuid4().hex
        self._sockets[connection_id] = websocket
        self._owners[connection_id] = user_id
        self.registry.register(user_id, connection_id)
        logger.info("WebSocket connected (user %s, connection %s)", user_id, connection_id)
        return connection_id

    def disconnect(self, user_id: int, connection_id: str) -> list[str]:
        """Forget the socket, its rooms and (if still current) its registry entry."""
        self._sockets.pop(connection_id, None)
        self._owners.pop(connection_id, None)
        left = self.rooms.leave_all(connection_id)
        self.registry.unregister(user_id, connection_id)
        logger.info("WebSocket disconnected (user %s, connection %s)", user_id, connection_id)
        return left

    def is_current(self, user_id: int, connection_id: str) -> bool:
        """True if this connection is the one targeted deliveries go to."""
        return self.registry.lookup(user_id) == connection_id

    def is_connected(self, connection_id: str) -> bool:
        return connection_id in self._sockets

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _send_raw(self, connection_id: str, text: str) -> bool:
        ws = self._sockets.get(connection_id)
        if ws is None:
            return False
        try:
            await ws.send_text(text)
            return True
        except Exception as exc:
            logger.warning("Dropping dead connection %s: %s", connection_id, exc)
            self._evict(connection_id)
            return False

    def _evict(self, connection_id: str) -> None:
        """Take a dead connection out of delivery, rooms and the registry.

        The owning session still runs its own close() once its read loop
        notices; that pass finds nothing left to remove here.
        """
        self._sockets.pop(connection_id, None)
        self.rooms.leave_all(connection_id)
        user_id = self._owners.pop(connection_id, None)
        if user_id is not None:
            self.registry.unregister(user_id, connection_id)

    async def send(self, connection_id: str, event: str, data: Any) -> bool:
        """Send one event to one connection. False if it is gone."""
        return await self._send_raw(connection_id, encode_frame(event, data))

    async def send_to_user(self, user_id: int, event: str, data: Any) -> bool:
        """Send to the user's registered connection. False means offline."""
        connection_id = self.registry.lookup(user_id)
        if connection_id is None:
            return False
        return await self.send(connection_id, event, data)

    async def broadcast(self, room_id: str, event: str, data: Any, exclude: str | None = None) -> int:
        """Deliver an event to every member of a room except ``exclude``.

        Members are sent to one after another, so two broadcasts issued in
        order reach each member in that order.  Returns the delivery count.
        """
        text = encode_frame(event, data)
        delivered = 0
        for connection_id in self.rooms.members(room_id):
            if connection_id == exclude:
                continue
            if await self._send_raw(connection_id, text):
                delivered += 1
        return delivered

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    def join(self, connection_id: str, room_id: str) -> bool:
        return self.rooms.join(connection_id, room_id)

    def leave(self, connection_id: str, room_id: str) -> bool:
        return self.rooms.leave(connection_id, room_id)

    def clear(self) -> None:
        """Reset all state. Called at application shutdown."""
        self._sockets.clear()
        self._owners.clear()
        self.registry.clear()
        self.rooms.clear()


manager = ConnectionManager()
