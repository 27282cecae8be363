"""
Typing indicators.

The server keeps no typing state and no timers: ``typing_start`` and
``typing_stop`` are relayed to the channel room and forgotten.  Receivers
clear an indicator on ``user_stopped_typing`` or after TYPING_QUIET_SECONDS
without a fresh ``user_typing``, so a lost stop event heals on its own.
TypingIndicatorState is that receiver-side rule, usable by Python clients and
bots.
"""

import time
from collections.abc import Callable

from app.config import settings
from app.core import events
from app.core.errors import Forbidden
from app.websocket.manager import ConnectionManager, manager
from app.websocket.rooms import channel_room


class TypingIndicatorProtocol:
    def __init__(self, connections: ConnectionManager = manager) -> None:
        self.connections = connections

    def _room(self, connection_id: str, channel_id: int) -> str:
        room = channel_room(channel_id)
        if not self.connections.rooms.is_member(connection_id, room):
            raise Forbidden("Join the channel before typing in it")
        return room

    async def start_typing(self, user_id: int, username: str, connection_id: str, channel_id: int) -> None:
        await self.connections.broadcast(
            self._room(connection_id, channel_id),
            events.USER_TYPING,
            {
                "channel_id": channel_id,
                "user_id": user_id,
                "username": username,
                "expires_in": settings.TYPING_QUIET_SECONDS,
            },
            exclude=connection_id,
        )

    async def stop_typing(self, user_id: int, connection_id: str, channel_id: int) -> None:
        await self.connections.broadcast(
            self._room(connection_id, channel_id),
            events.USER_STOPPED_TYPING,
            {"channel_id": channel_id, "user_id": user_id},
            exclude=connection_id,
        )


class TypingIndicatorState:
    """Who is typing where, as seen by one receiving client."""

    def __init__(
        self,
        quiet_seconds: float = settings.TYPING_QUIET_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.quiet_seconds = quiet_seconds
        self._clock = clock
        # (channel_id, user_id) -> expiry timestamp on self._clock
        self._expiry: dict[tuple[int, int], float] = {}

    def observe(self, event: str, data: dict) -> None:
        """Feed an inbound event; anything but typing events is ignored."""
        if event not in (events.USER_TYPING, events.USER_STOPPED_TYPING):
            return
        key = (int(data["channel_id"]), int(data["user_id"]))
        if event == events.USER_TYPING:
            self._expiry[key] = self._clock() + self.quiet_seconds
        else:
            self._expiry.pop(key, None)

    def _purge(self) -> None:
        now = self._clock()
        for key in [k for k, expires in self._expiry.items() if expires <= now]:
            del self._expiry[key]

    def typing_users(self, channel_id: int) -> list[int]:
        self._purge()
        return sorted(uid for cid, uid in self._expiry if cid == channel_id)

    def is_typing(self, channel_id: int, user_id: int) -> bool:
        self._purge()
        return (channel_id, user_id) in self._expiry
