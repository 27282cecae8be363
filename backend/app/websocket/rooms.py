"""In-memory room membership.

Rooms are plain strings namespaced by kind (``workspace:<id>``,
``channel:<id>``, ``call:<id>``).  A room exists while it has members and is
dropped from the map when the last one leaves.  Nothing here survives a
restart; clients re-join after reconnecting.
"""

from collections import defaultdict

WORKSPACE = "workspace"
CHANNEL = "channel"
CALL = "call"


def workspace_room(workspace_id: int) -> str:
    return f"{WORKSPACE}:{workspace_id}"


def channel_room(channel_id: int) -> str:
    return f"{CHANNEL}:{channel_id}"


def call_room(call_id: str) -> str:
    return f"{CALL}:{call_id}"


class RoomMembership:
    def __init__(self) -> None:
        # room_id -> {connection_id}
        self._members: dict[str, set[str]] = defaultdict(set)
        # connection_id -> {room_id}
        self._rooms: dict[str, set[str]] = defaultdict(set)

    def join(self, connection_id: str, room_id: str) -> bool:
        """Add the connection to the room. Returns False if already a member."""
        if connection_id in self._members.get(room_id, ()):
            return False
        self._members[room_id].add(connection_id)
        self._rooms[connection_id].add(room_id)
        return True

    def leave(self, connection_id: str, room_id: str) -> bool:
        members = self._members.get(room_id)
        if not members or connection_id not in members:
            return False
        members.discard(connection_id)
        if not members:
            del self._members[room_id]
        rooms = self._rooms.get(connection_id)
        if rooms is not None:
            rooms.discard(room_id)
            if not rooms:
                del self._rooms[connection_id]
        return True

    def leave_all(self, connection_id: str) -> list[str]:
        """Remove the connection from every room; returns the rooms it left."""
        left = list(self._rooms.get(connection_id, ()))
        for room_id in left:
            self.leave(connection_id, room_id)
        return left

    def members(self, room_id: str) -> list[str]:
        return list(self._members.get(room_id, ()))

    def rooms_of(self, connection_id: str) -> set[str]:
        return set(self._rooms.get(connection_id, ()))

    def is_member(self, connection_id: str, room_id: str) -> bool:
        return connection_id in self._members.get(room_id, ())

    def room_count(self) -> int:
        return len(self._members)

    def clear(self) -> None:
        self._members.clear()
        self._rooms.clear()
