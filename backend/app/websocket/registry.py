import logging

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Maps an authenticated user to their live connection id.

    Last connection wins: registering a second device replaces the first
    mapping, so targeted delivery (mentions, calls, WebRTC relay) reaches only
    the most recent connection.  Making this set-valued is the extension
    point for multi-device delivery.
    """

    def __init__(self) -> None:
        # user_id -> connection_id
        self._connections: dict[int, str] = {}

    def register(self, user_id: int, connection_id: str) -> None:
        previous = self._connections.get(user_id)
        if previous is not None and previous != connection_id:
            logger.info("User %s replaced connection %s with %s", user_id, previous, connection_id)
        self._connections[user_id] = connection_id

    def lookup(self, user_id: int) -> str | None:
        """Return the user's connection id, or None if they are offline."""
        return self._connections.get(user_id)

    def unregister(self, user_id: int, connection_id: str | None = None) -> bool:
        """Drop the user's mapping.

        With ``connection_id`` the mapping is only dropped while it still
        points at that connection, so a stale socket closing late cannot
        unregister the user's newer one.
        """
        current = self._connections.get(user_id)
        if current is None:
            return False
        if connection_id is not None and current != connection_id:
            return False
        del self._connections[user_id]
        return True

    def online_user_ids(self) -> list[int]:
        return list(self._connections.keys())

    def clear(self) -> None:
        self._connections.clear()
