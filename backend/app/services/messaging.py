"""
Message fan-out: create / edit / delete / react, each checked against the
datastore before anything is written and broadcast to ``channel:<id>`` only
after the write has committed.
"""

import logging
import re

from app.core import events
from app.core.errors import Forbidden, NotFound, run_best_effort
from app.datastore import Datastore
from app.models.channel import Channel
from app.models.message import Message
from app.schemas.message import MessageOut
from app.websocket.manager import ConnectionManager, manager
from app.websocket.rooms import channel_room

logger = logging.getLogger(__name__)

MENTION_RE = re.compile(r"@(\w+)")


def extract_mentions(text: str) -> list[str]:
    """Return mentioned usernames in order of first appearance, without '@'."""
    seen: list[str] = []
    for name in MENTION_RE.findall(text):
        if name not in seen:
            seen.append(name)
    return seen


class MessageBroadcastProtocol:
    def __init__(self, datastore: Datastore, connections: ConnectionManager = manager) -> None:
        self.datastore = datastore
        self.connections = connections

    # ------------------------------------------------------------------
    # Access checks
    # ------------------------------------------------------------------

    def _accessible_channel(self, channel_id: int, user_id: int) -> Channel:
        """Members may always post; non-members only to public channels."""
        channel = self.datastore.get_channel(channel_id)
        if channel is None:
            raise NotFound("Channel not found")
        if channel.is_private and not self.datastore.is_channel_member(channel_id, user_id):
            raise Forbidden("No access to this channel")
        return channel

    def _live_message(self, message_id: int) -> Message:
        message = self.datastore.get_message(message_id)
        if message is None or message.is_deleted:
            raise NotFound("Message not found")
        return message

    def _owned_message(self, message_id: int, user_id: int, action: str) -> Message:
        message = self._live_message(message_id)
        if message.user_id != user_id:
            raise Forbidden(f"Cannot {action} this message")
        return message

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def send_message(
        self,
        sender_id: int,
        channel_id: int,
        content: str,
        message_type: str = "text",
        parent_message_id: int | None = None,
    ) -> MessageOut:
        channel = self._accessible_channel(channel_id, sender_id)
        if parent_message_id is not None:
            parent = self.datastore.get_message(parent_message_id)
            if parent is None or parent.channel_id != channel_id:
                raise NotFound("Parent message not found")

        message = self.datastore.create_message(channel_id, sender_id, content, message_type, parent_message_id)
        snapshot = self.datastore.message_snapshot(message.id)

        # Sender included so every client renders the same order.
        await self.connections.broadcast(channel_room(channel_id), events.NEW_MESSAGE, snapshot)

        for username in extract_mentions(content):
            await run_best_effort(
                self._notify_mention(username, snapshot, channel),
                f"mention of @{username} in message {message.id}",
            )

        if parent_message_id is not None:
            thread = self.datastore.record_thread_reply(parent_message_id, sender_id)
            await self.connections.broadcast(
                channel_room(channel_id),
                events.THREAD_UPDATED,
                {
                    "message_id": parent_message_id,
                    "new_reply": snapshot,
                    "reply_count": thread.reply_count,
                    "participants": thread.participants,
                },
            )
        return snapshot

    async def _notify_mention(self, username: str, snapshot: MessageOut, channel: Channel) -> None:
        user = self.datastore.get_user_by_username(username)
        if user is None:
            return
        self.datastore.add_mention(snapshot.id, user.id)
        delivered = await self.connections.send_to_user(
            user.id,
            events.MENTIONED,
            {"message": snapshot, "channel_id": channel.id, "workspace_id": channel.workspace_id},
        )
        if not delivered:
            logger.debug("Mention of user %s stored; user is offline", user.id)

    async def edit_message(self, user_id: int, message_id: int, content: str) -> MessageOut:
        message = self._owned_message(message_id, user_id, "edit")
        self.datastore.edit_message(message_id, content)
        snapshot = self.datastore.message_snapshot(message_id)
        await self.connections.broadcast(channel_room(message.channel_id), events.MESSAGE_EDITED, snapshot)
        return snapshot

    async def delete_message(self, user_id: int, message_id: int) -> None:
        message = self._owned_message(message_id, user_id, "delete")
        channel_id = message.channel_id
        self.datastore.soft_delete_message(message_id)
        await self.connections.broadcast(
            channel_room(channel_id),
            events.MESSAGE_DELETED,
            {"message_id": message_id, "channel_id": channel_id},
        )

    # ------------------------------------------------------------------
    # Reactions
    # ------------------------------------------------------------------

    async def add_reaction(self, user_id: int, message_id: int, emoji: str) -> bool:
        """Returns False (and broadcasts nothing) if the reaction already exists."""
        message = self._live_message(message_id)
        self._accessible_channel(message.channel_id, user_id)
        if not self.datastore.add_reaction(message_id, user_id, emoji):
            return False
        await self.connections.broadcast(
            channel_room(message.channel_id),
            events.REACTION_ADDED,
            {"message_id": message_id, "user_id": user_id, "emoji": emoji},
        )
        return True

    async def remove_reaction(self, user_id: int, message_id: int, emoji: str) -> bool:
        """Returns False (and broadcasts nothing) if there was nothing to remove."""
        message = self.datastore.get_message(message_id)
        if message is None:
            raise NotFound("Message not found")
        if not self.datastore.remove_reaction(message_id, user_id, emoji):
            return False
        await self.connections.broadcast(
            channel_room(message.channel_id),
            events.REACTION_REMOVED,
            {"message_id": message_id, "user_id": user_id, "emoji": emoji},
        )
        return True

    # ------------------------------------------------------------------
    # Read state
    # ------------------------------------------------------------------

    async def mark_read(self, user_id: int, connection_id: str, channel_id: int) -> None:
        # Always acknowledged; for a non-member there is simply nothing to update.
        if not self.datastore.mark_channel_read(channel_id, user_id):
            logger.debug("mark_read: user %s is not a member of channel %s", user_id, channel_id)
        await self.connections.send(connection_id, events.CHANNEL_MARKED_READ, {"channel_id": channel_id})
