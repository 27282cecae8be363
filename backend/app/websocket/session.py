"""Per-connection orchestration.

A SocketSession exists from successful authentication until the socket
closes.  It routes each inbound event to the protocol component that owns
it, and turns every failure into an error event for this connection only,
so one bad event never closes the socket or touches other sessions.
"""

import functools
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import WebSocket
from pydantic import ValidationError

from app.core import events
from app.core.errors import Forbidden, NotFound, PersistenceFailure, RealtimeError, run_best_effort
from app.datastore import Datastore
from app.models.user import User
from app.schemas.call import CallInitiate, CallMute, CallRef, CallReject, SignalRelay
from app.schemas.channel import ChannelRef
from app.schemas.message import MessageCreate, MessageRef, MessageUpdate
from app.schemas.presence import StatusUpdate
from app.schemas.reaction import ReactionCreate
from app.schemas.user import UserBrief
from app.schemas.workspace import WorkspaceRef
from app.services.calls import CallRegistry, CallSignalingStateMachine, call_registry
from app.services.messaging import MessageBroadcastProtocol
from app.services.presence import PresenceTracker
from app.services.typing_indicator import TypingIndicatorProtocol
from app.websocket.manager import ConnectionManager, manager
from app.websocket.rooms import channel_room, workspace_room

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None]]


class SocketSession:
    def __init__(
        self,
        websocket: WebSocket,
        user: User,
        datastore: Datastore,
        connections: ConnectionManager = manager,
        calls: CallRegistry = call_registry,
    ) -> None:
        self.websocket = websocket
        self.user = UserBrief.model_validate(user)
        self.datastore = datastore
        self.connections = connections
        self.connection_id: str | None = None

        self.messages = MessageBroadcastProtocol(datastore, connections)
        self.presence = PresenceTracker(datastore, connections)
        self.typing = TypingIndicatorProtocol(connections)
        self.calls = CallSignalingStateMachine(datastore, connections, calls)

        self._handlers: dict[str, Handler] = {
            events.JOIN_WORKSPACE: self.on_join_workspace,
            events.JOIN_CHANNEL: self.on_join_channel,
            events.LEAVE_CHANNEL: self.on_leave_channel,
            events.SEND_MESSAGE: self.on_send_message,
            events.EDIT_MESSAGE: self.on_edit_message,
            events.DELETE_MESSAGE: self.on_delete_message,
            events.ADD_REACTION: self.on_add_reaction,
            events.REMOVE_REACTION: self.on_remove_reaction,
            events.MARK_READ: self.on_mark_read,
            events.TYPING_START: self.on_typing_start,
            events.TYPING_STOP: self.on_typing_stop,
            events.UPDATE_STATUS: self.on_update_status,
            events.PRESENCE_HEARTBEAT: self.on_heartbeat,
            events.CALL_INITIATE: self.on_call_initiate,
            events.CALL_ACCEPT: self.on_call_accept,
            events.CALL_REJECT: self.on_call_reject,
            events.CALL_END: self.on_call_end,
            events.CALL_TOGGLE_MUTE: self.on_call_toggle_mute,
            events.CALL_GET_ACTIVE: self.on_call_get_active,
        }
        for event in events.WEBRTC_EVENTS:
            self._handlers[event] = functools.partial(self.on_webrtc_signal, event)

    @property
    def user_id(self) -> int:
        return self.user.id

    @property
    def joined_rooms(self) -> set[str]:
        if self.connection_id is None:
            return set()
        return self.connections.rooms.rooms_of(self.connection_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self.connection_id = self.connections.connect(self.websocket, self.user_id)
        await self.presence.connect(self.user_id, self.connection_id)

    async def close(self) -> None:
        """Tear down this connection. Never raises."""
        if self.connection_id is None:
            return
        # A newer connection of the same user keeps the user online and in calls.
        current = self.connections.is_current(self.user_id, self.connection_id) or (
            # evicted after a failed write, and no newer connection took over
            not self.connections.is_connected(self.connection_id)
            and self.connections.registry.lookup(self.user_id) is None
        )
        if current:
            await run_best_effort(self.calls.end_all_for(self.user_id), f"call cleanup for user {self.user_id}")
        self.connections.disconnect(self.user_id, self.connection_id)
        if current:
            await run_best_effort(self.presence.disconnect(self.user_id), f"offline fan-out for user {self.user_id}")

    async def emit(self, event: str, data: Any) -> bool:
        return await self.connections.send(self.connection_id, event, data)

    async def dispatch(self, event: str, data: Any) -> None:
        handler = self._handlers.get(event)
        if handler is None:
            await self.emit(events.ERROR, {"message": f"Unknown event {event!r}"})
            return

        error_event = events.CALL_ERROR if event.startswith(("call:", "webrtc:")) else events.ERROR
        try:
            await handler(data)
        except ValidationError as exc:
            await self.emit(error_event, {"message": f"Invalid payload for {event}", "error": str(exc)})
        except PersistenceFailure as exc:
            await self.emit(error_event, {"message": f"Failed to handle {event}", "error": exc.message})
        except RealtimeError as exc:
            logger.info("%s from user %s refused: %s", event, self.user_id, exc.message)
            await self.emit(error_event, {"message": exc.message})
        except Exception as exc:
            logger.error("Error handling event %r from user %s: %s", event, self.user_id, exc, exc_info=True)
            await self.emit(error_event, {"message": f"Failed to handle {event}"})

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    async def on_join_workspace(self, data: Any) -> None:
        workspace_id = WorkspaceRef.model_validate(data).workspace_id
        if not self.datastore.is_workspace_member(workspace_id, self.user_id):
            raise Forbidden("Not a member of this workspace")

        self.connections.join(self.connection_id, workspace_room(workspace_id))
        channel_ids = self.datastore.member_channel_ids(workspace_id, self.user_id)
        for channel_id in channel_ids:
            self.connections.join(self.connection_id, channel_room(channel_id))

        presence = await self.presence.snapshot(self.datastore.workspace_member_ids(workspace_id))
        await self.emit(
            events.JOINED_WORKSPACE,
            {"workspace_id": workspace_id, "channel_ids": channel_ids, "presence": presence},
        )

    async def on_join_channel(self, data: Any) -> None:
        channel_id = ChannelRef.model_validate(data).channel_id
        channel = self.datastore.get_channel(channel_id)
        if channel is None:
            raise NotFound("Channel not found")
        if channel.is_private and not self.datastore.is_channel_member(channel_id, self.user_id):
            raise Forbidden("No access to this channel")

        room = channel_room(channel_id)
        newly_joined = self.connections.join(self.connection_id, room)
        await self.emit(events.JOINED_CHANNEL, {"channel_id": channel_id})
        if newly_joined:
            await self.connections.broadcast(
                room,
                events.USER_JOINED_CHANNEL,
                {"channel_id": channel_id, "user_id": self.user_id},
                exclude=self.connection_id,
            )

    async def on_leave_channel(self, data: Any) -> None:
        channel_id = ChannelRef.model_validate(data).channel_id
        room = channel_room(channel_id)
        if self.connections.leave(self.connection_id, room):
            await self.connections.broadcast(
                room, events.USER_LEFT_CHANNEL, {"channel_id": channel_id, "user_id": self.user_id}
            )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def on_send_message(self, data: Any) -> None:
        msg = MessageCreate.model_validate(data)
        await self.messages.send_message(
            self.user_id, msg.channel_id, msg.content, msg.message_type, msg.parent_message_id
        )

    async def on_edit_message(self, data: Any) -> None:
        update = MessageUpdate.model_validate(data)
        await self.messages.edit_message(self.user_id, update.message_id, update.content)

    async def on_delete_message(self, data: Any) -> None:
        await self.messages.delete_message(self.user_id, MessageRef.model_validate(data).message_id)

    async def on_add_reaction(self, data: Any) -> None:
        reaction = ReactionCreate.model_validate(data)
        await self.messages.add_reaction(self.user_id, reaction.message_id, reaction.emoji)

    async def on_remove_reaction(self, data: Any) -> None:
        reaction = ReactionCreate.model_validate(data)
        await self.messages.remove_reaction(self.user_id, reaction.message_id, reaction.emoji)

    async def on_mark_read(self, data: Any) -> None:
        channel_id = ChannelRef.model_validate(data).channel_id
        await self.messages.mark_read(self.user_id, self.connection_id, channel_id)

    # ------------------------------------------------------------------
    # Typing / presence
    # ------------------------------------------------------------------

    async def on_typing_start(self, data: Any) -> None:
        channel_id = ChannelRef.model_validate(data).channel_id
        await self.typing.start_typing(self.user_id, self.user.username, self.connection_id, channel_id)

    async def on_typing_stop(self, data: Any) -> None:
        channel_id = ChannelRef.model_validate(data).channel_id
        await self.typing.stop_typing(self.user_id, self.connection_id, channel_id)

    async def on_update_status(self, data: Any) -> None:
        update = StatusUpdate.model_validate(data)
        await self.presence.update_status(self.user_id, update.status, update.status_message)

    async def on_heartbeat(self, data: Any) -> None:
        await self.presence.heartbeat(self.user_id)

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def on_call_initiate(self, data: Any) -> None:
        req = CallInitiate.model_validate(data)
        await self.calls.initiate(
            self.user, req.target_user_id, self.connection_id, req.channel_id, req.workspace_id, req.call_type
        )

    async def on_call_accept(self, data: Any) -> None:
        await self.calls.accept(CallRef.model_validate(data).call_id, self.user_id, self.connection_id)

    async def on_call_reject(self, data: Any) -> None:
        req = CallReject.model_validate(data)
        await self.calls.reject(req.call_id, self.user_id, req.reason)

    async def on_call_end(self, data: Any) -> None:
        await self.calls.end(CallRef.model_validate(data).call_id, self.user_id)

    async def on_call_toggle_mute(self, data: Any) -> None:
        req = CallMute.model_validate(data)
        await self.calls.toggle_mute(req.call_id, self.user_id, self.connection_id, req.is_muted)

    async def on_call_get_active(self, data: Any) -> None:
        await self.emit(events.CALL_ACTIVE_CALLS, self.calls.active_calls(self.user_id))

    async def on_webrtc_signal(self, event: str, data: Any) -> None:
        req = SignalRelay.model_validate(data)
        await self.calls.relay(event, self.user_id, req.target_user_id, req.call_id, req.payload)
