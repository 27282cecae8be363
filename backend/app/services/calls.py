"""
1:1 call signaling.

Each call is a CallSession that moves through an explicit transition table:

    ringing ──► connected ──► ended
       │
       ├──► rejected   (callee declines)
       ├──► missed     (callee offline at initiate, or ring timeout)
       └──► ended      (either side hangs up before answer)

Live sessions are held in memory by CallRegistry; every transition is also
written to the ``calls`` table.  A failed write is reported to the requester
as ``call:error`` but the in-memory transition stands.  Calls are ephemeral
and clients reconcile with their own timeouts.

WebRTC offer/answer/ICE frames are relayed verbatim to the target's live
connection, fire-and-forget.
"""

import asyncio
import logging
import uuid
from collections.abc import Coroutine
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from app.config import settings
from app.core import events
from app.core.errors import InvalidCall, NotFound, PersistenceFailure, RealtimeError
from app.datastore import Datastore
from app.schemas.user import UserBrief
from app.websocket.manager import ConnectionManager, manager
from app.websocket.rooms import call_room

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CallStatus(str, Enum):
    RINGING = "ringing"
    CONNECTED = "connected"
    ENDED = "ended"
    MISSED = "missed"
    REJECTED = "rejected"


TERMINAL_STATUSES = frozenset({CallStatus.ENDED, CallStatus.MISSED, CallStatus.REJECTED})

TRANSITIONS: dict[CallStatus, frozenset[CallStatus]] = {
    CallStatus.RINGING: frozenset(
        {CallStatus.CONNECTED, CallStatus.REJECTED, CallStatus.MISSED, CallStatus.ENDED}
    ),
    CallStatus.CONNECTED: frozenset({CallStatus.ENDED}),
}


@dataclass
class CallSession:
    call_id: str
    caller_id: int
    recipient_id: int
    channel_id: int | None = None
    workspace_id: int | None = None
    call_type: str = "audio"
    status: CallStatus = CallStatus.RINGING
    started_at: datetime = field(default_factory=_now)
    connected_at: datetime | None = None
    ended_at: datetime | None = None
    end_reason: str | None = None
    # the caller device that placed the call; it alone gets caller-side replies
    caller_connection_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def involves(self, user_id: int) -> bool:
        return user_id in (self.caller_id, self.recipient_id)

    def other_party(self, user_id: int) -> int:
        return self.recipient_id if user_id == self.caller_id else self.caller_id

    def transition(self, target: CallStatus, now: datetime | None = None) -> None:
        if target not in TRANSITIONS.get(self.status, frozenset()):
            raise InvalidCall(f"Call cannot go from {self.status.value} to {target.value}")
        now = now or _now()
        self.status = target
        if target is CallStatus.CONNECTED:
            self.connected_at = now
        elif target in TERMINAL_STATUSES:
            self.ended_at = now

    def duration(self) -> int:
        """Whole seconds between connect and end (or now); 0 if never connected."""
        if self.connected_at is None:
            return 0
        until = self.ended_at or _now()
        return max(0, int((until - self.connected_at).total_seconds()))


class CallRegistry:
    """Process-wide store of non-terminal calls and their ring timers."""

    def __init__(self) -> None:
        self._calls: dict[str, CallSession] = {}
        self._timers: dict[str, asyncio.Task] = {}

    def add(self, call: CallSession) -> None:
        self._calls[call.call_id] = call

    def get(self, call_id: str) -> CallSession | None:
        return self._calls.get(call_id)

    def remove(self, call_id: str) -> CallSession | None:
        self.cancel_timer(call_id)
        return self._calls.pop(call_id, None)

    def find_active(self, caller_id: int, recipient_id: int) -> CallSession | None:
        for call in self._calls.values():
            if call.caller_id == caller_id and call.recipient_id == recipient_id and not call.is_terminal:
                return call
        return None

    def for_user(self, user_id: int) -> list[CallSession]:
        return [call for call in self._calls.values() if call.involves(user_id)]

    def start_timer(self, call_id: str, coro: Coroutine[Any, Any, None]) -> None:
        self.cancel_timer(call_id)
        task = asyncio.create_task(coro)
        self._timers[call_id] = task

        def _forget(done: asyncio.Task) -> None:
            if self._timers.get(call_id) is done:
                del self._timers[call_id]

        task.add_done_callback(_forget)

    def cancel_timer(self, call_id: str) -> None:
        task = self._timers.pop(call_id, None)
        if task is None:
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:  # no running loop (shutdown from sync code)
            current = None
        if task is not current:
            task.cancel()

    def clear(self) -> None:
        """Cancel every timer and forget every call. Called at shutdown."""
        for call_id in list(self._timers):
            self.cancel_timer(call_id)
        self._calls.clear()

    def __len__(self) -> int:
        return len(self._calls)


call_registry = CallRegistry()


class CallSignalingStateMachine:
    def __init__(
        self,
        datastore: Datastore,
        connections: ConnectionManager = manager,
        calls: CallRegistry = call_registry,
        ring_timeout: float | None = None,
    ) -> None:
        self.datastore = datastore
        self.connections = connections
        self.calls = calls
        self.ring_timeout = settings.CALL_RING_TIMEOUT_SECONDS if ring_timeout is None else ring_timeout

    def _participant_call(self, call_id: str, user_id: int) -> CallSession:
        call = self.calls.get(call_id)
        if call is None or not call.involves(user_id):
            raise InvalidCall("Invalid call")
        return call

    def _recipient_call(self, call_id: str, user_id: int) -> CallSession:
        call = self.calls.get(call_id)
        if call is None or call.recipient_id != user_id:
            raise InvalidCall("Invalid call")
        return call

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def initiate(
        self,
        caller: UserBrief,
        target_user_id: int,
        connection_id: str,
        channel_id: int | None = None,
        workspace_id: int | None = None,
        call_type: str = "audio",
    ) -> CallSession:
        if target_user_id == caller.id:
            raise InvalidCall("Cannot call yourself")
        existing = self.calls.find_active(caller.id, target_user_id)
        if existing is not None:
            raise InvalidCall(f"Call {existing.call_id} to this user is already in progress")
        if self.datastore.get_user(target_user_id) is None:
            raise NotFound("User not found")

        call = CallSession(
            call_id=str(uuid.uuid4()),
            caller_id=caller.id,
            recipient_id=target_user_id,
            channel_id=channel_id,
            workspace_id=workspace_id,
            call_type=call_type,
            caller_connection_id=connection_id,
        )
        logger.info("Call %s: %s -> %s", call.call_id, caller.id, target_user_id)

        # Registered before the ring goes out so an immediate accept finds it.
        self.calls.add(call)
        delivered = await self.connections.send_to_user(
            target_user_id,
            events.CALL_INCOMING,
            {
                "call_id": call.call_id,
                "caller": caller,
                "channel_id": channel_id,
                "workspace_id": workspace_id,
                "call_type": call_type,
            },
        )
        if not delivered:
            self.calls.remove(call.call_id)
            call.transition(CallStatus.MISSED)
            call.end_reason = "offline"
            await self.connections.send(
                connection_id,
                events.CALL_RECIPIENT_UNAVAILABLE,
                {"call_id": call.call_id, "recipient_id": target_user_id, "reason": "offline"},
            )
            self.datastore.save_call(call)
            return call

        if self.ring_timeout > 0:
            self.calls.start_timer(call.call_id, self._expire_ringing(call.call_id))
        await self.connections.send(
            connection_id,
            events.CALL_INITIATED,
            {"call_id": call.call_id, "recipient_id": target_user_id, "status": call.status.value},
        )
        self.datastore.save_call(call)
        return call

    async def accept(self, call_id: str, user_id: int, connection_id: str) -> CallSession:
        call = self._recipient_call(call_id, user_id)
        call.transition(CallStatus.CONNECTED)
        self.calls.cancel_timer(call_id)

        room = call_room(call_id)
        self.connections.join(connection_id, room)
        caller_connection = call.caller_connection_id
        if caller_connection is None or not self.connections.is_connected(caller_connection):
            caller_connection = self.connections.registry.lookup(call.caller_id)
        if caller_connection is not None:
            self.connections.join(caller_connection, room)

        self.datastore.save_call(call)
        if caller_connection is not None:
            await self.connections.send(
                caller_connection, events.CALL_ACCEPTED, {"call_id": call_id, "accepted_by": user_id}
            )
        return call

    async def reject(self, call_id: str, user_id: int, reason: str = "rejected") -> CallSession:
        call = self._recipient_call(call_id, user_id)
        call.transition(CallStatus.REJECTED)
        call.end_reason = reason
        self.calls.remove(call_id)

        self.datastore.save_call(call)
        await self.connections.send_to_user(
            call.caller_id,
            events.CALL_REJECTED,
            {"call_id": call_id, "reason": reason, "rejected_by": user_id},
        )
        return call

    async def end(self, call_id: str, user_id: int) -> CallSession:
        call = self._participant_call(call_id, user_id)
        call.transition(CallStatus.ENDED)
        call.end_reason = "hangup"
        duration = call.duration()
        self.calls.remove(call_id)

        room = call_room(call_id)
        for connection_id in self.connections.rooms.members(room):
            self.connections.leave(connection_id, room)

        self.datastore.save_call(call, duration=duration)
        await self.connections.send_to_user(
            call.other_party(user_id),
            events.CALL_ENDED,
            {"call_id": call_id, "ended_by": user_id, "duration": duration},
        )
        return call

    async def _expire_ringing(self, call_id: str) -> None:
        await asyncio.sleep(self.ring_timeout)
        call = self.calls.get(call_id)
        if call is None or call.status is not CallStatus.RINGING:
            return
        call.transition(CallStatus.MISSED)
        call.end_reason = "no_answer"
        self.calls.remove(call_id)
        logger.info("Call %s unanswered after %ss", call_id, self.ring_timeout)

        payload = {"call_id": call_id, "reason": "no_answer"}
        await self.connections.send_to_user(call.caller_id, events.CALL_MISSED, payload)
        await self.connections.send_to_user(call.recipient_id, events.CALL_MISSED, payload)
        try:
            self.datastore.save_call(call)
        except PersistenceFailure as exc:
            logger.warning("Could not persist missed call %s: %s", call_id, exc)

    async def end_all_for(self, user_id: int) -> None:
        """Hang up every live call of a user whose connection went away."""
        for call in self.calls.for_user(user_id):
            try:
                await self.end(call.call_id, user_id)
            except RealtimeError as exc:
                logger.warning("Could not end call %s for user %s: %s", call.call_id, user_id, exc.message)

    # ------------------------------------------------------------------
    # In-call signaling
    # ------------------------------------------------------------------

    async def toggle_mute(self, call_id: str, user_id: int, connection_id: str, is_muted: bool) -> None:
        room = call_room(call_id)
        if not self.connections.rooms.is_member(connection_id, room):
            raise InvalidCall("Not connected to this call")
        await self.connections.broadcast(
            room,
            events.CALL_USER_MUTED,
            {"call_id": call_id, "user_id": user_id, "is_muted": is_muted},
            exclude=connection_id,
        )

    async def relay(self, event: str, sender_id: int, target_user_id: int, call_id: str | None, payload: Any) -> bool:
        """Forward an offer/answer/ICE frame. Offline targets are dropped silently."""
        delivered = await self.connections.send_to_user(
            target_user_id,
            event,
            {"call_id": call_id, "from_user_id": sender_id, "payload": payload},
        )
        if not delivered:
            logger.debug("Dropped %s from %s: user %s offline", event, sender_id, target_user_id)
        return delivered

    def active_calls(self, user_id: int) -> list[dict]:
        return [c.model_dump(mode="json") for c in self.datastore.active_calls(user_id)]
