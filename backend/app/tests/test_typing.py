"""Typing relay and the receiver-side expiry rule."""

import pytest

from app.core.errors import Forbidden
from app.services.typing_indicator import TypingIndicatorProtocol, TypingIndicatorState
from app.tests.conftest import FakeWebSocket
from app.websocket.rooms import channel_room


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def room(connections):
    typer, watcher = FakeWebSocket(), FakeWebSocket()
    typer_cid = connections.connect(typer, 1)
    watcher_cid = connections.connect(watcher, 2)
    connections.join(typer_cid, channel_room(10))
    connections.join(watcher_cid, channel_room(10))
    return typer, typer_cid, watcher


@pytest.mark.asyncio
async def test_typing_start_reaches_others_not_sender(connections, room):
    typer, typer_cid, watcher = room
    protocol = TypingIndicatorProtocol(connections)

    await protocol.start_typing(1, "alice", typer_cid, 10)

    assert typer.frames == []
    (event,) = watcher.of("user_typing")
    assert event["channel_id"] == 10
    assert event["user_id"] == 1
    assert event["username"] == "alice"
    assert event["expires_in"] == 3.0


@pytest.mark.asyncio
async def test_typing_stop_reaches_others_not_sender(connections, room):
    typer, typer_cid, watcher = room
    protocol = TypingIndicatorProtocol(connections)

    await protocol.stop_typing(1, typer_cid, 10)

    assert typer.frames == []
    assert watcher.of("user_stopped_typing") == [{"channel_id": 10, "user_id": 1}]


@pytest.mark.asyncio
async def test_typing_outside_joined_room_is_refused(connections, room):
    _, typer_cid, watcher = room
    protocol = TypingIndicatorProtocol(connections)

    with pytest.raises(Forbidden):
        await protocol.start_typing(1, "alice", typer_cid, 99)
    assert watcher.frames == []


# ---------------------------------------------------------------------------
# Receiver-side state
# ---------------------------------------------------------------------------

def test_indicator_expires_after_quiet_period():
    clock = FakeClock()
    state = TypingIndicatorState(quiet_seconds=3.0, clock=clock)

    state.observe("user_typing", {"channel_id": 10, "user_id": 1})
    clock.advance(2.9)
    assert state.is_typing(10, 1)
    clock.advance(0.2)
    assert not state.is_typing(10, 1)


def test_fresh_typing_event_extends_indicator():
    clock = FakeClock()
    state = TypingIndicatorState(quiet_seconds=3.0, clock=clock)

    state.observe("user_typing", {"channel_id": 10, "user_id": 1})
    clock.advance(2.0)
    state.observe("user_typing", {"channel_id": 10, "user_id": 1})
    clock.advance(2.0)
    assert state.typing_users(10) == [1]


def test_stop_event_clears_immediately():
    clock = FakeClock()
    state = TypingIndicatorState(quiet_seconds=3.0, clock=clock)

    state.observe("user_typing", {"channel_id": 10, "user_id": 1})
    state.observe("user_typing", {"channel_id": 10, "user_id": 2})
    state.observe("user_stopped_typing", {"channel_id": 10, "user_id": 1})

    assert state.typing_users(10) == [2]


def test_channels_are_tracked_separately_and_other_events_ignored():
    state = TypingIndicatorState(quiet_seconds=3.0, clock=FakeClock())

    state.observe("user_typing", {"channel_id": 10, "user_id": 1})
    state.observe("new_message", {"channel_id": 11, "user_id": 1})

    assert state.typing_users(10) == [1]
    assert state.typing_users(11) == []
