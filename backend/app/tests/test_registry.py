"""ConnectionRegistry: one live connection per user, last connection wins."""

import pytest

from app.tests.conftest import FakeWebSocket
from app.websocket.registry import ConnectionRegistry


def test_register_and_lookup():
    registry = ConnectionRegistry()
    registry.register(1, "conn-a")
    assert registry.lookup(1) == "conn-a"
    assert registry.lookup(2) is None


def test_second_registration_replaces_first():
    registry = ConnectionRegistry()
    registry.register(1, "conn-a")
    registry.register(1, "conn-b")
    assert registry.lookup(1) == "conn-b"
    assert registry.online_user_ids() == [1]


def test_unregister_without_connection_id_drops_mapping():
    registry = ConnectionRegistry()
    registry.register(1, "conn-a")
    assert registry.unregister(1) is True
    assert registry.lookup(1) is None
    assert registry.unregister(1) is False


def test_stale_connection_cannot_unregister_newer_one():
    registry = ConnectionRegistry()
    registry.register(1, "conn-a")
    registry.register(1, "conn-b")
    assert registry.unregister(1, "conn-a") is False
    assert registry.lookup(1) == "conn-b"
    assert registry.unregister(1, "conn-b") is True
    assert registry.lookup(1) is None


def test_clear():
    registry = ConnectionRegistry()
    registry.register(1, "a")
    registry.register(2, "b")
    registry.clear()
    assert registry.online_user_ids() == []


# ---------------------------------------------------------------------------
# Targeted delivery through the manager
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_send_to_user_reaches_latest_connection_only(connections):
    first, second = FakeWebSocket(), FakeWebSocket()
    connections.connect(first, 7)
    connections.connect(second, 7)

    assert await connections.send_to_user(7, "ping", {"n": 1}) is True
    assert first.frames == []
    assert second.frames == [{"type": "ping", "data": {"n": 1}}]


@pytest.mark.asyncio
async def test_send_to_offline_user_returns_false(connections):
    assert await connections.send_to_user(99, "ping", {}) is False


@pytest.mark.asyncio
async def test_disconnect_of_stale_connection_keeps_user_online(connections):
    first, second = FakeWebSocket(), FakeWebSocket()
    old = connections.connect(first, 7)
    new = connections.connect(second, 7)

    connections.disconnect(7, old)
    assert connections.is_current(7, new)
    assert not connections.is_connected(old)
    assert await connections.send_to_user(7, "ping", {}) is True


@pytest.mark.asyncio
async def test_failed_write_evicts_only_that_connection(connections):
    old_ws, new_ws = FakeWebSocket(fail=True), FakeWebSocket()
    old = connections.connect(old_ws, 7)
    dead = connections.connect(FakeWebSocket(fail=True), 8)

    assert await connections.send_to_user(8, "ping", {}) is False
    assert connections.registry.lookup(8) is None
    assert not connections.is_connected(dead)

    new = connections.connect(new_ws, 7)
    # the stale socket dies after a newer one took over: the newer one stays
    assert await connections.send(old, "ping", {}) is False
    assert connections.is_current(7, new)
    assert await connections.send_to_user(7, "ping", {}) is True
