"""End-to-end tests for the /ws endpoint.

Covers the accept-then-authenticate flow, room joins, message fan-out
between two live sockets, per-event error scoping, disconnect cleanup and a
full call over real sockets.
"""

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.models import Message
from app.tests.conftest import make_channel, make_user, make_workspace, token_for


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

@pytest.fixture()
def team(db):
    alice = make_user(db, "alice")
    bob = make_user(db, "bob")
    ws = make_workspace(db, alice, [bob])
    general = make_channel(db, ws, alice, "general", members=[alice, bob])
    secret = make_channel(db, ws, alice, "secret", is_private=True, members=[alice])
    return {
        "alice": alice,
        "bob": bob,
        "ws_id": ws.id,
        "general_id": general.id,
        "secret_id": secret.id,
        "alice_token": token_for(alice),
        "bob_token": token_for(bob),
    }


def _auth(ws, token: str) -> None:
    ws.send_json({"type": "auth", "token": token})


def _join(ws, workspace_id: int) -> dict:
    """Join a workspace and return the joined_workspace payload."""
    ws.send_json({"type": "join_workspace", "data": {"workspace_id": workspace_id}})
    frame = ws.receive_json()
    assert frame["type"] == "joined_workspace", frame
    return frame["data"]


def _receive(ws, event: str) -> dict:
    """Skip unrelated frames until ``event`` arrives."""
    for _ in range(20):
        frame = ws.receive_json()
        if frame["type"] == event:
            return frame["data"]
    raise AssertionError(f"{event} never arrived")


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

class TestAuthentication:
    def test_valid_token_can_join_workspace(self, client: TestClient, team):
        with client.websocket_connect("/ws") as ws:
            _auth(ws, team["alice_token"])
            joined = _join(ws, team["ws_id"])

        assert joined["workspace_id"] == team["ws_id"]
        assert sorted(joined["channel_ids"]) == sorted([team["general_id"], team["secret_id"]])
        assert set(joined["presence"]) == {str(team["alice"].id), str(team["bob"].id)}

    def test_bad_token_closes_with_policy_violation(self, client: TestClient, team):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws") as ws:
                _auth(ws, "not-a-real-token")
                ws.receive_json()
        assert exc.value.code == 1008

    def test_first_frame_must_be_auth(self, client: TestClient, team):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws") as ws:
                ws.send_json({"type": "join_workspace", "token": team["alice_token"]})
                ws.receive_json()
        assert exc.value.code == 1008

    def test_token_in_data_is_accepted(self, client: TestClient, team):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "auth", "data": {"token": team["alice_token"]}})
            assert _join(ws, team["ws_id"])["workspace_id"] == team["ws_id"]

    def test_token_for_unknown_user_is_refused(self, client: TestClient, team, db):
        ghost = make_user(db, "ghost")
        token = token_for(ghost)
        ghost.is_active = False
        db.commit()

        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws") as ws:
                _auth(ws, token)
                ws.receive_json()
        assert exc.value.code == 1008


# ---------------------------------------------------------------------------
# Rooms and errors
# ---------------------------------------------------------------------------

class TestSessionEvents:
    def test_join_foreign_workspace_is_refused(self, client: TestClient, team, db):
        carol = make_user(db, "carol")
        other = make_workspace(db, carol, name="other")

        with client.websocket_connect("/ws") as ws:
            _auth(ws, team["alice_token"])
            ws.send_json({"type": "join_workspace", "data": {"workspace_id": other.id}})
            frame = ws.receive_json()

        assert frame["type"] == "error"
        assert "member" in frame["data"]["message"]

    def test_unknown_event_reports_error_and_keeps_socket(self, client: TestClient, team):
        with client.websocket_connect("/ws") as ws:
            _auth(ws, team["alice_token"])
            ws.send_json({"type": "fly_to_moon", "data": {}})
            assert ws.receive_json()["type"] == "error"
            # still usable afterwards
            assert _join(ws, team["ws_id"])["workspace_id"] == team["ws_id"]

    def test_invalid_payload_reports_error(self, client: TestClient, team):
        with client.websocket_connect("/ws") as ws:
            _auth(ws, team["alice_token"])
            ws.send_json({"type": "send_message", "data": {"channel_id": team["general_id"], "content": "   "}})
            frame = ws.receive_json()

        assert frame["type"] == "error"
        assert "send_message" in frame["data"]["message"]

    def test_join_private_channel_without_membership(self, client: TestClient, team):
        with client.websocket_connect("/ws") as ws:
            _auth(ws, team["bob_token"])
            ws.send_json({"type": "join_channel", "data": {"channel_id": team["secret_id"]}})
            frame = ws.receive_json()

        assert frame == {"type": "error", "data": {"message": "No access to this channel"}}

    def test_bare_id_payload_is_accepted(self, client: TestClient, team):
        with client.websocket_connect("/ws") as ws:
            _auth(ws, team["alice_token"])
            ws.send_json({"type": "join_channel", "data": team["general_id"]})
            frame = ws.receive_json()

        assert frame == {"type": "joined_channel", "data": {"channel_id": team["general_id"]}}


# ---------------------------------------------------------------------------
# Fan-out between two sockets
# ---------------------------------------------------------------------------

class TestFanOut:
    def test_message_reaches_both_members(self, client: TestClient, team, db):
        with client.websocket_connect("/ws") as alice:
            _auth(alice, team["alice_token"])
            _join(alice, team["ws_id"])

            with client.websocket_connect("/ws") as bob:
                _auth(bob, team["bob_token"])
                _join(bob, team["ws_id"])
                assert _receive(alice, "user_online")["user_id"] == team["bob"].id

                bob.send_json(
                    {"type": "send_message", "data": {"channelId": team["general_id"], "content": "hi @alice"}}
                )
                to_bob = _receive(bob, "new_message")
                to_alice = _receive(alice, "new_message")
                mention = _receive(alice, "mentioned")

        assert to_alice == to_bob
        assert to_alice["content"] == "hi @alice"
        assert to_alice["username"] == "bob"
        assert mention["message"]["id"] == to_alice["id"]
        assert db.query(Message).count() == 1

    def test_typing_skips_sender(self, client: TestClient, team):
        with client.websocket_connect("/ws") as alice:
            _auth(alice, team["alice_token"])
            _join(alice, team["ws_id"])

            with client.websocket_connect("/ws") as bob:
                _auth(bob, team["bob_token"])
                _join(bob, team["ws_id"])
                _receive(alice, "user_online")

                bob.send_json({"type": "typing_start", "data": {"channel_id": team["general_id"]}})
                typing = _receive(alice, "user_typing")

                # bob's next frame is the reply to his own next event, not a typing echo
                bob.send_json({"type": "join_channel", "data": {"channel_id": team["general_id"]}})
                assert bob.receive_json()["type"] == "joined_channel"

        assert typing["user_id"] == team["bob"].id
        assert typing["username"] == "bob"

    def test_disconnect_announces_offline_once(self, client: TestClient, team):
        with client.websocket_connect("/ws") as alice:
            _auth(alice, team["alice_token"])
            _join(alice, team["ws_id"])

            with client.websocket_connect("/ws") as bob:
                _auth(bob, team["bob_token"])
                _join(bob, team["ws_id"])
                _receive(alice, "user_online")

            offline = _receive(alice, "user_offline")
            # a follow-up round trip proves no second user_offline was queued
            alice.send_json({"type": "join_channel", "data": {"channel_id": team["general_id"]}})
            follow_up = alice.receive_json()

        assert offline["user_id"] == team["bob"].id
        assert offline["last_seen"]
        assert follow_up["type"] == "joined_channel"


# ---------------------------------------------------------------------------
# Calls over real sockets
# ---------------------------------------------------------------------------

class TestCalls:
    def test_call_to_offline_user(self, client: TestClient, team):
        with client.websocket_connect("/ws") as alice:
            _auth(alice, team["alice_token"])
            alice.send_json({"type": "call:initiate", "data": {"targetUserId": team["bob"].id}})
            frame = alice.receive_json()

        assert frame["type"] == "call:recipient_unavailable"
        assert frame["data"]["reason"] == "offline"

    def test_full_call(self, client: TestClient, team):
        with client.websocket_connect("/ws") as alice:
            _auth(alice, team["alice_token"])
            _join(alice, team["ws_id"])

            with client.websocket_connect("/ws") as bob:
                _auth(bob, team["bob_token"])
                _join(bob, team["ws_id"])
                _receive(alice, "user_online")

                alice.send_json({"type": "call:initiate", "data": {"target_user_id": team["bob"].id}})
                incoming = _receive(bob, "call:incoming")
                call_id = incoming["call_id"]
                assert _receive(alice, "call:initiated")["call_id"] == call_id

                bob.send_json({"type": "call:accept", "data": {"callId": call_id}})
                assert _receive(alice, "call:accepted")["accepted_by"] == team["bob"].id

                alice.send_json(
                    {
                        "type": "webrtc:offer",
                        "data": {"targetUserId": team["bob"].id, "callId": call_id, "offer": {"sdp": "v=0"}},
                    }
                )
                offer = _receive(bob, "webrtc:offer")

                bob.send_json({"type": "call:end", "data": {"call_id": call_id}})
                ended = _receive(alice, "call:ended")

        assert incoming["caller"]["username"] == "alice"
        assert offer == {"call_id": call_id, "from_user_id": team["alice"].id, "payload": {"sdp": "v=0"}}
        assert ended["ended_by"] == team["bob"].id

    def test_invalid_accept_reports_call_error(self, client: TestClient, team):
        with client.websocket_connect("/ws") as bob:
            _auth(bob, team["bob_token"])
            bob.send_json({"type": "call:accept", "data": {"call_id": "nope"}})
            frame = bob.receive_json()

        assert frame["type"] == "call:error"


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

def test_health(client: TestClient):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["realtime"]["presence_cache"] == "disabled"
