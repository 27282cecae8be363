import json
import logging
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect, status

from app.core import events
from app.core.errors import PersistenceFailure
from app.datastore import Datastore
from app.models.user import User
from app.services.auth_service import TokenVerifier
from app.websocket.session import SocketSession

logger = logging.getLogger(__name__)


def _auth_token(frame: Any) -> str | None:
    """Pull the token out of {"type": "auth", "token": ...} (or data.token)."""
    if not isinstance(frame, dict) or frame.get("type") != events.AUTH:
        return None
    token = frame.get("token")
    if token is None and isinstance(frame.get("data"), dict):
        token = frame["data"].get("token")
    return token if isinstance(token, str) else None


async def _authenticate(websocket: WebSocket, datastore: Datastore, verifier: TokenVerifier) -> User | None:
    """Expect the first frame to be {"type": "auth", "token": "<jwt>"}.

    Any failure closes the socket with 1008 before a session exists.
    """
    await websocket.accept()  # must accept before receive_text()
    try:
        raw = await websocket.receive_text()
    except WebSocketDisconnect:
        return None
    try:
        frame = json.loads(raw)
    except json.JSONDecodeError:
        frame = None

    token = _auth_token(frame)
    claims = verifier.verify(token) if token else None
    if claims is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid or expired token")
        return None

    try:
        user = datastore.get_user(claims["user_id"])
    except PersistenceFailure:
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return None
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Unknown user")
        return None
    return user


async def socket_ws_handler(websocket: WebSocket, datastore: Datastore, verifier: TokenVerifier) -> None:
    """Full lifecycle handler for the /ws endpoint."""
    user = await _authenticate(websocket, datastore, verifier)
    if user is None:
        return

    session = SocketSession(websocket, user, datastore)
    await session.start()

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame: dict[str, Any] = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if not isinstance(frame, dict) or not isinstance(frame.get("type"), str):
                continue
            await session.dispatch(frame["type"], frame.get("data"))

    except WebSocketDisconnect:
        pass
    except Exception as exc:
        logger.exception("socket_ws_handler: unexpected error for user %s: %s", session.user_id, exc)
    finally:
        await session.close()
