"""
Pytest fixtures shared across all test modules.
Uses an in-memory SQLite database with StaticPool so all connections
share a single in-memory DB, so no real Postgres or Redis required for tests.
"""

import json
import os

# Set env vars BEFORE any app module is imported
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["SECRET_KEY"] = "test-secret-key-min-32-chars-long!!"
os.environ["ALGORITHM"] = "HS256"
os.environ["REDIS_URL"] = ""
os.environ["CALL_RING_TIMEOUT_SECONDS"] = "0"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Import app modules AFTER env vars are set
import app.models  # noqa: E402,F401  (registers every table on Base.metadata)
from app.database import Base, get_db  # noqa: E402
from app.datastore import SqlDatastore  # noqa: E402
from app.main import app  # noqa: E402
from app.models import Channel, ChannelMember, Message, User, Workspace, WorkspaceMember  # noqa: E402
from app.services.auth_service import create_access_token  # noqa: E402
from app.services.calls import CallRegistry, call_registry  # noqa: E402
from app.websocket.manager import ConnectionManager, manager  # noqa: E402

# Single shared in-memory SQLite engine; StaticPool ensures all
# connections share the same DB instance.
engine = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    """Create tables before each test, drop after."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_realtime_state():
    """The socket singletons outlive a test; start each one empty."""
    yield
    call_registry.clear()
    manager.clear()


@pytest.fixture()
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def datastore(db):
    return SqlDatastore(db)


@pytest.fixture()
def connections():
    """A private ConnectionManager for unit tests."""
    return ConnectionManager()


@pytest.fixture()
def calls():
    registry = CallRegistry()
    yield registry
    registry.clear()


@pytest.fixture()
def client(db):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Fake socket
# ---------------------------------------------------------------------------


class FakeWebSocket:
    """Records every frame the server sends; stands in for fastapi.WebSocket."""

    def __init__(self, fail: bool = False):
        self.frames: list[dict] = []
        self.fail = fail

    async def send_text(self, text: str) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.frames.append(json.loads(text))

    def types(self) -> list[str]:
        return [f["type"] for f in self.frames]

    def of(self, event: str) -> list:
        """Payloads of every received frame of this event type."""
        return [f["data"] for f in self.frames if f["type"] == event]

    def clear(self) -> None:
        self.frames.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_user(db, username: str, display_name: str | None = None) -> User:
    user = User(username=username, email=f"{username}@example.com", display_name=display_name)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_workspace(db, owner: User, members: list[User] = (), name: str = "acme") -> Workspace:
    ws = Workspace(name=name, slug=name, owner_id=owner.id)
    db.add(ws)
    db.commit()
    for user in [owner, *[m for m in members if m.id != owner.id]]:
        db.add(WorkspaceMember(workspace_id=ws.id, user_id=user.id, role="owner" if user is owner else "member"))
    db.commit()
    db.refresh(ws)
    return ws


def make_channel(
    db,
    workspace: Workspace,
    creator: User,
    name: str = "general",
    is_private: bool = False,
    members: list[User] = (),
) -> Channel:
    channel = Channel(name=name, workspace_id=workspace.id, created_by=creator.id, is_private=is_private)
    db.add(channel)
    db.commit()
    for user in members:
        db.add(ChannelMember(channel_id=channel.id, user_id=user.id))
    db.commit()
    db.refresh(channel)
    return channel


def make_message(db, channel: Channel, author: User, content: str = "hello") -> Message:
    msg = Message(channel_id=channel.id, user_id=author.id, content=content)
    db.add(msg)
    db.commit()
    db.refresh(msg)
    return msg


def connect(connections: ConnectionManager, user: User) -> tuple[FakeWebSocket, str]:
    """Register a fake socket for a user; returns (socket, connection_id)."""
    ws = FakeWebSocket()
    return ws, connections.connect(ws, user.id)


def token_for(user: User) -> str:
    return create_access_token(user.id, user.username)
