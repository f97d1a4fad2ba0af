"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Iterator

ROOT_DIR = Path(__file__).resolve().parents[1]
for path in (ROOT_DIR, ROOT_DIR / "src"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("MEDIA_ROOT", tempfile.mkdtemp(prefix="murmur-media-"))
os.environ.setdefault("ACTIVITY_CLEANUP_INTERVAL_SECONDS", "0")

import pytest
from fastapi.testclient import TestClient
from fastapi.websockets import WebSocketState
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import database
from app.core.security import create_access_token
from app.database import get_db
from app.main import app
from app.models import Base, Follow, User
from app.monitoring.registry import registry
from murmur.realtime.connections import ConnectionHub
from murmur.realtime.delivery import DeliveryRouter
from murmur.realtime.managers import RealtimeLifecycle
from murmur.realtime.presence import PresenceRegistry
from murmur.realtime.store import InMemoryKeyValueStore


class DummyWebSocket:
    """Collects frames sent to a client."""

    def __init__(self) -> None:
        self.application_state = WebSocketState.CONNECTED
        self.sent: list[dict[str, Any]] = []

    async def send_json(self, payload: dict[str, Any]) -> None:
        if self.application_state != WebSocketState.CONNECTED:
            raise RuntimeError("socket closed")
        self.sent.append(payload)

    def events(self, name: str | None = None) -> list[dict[str, Any]]:
        return [frame for frame in self.sent if name is None or frame["type"] == name]


@pytest.fixture(autouse=True)
def reset_metrics() -> Iterator[None]:
    for metric in registry._metrics.values():
        metric.clear()
    yield
    for metric in registry._metrics.values():
        metric.clear()


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def test_engine() -> Iterator[Engine]:
    """Provide an in-memory SQLite engine for isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(test_engine, monkeypatch) -> sessionmaker[Session]:
    """Return a session factory bound to the test engine.

    Short-lived sessions opened via ``get_db_session`` use it too.
    """

    factory = sessionmaker(bind=test_engine, autoflush=False, future=True)
    monkeypatch.setattr(database, "SessionLocal", factory)
    return factory


@pytest.fixture()
def db_session(session_factory) -> Iterator[Session]:
    """Yield a SQLAlchemy session for unit tests."""

    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_user(session_factory):
    """Create users in their own session and return their ids."""

    def factory(username: str, display_name: str | None = None) -> int:
        with session_factory() as session:
            user = User(username=username, display_name=display_name)
            session.add(user)
            session.commit()
            return user.id

    return factory


@pytest.fixture()
def follow(session_factory):
    def factory(follower_id: int, followee_id: int) -> None:
        with session_factory() as session:
            session.add(Follow(follower_id=follower_id, followee_id=followee_id))
            session.commit()

    return factory


@pytest.fixture()
def realtime() -> SimpleNamespace:
    """A single-node realtime stack backed by the in-memory store."""

    store = InMemoryKeyValueStore()
    hub = ConnectionHub()
    presence = PresenceRegistry(store, scan_batch_size=2)
    router = DeliveryRouter(presence, hub, node_id="node-a", fanout_limit=50)
    lifecycle = RealtimeLifecycle(hub, presence, node_id="node-a")

    async def connect(user_id: int) -> tuple[str, DummyWebSocket]:
        socket = DummyWebSocket()
        connection_id = await stack.lifecycle.on_connect(user_id, socket)  # type: ignore[arg-type]
        return connection_id, socket

    stack = SimpleNamespace(
        store=store,
        hub=hub,
        presence=presence,
        router=router,
        lifecycle=lifecycle,
        connect=connect,
    )
    return stack


def token_for(user_id: int) -> str:
    return create_access_token({"sub": str(user_id)})


def auth_headers(user_id: int) -> dict[str, str]:
    return {"Authorization": f"Bearer {token_for(user_id)}"}


@pytest.fixture()
def auth():
    return SimpleNamespace(token=token_for, headers=auth_headers)


@pytest.fixture()
def client(session_factory) -> Iterator[TestClient]:
    """Yield a FastAPI TestClient with the database dependency overridden."""

    def override_get_db() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
