"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Any, AsyncIterator, Callable, Iterator

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app.config import Settings
from app.main import create_app
from app.models import Base, User
from app.models.base import utcnow
from app.monitoring.registry import registry


class FakePubSub:
    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self._channels: set[str] = set()

    async def subscribe(self, channel: str) -> None:
        if not self._redis.online:
            raise ConnectionError("offline")
        self._channels.add(channel)
        self._redis.broker.register(channel, self)

    async def unsubscribe(self, channel: str) -> None:
        if channel in self._channels:
            self._redis.broker.unregister(channel, self)
            self._channels.discard(channel)

    async def close(self) -> None:
        for channel in list(self._channels):
            await self.unsubscribe(channel)
        self._redis.pubsubs.discard(self)

    async def listen(self):
        while True:
            message = await self._queue.get()
            if message is None:
                break
            yield message

    def push(self, message: dict[str, Any] | None) -> None:
        self._queue.put_nowait(message)


class FakeRedis:
    """One connection to the in-memory broker."""

    def __init__(self, broker: "FakeBroker") -> None:
        self.broker = broker
        self.online = True
        self.pubsubs: set[FakePubSub] = set()

    async def ping(self) -> None:
        if not self.online or not self.broker.online:
            raise ConnectionError("offline")

    async def publish(self, channel: str, payload: str) -> None:
        if not self.online or not self.broker.online:
            raise ConnectionError("offline")
        self.broker.deliver(channel, payload)

    def pubsub(self) -> FakePubSub:
        pubsub = FakePubSub(self)
        self.pubsubs.add(pubsub)
        return pubsub

    async def close(self) -> None:
        self.online = False
        for pubsub in list(self.pubsubs):
            pubsub.push(None)

    def fail(self) -> None:
        self.online = False
        for pubsub in list(self.pubsubs):
            pubsub.push(None)


class FakeBroker:
    """In-memory pub/sub shared by every transport created during a test."""

    def __init__(self) -> None:
        self.online = True
        self.instances: list[FakeRedis] = []
        self.published: list[tuple[str, dict[str, Any]]] = []
        self._pubsubs: dict[str, set[FakePubSub]] = {}

    def from_url(self, *_args: Any, **_kwargs: Any) -> FakeRedis:
        client = FakeRedis(self)
        self.instances.append(client)
        return client

    def register(self, channel: str, pubsub: FakePubSub) -> None:
        self._pubsubs.setdefault(channel, set()).add(pubsub)

    def unregister(self, channel: str, pubsub: FakePubSub) -> None:
        subscribers = self._pubsubs.get(channel)
        if not subscribers:
            return
        subscribers.discard(pubsub)
        if not subscribers:
            self._pubsubs.pop(channel, None)

    def deliver(self, channel: str, payload: str) -> None:
        self.published.append((channel, json.loads(payload)))
        for pubsub in list(self._pubsubs.get(channel, set())):
            pubsub.push({"type": "message", "data": payload})

    def events(self, channel: str, name: str | None = None) -> list[dict[str, Any]]:
        """Payloads published on *channel* (without namespace), optionally filtered by event name."""

        return [
            payload
            for published_channel, payload in self.published
            if published_channel == f"relaychat.{channel}"
            and (name is None or payload.get("name") == name)
        ]


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_metrics() -> Iterator[None]:
    registry.reset()
    yield
    registry.reset()


@pytest.fixture()
def broker(monkeypatch) -> FakeBroker:
    """Route every Redis connection to a shared in-memory broker."""

    fake = FakeBroker()
    monkeypatch.setattr(
        "relaychat.realtime.transport.redis_asyncio",
        SimpleNamespace(from_url=fake.from_url),
    )
    return fake


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        database_url_override="sqlite+pysqlite:///:memory:",
        messaging_api_key="test-key:secret",
        realtime_redis_url="redis://fake",
        roster_debounce_seconds=0,
    )


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
def session_factory(test_engine) -> sessionmaker[Session]:
    """Return a session factory bound to the test engine."""

    return sessionmaker(bind=test_engine, future=True, expire_on_commit=False)


@pytest.fixture()
def db_session(session_factory) -> Iterator[Session]:
    """Yield a SQLAlchemy session for unit tests."""

    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_user(session_factory) -> Callable[..., User]:
    """Insert a user row directly, bypassing the registration endpoint."""

    def _make_user(user_id: str, username: str, *, is_online: bool = False) -> User:
        now = utcnow()
        session = session_factory()
        try:
            user = User(
                id=user_id,
                username=username,
                email=f"{username}@example.com",
                is_online=is_online,
                last_seen=None if is_online else now,
                created_at=now,
                updated_at=now,
            )
            session.add(user)
            session.commit()
            return user
        finally:
            session.close()

    return _make_user


@pytest.fixture()
def app(settings, session_factory, broker) -> FastAPI:
    return create_app(settings, session_factory=session_factory)


@pytest.fixture()
def client(app) -> Iterator[TestClient]:
    """Yield a FastAPI TestClient; startup connects the hub to the fake broker."""

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
async def live_app(app) -> AsyncIterator[FastAPI]:
    """Start the realtime hub on the test's own event loop."""

    hub = app.state.realtime
    await hub.start()
    try:
        yield app
    finally:
        await hub.stop()


@pytest.fixture()
async def http(live_app) -> AsyncIterator[httpx.AsyncClient]:
    transport = httpx.ASGITransport(app=live_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as async_client:
        yield async_client


@pytest.fixture()
def wait_until():
    async def _wait_until(predicate: Callable[[], bool], *, timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition was not met in time")
            await asyncio.sleep(0.01)

    return _wait_until
