"""Shared fixtures: stores on both backends, fake channels, test apps."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterator
from typing import Any

import pytest
from fakeredis import FakeServer
from fakeredis import aioredis as fakeaioredis
from fastapi.testclient import TestClient

from ucstore.auth import SCHEME_SESSION, SCHEME_TOKEN, Requester
from ucstore.config import Settings
from ucstore.infra.sql import make_async_engine
from ucstore.model.domain import ROLE_ADMIN, ROLE_USER
from ucstore.model.store import RedisStore, SqlStore, create_schema
from ucstore.notify import (
    CHANNEL_EMAIL, CHANNEL_TELEGRAM, Channel, Notification,
    NotificationDispatcher, Notifier,
)
from ucstore.server import create_app
from ucstore.services.notices import Notices

ADMIN_PASSWORD = "s3cret-pass"

ADMIN = Requester("1", ROLE_ADMIN, SCHEME_TOKEN)
ALICE = Requester("alice-id", ROLE_USER, SCHEME_TOKEN)
BOB = Requester("bob-id", ROLE_USER, SCHEME_TOKEN)
TOKEN_ANON = Requester(None, None, SCHEME_TOKEN)
SESSION_ADMIN = Requester("admin", ROLE_ADMIN, SCHEME_SESSION)
SESSION_ANON = Requester(None, None, SCHEME_SESSION)


class RecordingChannel(Channel):
    """Keeps what it was asked to send; raises when ``fail`` is set."""

    def __init__(self, name: str, fail: bool = False) -> None:
        self.name = name
        self.fail = fail
        self.sent: list[tuple[Notification, str]] = []

    async def send(self, intent: Notification, body: str) -> None:
        if self.fail:
            raise RuntimeError(f"{self.name} is down")
        self.sent.append((intent, body))


@pytest.fixture
def email_channel() -> RecordingChannel:
    return RecordingChannel(CHANNEL_EMAIL)


@pytest.fixture
def chat_channel() -> RecordingChannel:
    return RecordingChannel(CHANNEL_TELEGRAM)


@pytest.fixture
def channels(email_channel, chat_channel) -> dict[str, Channel]:
    return {CHANNEL_EMAIL: email_channel, CHANNEL_TELEGRAM: chat_channel}


@pytest.fixture
async def notices(channels) -> AsyncIterator[Notices]:
    notifier = Notifier(channels, timeout=1.0)
    dispatcher = NotificationDispatcher(notifier)
    dispatcher.start()
    try:
        yield Notices(notifier, dispatcher, admin_email="admin@example.com",
                      store_name="Test Store", chat_id="42")
    finally:
        await dispatcher.stop()


# --- stores ---
@pytest.fixture
async def sql_store(tmp_path) -> AsyncIterator[SqlStore]:
    engine, SessionAsync, gated = make_async_engine(
        f"sqlite:///{tmp_path / 'store.db'}"
    )
    async with engine.begin() as conn:
        await create_schema(conn)
    async with SessionAsync() as session:
        yield SqlStore(db=session, gated=gated)
    await engine.dispose()


@pytest.fixture
async def redis_store() -> AsyncIterator[RedisStore]:
    r = fakeaioredis.FakeRedis(server=FakeServer(), decode_responses=True)
    yield RedisStore(r=r)
    await r.flushall()
    await r.aclose()


@pytest.fixture(params=["sql", "redis"])
def store(request):
    """The same contract, run against both backends."""
    return request.getfixturevalue(f"{request.param}_store")


# --- HTTP ---
def make_settings(tmp_path, **overrides: Any) -> Settings:
    base = dict(
        database_url=f"sqlite:///{tmp_path / 'api.db'}",
        upload_dir=str(tmp_path / "uploads"),
        session_secret="test-session-secret-with-32-plus-bytes",
        admin_username="admin",
        admin_password=ADMIN_PASSWORD,
        admin_email="admin@example.com",
        store_name="Test Store",
        log_level="WARNING",
    )
    base.update(overrides)
    return Settings(**base)


@pytest.fixture
def make_client(tmp_path, channels) -> Iterator[Any]:
    opened: list[TestClient] = []

    def _make(redis_client=None, **overrides: Any) -> TestClient:
        app = create_app(make_settings(tmp_path, **overrides),
                         channels=channels, redis_client=redis_client)
        client = TestClient(app)
        client.__enter__()
        opened.append(client)
        return client

    yield _make
    for client in opened:
        client.__exit__(None, None, None)


def order_payload(**overrides: Any) -> dict[str, Any]:
    payload = {
        "name": "Ahmed",
        "playerId": "5123456789",
        "email": "ahmed@example.com",
        "ucAmount": "60",
        "totalAmount": "1.00",
        "transactionId": "TX-1001",
    }
    payload.update(overrides)
    return {k: v for k, v in payload.items() if v is not None}
