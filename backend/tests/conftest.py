"""Shared fixtures: in-memory Mongo, a frozen clock and fake websockets."""

import json
from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId
from mongomock_motor import AsyncMongoMockClient

from lostfound_chat.schemas.user import Principal
from lostfound_chat.utils.dependencies import ChatServices
from lostfound_chat.utils.websocket_manager import Connection


SECRET = "test-secret"
ITEM_REF = "item-7"


class FrozenClock:

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeWebSocket:

    def __init__(self) -> None:
        self.sent = []

    async def send_text(self, text: str) -> None:
        self.sent.append(json.loads(text))

    def events(self, name: str):
        return [frame["data"] for frame in self.sent if frame["event"] == name]

    def names(self):
        return [frame["event"] for frame in self.sent]


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def db():
    client = AsyncMongoMockClient(tz_aware=True)
    return client["lostfound_test"]


@pytest.fixture
def alice() -> Principal:
    return Principal(id=str(ObjectId()), name="Alice", avatar="a.png", trust_score=4.5)


@pytest.fixture
def bob() -> Principal:
    return Principal(id=str(ObjectId()), name="Bob", avatar="b.png", trust_score=3.0)


@pytest.fixture
def carol() -> Principal:
    return Principal(id=str(ObjectId()), name="Carol")


@pytest.fixture
async def users(db, alice, bob, carol):
    await db.users.insert_many([
        {"_id": ObjectId(p.id), "name": p.name, "avatar": p.avatar, "trust_score": p.trust_score, "is_active": True}
        for p in (alice, bob, carol)
    ])
    return alice, bob, carol


@pytest.fixture
def services(db, clock) -> ChatServices:
    return ChatServices(db, clock=clock, check_listings=False, jwt_secret=SECRET)


@pytest.fixture
async def conversation(services, alice, bob):
    return await services.conversations.create(ITEM_REF, [alice.id, bob.id])


@pytest.fixture
async def connect(services):
    opened = []

    def _connect(principal: Principal):
        conn = Connection(FakeWebSocket(), principal)
        services.dispatcher.connect(conn)
        opened.append(conn)
        return conn

    yield _connect
    for conn in opened:
        await conn.close()
