import asyncio

from lostfound_chat.schemas.user import Principal
from lostfound_chat.utils.realtime_bus import RedisBus, RoomBroadcaster
from lostfound_chat.utils.websocket_manager import Connection, ConnectionManager

from conftest import FakeWebSocket


def make_conn(principal: Principal, queue_size: int = 16) -> Connection:
    return Connection(FakeWebSocket(), principal, queue_size=queue_size)


async def test_presence_follows_last_handle(alice):
    registry = ConnectionManager()
    phone, laptop = make_conn(alice), make_conn(alice)

    assert registry.join("c1", alice.id, phone) is True
    assert registry.join("c1", alice.id, laptop) is False
    assert registry.online_principals("c1") == [alice.id]

    assert registry.leave("c1", alice.id, phone) is False
    assert registry.is_online("c1", alice.id)
    assert registry.leave("c1", alice.id, laptop) is True
    assert not registry.is_online("c1", alice.id)
    assert "c1" not in registry.rooms


async def test_leave_is_idempotent(alice):
    registry = ConnectionManager()
    conn = make_conn(alice)
    registry.join("c1", alice.id, conn)

    assert registry.leave("c1", alice.id, conn) is True
    assert registry.leave("c1", alice.id, conn) is False
    assert registry.leave("c2", alice.id, conn) is False


async def test_leave_all_reports_offline_rooms(alice, bob):
    registry = ConnectionManager()
    phone, laptop, other = make_conn(alice), make_conn(alice), make_conn(bob)
    registry.join("c1", alice.id, phone)
    registry.join("c2", alice.id, phone)
    registry.join("c2", alice.id, laptop)
    registry.join("c1", bob.id, other)

    assert registry.leave_all(phone) == ["c1"]
    assert phone.rooms == set()
    assert registry.online_principals("c1") == [bob.id]
    assert registry.online_principals("c2") == [alice.id]


async def test_connections_by_room_and_principal(alice, bob):
    registry = ConnectionManager()
    a, b = make_conn(alice), make_conn(bob)
    registry.register(a)
    registry.register(b)
    registry.join("c1", alice.id, a)

    assert registry.connections_for("c1") == {a}
    assert registry.connections_of(bob.id) == {b}
    assert registry.is_joined("c1", a)
    assert not registry.is_joined("c1", b)

    registry.unregister(b)
    registry.unregister(b)
    assert registry.connections_of(bob.id) == set()


async def test_connection_sends_in_push_order(alice):
    conn = make_conn(alice)
    conn.start()
    for i in range(5):
        assert conn.push({"event": "n", "data": {"i": i}})
    await conn.flush()

    assert [frame["data"]["i"] for frame in conn.websocket.sent] == list(range(5))
    await conn.close()
    assert conn.push({"event": "late", "data": {}}) is False


async def test_full_queue_drops_connection(alice):
    conn = make_conn(alice, queue_size=2)
    assert conn.push({"event": "a", "data": {}})
    assert conn.push({"event": "b", "data": {}})
    assert conn.push({"event": "c", "data": {}}) is False
    assert conn.closed


async def test_broken_socket_marks_connection_closed(alice):
    class BrokenSocket:
        async def send_text(self, text):
            raise RuntimeError("socket closed")

    conn = Connection(BrokenSocket(), alice)
    conn.start()
    conn.push({"event": "a", "data": {}})
    await conn.flush()

    assert conn.closed
    await conn.close()


async def test_broadcaster_exclusions(alice, bob):
    registry = ConnectionManager()
    broadcaster = RoomBroadcaster(registry)
    phone, laptop, other = make_conn(alice), make_conn(alice), make_conn(bob)
    for conn in (phone, laptop, other):
        registry.register(conn)
        registry.join("c1", conn.principal.id, conn)

    await broadcaster.publish_room("c1", {"event": "x", "data": {}}, exclude_connection=phone.id)
    await broadcaster.publish_room("c1", {"event": "y", "data": {}}, exclude_principal=alice.id)
    await broadcaster.publish_user(bob.id, {"event": "z", "data": {}})

    assert [e["event"] for e in _queued(phone)] == []
    assert [e["event"] for e in _queued(laptop)] == ["x"]
    assert [e["event"] for e in _queued(other)] == ["x", "y", "z"]


async def test_broadcaster_round_trips_through_bus(alice):
    class LoopbackBus:
        enabled = True

        def __init__(self):
            self.handler = None

        async def publish(self, channel, message):
            await self.handler(message)

        async def subscribe(self, channel, on_message):
            self.handler = on_message
            bus = self

            class _Sub:
                async def run(self):
                    await asyncio.Future()

                async def cancel(self):
                    bus.handler = None

            return _Sub()

    registry = ConnectionManager()
    broadcaster = RoomBroadcaster(registry, LoopbackBus())
    conn = make_conn(alice)
    registry.register(conn)
    registry.join("c1", alice.id, conn)

    await broadcaster.start()
    await broadcaster.publish_room("c1", {"event": "message:new", "data": {"n": 1}})
    await broadcaster.stop()

    assert _queued(conn) == [{"event": "message:new", "data": {"n": 1}}]


async def test_broadcaster_skips_malformed_envelopes(alice):
    registry = ConnectionManager()
    broadcaster = RoomBroadcaster(registry)
    conn = make_conn(alice)
    registry.register(conn)
    registry.join("c1", alice.id, conn)

    for raw in ("{not json", "[]", '{"scope": "room"}', '{"scope": "room", "target": "c1"}'):
        await broadcaster._on_bus_message(raw)
    await broadcaster._on_bus_message('{"scope": "room", "target": "c1", "event": {"event": "message:new"}}')

    assert _queued(conn) == [{"event": "message:new"}]


class ScriptedPubSub:

    def __init__(self, *payloads):
        self.frames = [{"type": "message", "data": p} for p in payloads]
        self.closed = False

    async def subscribe(self, channel):
        return None

    async def get_message(self, ignore_subscribe_messages=True, timeout=None):
        if self.frames:
            return self.frames.pop(0)
        await asyncio.sleep(0.01)
        return None

    async def unsubscribe(self, channel):
        return None

    async def aclose(self):
        self.closed = True


async def test_bus_subscriber_survives_handler_failure():
    pubsub = ScriptedPubSub(b"first", b"second")
    bus = RedisBus("redis://localhost:6379/0")
    bus._redis.pubsub = lambda: pubsub
    seen = []

    async def on_message(data):
        seen.append(data)
        if data == "first":
            raise KeyError("target")

    sub = await bus.subscribe("lostfound:fanout", on_message)
    task = asyncio.create_task(sub.run())
    for _ in range(100):
        if len(seen) == 2:
            break
        await asyncio.sleep(0.01)
    await sub.cancel()
    await asyncio.wait_for(task, timeout=1)

    await bus.close()

    assert seen == ["first", "second"]
    assert pubsub.closed


def _queued(conn: Connection):
    items = []
    while not conn._queue.empty():
        items.append(conn._queue.get_nowait())
    return items
