import asyncio

import redis
from bson import ObjectId
from pymongo.errors import AutoReconnect

from lostfound_chat.repositories.message_repository import MessageRepository
from lostfound_chat.utils.dependencies import ChatServices
from lostfound_chat.utils.rate_limiter import SlidingWindowRateLimiter
from lostfound_chat.utils.websocket_manager import Connection

from conftest import FakeWebSocket


async def send(services, conn, **payload):
    await services.dispatcher.handle(conn, payload)


async def settle(*conns):
    for conn in conns:
        await conn.flush()


async def test_two_party_scenario(services, connect, conversation, alice, bob):
    cid = conversation["_id"]
    a, b = connect(alice), connect(bob)
    await send(services, a, event="join", conversationId=cid)
    await send(services, b, event="join", conversationId=cid)

    await send(services, a, event="send", conversationId=cid, content="is this yours?")
    await settle(a, b)
    [received] = b.websocket.events("message:new")
    assert received["conversationId"] == cid
    assert received["message"]["content"] == "is this yours?"
    assert received["message"]["read"] is False
    assert received["message"]["sender"]["name"] == "Alice"
    assert a.websocket.events("message:new") == [received]

    await send(services, b, event="markRead", conversationId=cid)
    await settle(a, b)
    [read] = a.websocket.events("messages:read")
    assert read["principalId"] == bob.id
    assert read["messageIds"] == [received["message"]["id"]]
    assert b.websocket.events("messages:read") == []

    await services.dispatcher.disconnect(a)
    await send(services, b, event="send", conversationId=cid, content="yes, it's my wallet")
    await settle(b)

    assert b.websocket.events("error") == []
    assert b.websocket.events("presence:offline") == [
        {"conversationId": cid, "principalId": alice.id, "principal": alice.display()}
    ]
    history = await services.ledger.get_history(cid)
    assert history[-1]["content"] == "yes, it's my wallet"
    assert history[-1]["is_read"] is False
    assert await services.ledger.unread_count_for(cid, alice.id) == 1


async def test_participants_see_same_order(services, connect, conversation, alice, bob):
    cid = conversation["_id"]
    a, b = connect(alice), connect(bob)
    await send(services, a, event="join", conversationId=cid)
    await send(services, b, event="join", conversationId=cid)

    await asyncio.gather(*[
        send(services, a if i % 2 else b, event="send", conversationId=cid, content=f"m{i}") for i in range(8)
    ])
    await settle(a, b)

    seen_a = [e["message"]["id"] for e in a.websocket.events("message:new")]
    seen_b = [e["message"]["id"] for e in b.websocket.events("message:new")]
    stored = [m["_id"] for m in await services.ledger.get_history(cid)]
    assert seen_a == seen_b == stored


async def test_join_replies_with_snapshot(services, connect, conversation, alice, bob):
    cid = conversation["_id"]
    await services.ledger.append(cid, bob.id, "hello?")
    await services.ledger.append(cid, bob.id, "anyone?")
    a, b = connect(alice), connect(bob)
    await send(services, b, event="join", conversationId=cid)

    await send(services, a, event="join", conversationId=cid)
    await settle(a, b)

    [snapshot] = a.websocket.events("conversation:snapshot")
    assert snapshot["conversation"]["id"] == cid
    assert snapshot["unreadCount"] == 2
    assert snapshot["online"] == sorted([alice.id, bob.id])
    assert await services.ledger.unread_count_for(cid, alice.id) == 0

    [online] = b.websocket.events("presence:online")
    assert online["principalId"] == alice.id
    [read] = b.websocket.events("messages:read")
    assert len(read["messageIds"]) == 2
    assert a.websocket.events("presence:online") == []


async def test_second_device_does_not_repeat_presence(services, connect, conversation, alice, bob):
    cid = conversation["_id"]
    b = connect(bob)
    await send(services, b, event="join", conversationId=cid)
    phone, laptop = connect(alice), connect(alice)

    await send(services, phone, event="join", conversationId=cid)
    await send(services, laptop, event="join", conversationId=cid)
    await services.dispatcher.disconnect(phone)
    await settle(b)
    assert len(b.websocket.events("presence:online")) == 1
    assert b.websocket.events("presence:offline") == []

    await send(services, laptop, event="leave", conversationId=cid)
    await settle(b)
    assert len(b.websocket.events("presence:offline")) == 1


async def test_join_by_non_member_is_rejected(services, connect, conversation, carol, bob):
    cid = conversation["_id"]
    b, c = connect(bob), connect(carol)
    await send(services, b, event="join", conversationId=cid)

    await send(services, c, event="join", conversationId=cid)
    await send(services, c, event="join", conversationId=str(ObjectId()))
    await settle(b, c)

    errors = c.websocket.events("error")
    assert [e["code"] for e in errors] == ["not_authorized", "not_authorized"]
    assert errors[0]["message"] == errors[1]["message"]
    assert not services.registry.is_joined(cid, c)
    assert b.websocket.events("presence:online") == []
    assert b.websocket.events("error") == []


async def test_send_without_join_checks_membership(services, connect, conversation, alice, bob, carol):
    cid = conversation["_id"]
    a, b, c = connect(alice), connect(bob), connect(carol)
    await send(services, b, event="join", conversationId=cid)

    await send(services, a, event="send", conversationId=cid, content="quick note")
    await send(services, c, event="send", conversationId=cid, content="let me in")
    await settle(a, b, c)

    assert [e["message"]["content"] for e in b.websocket.events("message:new")] == ["quick note"]
    assert [e["message"]["content"] for e in a.websocket.events("message:new")] == ["quick note"]
    assert [e["code"] for e in c.websocket.events("error")] == ["not_authorized"]
    assert len(await services.ledger.get_history(cid)) == 1


async def test_errors_stay_with_the_sender(services, connect, conversation, alice, bob):
    cid = conversation["_id"]
    a, b = connect(alice), connect(bob)
    await send(services, a, event="join", conversationId=cid)
    await send(services, b, event="join", conversationId=cid)

    await send(services, a, event="send", conversationId=cid, content="   ")
    await send(services, a, event="bogus", conversationId=cid)
    await send(services, a, event="send", conversationId=cid)
    await settle(a, b)

    errors = a.websocket.events("error")
    assert [e["code"] for e in errors] == ["validation_failed"] * 3
    assert all(e["retryable"] is False for e in errors)
    assert b.websocket.events("error") == []
    assert b.websocket.events("message:new") == []


async def test_edit_and_delete_fan_out(services, connect, clock, conversation, alice, bob):
    cid = conversation["_id"]
    a, b = connect(alice), connect(bob)
    await send(services, a, event="join", conversationId=cid)
    await send(services, b, event="join", conversationId=cid)
    message = await services.ledger.append(cid, alice.id, "blue wallet")

    clock.advance(minutes=1)
    await send(services, a, event="edit", conversationId=cid, messageId=message["_id"], newContent="navy wallet")
    await send(services, b, event="edit", conversationId=cid, messageId=message["_id"], newContent="mine now")
    await send(services, a, event="delete", conversationId=cid, messageId=message["_id"])
    await send(services, a, event="delete", conversationId=cid, messageId=message["_id"])
    await settle(a, b)

    [edited] = b.websocket.events("message:edited")
    assert edited == {
        "conversationId": cid,
        "messageId": message["_id"],
        "newContent": "navy wallet",
        "editedAt": clock.now.isoformat(),
    }
    deleted = b.websocket.events("message:deleted")
    assert len(deleted) == 2
    assert deleted[0] == deleted[1]
    assert [e["code"] for e in b.websocket.events("error")] == ["not_authorized"]
    assert a.websocket.events("error") == []


async def test_typing_skips_the_typist(services, connect, conversation, alice, bob):
    cid = conversation["_id"]
    phone, laptop, b = connect(alice), connect(alice), connect(bob)
    for conn in (phone, laptop, b):
        await send(services, conn, event="join", conversationId=cid)

    await send(services, phone, event="typing", conversationId=cid, isTyping=True)
    await settle(phone, laptop, b)

    assert b.websocket.events("presence:typing") == [
        {"conversationId": cid, "principalId": alice.id, "isTyping": True}
    ]
    assert phone.websocket.events("presence:typing") == []
    assert laptop.websocket.events("presence:typing") == []


async def test_send_on_closed_conversation(services, connect, conversation, alice):
    cid = conversation["_id"]
    a = connect(alice)
    await send(services, a, event="join", conversationId=cid)
    await services.conversations.close(cid)

    await send(services, a, event="send", conversationId=cid, content="still there?")
    await settle(a)

    assert [e["code"] for e in a.websocket.events("error")] == ["conversation_not_active"]
    assert a.websocket.events("message:new") == []


async def test_create_conversation_notifies_counterparty(services, connect, users, alice, bob):
    a, b = connect(alice), connect(bob)

    await send(services, a, event="createConversation", itemRef="item-42", counterpartyId=bob.id, initialMessage="found your keys")
    await send(services, a, event="createConversation", itemRef="item-42", counterpartyId=bob.id)
    await settle(a, b)

    created = a.websocket.events("conversation:created")
    assert [c["created"] for c in created] == [True, False]
    assert created[0]["conversation"]["id"] == created[1]["conversation"]["id"]
    cid = created[0]["conversation"]["id"]

    [new] = b.websocket.events("conversation:new")
    assert new["conversation"]["id"] == cid
    assert new["conversation"]["lastMessage"]["content"] == "found your keys"
    assert new["conversation"]["unreadCount"] == 1
    assert services.registry.is_joined(cid, a)


async def test_create_conversation_rejections(services, connect, users, alice, bob):
    a = connect(alice)

    await send(services, a, event="createConversation", itemRef="item-42", counterpartyId=alice.id)
    await send(services, a, event="createConversation", itemRef="item-42", counterpartyId=str(ObjectId()))
    await send(services, a, event="createConversation", itemRef="item-42", counterpartyId=bob.id, initialMessage="x" * 5000)
    await settle(a)

    assert [e["code"] for e in a.websocket.events("error")] == ["validation_failed", "not_found", "validation_failed"]
    assert await services.conversations.find_for_principal(alice.id) == []


async def test_rate_limit_applies_to_writes_only(db, clock, alice, bob):
    services = ChatServices(db, clock=clock, check_listings=False, limiter=SlidingWindowRateLimiter(2, 60))
    conv = await services.conversations.create("item-7", [alice.id, bob.id])
    cid = conv["_id"]
    a = Connection(FakeWebSocket(), alice)
    services.dispatcher.connect(a)

    await send(services, a, event="join", conversationId=cid)
    for i in range(3):
        await send(services, a, event="send", conversationId=cid, content=f"m{i}")
    await send(services, a, event="typing", conversationId=cid, isTyping=True)
    await a.flush()

    [limited] = a.websocket.events("error")
    assert limited["code"] == "rate_limited"
    assert limited["retryable"] is True
    assert len(await services.ledger.get_history(cid)) == 2
    await a.close()


async def test_unexpected_failure_is_reported_generically(services, connect, conversation, alice, monkeypatch):
    cid = conversation["_id"]
    a = connect(alice)

    async def explode(*args, **kwargs):
        raise RuntimeError("mongo exploded at 10.0.0.3")

    monkeypatch.setattr(services.ledger, "append", explode)
    await send(services, a, event="send", conversationId=cid, content="hello")
    await settle(a)

    [error] = a.websocket.events("error")
    assert error["code"] == "internal_error"
    assert "10.0.0.3" not in error["message"]


async def test_disconnect_cleans_up(services, connect, conversation, alice):
    cid = conversation["_id"]
    a = connect(alice)
    await send(services, a, event="join", conversationId=cid)

    await services.dispatcher.disconnect(a)

    assert services.registry.online_principals(cid) == []
    assert services.registry.connections_of(alice.id) == set()
    assert a.closed


async def test_services_share_injected_collaborators(db, clock):
    limiter = SlidingWindowRateLimiter(2, 60)
    services = ChatServices(db, clock=clock, check_listings=False, limiter=limiter)

    assert services.limiter is limiter
    assert services.dispatcher._limiter is limiter
    assert services.ledger._locks is services.locks
    assert services.conversations._locks is services.locks


class UnreachableBus:

    enabled = True

    def __init__(self):
        self.attempts = 0

    async def publish(self, channel, message):
        self.attempts += 1
        raise redis.ConnectionError("Error 111 connecting to localhost:6379")


async def test_bus_outage_still_delivers_locally(db, clock, alice, bob):
    bus = UnreachableBus()
    services = ChatServices(db, bus=bus, clock=clock, check_listings=False)
    conv = await services.conversations.create("item-7", [alice.id, bob.id])
    cid = conv["_id"]
    a, b = Connection(FakeWebSocket(), alice), Connection(FakeWebSocket(), bob)
    services.dispatcher.connect(a)
    services.dispatcher.connect(b)
    await send(services, a, event="join", conversationId=cid)
    await send(services, b, event="join", conversationId=cid)

    await send(services, a, event="send", conversationId=cid, content="hi")
    await settle(a, b)

    assert bus.attempts > 0
    assert a.websocket.events("error") == []
    [received] = b.websocket.events("message:new")
    assert received["message"]["content"] == "hi"
    assert a.websocket.events("message:new") == [received]
    assert len(await services.ledger.get_history(cid)) == 1
    await a.close()
    await b.close()


class UnavailableCollection:

    async def update_one(self, *args, **kwargs):
        raise AutoReconnect("connection pool paused")


async def test_store_outage_is_retryable_and_private(services, connect, conversation, clock, alice, bob, monkeypatch):
    cid = conversation["_id"]
    a, b = connect(alice), connect(bob)
    await send(services, a, event="join", conversationId=cid)
    await send(services, b, event="join", conversationId=cid)
    await settle(a, b)
    before = await services.conversations.get(cid, with_messages=False)

    clock.advance(hours=1)
    monkeypatch.setattr(MessageRepository, "collection", property(lambda self: UnavailableCollection()))
    await send(services, a, event="send", conversationId=cid, content="still there?")
    await settle(a, b)

    [error] = a.websocket.events("error")
    assert error["code"] == "store_unavailable"
    assert error["retryable"] is True
    assert b.websocket.events("error") == []
    assert a.websocket.events("message:new") == []
    assert b.websocket.events("message:new") == []

    after = await services.conversations.get(cid)
    assert after["messages"] == []
    for field in ("last_message", "last_activity", "auto_close_at"):
        assert after[field] == before[field]


async def test_redundant_mark_read_is_silent(services, connect, conversation, alice, bob):
    cid = conversation["_id"]
    a, b = connect(alice), connect(bob)
    await send(services, a, event="join", conversationId=cid)
    await send(services, b, event="join", conversationId=cid)
    await send(services, a, event="send", conversationId=cid, content="found it")

    await send(services, b, event="markRead", conversationId=cid)
    await send(services, b, event="markRead", conversationId=cid)
    await settle(a, b)

    [read] = a.websocket.events("messages:read")
    assert len(read["messageIds"]) == 1
