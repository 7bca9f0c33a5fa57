from typing import Any, Dict, List, Optional

import structlog

from lostfound_chat.errors import ChatError, NotFound, RateLimited, ValidationFailed
from lostfound_chat.models.conversation import count_unread
from lostfound_chat.schemas import events
from lostfound_chat.schemas.conversation import ConversationOut, MessageOut
from lostfound_chat.services.chat_service import ChatService
from lostfound_chat.services.conversation_service import ConversationService
from lostfound_chat.utils.rate_limiter import SlidingWindowRateLimiter
from lostfound_chat.utils.realtime_bus import RoomBroadcaster
from lostfound_chat.utils.security import IdentityService
from lostfound_chat.utils.websocket_manager import Connection, ConnectionManager


logger = structlog.get_logger(__name__)

RATE_LIMITED_EVENTS = {"send", "edit", "delete", "createConversation"}


class Dispatcher:
    """Routes client events to the ledger and fans the results out.

    The websocket loop awaits ``handle`` for each frame, so one connection's
    events run strictly one after another while different connections
    interleave. Rejections go back to the originating connection only.

    Membership is checked when a connection joins a room. A joined connection
    keeps its rights until it leaves or reconnects even if the participant is
    removed meanwhile; connections outside the room are checked against the
    store on every event.
    """

    def __init__(
        self,
        conversations: ConversationService,
        ledger: ChatService,
        registry: ConnectionManager,
        broadcaster: RoomBroadcaster,
        identity: Optional[IdentityService] = None,
        limiter: Optional[SlidingWindowRateLimiter] = None,
    ) -> None:
        self._conversations = conversations
        self._ledger = ledger
        self._registry = registry
        self._broadcaster = broadcaster
        self._identity = identity
        self._limiter = limiter
        self._handlers = {
            "join": self._on_join,
            "leave": self._on_leave,
            "send": self._on_send,
            "edit": self._on_edit,
            "delete": self._on_delete,
            "typing": self._on_typing,
            "markRead": self._on_mark_read,
            "createConversation": self._on_create_conversation,
        }

    def connect(self, conn: Connection) -> None:
        self._registry.register(conn)
        conn.start()
        logger.info("client_connected", connection_id=conn.id, principal_id=conn.principal.id)

    async def disconnect(self, conn: Connection) -> None:
        for conversation_id in self._registry.leave_all(conn):
            await self._broadcaster.publish_room(conversation_id, events.presence_offline(conversation_id, conn.principal))
        self._registry.unregister(conn)
        await conn.close()
        logger.info("client_disconnected", connection_id=conn.id, principal_id=conn.principal.id)

    async def handle(self, conn: Connection, payload: Any) -> None:
        log = logger.bind(connection_id=conn.id, principal_id=conn.principal.id)
        try:
            event = events.parse_client_event(payload)
            if self._limiter is not None and event.event in RATE_LIMITED_EVENTS:
                if not self._limiter.hit(conn.principal.id):
                    raise RateLimited()
            await self._handlers[event.event](conn, event)
        except ChatError as exc:
            log.info("event_rejected", code=exc.code, reason=exc.message)
            conn.push(events.error(exc.to_payload()))
        except Exception:
            log.exception("event_failed")
            conn.push(events.error({"message": "Something went wrong", "code": "internal_error", "retryable": False}))

    async def _authorize(self, conn: Connection, conversation_id: str) -> None:
        if self._registry.is_joined(conversation_id, conn):
            return
        await self._conversations.get_for_member(conversation_id, conn.principal.id, with_messages=False)

    async def _on_join(self, conn: Connection, event: events.JoinEvent) -> None:
        cid = event.conversation_id
        conversation = await self._conversations.get_for_member(cid, conn.principal.id)
        unread = count_unread(conversation, conn.principal.id)
        was_joined = self._registry.is_joined(cid, conn)
        came_online = self._registry.join(cid, conn.principal.id, conn)

        async def announce_read(marked: List[str]) -> None:
            if marked:
                await self._broadcaster.publish_room(
                    cid, events.messages_read(cid, conn.principal.id, marked), exclude_connection=conn.id
                )

        try:
            await self._ledger.mark_read(cid, conn.principal.id, on_commit=announce_read)
        except ChatError:
            if not was_joined:
                self._registry.leave(cid, conn.principal.id, conn)
            raise
        if came_online:
            await self._broadcaster.publish_room(cid, events.presence_online(cid, conn.principal), exclude_connection=conn.id)
        snapshot = ConversationOut.from_document(conversation)
        conn.push(events.conversation_snapshot(snapshot, unread, self._registry.online_principals(cid)))
        logger.info("room_joined", conversation_id=cid, principal_id=conn.principal.id)

    async def _on_leave(self, conn: Connection, event: events.LeaveEvent) -> None:
        cid = event.conversation_id
        if self._registry.leave(cid, conn.principal.id, conn):
            await self._broadcaster.publish_room(cid, events.presence_offline(cid, conn.principal))

    async def _on_send(self, conn: Connection, event: events.SendEvent) -> None:
        cid = event.conversation_id
        await self._authorize(conn, cid)

        async def fan_out(message: Dict[str, Any]) -> None:
            payload = events.message_new(cid, MessageOut.from_document(message), conn.principal)
            await self._broadcaster.publish_room(cid, payload)
            if not self._registry.is_joined(cid, conn):
                conn.push(payload)

        attachment = event.attachment.model_dump() if event.attachment else None
        await self._ledger.append(cid, conn.principal.id, event.content, event.type.value, attachment, on_commit=fan_out)

    async def _on_edit(self, conn: Connection, event: events.EditEvent) -> None:
        cid = event.conversation_id
        await self._authorize(conn, cid)

        async def fan_out(message: Dict[str, Any]) -> None:
            await self._broadcaster.publish_room(cid, events.message_edited(cid, MessageOut.from_document(message)))

        await self._ledger.edit(cid, event.message_id, event.new_content, conn.principal.id, on_commit=fan_out)

    async def _on_delete(self, conn: Connection, event: events.DeleteEvent) -> None:
        cid = event.conversation_id
        await self._authorize(conn, cid)

        async def fan_out(message: Dict[str, Any]) -> None:
            await self._broadcaster.publish_room(cid, events.message_deleted(cid, MessageOut.from_document(message)))

        await self._ledger.delete(cid, event.message_id, conn.principal.id, on_commit=fan_out)

    async def _on_typing(self, conn: Connection, event: events.TypingEvent) -> None:
        cid = event.conversation_id
        await self._authorize(conn, cid)
        await self._broadcaster.publish_room(
            cid, events.presence_typing(cid, conn.principal, event.is_typing), exclude_principal=conn.principal.id
        )

    async def _on_mark_read(self, conn: Connection, event: events.MarkReadEvent) -> None:
        cid = event.conversation_id
        await self._authorize(conn, cid)

        async def fan_out(marked: List[str]) -> None:
            if marked:
                await self._broadcaster.publish_room(
                    cid, events.messages_read(cid, conn.principal.id, marked), exclude_connection=conn.id
                )

        await self._ledger.mark_read(cid, conn.principal.id, event.message_ids, on_commit=fan_out)

    async def _on_create_conversation(self, conn: Connection, event: events.CreateConversationEvent) -> None:
        if event.counterparty_id == conn.principal.id:
            raise ValidationFailed("Cannot start a conversation with yourself")
        initial = None
        if event.initial_message and event.initial_message.strip():
            initial = self._ledger.clean_content(event.initial_message)
        if self._identity is not None and await self._identity.lookup(event.counterparty_id) is None:
            raise NotFound("User not found")
        conversation, created = await self._conversations.get_or_create(
            event.item_ref, conn.principal.id, event.counterparty_id
        )
        cid = conversation["_id"]
        if created:
            if initial:
                await self._ledger.append(cid, conn.principal.id, initial)
            conversation = await self._conversations.get(cid)
            self._registry.join(cid, conn.principal.id, conn)
            await self._broadcaster.publish_user(
                event.counterparty_id, events.conversation_new(ConversationOut.from_document(conversation, event.counterparty_id))
            )
        conn.push(events.conversation_created(ConversationOut.from_document(conversation, conn.principal.id), created))
