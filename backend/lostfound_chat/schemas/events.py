"""Realtime wire protocol.

Inbound frames are JSON objects tagged by ``event``; each tag maps to exactly
one model below. Outbound frames are ``{"event": name, "data": {...}}``.
"""

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import Field, TypeAdapter, ValidationError

from lostfound_chat.errors import ValidationFailed
from lostfound_chat.models.message import MessageType
from lostfound_chat.schemas.conversation import Attachment, CamelModel, ConversationOut, MessageOut
from lostfound_chat.schemas.user import Principal
from lostfound_chat.utils.time import isoformat


class JoinEvent(CamelModel):

    event: Literal["join"]
    conversation_id: str = Field(min_length=1)


class LeaveEvent(CamelModel):

    event: Literal["leave"]
    conversation_id: str = Field(min_length=1)


class SendEvent(CamelModel):

    event: Literal["send"]
    conversation_id: str = Field(min_length=1)
    content: str
    type: MessageType = MessageType.TEXT
    attachment: Optional[Attachment] = None


class EditEvent(CamelModel):

    event: Literal["edit"]
    conversation_id: str = Field(min_length=1)
    message_id: str = Field(min_length=1)
    new_content: str


class DeleteEvent(CamelModel):

    event: Literal["delete"]
    conversation_id: str = Field(min_length=1)
    message_id: str = Field(min_length=1)


class TypingEvent(CamelModel):

    event: Literal["typing"]
    conversation_id: str = Field(min_length=1)
    is_typing: bool


class MarkReadEvent(CamelModel):

    event: Literal["markRead"]
    conversation_id: str = Field(min_length=1)
    message_ids: Optional[List[str]] = None


class CreateConversationEvent(CamelModel):

    event: Literal["createConversation"]
    item_ref: str = Field(min_length=1)
    counterparty_id: str = Field(min_length=1)
    initial_message: Optional[str] = None


ClientEvent = Annotated[
    Union[
        JoinEvent,
        LeaveEvent,
        SendEvent,
        EditEvent,
        DeleteEvent,
        TypingEvent,
        MarkReadEvent,
        CreateConversationEvent,
    ],
    Field(discriminator="event"),
]

_client_event = TypeAdapter(ClientEvent)


def parse_client_event(payload: Any) -> ClientEvent:
    try:
        return _client_event.validate_python(payload)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()))
        raise ValidationFailed(f"Invalid event payload: {where or 'event'}") from exc


def outbound(event: str, **data: Any) -> Dict[str, Any]:
    return {"event": event, "data": data}


def presence_online(conversation_id: str, principal: Principal) -> Dict[str, Any]:
    return outbound("presence:online", conversationId=conversation_id, principalId=principal.id, principal=principal.display())


def presence_offline(conversation_id: str, principal: Principal) -> Dict[str, Any]:
    return outbound("presence:offline", conversationId=conversation_id, principalId=principal.id, principal=principal.display())


def presence_typing(conversation_id: str, principal: Principal, is_typing: bool) -> Dict[str, Any]:
    return outbound("presence:typing", conversationId=conversation_id, principalId=principal.id, isTyping=is_typing)


def message_new(conversation_id: str, message: MessageOut, sender: Optional[Principal] = None) -> Dict[str, Any]:
    data = message.dump()
    if sender is not None:
        data["sender"] = sender.display()
    return outbound("message:new", conversationId=conversation_id, message=data)


def message_edited(conversation_id: str, message: MessageOut) -> Dict[str, Any]:
    return outbound(
        "message:edited",
        conversationId=conversation_id,
        messageId=message.id,
        newContent=message.content,
        editedAt=isoformat(message.edited_at),
    )


def message_deleted(conversation_id: str, message: MessageOut) -> Dict[str, Any]:
    return outbound(
        "message:deleted",
        conversationId=conversation_id,
        messageId=message.id,
        deletedAt=isoformat(message.deleted_at),
    )


def messages_read(conversation_id: str, principal_id: str, message_ids: List[str], read_at: Optional[datetime] = None) -> Dict[str, Any]:
    return outbound(
        "messages:read",
        conversationId=conversation_id,
        principalId=principal_id,
        messageIds=message_ids,
        readAt=isoformat(read_at),
    )


def conversation_new(conversation: ConversationOut) -> Dict[str, Any]:
    return outbound("conversation:new", conversation=conversation.dump())


def conversation_created(conversation: ConversationOut, created: bool) -> Dict[str, Any]:
    return outbound("conversation:created", conversation=conversation.dump(), created=created)


def conversation_updated(conversation: ConversationOut) -> Dict[str, Any]:
    return outbound("conversation:updated", conversation=conversation.dump())


def conversation_snapshot(conversation: ConversationOut, unread_count: int, online: List[str]) -> Dict[str, Any]:
    return outbound("conversation:snapshot", conversation=conversation.dump(), unreadCount=unread_count, online=online)


def error(payload: Dict[str, Any]) -> Dict[str, Any]:
    return outbound("error", **payload)
