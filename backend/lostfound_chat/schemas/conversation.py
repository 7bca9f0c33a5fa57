from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from lostfound_chat import config
from lostfound_chat.models.conversation import ChatType, ConversationDocument, Priority, count_unread
from lostfound_chat.models.message import MessageDocument
from lostfound_chat.schemas.user import Principal
from lostfound_chat.utils.time import as_utc


class CamelModel(BaseModel):

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class Attachment(CamelModel):

    url: Optional[str] = None
    public_id: Optional[str] = None
    filename: Optional[str] = None
    size: Optional[int] = Field(default=None, ge=0)


class MessageOut(CamelModel):

    id: str
    sender_id: str
    content: str
    type: str
    attachment: Optional[Attachment] = None
    created_at: Optional[datetime] = None
    read: bool = False
    read_at: Optional[datetime] = None
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    original_content: Optional[str] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc: MessageDocument) -> "MessageOut":
        return cls(
            id=str(doc["_id"]),
            sender_id=doc["sender_id"],
            content=doc["content"],
            type=doc.get("message_type", "text"),
            attachment=doc.get("attachment"),
            created_at=as_utc(doc.get("created_at")),
            read=bool(doc.get("is_read")),
            read_at=as_utc(doc.get("read_at")),
            is_edited=bool(doc.get("is_edited")),
            edited_at=as_utc(doc.get("edited_at")),
            original_content=doc.get("original_content"),
            is_deleted=bool(doc.get("is_deleted")),
            deleted_at=as_utc(doc.get("deleted_at")),
        )


class ParticipantOut(CamelModel):

    principal_id: str
    name: Optional[str] = None
    avatar: Optional[str] = None
    trust_score: Optional[float] = None
    joined_at: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    is_active: bool = True


class LastMessageOut(CamelModel):

    content: Optional[str] = None
    sender_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    type: Optional[str] = None


class ConversationMetadata(CamelModel):

    item_returned: bool = False
    meeting_arranged: bool = False
    meeting_location: Optional[str] = None
    meeting_time: Optional[datetime] = None
    contact_shared: bool = False


class NotificationSettings(CamelModel):

    enabled: bool = True
    mute_until: Optional[datetime] = None


class ConversationOut(CamelModel):

    id: str
    item_ref: str
    title: Optional[str] = None
    chat_type: str = ChatType.INQUIRY.value
    priority: str = Priority.MEDIUM.value
    participants: List[ParticipantOut] = []
    status: str
    is_resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    last_message: Optional[LastMessageOut] = None
    last_activity: Optional[datetime] = None
    auto_close_at: Optional[datetime] = None
    metadata: ConversationMetadata = Field(default_factory=ConversationMetadata)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    created_at: Optional[datetime] = None
    unread_count: Optional[int] = None

    @classmethod
    def from_document(
        cls,
        doc: ConversationDocument,
        viewer_id: Optional[str] = None,
        people: Optional[Mapping[str, Principal]] = None,
    ) -> "ConversationOut":
        """``people`` maps principal ids to their display attributes; members
        missing from it are rendered with ids only."""
        last = doc.get("last_message") or {}
        last_message = None
        if last.get("timestamp"):
            last_message = LastMessageOut(
                content=last.get("content"),
                sender_id=last.get("sender_id"),
                timestamp=as_utc(last.get("timestamp")),
                type=last.get("message_type"),
            )
        unread = None
        if viewer_id is not None and "messages" in doc:
            unread = count_unread(doc, viewer_id)
        metadata = dict(doc.get("metadata") or {})
        metadata["meeting_time"] = as_utc(metadata.get("meeting_time"))
        notifications = dict(doc.get("notifications") or {})
        notifications["mute_until"] = as_utc(notifications.get("mute_until"))
        people = people or {}
        return cls(
            id=str(doc["_id"]),
            item_ref=doc["item_ref"],
            title=doc.get("title"),
            chat_type=doc.get("chat_type", ChatType.INQUIRY.value),
            priority=doc.get("priority", Priority.MEDIUM.value),
            participants=[_participant(p, people.get(p["principal_id"])) for p in doc.get("participants", [])],
            status=doc["status"],
            is_resolved=bool(doc.get("is_resolved")),
            resolved_at=as_utc(doc.get("resolved_at")),
            resolved_by=doc.get("resolved_by"),
            last_message=last_message,
            last_activity=as_utc(doc.get("last_activity")),
            auto_close_at=as_utc(doc.get("auto_close_at")),
            metadata=ConversationMetadata(**metadata),
            notifications=NotificationSettings(**notifications),
            created_at=as_utc(doc.get("created_at")),
            unread_count=unread,
        )


def _participant(record: Dict[str, Any], person: Optional[Principal]) -> ParticipantOut:
    return ParticipantOut(
        principal_id=record["principal_id"],
        name=person.name if person else None,
        avatar=person.avatar if person else None,
        trust_score=person.trust_score if person else None,
        joined_at=as_utc(record.get("joined_at")),
        last_seen=as_utc(record.get("last_seen")),
        is_active=record.get("is_active", True),
    )


class UpdateConversationRequest(CamelModel):

    title: Optional[str] = Field(default=None, min_length=1, max_length=config.TITLE_MAX_LENGTH)
    chat_type: Optional[ChatType] = None
    priority: Optional[Priority] = None
    metadata: Optional[ConversationMetadata] = None
    notifications: Optional[NotificationSettings] = None


class AddParticipantRequest(CamelModel):

    principal_id: str = Field(min_length=1)


class MarkReadRequest(CamelModel):

    message_ids: Optional[List[str]] = None
