from datetime import datetime
from enum import Enum
from typing import List, Optional, TypedDict

from lostfound_chat.models.message import MessageDocument


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"
    ARCHIVED = "archived"


class ChatType(str, Enum):
    INQUIRY = "inquiry"
    NEGOTIATION = "negotiation"
    SUPPORT = "support"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ParticipantDocument(TypedDict):
    principal_id: str
    joined_at: datetime
    last_seen: datetime
    is_active: bool


class LastMessageDocument(TypedDict, total=False):
    content: Optional[str]
    sender_id: Optional[str]
    timestamp: Optional[datetime]
    message_type: str


class MetadataDocument(TypedDict, total=False):
    item_returned: bool
    meeting_arranged: bool
    meeting_location: Optional[str]
    meeting_time: Optional[datetime]
    contact_shared: bool


class NotificationsDocument(TypedDict, total=False):
    enabled: bool
    mute_until: Optional[datetime]


class ConversationDocument(TypedDict, total=False):
    _id: str
    item_ref: str
    title: str
    chat_type: str
    priority: str
    participants: List[ParticipantDocument]
    messages: List[MessageDocument]
    status: str
    is_resolved: bool
    resolved_at: Optional[datetime]
    resolved_by: Optional[str]
    last_message: LastMessageDocument
    last_activity: datetime
    # pushed forward on every accepted message
    auto_close_at: datetime
    metadata: MetadataDocument
    notifications: NotificationsDocument
    created_at: datetime
    updated_at: datetime


def default_metadata() -> MetadataDocument:
    return {
        "item_returned": False,
        "meeting_arranged": False,
        "meeting_location": None,
        "meeting_time": None,
        "contact_shared": False,
    }


def default_notifications() -> NotificationsDocument:
    return {"enabled": True, "mute_until": None}


def participant_ids(conversation: ConversationDocument, active_only: bool = True) -> List[str]:
    return [
        p["principal_id"]
        for p in conversation.get("participants", [])
        if p.get("is_active") or not active_only
    ]


def is_active_participant(conversation: ConversationDocument, principal_id: str) -> bool:
    return principal_id in participant_ids(conversation)


def count_unread(conversation: ConversationDocument, principal_id: str) -> int:
    return sum(
        1
        for m in conversation.get("messages", [])
        if not m.get("is_read") and not m.get("is_deleted") and m.get("sender_id") != principal_id
    )
