from datetime import datetime
from enum import Enum
from typing import Optional, TypedDict


TOMBSTONE = "This message has been deleted"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    SYSTEM = "system"


class AttachmentDocument(TypedDict, total=False):
    url: Optional[str]
    public_id: Optional[str]
    filename: Optional[str]
    size: Optional[int]


class MessageDocument(TypedDict, total=False):
    _id: str
    sender_id: str
    content: str
    message_type: str
    attachment: Optional[AttachmentDocument]
    created_at: datetime
    # read state is per message, not per recipient
    is_read: bool
    read_at: Optional[datetime]
    is_edited: bool
    edited_at: Optional[datetime]
    original_content: Optional[str]
    is_deleted: bool
    deleted_at: Optional[datetime]
