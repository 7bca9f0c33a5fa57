from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from lostfound_chat.models.conversation import ConversationStatus, LastMessageDocument
from lostfound_chat.models.message import MessageDocument
from lostfound_chat.repositories.conversation_repository import store_errors, to_object_id


class MessageRepository:
    """Writes against the ``messages`` array embedded in each conversation.

    Messages are never removed from the array, so a message index stays valid
    for the lifetime of the conversation. Callers serialize writes per
    conversation.
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def append(
        self,
        conversation_id: str,
        message: Dict[str, Any],
        last_message: LastMessageDocument,
        now: datetime,
        auto_close_at: datetime,
    ) -> bool:
        # status is part of the filter: a closed conversation matches nothing
        with store_errors("append_message"):
            result = await self.collection.update_one(
                {"_id": to_object_id(conversation_id), "status": ConversationStatus.ACTIVE.value},
                {
                    "$push": {"messages": message},
                    "$set": {
                        "last_message": last_message,
                        "last_activity": now,
                        "auto_close_at": auto_close_at,
                        "updated_at": now,
                    },
                },
            )
        return bool(result.matched_count)

    async def update_message(self, conversation_id: str, index: int, fields: Dict[str, Any], now: datetime) -> None:
        update = {f"messages.{index}.{key}": value for key, value in fields.items()}
        update["updated_at"] = now
        with store_errors("update_message"):
            await self.collection.update_one({"_id": to_object_id(conversation_id)}, {"$set": update})

    async def mark_read(
        self,
        conversation_id: str,
        indexes: Iterable[int],
        participant_index: Optional[int],
        now: datetime,
    ) -> None:
        update: Dict[str, Any] = {}
        for index in indexes:
            update[f"messages.{index}.is_read"] = True
            update[f"messages.{index}.read_at"] = now
        if participant_index is not None:
            update[f"participants.{participant_index}.last_seen"] = now
        if not update:
            return
        with store_errors("mark_read"):
            await self.collection.update_one({"_id": to_object_id(conversation_id)}, {"$set": update})

    async def get_messages(self, conversation_id: str, limit: int = 50, before: Optional[str] = None) -> List[MessageDocument]:
        oid = to_object_id(conversation_id)
        if oid is None:
            return []
        with store_errors("get_messages"):
            doc = await self.collection.find_one({"_id": oid}, {"messages": 1})
        if not doc:
            return []
        messages = doc.get("messages", [])
        for m in messages:
            m["_id"] = str(m["_id"])
        if before:
            cut = next((i for i, m in enumerate(messages) if m["_id"] == before), len(messages))
            messages = messages[:cut]
        # oldest first for the UI
        return messages[-limit:]
