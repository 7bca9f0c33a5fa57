from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import structlog
from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

from lostfound_chat.errors import TransientStoreFailure
from lostfound_chat.models.conversation import ConversationDocument, ConversationStatus


logger = structlog.get_logger(__name__)


def to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except PyMongoError as exc:
        logger.warning("store_operation_failed", operation=operation, error=str(exc))
        raise TransientStoreFailure() from exc


def normalize(doc: Optional[Dict[str, Any]]) -> Optional[ConversationDocument]:
    if doc is None:
        return None
    doc["_id"] = str(doc["_id"])
    for message in doc.get("messages", []):
        message["_id"] = str(message["_id"])
    return doc  # type: ignore[return-value]


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        with store_errors("ensure_indexes"):
            await self.collection.create_index([("participants.principal_id", ASCENDING)])
            await self.collection.create_index([("item_ref", ASCENDING)])
            await self.collection.create_index([("status", ASCENDING), ("auto_close_at", ASCENDING)])
            await self.collection.create_index([("last_message.timestamp", DESCENDING)])

    async def insert(self, doc: Dict[str, Any]) -> ConversationDocument:
        with store_errors("insert_conversation"):
            result = await self.collection.insert_one(doc)
        doc["_id"] = result.inserted_id
        return normalize(doc)

    async def get(self, conversation_id: str, with_messages: bool = True) -> Optional[ConversationDocument]:
        oid = to_object_id(conversation_id)
        if oid is None:
            return None
        projection = None if with_messages else {"messages": 0}
        with store_errors("get_conversation"):
            doc = await self.collection.find_one({"_id": oid}, projection)
        return normalize(doc)

    async def find_open_for_participants(self, item_ref: str, principal_ids: List[str]) -> Optional[ConversationDocument]:
        query = {
            "item_ref": item_ref,
            "participants.principal_id": {"$all": sorted(set(principal_ids))},
            "status": {"$ne": ConversationStatus.ARCHIVED.value},
        }
        with store_errors("find_open_for_participants"):
            doc = await self.collection.find_one(query)
        return normalize(doc)

    async def list_for_principal(self, principal_id: str, status: str) -> List[ConversationDocument]:
        query = {
            "participants": {"$elemMatch": {"principal_id": principal_id, "is_active": True}},
            "status": status,
        }
        sort = [("last_message.timestamp", DESCENDING), ("_id", DESCENDING)]
        with store_errors("list_for_principal"):
            items = await self.collection.find(query).sort(sort).to_list(length=None)
        return [normalize(it) for it in items]

    async def push_participant(self, conversation_id: str, participant: Dict[str, Any], now: datetime) -> bool:
        # the $ne guard keeps principal ids unique even under concurrent adds
        with store_errors("push_participant"):
            result = await self.collection.update_one(
                {"_id": to_object_id(conversation_id), "participants.principal_id": {"$ne": participant["principal_id"]}},
                {"$push": {"participants": participant}, "$set": {"updated_at": now}},
            )
        return bool(result.modified_count)

    async def set_participant_active(self, conversation_id: str, index: int, active: bool, now: datetime) -> None:
        with store_errors("set_participant_active"):
            await self.collection.update_one(
                {"_id": to_object_id(conversation_id)},
                {"$set": {f"participants.{index}.is_active": active, "updated_at": now}},
            )

    async def close(self, conversation_id: str, now: datetime, closed_by: Optional[str] = None) -> bool:
        fields: Dict[str, Any] = {
            "status": ConversationStatus.CLOSED.value,
            "is_resolved": True,
            "resolved_at": now,
            "updated_at": now,
        }
        if closed_by:
            fields["resolved_by"] = closed_by
        with store_errors("close_conversation"):
            result = await self.collection.update_one(
                {"_id": to_object_id(conversation_id), "status": ConversationStatus.ACTIVE.value},
                {"$set": fields},
            )
        return bool(result.modified_count)

    async def set_details(self, conversation_id: str, fields: Dict[str, Any], now: datetime) -> bool:
        with store_errors("set_details"):
            result = await self.collection.update_one(
                {"_id": to_object_id(conversation_id)},
                {"$set": dict(fields, updated_at=now)},
            )
        return bool(result.matched_count)

    async def find_expired(self, now: datetime) -> List[ConversationDocument]:
        query = {"status": ConversationStatus.ACTIVE.value, "auto_close_at": {"$lt": now}}
        with store_errors("find_expired"):
            items = await self.collection.find(query, {"messages": 0}).to_list(length=None)
        return [normalize(it) for it in items]
