from typing import Iterable, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from lostfound_chat.models.user import UserDocument
from lostfound_chat.repositories.conversation_repository import store_errors, to_object_id


class UserRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    async def get_user_by_id(self, user_id: str) -> Optional[UserDocument]:

        oid = to_object_id(user_id)
        query = {"_id": oid} if oid is not None else {"_id": user_id}
        with store_errors("get_user"):
            user = await self._collection.find_one(query, {"password": 0, "hashed_password": 0})
        if user:
            user["_id"] = str(user["_id"])  # normalize to string for API layer
        return user

    async def get_users_by_ids(self, user_ids: Iterable[str]) -> List[UserDocument]:
        keys = [to_object_id(uid) or uid for uid in user_ids]
        if not keys:
            return []
        with store_errors("get_users"):
            users = await self._collection.find(
                {"_id": {"$in": keys}}, {"name": 1, "avatar": 1, "trust_score": 1}
            ).to_list(length=None)
        for user in users:
            user["_id"] = str(user["_id"])
        return users
