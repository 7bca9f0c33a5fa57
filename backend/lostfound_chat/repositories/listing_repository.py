from motor.motor_asyncio import AsyncIOMotorDatabase

from lostfound_chat.repositories.conversation_repository import store_errors, to_object_id


class ListingRepository:
    """Read-only view of the listing service's ``posts`` collection."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("posts")

    async def exists(self, item_ref: str) -> bool:
        oid = to_object_id(item_ref)
        query = {"_id": oid} if oid is not None else {"_id": item_ref}
        with store_errors("listing_exists"):
            doc = await self._collection.find_one(query, {"_id": 1})
        return doc is not None
