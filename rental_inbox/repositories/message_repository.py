from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from rental_inbox.models.message import MessageDocument
from rental_inbox.repositories.conversation_repository import conversation_keys


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("created_at", DESCENDING)])
        await self.collection.create_index([("conversation_id", ASCENDING), ("timestamp", DESCENDING)])

    async def find_latest(self, conversation_id: str, order_by: Optional[str] = None) -> Optional[MessageDocument]:
        """Newest message of a conversation by ``order_by``, or any one message when it is None."""
        query: Dict[str, Any] = {"conversation_id": {"$in": conversation_keys(conversation_id)}}
        if order_by:
            # only messages that actually carry the ordering field
            query[order_by] = {"$exists": True}
            cursor = self.collection.find(query).sort(order_by, DESCENDING).limit(1)
        else:
            cursor = self.collection.find(query).limit(1)
        items = await cursor.to_list(length=1)
        if not items:
            return None
        item = items[0]
        item["_id"] = str(item.get("_id"))
        return item
