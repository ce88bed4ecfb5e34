import logging
from typing import Any, AsyncIterator, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from rental_inbox.config import CONVERSATIONS_PAGE_SIZE
from rental_inbox.models.conversation import ConversationDocument


logger = logging.getLogger(__name__)

PARTICIPANT_FIELDS = ("participant1_id", "participant2_id", "participantIds", "participants")


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        for field in PARTICIPANT_FIELDS:
            await self.collection.create_index([(field, ASCENDING)])
        await self.collection.create_index([("last_message_at", DESCENDING)])

    async def get_by_id(self, conversation_id: str) -> Optional[ConversationDocument]:
        doc = await self.collection.find_one({"_id": {"$in": conversation_keys(conversation_id)}})
        if doc:
            doc["_id"] = str(doc.get("_id"))
        return doc

    async def find_by_field(self, field: str, user_id: str, limit: int = CONVERSATIONS_PAGE_SIZE) -> List[ConversationDocument]:
        # equality also matches array membership for the array-shaped fields
        cursor = self.collection.find({field: user_id}).limit(limit)
        items = await cursor.to_list(length=limit)
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items

    async def watch_by_field(self, field: str, user_id: str, limit: int = CONVERSATIONS_PAGE_SIZE) -> AsyncIterator[List[ConversationDocument]]:
        """
        Yield the full result set for ``{field: user_id}``, then again after every
        relevant change. The change stream is opened before the initial read so
        no write falls between the two.
        """
        pipeline = [
            {
                "$match": {
                    "$or": [
                        {f"fullDocument.{field}": user_id},
                        {f"updateDescription.updatedFields.{field}": {"$exists": True}},
                        {"operationType": {"$in": ["delete", "replace"]}},
                    ]
                }
            }
        ]
        async with self.collection.watch(pipeline, full_document="updateLookup") as stream:
            yield await self.find_by_field(field, user_id, limit)
            async for change in stream:
                logger.debug("conversation change %s on %s=%s", change.get("operationType"), field, user_id)
                yield await self.find_by_field(field, user_id, limit)


def conversation_keys(conversation_id: str) -> List[Any]:
    # ids are stored as ObjectId by the chat backend and as plain strings by older writers
    keys: List[Any] = [conversation_id]
    try:
        keys.append(ObjectId(conversation_id))
    except (InvalidId, TypeError):
        pass
    return keys
