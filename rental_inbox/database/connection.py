import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from rental_inbox.config import MONGO_DB_NAME, MONGO_URL


logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None


async def connect_to_mongo() -> None:
    global _client
    if _client is not None:
        return
    _client = AsyncIOMotorClient(MONGO_URL)
    logger.info("connected to MongoDB database %s", MONGO_DB_NAME)


async def close_mongo_connection() -> None:
    global _client
    if _client is None:
        return
    _client.close()
    _client = None
    logger.info("MongoDB connection closed")


def get_database() -> AsyncIOMotorDatabase:
    if _client is None:
        raise RuntimeError("MongoDB client is not connected")
    return _client[MONGO_DB_NAME]


async def mongo_db_dependency() -> AsyncIOMotorDatabase:
    return get_database()
