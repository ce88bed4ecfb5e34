from contextlib import asynccontextmanager

from fastapi import FastAPI

from rental_inbox.config import LOG_LEVEL
from rental_inbox.database.connection import close_mongo_connection, connect_to_mongo, get_database
from rental_inbox.repositories.conversation_repository import ConversationRepository
from rental_inbox.repositories.message_repository import MessageRepository
from rental_inbox.routers.conversations import router as conversations_router
from rental_inbox.utils.logging import setup_logging


@asynccontextmanager
async def lifespan(app: FastAPI):

    setup_logging(LOG_LEVEL)
    await connect_to_mongo()
    db = get_database()
    await ConversationRepository(db).ensure_indexes()
    await MessageRepository(db).ensure_indexes()
    try:
        yield
    finally:
        await close_mongo_connection()


app = FastAPI(title="Rental inbox", lifespan=lifespan)


app.include_router(conversations_router)


@app.get("/health")
async def health():

    await get_database().command("ping")
    return {"status": "ok"}
