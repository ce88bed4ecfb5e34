import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from rental_inbox.database.connection import mongo_db_dependency
from rental_inbox.exceptions import InboxUnavailableError
from rental_inbox.repositories.conversation_repository import ConversationRepository
from rental_inbox.repositories.message_repository import MessageRepository
from rental_inbox.schemas.conversation import FeedState, SessionState
from rental_inbox.services.conversation_feed import ConversationFeed
from rental_inbox.services.inbox_service import InboxService


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/conversations", tags=["inbox"])


def get_inbox_service(db = Depends(mongo_db_dependency)) -> InboxService:
    convo_repo = ConversationRepository(db)
    msg_repo = MessageRepository(db)
    return InboxService(convo_repo, msg_repo)


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    # identity is established by the upstream auth layer
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity")
    return x_user_id


@router.get("")
async def list_conversations(user_id: str = Depends(get_current_user_id), service: InboxService = Depends(get_inbox_service)):
    try:
        items = await service.snapshot(user_id)
    except InboxUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return {"items": [item.model_dump() for item in items], "next_cursor": None}


@router.get("/{conversation_id}")
async def get_conversation(conversation_id: str, user_id: str = Depends(get_current_user_id), service: InboxService = Depends(get_inbox_service)):
    record = await service.get_conversation(conversation_id)
    if record is None or user_id not in record.participant_ids:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return record.model_dump()


@router.websocket("/ws")
async def inbox_socket(websocket: WebSocket, service: InboxService = Depends(get_inbox_service)):
    # Client frames: {"type": "session", "user_id": ..., "hydrated": ...} and {"type": "load_more"}
    await websocket.accept()
    outbox: "asyncio.Queue[FeedState]" = asyncio.Queue()
    feed = ConversationFeed(service, on_change=outbox.put_nowait)

    async def _sender():
        while True:
            state = await outbox.get()
            await websocket.send_text(json.dumps({"type": "inbox", **state.model_dump()}))

    sender_task = asyncio.create_task(_sender())
    try:
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_text(json.dumps({"type": "error", "detail": "Invalid JSON"}))
                continue
            if not isinstance(msg, dict):
                await websocket.send_text(json.dumps({"type": "error", "detail": "Invalid frame"}))
                continue

            if msg.get("type") == "session":
                try:
                    session = SessionState.model_validate({k: v for k, v in msg.items() if k != "type"})
                except ValidationError:
                    await websocket.send_text(json.dumps({"type": "error", "detail": "Invalid session frame"}))
                    continue
                feed.set_session(session)
            elif msg.get("type") == "load_more":
                await feed.load_more()
            else:
                await websocket.send_text(json.dumps({"type": "error", "detail": "Unknown frame type"}))
    except WebSocketDisconnect:
        logger.debug("inbox socket disconnected for %s", feed.user_id)
    finally:
        feed.close()
        sender_task.cancel()
