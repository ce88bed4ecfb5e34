from typing import Any, List, Optional, TypedDict


class MessageDocument(TypedDict, total=False):
    _id: Any
    # string id or ObjectId, depending on the writer
    conversation_id: Any
    sender_id: str
    content: Optional[str]
    text: Optional[str]
    message: Optional[str]
    body: Optional[str]
    lastMessageText: Optional[str]
    last_message_text: Optional[str]
    message_type: Optional[str]
    messageType: Optional[str]
    media: List[Any]
    attachment_url: Optional[str]
    created_at: Any
    createdAt: Any
    sentAt: Any
    timestamp: Any
