from typing import Any, List, Optional, TypedDict


class ConversationDocument(TypedDict, total=False):
    _id: Any
    # modern shape
    participantIds: List[str]
    # transitional shape
    participants: List[str]
    # legacy shape
    participant1_id: str
    participant2_id: str
    # timestamps: epoch ms, BSON date, or {"seconds": ...}
    updatedAt: Any
    updated_at: Any
    lastMessageAt: Any
    last_message_at: Any
    createdAt: Any
    created_at: Any
    # cached preview of the latest message, under any of these names
    lastMessageText: Optional[str]
    last_message_text: Optional[str]
    lastMessage: Optional[str]
    last_message: Optional[str]
    lastMessageContent: Optional[str]
    last_message_content: Optional[str]
    last_message_preview: Optional[str]
    lastMessageType: Optional[str]
    last_message_type: Optional[str]
    # per-user unread counters (user_id -> count)
    unreadCountByUser: dict[str, int]
    unread_counters: dict[str, int]
