from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class ConversationRecord(BaseModel):
    """Canonical, shape-independent view of one conversation document."""

    model_config = ConfigDict(frozen=True)

    id: str
    participant_ids: Tuple[str, ...]
    preview_text: Optional[str] = None
    # epoch milliseconds
    last_activity_at: Optional[int] = None
    unread_count_by_user: Optional[Dict[str, int]] = None


class PreviewResult(BaseModel):

    model_config = ConfigDict(frozen=True)

    text: Optional[str] = None
    last_activity_at: Optional[int] = None


class ConversationsPage(BaseModel):

    items: List[ConversationRecord] = Field(default_factory=list)
    # always None for the merged view, there is no cursor valid across sources
    cursor: Optional[str] = None


class FeedState(BaseModel):

    items: List[ConversationRecord] = Field(default_factory=list)
    is_loading: bool = True
    is_loading_more: bool = False
    has_more: bool = True
    error: Optional[str] = None


class SessionState(BaseModel):
    """Identity signal published by the auth layer."""

    user_id: Optional[str] = None
    hydrated: bool = False
