import asyncio
import logging
from typing import List, Optional

from rental_inbox.config import CONVERSATIONS_PAGE_SIZE, PREVIEW_ENRICH_LIMIT
from rental_inbox.exceptions import InboxUnavailableError
from rental_inbox.repositories.conversation_repository import ConversationRepository
from rental_inbox.repositories.message_repository import MessageRepository
from rental_inbox.schemas.conversation import ConversationRecord, ConversationsPage
from rental_inbox.services.conversation_aggregator import (
    SOURCE_ORDER,
    SYSTEMIC_FAILURE_THRESHOLD,
    ConversationAggregator,
    ErrorCallback,
    SnapshotCallback,
    merge_conversations,
    sort_conversations,
)
from rental_inbox.services.normalizer import normalize_conversation, normalize_conversations
from rental_inbox.services.preview_resolver import PreviewResolver, apply_previews, resolve_previews, select_missing


logger = logging.getLogger(__name__)


class InboxService:

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        message_repo: MessageRepository,
        page_size: int = CONVERSATIONS_PAGE_SIZE,
        enrich_limit: int = PREVIEW_ENRICH_LIMIT,
    ) -> None:
        self._conversation_repo = conversation_repo
        self._message_repo = message_repo
        self._page_size = page_size
        self._enrich_limit = enrich_limit

    def open_inbox(self, user_id: str, on_snapshot: SnapshotCallback, on_error: Optional[ErrorCallback] = None) -> ConversationAggregator:
        aggregator = ConversationAggregator(
            self._conversation_repo,
            self._message_repo,
            user_id,
            on_snapshot,
            on_error,
            page_size=self._page_size,
            enrich_limit=self._enrich_limit,
        )
        aggregator.start()
        return aggregator

    async def fetch_more(self, user_id: str, cursor: Optional[str], page_size: int = CONVERSATIONS_PAGE_SIZE) -> ConversationsPage:
        # merged multi-shape view has no cross-source cursor
        return ConversationsPage(items=[], cursor=None)

    async def snapshot(self, user_id: str) -> List[ConversationRecord]:
        """One-shot merged inbox: same sources, merge and enrichment as the live view."""
        results = await asyncio.gather(
            *(self._conversation_repo.find_by_field(source.value, user_id, self._page_size) for source in SOURCE_ORDER),
            return_exceptions=True,
        )
        buckets = []
        live_failures = 0
        for source, result in zip(SOURCE_ORDER, results):
            if isinstance(result, Exception):
                logger.debug("inbox read on %s failed for %s: %s", source.value, user_id, result)
                if source.live:
                    live_failures += 1
                buckets.append([])
                continue
            buckets.append(normalize_conversations(result))
        if live_failures >= SYSTEMIC_FAILURE_THRESHOLD:
            raise InboxUnavailableError(f"Conversations for user {user_id} could not be loaded")

        merged = merge_conversations(buckets)
        missing = select_missing(merged, self._enrich_limit)
        if not missing:
            return merged
        previews = await resolve_previews(PreviewResolver(self._message_repo), missing)
        return sort_conversations(apply_previews(merged, previews))

    async def get_conversation(self, conversation_id: str) -> Optional[ConversationRecord]:
        doc = await self._conversation_repo.get_by_id(conversation_id)
        if not doc:
            return None
        record = normalize_conversation(doc)
        if record is None or record.preview_text is not None:
            return record
        preview = await PreviewResolver(self._message_repo).resolve(record.id, record.last_activity_at or 0)
        return apply_previews([record], {record.id: preview})[0]
