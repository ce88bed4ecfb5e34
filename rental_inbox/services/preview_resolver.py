import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from rental_inbox.config import PREVIEW_ENRICH_LIMIT
from rental_inbox.repositories.message_repository import MessageRepository
from rental_inbox.schemas.conversation import ConversationRecord, PreviewResult
from rental_inbox.services.normalizer import extract_message_preview, extract_message_timestamp


logger = logging.getLogger(__name__)

# Newest-first lookups, tried in order; None is the unordered last resort.
PREVIEW_ORDER_FIELDS: Tuple[Optional[str], ...] = ("created_at", "createdAt", "timestamp", None)


@dataclass(frozen=True)
class PreviewCacheEntry:
    stamp: int
    text: Optional[str]
    last_activity_at: Optional[int]


class PreviewResolver:
    """
    Recover the latest message preview for conversations whose document has none.

    Results are cached per conversation id together with the activity stamp they
    were fetched for, so re-emitting an unchanged conversation costs nothing.
    """

    def __init__(self, message_repo: MessageRepository, order_fields: Sequence[Optional[str]] = PREVIEW_ORDER_FIELDS) -> None:
        self._message_repo = message_repo
        self._order_fields = tuple(order_fields)
        self._cache: Dict[str, PreviewCacheEntry] = {}
        self._pending: Dict[str, Tuple[int, "asyncio.Future[PreviewResult]"]] = {}

    def cached(self, conversation_id: str) -> Optional[PreviewCacheEntry]:
        return self._cache.get(conversation_id)

    async def resolve(self, conversation_id: str, stamp: int = 0) -> PreviewResult:
        entry = self._cache.get(conversation_id)
        if entry is not None and entry.stamp == stamp:
            return PreviewResult(text=entry.text, last_activity_at=entry.last_activity_at)

        pending = self._pending.get(conversation_id)
        if pending is None or pending[0] != stamp:
            task = asyncio.ensure_future(self._lookup(conversation_id))
            task.add_done_callback(lambda done, cid=conversation_id, s=stamp: self._store(cid, s, done))
            pending = (stamp, task)
            self._pending[conversation_id] = pending
        # shield: one waiter being cancelled must not cancel the shared lookup
        return await asyncio.shield(pending[1])

    def _store(self, conversation_id: str, stamp: int, task: "asyncio.Future[PreviewResult]") -> None:
        pending = self._pending.get(conversation_id)
        if pending is None or pending[1] is not task:
            # superseded by a lookup for a newer stamp
            return
        del self._pending[conversation_id]
        if task.cancelled() or task.exception() is not None:
            return
        result = task.result()
        self._cache[conversation_id] = PreviewCacheEntry(stamp=stamp, text=result.text, last_activity_at=result.last_activity_at)

    async def _lookup(self, conversation_id: str) -> PreviewResult:
        for order_by in self._order_fields:
            try:
                doc = await self._message_repo.find_latest(conversation_id, order_by)
            except Exception as exc:
                logger.debug("preview query order_by=%s failed for %s: %s", order_by, conversation_id, exc)
                continue
            if not doc:
                continue
            return PreviewResult(text=extract_message_preview(doc), last_activity_at=extract_message_timestamp(doc))
        return PreviewResult()


def select_missing(items: Iterable[ConversationRecord], limit: int = PREVIEW_ENRICH_LIMIT) -> List[ConversationRecord]:
    return [item for item in items if item.preview_text is None][:limit]


async def resolve_previews(resolver: PreviewResolver, items: Sequence[ConversationRecord]) -> Dict[str, PreviewResult]:
    results = await asyncio.gather(*(resolver.resolve(item.id, item.last_activity_at or 0) for item in items))
    return {item.id: result for item, result in zip(items, results)}


def apply_previews(items: Iterable[ConversationRecord], previews: Mapping[str, PreviewResult]) -> List[ConversationRecord]:
    """Fill absent preview text and activity time from resolved previews, keeping list order."""
    enriched = []
    for item in items:
        preview = previews.get(item.id)
        if preview is None:
            enriched.append(item)
            continue
        enriched.append(
            item.model_copy(
                update={
                    "preview_text": item.preview_text if item.preview_text is not None else preview.text,
                    "last_activity_at": item.last_activity_at if item.last_activity_at is not None else preview.last_activity_at,
                }
            )
        )
    return enriched
