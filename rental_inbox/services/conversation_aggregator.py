"""
Live, merged inbox view over every stored conversation shape.

Two change-stream subscriptions watch the legacy ``participant1_id`` /
``participant2_id`` fields; two one-shot reads pick up documents that only use
the ``participantIds`` / ``participants`` arrays. Each source owns a bucket
that is replaced wholesale on update, and every update runs the same
merge-and-emit pass. Conversations without a cached preview are enriched in
the background; a run id makes sure only the newest pass may emit.
"""

import asyncio
import enum
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from rental_inbox.config import CONVERSATIONS_PAGE_SIZE, PREVIEW_ENRICH_LIMIT
from rental_inbox.exceptions import SourceQueryError
from rental_inbox.repositories.conversation_repository import ConversationRepository
from rental_inbox.repositories.message_repository import MessageRepository
from rental_inbox.schemas.conversation import ConversationRecord, ConversationsPage
from rental_inbox.services.normalizer import normalize_conversations
from rental_inbox.services.preview_resolver import PreviewResolver, apply_previews, resolve_previews, select_missing


logger = logging.getLogger(__name__)

# live-source failures needed before the error callback fires
SYSTEMIC_FAILURE_THRESHOLD = 2


class ConversationSource(str, enum.Enum):

    PARTICIPANT1 = "participant1_id"
    PARTICIPANT2 = "participant2_id"
    PARTICIPANT_IDS = "participantIds"
    PARTICIPANTS = "participants"

    @property
    def live(self) -> bool:
        return self in LIVE_SOURCES


class SourceState(str, enum.Enum):

    PENDING = "pending"
    ACTIVE = "active"
    ERROR = "error"


LIVE_SOURCES = (ConversationSource.PARTICIPANT1, ConversationSource.PARTICIPANT2)
ONE_SHOT_SOURCES = (ConversationSource.PARTICIPANT_IDS, ConversationSource.PARTICIPANTS)
# merge concatenation order; later sources win for the same id
SOURCE_ORDER = LIVE_SOURCES + ONE_SHOT_SOURCES


SnapshotCallback = Callable[[ConversationsPage], Any]
ErrorCallback = Callable[[SourceQueryError], Any]


def sort_conversations(items: Iterable[ConversationRecord]) -> List[ConversationRecord]:
    # sorted() is stable, so equal stamps keep their merge order
    return sorted(items, key=lambda item: item.last_activity_at or 0, reverse=True)


def merge_conversations(buckets: Iterable[Iterable[ConversationRecord]]) -> List[ConversationRecord]:
    merged: Dict[str, ConversationRecord] = {}
    for bucket in buckets:
        for record in bucket:
            merged[record.id] = record
    return sort_conversations(merged.values())


class ConversationAggregator:

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        message_repo: MessageRepository,
        user_id: str,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
        page_size: int = CONVERSATIONS_PAGE_SIZE,
        enrich_limit: int = PREVIEW_ENRICH_LIMIT,
    ) -> None:
        self._conversation_repo = conversation_repo
        self._user_id = user_id
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self._page_size = page_size
        self._enrich_limit = enrich_limit
        self._resolver = PreviewResolver(message_repo)

        self._buckets: Dict[ConversationSource, List[ConversationRecord]] = {source: [] for source in SOURCE_ORDER}
        self._states: Dict[ConversationSource, SourceState] = {source: SourceState.PENDING for source in SOURCE_ORDER}
        self._watch_failures = 0
        self._run_id = 0
        self._active = False
        self._disposed = False
        self._watch_tasks: List[asyncio.Task] = []
        self._background: Set[asyncio.Task] = set()

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def failed(self) -> bool:
        """True once enough live sources failed to surface an error; stays set."""
        return self._watch_failures >= SYSTEMIC_FAILURE_THRESHOLD

    def source_state(self, source: ConversationSource) -> SourceState:
        return self._states[source]

    def start(self) -> None:
        if self._disposed:
            raise RuntimeError("ConversationAggregator cannot be restarted after dispose()")
        if self._active:
            return
        self._active = True
        logger.debug("starting inbox aggregation for %s", self._user_id)
        for source in LIVE_SOURCES:
            self._watch_tasks.append(asyncio.create_task(self._watch(source)))
        for source in ONE_SHOT_SOURCES:
            self._spawn(self._read_once(source))

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._active = False
        for task in self._watch_tasks:
            task.cancel()
        # one-shot reads and enrichment lookups are left to finish; their
        # results are dropped on arrival
        logger.debug("inbox aggregation for %s disposed", self._user_id)

    async def wait_closed(self) -> None:
        await asyncio.gather(*self._watch_tasks, return_exceptions=True)

    async def fetch_more(self, cursor: Optional[str], page_size: int = CONVERSATIONS_PAGE_SIZE) -> ConversationsPage:
        # No cursor is valid across all four sources, so the merged view is
        # never paginated; each source is already capped at page_size.
        return ConversationsPage(items=[], cursor=None)

    def on_source_updated(self, source: ConversationSource, records: Iterable[ConversationRecord]) -> None:
        if not self._active:
            return
        self._buckets[source] = list(records)
        self._states[source] = SourceState.ACTIVE
        self._merge_and_emit()

    def _merge_and_emit(self) -> None:
        merged = merge_conversations(self._buckets[source] for source in SOURCE_ORDER)
        self._run_id += 1
        run_id = self._run_id
        self._on_snapshot(ConversationsPage(items=merged, cursor=None))
        if self._active and select_missing(merged, self._enrich_limit):
            self._spawn(self._enrich_and_emit(merged, run_id))

    async def _enrich_and_emit(self, items: List[ConversationRecord], run_id: int) -> None:
        previews = await resolve_previews(self._resolver, select_missing(items, self._enrich_limit))
        if not self._active or run_id != self._run_id:
            logger.debug("discarding stale enrichment run %s (current %s)", run_id, self._run_id)
            return
        self._on_snapshot(ConversationsPage(items=sort_conversations(apply_previews(items, previews)), cursor=None))

    async def _watch(self, source: ConversationSource) -> None:
        stream = self._conversation_repo.watch_by_field(source.value, self._user_id, self._page_size)
        try:
            while True:
                try:
                    docs = await anext(stream)
                except StopAsyncIteration:
                    return
                except Exception as exc:
                    self._on_watch_error(source, exc)
                    return
                if not self._active:
                    return
                try:
                    self.on_source_updated(source, normalize_conversations(docs))
                except Exception as exc:
                    logger.exception("applying update from %s failed for %s", source.value, self._user_id)
                    self._on_watch_error(source, exc)
                    return
        finally:
            await stream.aclose()

    async def _read_once(self, source: ConversationSource) -> None:
        try:
            docs = await self._conversation_repo.find_by_field(source.value, self._user_id, self._page_size)
        except Exception as exc:
            # this dataset shape may simply not exist
            logger.debug("one-shot read on %s failed for %s: %s", source.value, self._user_id, exc)
            self._states[source] = SourceState.ERROR
            return
        if not self._active:
            return
        try:
            self.on_source_updated(source, normalize_conversations(docs))
        except Exception:
            logger.exception("applying one-shot read on %s failed for %s", source.value, self._user_id)
            self._states[source] = SourceState.ERROR

    def _on_watch_error(self, source: ConversationSource, exc: Exception) -> None:
        self._states[source] = SourceState.ERROR
        if not self._active:
            return
        self._watch_failures += 1
        logger.warning("live conversation source %s failed for %s: %s", source.value, self._user_id, exc)
        if self.failed and self._on_error is not None:
            self._on_error(SourceQueryError(source.value, exc))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
