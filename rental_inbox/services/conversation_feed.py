import logging
from typing import Any, Callable, Optional

from rental_inbox.config import CONVERSATIONS_PAGE_SIZE
from rental_inbox.exceptions import SourceQueryError
from rental_inbox.schemas.conversation import ConversationsPage, FeedState, SessionState
from rental_inbox.services.conversation_aggregator import ConversationAggregator
from rental_inbox.services.inbox_service import InboxService


logger = logging.getLogger(__name__)

StateListener = Callable[[FeedState], Any]


class ConversationFeed:
    """
    Inbox state for one client: items plus loading/error/pagination flags.

    Follows the session signal: nothing is subscribed until the session is
    hydrated with a user id, a new user id replaces the running aggregator, and
    a signed-out session clears everything.
    """

    def __init__(self, service: InboxService, on_change: Optional[StateListener] = None, page_size: int = CONVERSATIONS_PAGE_SIZE) -> None:
        self._service = service
        self._on_change = on_change
        self._page_size = page_size
        self._state = FeedState()
        self._session = SessionState()
        self._aggregator: Optional[ConversationAggregator] = None
        self._cursor: Optional[str] = None

    @property
    def state(self) -> FeedState:
        return self._state

    @property
    def user_id(self) -> Optional[str]:
        return self._aggregator.user_id if self._aggregator is not None else None

    def set_session(self, session: SessionState) -> None:
        self._session = session
        if not session.hydrated:
            # identity not known yet: same as signed out until the session hydrates
            self._teardown()
            self._cursor = None
            self._update(items=[], has_more=False, is_loading=False, error=None)
            return
        if not session.user_id:
            self._teardown()
            self._cursor = None
            self._update(items=[], has_more=False, is_loading=False, error=None)
            return
        if self._aggregator is not None and self._aggregator.user_id == session.user_id:
            return

        self._teardown()
        self._cursor = None
        self._update(items=[], is_loading=True, has_more=True, error=None)
        aggregator: Optional[ConversationAggregator] = None

        def on_snapshot(page: ConversationsPage) -> None:
            if aggregator is not None and aggregator is not self._aggregator:
                return
            self._cursor = page.cursor
            changes = {"items": list(page.items), "has_more": False, "is_loading": False}
            # a systemic failure stays reported while surviving sources keep emitting
            if aggregator is None or not aggregator.failed:
                changes["error"] = None
            self._update(**changes)

        def on_error(exc: SourceQueryError) -> None:
            if aggregator is not None and aggregator is not self._aggregator:
                return
            self._update(error=str(exc), is_loading=False)

        # start() only schedules tasks, so no callback can run before the assignment below
        aggregator = self._service.open_inbox(session.user_id, on_snapshot, on_error)
        self._aggregator = aggregator
        logger.debug("feed subscribed for %s", session.user_id)

    async def load_more(self) -> None:
        user_id = self.user_id
        if not user_id or self._cursor is None or self._state.is_loading_more or not self._state.has_more:
            return

        self._update(is_loading_more=True)
        try:
            page = await self._service.fetch_more(user_id, self._cursor, self._page_size)
            if user_id != self.user_id:
                return
            self._cursor = page.cursor
            self._update(items=self._state.items + list(page.items), has_more=False)
        except Exception as exc:
            logger.warning("loading more conversations failed for %s: %s", user_id, exc)
            self._update(error=str(exc) or "Failed to load more conversations")
        finally:
            self._update(is_loading_more=False)

    def close(self) -> None:
        self._teardown()

    def _teardown(self) -> None:
        if self._aggregator is not None:
            self._aggregator.dispose()
            self._aggregator = None

    def _update(self, **changes: Any) -> None:
        self._state = self._state.model_copy(update=changes)
        if self._on_change is not None:
            self._on_change(self._state)
