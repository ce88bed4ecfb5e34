import asyncio

import pytest

from fakes import FakeConversationRepository, FakeMessageRepository, convo, settle
from rental_inbox.schemas.conversation import ConversationsPage, SessionState
from rental_inbox.services.conversation_feed import ConversationFeed
from rental_inbox.services.inbox_service import InboxService


class SpyInboxService(InboxService):

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.opened = []
        self.fetch_more_calls = 0

    def open_inbox(self, user_id, on_snapshot, on_error=None):
        aggregator = super().open_inbox(user_id, on_snapshot, on_error)
        self.opened.append(aggregator)
        return aggregator

    async def fetch_more(self, user_id, cursor, page_size=20) -> ConversationsPage:
        self.fetch_more_calls += 1
        return await super().fetch_more(user_id, cursor, page_size)


@pytest.fixture
def repos():
    conversation_repo = FakeConversationRepository(
        initial={
            "participant1_id": [convo("c1", at=20, text="hello")],
            "participant2_id": [],
        }
    )
    return conversation_repo, FakeMessageRepository()


@pytest.fixture
def service(repos) -> SpyInboxService:
    return SpyInboxService(*repos)


@pytest.mark.asyncio
async def test_waits_for_hydrated_session(service) -> None:
    states = []
    feed = ConversationFeed(service, on_change=states.append)

    feed.set_session(SessionState(user_id="u1", hydrated=False))
    await settle()

    assert service.opened == []
    assert feed.state.is_loading is False
    assert feed.state.error is None
    assert states[-1].items == []


@pytest.mark.asyncio
async def test_first_snapshot_clears_loading(service) -> None:
    feed = ConversationFeed(service)

    feed.set_session(SessionState(user_id="u1", hydrated=True))
    assert feed.state.is_loading is True
    await settle()

    assert [item.id for item in feed.state.items] == ["c1"]
    assert feed.state.is_loading is False
    assert feed.state.has_more is False
    assert feed.state.error is None
    feed.close()


@pytest.mark.asyncio
async def test_same_identity_does_not_resubscribe(service) -> None:
    feed = ConversationFeed(service)

    feed.set_session(SessionState(user_id="u1", hydrated=True))
    feed.set_session(SessionState(user_id="u1", hydrated=True))

    assert len(service.opened) == 1
    feed.close()


@pytest.mark.asyncio
async def test_identity_change_replaces_aggregator(service, repos) -> None:
    conversation_repo, _ = repos
    feed = ConversationFeed(service)

    feed.set_session(SessionState(user_id="u1", hydrated=True))
    await settle()
    first = service.opened[0]
    feed.set_session(SessionState(user_id="u2", hydrated=True))
    await settle()

    assert not first.is_active
    assert len(service.opened) == 2
    assert feed.user_id == "u2"
    assert ("participant1_id", "u1") in conversation_repo.closed
    assert ("participant1_id", "u2") in conversation_repo.watch_calls

    # updates for the previous identity no longer reach the feed
    conversation_repo.push("participant2_id", [convo("stale", text="x")], user_id="u1")
    await settle()
    assert "stale" not in [item.id for item in feed.state.items]
    feed.close()


@pytest.mark.asyncio
async def test_sign_out_clears_state(service) -> None:
    feed = ConversationFeed(service)
    feed.set_session(SessionState(user_id="u1", hydrated=True))
    await settle()

    feed.set_session(SessionState(user_id=None, hydrated=True))

    assert feed.state.items == []
    assert feed.state.has_more is False
    assert feed.state.is_loading is False
    assert not service.opened[0].is_active


@pytest.mark.asyncio
async def test_systemic_failure_sets_error() -> None:
    conversation_repo = FakeConversationRepository(
        initial={"participant1_id": RuntimeError("no index"), "participant2_id": RuntimeError("no index")}
    )
    feed = ConversationFeed(InboxService(conversation_repo, FakeMessageRepository()))

    feed.set_session(SessionState(user_id="u1", hydrated=True))
    await settle()

    assert feed.state.error is not None
    assert "no index" in feed.state.error
    assert feed.state.is_loading is False
    feed.close()


@pytest.mark.asyncio
async def test_systemic_error_survives_later_one_shot_snapshots() -> None:
    loop = asyncio.get_running_loop()
    participant_ids, participants = loop.create_future(), loop.create_future()
    conversation_repo = FakeConversationRepository(
        one_shot={"participantIds": participant_ids, "participants": participants},
        initial={"participant1_id": RuntimeError("no index"), "participant2_id": RuntimeError("no index")},
    )
    feed = ConversationFeed(InboxService(conversation_repo, FakeMessageRepository()))

    feed.set_session(SessionState(user_id="u1", hydrated=True))
    await settle()
    assert "no index" in feed.state.error

    participant_ids.set_result([convo("c9", text="still here")])
    participants.set_result([])
    await settle()

    assert [item.id for item in feed.state.items] == ["c9"]
    assert feed.state.error is not None
    assert "no index" in feed.state.error
    assert feed.state.is_loading is False
    feed.close()


@pytest.mark.asyncio
async def test_load_more_is_a_no_op_for_merged_view(service) -> None:
    states = []
    feed = ConversationFeed(service, on_change=states.append)
    feed.set_session(SessionState(user_id="u1", hydrated=True))
    await settle()
    before = list(states)

    await feed.load_more()

    assert service.fetch_more_calls == 0
    assert states == before
    feed.close()


@pytest.mark.asyncio
async def test_load_more_without_identity(service) -> None:
    feed = ConversationFeed(service)

    await feed.load_more()

    assert service.fetch_more_calls == 0
