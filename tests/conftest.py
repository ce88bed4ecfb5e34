import logging

import pytest

from fakes import FakeConversationRepository, FakeMessageRepository


for _name in ("asyncio", "pymongo"):
    logging.getLogger(_name).setLevel(logging.WARNING)


@pytest.fixture
def conversation_repo() -> FakeConversationRepository:
    return FakeConversationRepository()


@pytest.fixture
def message_repo() -> FakeMessageRepository:
    return FakeMessageRepository()
