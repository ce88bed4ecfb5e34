import pytest
from bson import ObjectId
from pymongo import DESCENDING

from rental_inbox.repositories.conversation_repository import ConversationRepository, conversation_keys
from rental_inbox.repositories.message_repository import MessageRepository


class FakeCursor:

    def __init__(self, docs):
        self.docs = docs
        self.sort_args = None
        self.limit_value = None

    def sort(self, *args):
        self.sort_args = args
        return self

    def limit(self, value):
        self.limit_value = value
        return self

    async def to_list(self, length):
        return [dict(doc) for doc in self.docs[:length]]


class FakeChangeStream:

    def __init__(self, changes):
        self._changes = list(changes)
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.closed = True
        return False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._changes:
            raise StopAsyncIteration
        return self._changes.pop(0)


class FakeCollection:

    def __init__(self, docs=None, changes=()):
        self.docs = docs or []
        self.changes = changes
        self.queries = []
        self.cursors = []
        self.watch_args = None
        self.stream = None

    def find(self, query):
        self.queries.append(query)
        cursor = FakeCursor(self.docs)
        self.cursors.append(cursor)
        return cursor

    async def find_one(self, query):
        self.queries.append(query)
        return dict(self.docs[0]) if self.docs else None

    def watch(self, pipeline, **kwargs):
        self.watch_args = (pipeline, kwargs)
        self.stream = FakeChangeStream(self.changes)
        return self.stream


class FakeDatabase(dict):

    def __getitem__(self, name):
        return self.setdefault(name, FakeCollection())


def test_conversation_keys_accept_both_id_forms() -> None:
    oid = ObjectId()

    assert conversation_keys(str(oid)) == [str(oid), oid]
    assert conversation_keys("legacy-id") == ["legacy-id"]


@pytest.mark.asyncio
async def test_find_by_field_uses_equality_and_limit() -> None:
    oid = ObjectId()
    db = FakeDatabase(conversations=FakeCollection([{"_id": oid, "participantIds": ["u1", "u2"]}]))

    items = await ConversationRepository(db).find_by_field("participantIds", "u1", limit=5)

    assert db["conversations"].queries == [{"participantIds": "u1"}]
    assert db["conversations"].cursors[0].limit_value == 5
    assert items[0]["_id"] == str(oid)


@pytest.mark.asyncio
async def test_watch_yields_initial_snapshot_then_one_per_change() -> None:
    collection = FakeCollection([{"_id": "c1", "participant1_id": "u1"}], changes=[{"operationType": "update"}, {"operationType": "delete"}])
    repo = ConversationRepository(FakeDatabase(conversations=collection))

    snapshots = [snapshot async for snapshot in repo.watch_by_field("participant1_id", "u1")]

    assert len(snapshots) == 3
    assert all(snapshot[0]["_id"] == "c1" for snapshot in snapshots)
    pipeline, kwargs = collection.watch_args
    assert kwargs == {"full_document": "updateLookup"}
    assert {"fullDocument.participant1_id": "u1"} in pipeline[0]["$match"]["$or"]
    assert {"operationType": {"$in": ["delete", "replace"]}} in pipeline[0]["$match"]["$or"]
    assert collection.stream.closed


@pytest.mark.asyncio
async def test_get_by_id_matches_string_and_object_id() -> None:
    oid = ObjectId()
    collection = FakeCollection([{"_id": oid, "participants": ["a", "b"]}])

    doc = await ConversationRepository(FakeDatabase(conversations=collection)).get_by_id(str(oid))

    assert doc["_id"] == str(oid)
    assert collection.queries == [{"_id": {"$in": [str(oid), oid]}}]


@pytest.mark.asyncio
async def test_find_latest_orders_by_existing_field() -> None:
    collection = FakeCollection([{"_id": "m1", "conversation_id": "c1", "content": "hi"}])
    repo = MessageRepository(FakeDatabase(messages=collection))

    doc = await repo.find_latest("c1", "created_at")

    assert doc["content"] == "hi"
    assert collection.queries == [{"conversation_id": {"$in": ["c1"]}, "created_at": {"$exists": True}}]
    assert collection.cursors[0].sort_args == ("created_at", DESCENDING)
    assert collection.cursors[0].limit_value == 1


@pytest.mark.asyncio
async def test_find_latest_unordered_and_empty() -> None:
    collection = FakeCollection([])
    repo = MessageRepository(FakeDatabase(messages=collection))

    assert await repo.find_latest("c1") is None
    assert collection.queries == [{"conversation_id": {"$in": ["c1"]}}]
    assert collection.cursors[0].sort_args is None
