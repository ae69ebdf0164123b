import json
import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from everythingbot.exceptions import PersistenceError
from everythingbot.models import ConversationRecord
from everythingbot.services.conversation_store import (
    InMemoryConversationStore,
    RedisConversationStore,
    build_conversation_store,
)
from everythingbot.services.redis import RedisCrudService


@pytest.fixture
def mock_redis_crud() -> MagicMock:
    """Mock Redis CRUD with async append/tail/remove."""
    m = MagicMock(spec=RedisCrudService)
    m.append = AsyncMock(return_value=True)
    m.tail = AsyncMock(return_value=[])
    m.remove = AsyncMock(return_value=1)
    return m


@pytest.fixture
def redis_store(mock_redis_crud: MagicMock) -> RedisConversationStore:
    """RedisConversationStore with mocked Redis and TTL 3600."""
    return RedisConversationStore(redis_crud=mock_redis_crud, ttl_seconds=3600)


@pytest.mark.asyncio
async def test_append_serializes_record(redis_store: RedisConversationStore) -> None:
    """append writes the record as JSON under conversation:<chat> with TTL."""
    record = ConversationRecord(
        is_from_bot=True, sender="Bot", text="Hello", external_message_id=7, timestamp=1.0
    )
    await redis_store.append("chat-1", record)
    redis_store._redis.append.assert_called_once()
    args, kwargs = redis_store._redis.append.call_args
    assert args[0] == "conversation:chat-1"
    assert json.loads(args[1]) == {
        "is_from_bot": True,
        "sender": "Bot",
        "text": "Hello",
        "external_message_id": 7,
        "timestamp": 1.0,
    }
    assert kwargs["ttl_seconds"] == 3600
    assert kwargs["max_length"] == 1000


@pytest.mark.asyncio
async def test_append_failure_raises(redis_store: RedisConversationStore) -> None:
    """A failed Redis write surfaces as PersistenceError."""
    redis_store._redis.append.return_value = False
    with pytest.raises(PersistenceError):
        await redis_store.append("chat-1", ConversationRecord(False, "u", "hi"))


@pytest.mark.asyncio
async def test_recent_skips_invalid_and_old(redis_store: RedisConversationStore) -> None:
    """recent drops unparseable entries and records outside the window."""
    now = time.time()
    redis_store._redis.tail.return_value = [
        json.dumps({"is_from_bot": False, "sender": "a", "text": "old", "timestamp": now - 10 * 3600}),
        "not json",
        json.dumps({"is_from_bot": False, "sender": "b", "text": "new", "timestamp": now - 60}),
    ]
    records = await redis_store.recent("chat-1", hours=2, limit=10)
    assert [r.text for r in records] == ["new"]
    redis_store._redis.tail.assert_called_once_with("conversation:chat-1", 10)


@pytest.mark.asyncio
async def test_in_memory_store_limit_and_window() -> None:
    """In-memory store returns the newest records within the window."""
    store = InMemoryConversationStore()
    now = time.time()
    await store.append("c", ConversationRecord(False, "u", "ancient", timestamp=now - 48 * 3600))
    for i in range(5):
        await store.append("c", ConversationRecord(False, "u", f"m{i}", timestamp=now))
    await store.append("other", ConversationRecord(False, "u", "elsewhere", timestamp=now))

    assert [r.text for r in await store.recent("c", hours=24, limit=3)] == ["m2", "m3", "m4"]
    assert [r.text for r in await store.recent("c", hours=72, limit=10)][0] == "ancient"
    assert await store.recent("missing", hours=24, limit=10) == []


@pytest.mark.asyncio
async def test_in_memory_store_caps_history() -> None:
    """Only the newest max_records records per chat are kept."""
    store = InMemoryConversationStore(max_records=3)
    now = time.time()
    for i in range(5):
        await store.append("c", ConversationRecord(False, "u", f"m{i}", timestamp=now))

    assert [r.text for r in await store.recent("c", hours=24, limit=10)] == ["m2", "m3", "m4"]


@pytest.mark.asyncio
async def test_in_memory_store_remove() -> None:
    store = InMemoryConversationStore()
    now = time.time()
    await store.append("c", ConversationRecord(True, "Bot", "one", external_message_id=1, timestamp=now))
    await store.append("c", ConversationRecord(False, "u", "two", external_message_id=2, timestamp=now))
    await store.append("c", ConversationRecord(True, "Bot", "three", external_message_id=3, timestamp=now))

    assert await store.remove("c", [1, 3, 99]) == 2
    assert [r.text for r in await store.recent("c", hours=24, limit=10)] == ["two"]
    assert await store.remove("missing", [1]) == 0


@pytest.mark.asyncio
async def test_redis_store_remove_matches_message_ids(redis_store: RedisConversationStore) -> None:
    """remove deletes the raw entries whose external_message_id matches."""
    keep = json.dumps({"is_from_bot": False, "sender": "u", "text": "hi", "external_message_id": 5})
    drop = json.dumps({"is_from_bot": True, "sender": "Bot", "text": "yo", "external_message_id": 6})
    redis_store._redis.tail.return_value = [keep, "not json", drop]

    assert await redis_store.remove("chat-1", [6]) == 1
    redis_store._redis.tail.assert_called_once_with("conversation:chat-1", 1000)
    redis_store._redis.remove.assert_called_once_with("conversation:chat-1", drop)


def test_build_conversation_store_picks_backend(mock_redis_crud: MagicMock) -> None:
    """Redis is used only when a connected CRUD service is passed."""
    assert isinstance(build_conversation_store(None, 60), InMemoryConversationStore)
    mock_redis_crud.client = None
    assert isinstance(build_conversation_store(mock_redis_crud, 60), InMemoryConversationStore)
    mock_redis_crud.client = MagicMock()
    assert isinstance(build_conversation_store(mock_redis_crud, 60), RedisConversationStore)
