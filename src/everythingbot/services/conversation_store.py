import json
import logging
import time
from collections import defaultdict
from dataclasses import asdict
from typing import Any, Dict, Iterable, List, Protocol

from ..exceptions import PersistenceError
from ..models import ConversationRecord
from .redis import RedisCrudService

logger = logging.getLogger(__name__)

CONVERSATION_KEY_PREFIX = "conversation:"


def _record_to_dict(record: ConversationRecord) -> Dict[str, Any]:
    """Serialize a ConversationRecord to a JSON-serializable dict."""
    return asdict(record)


def _dict_to_record(data: Dict[str, Any]) -> ConversationRecord:
    """Build a ConversationRecord from a dict (e.g. from Redis)."""
    return ConversationRecord(
        is_from_bot=bool(data.get("is_from_bot", False)),
        sender=data.get("sender", ""),
        text=data.get("text", ""),
        external_message_id=data.get("external_message_id"),
        timestamp=float(data.get("timestamp", 0.0)),
    )


class ConversationStore(Protocol):
    async def append(self, chat_id: str, record: ConversationRecord) -> None: ...

    async def recent(
        self, chat_id: str, hours: int, limit: int
    ) -> List[ConversationRecord]: ...

    async def remove(self, chat_id: str, message_ids: Iterable[int]) -> int: ...


def _within(records: List[ConversationRecord], hours: int) -> List[ConversationRecord]:
    cutoff = time.time() - hours * 3600
    return [r for r in records if r.timestamp >= cutoff]


class InMemoryConversationStore:
    """Process-local conversation history, used when Redis is not configured.

    Each chat keeps at most ``max_records`` records; older ones are dropped.
    """

    def __init__(self, max_records: int = 1000) -> None:
        self._records: Dict[str, List[ConversationRecord]] = defaultdict(list)
        self._max_records = max_records

    async def append(self, chat_id: str, record: ConversationRecord) -> None:
        records = self._records[chat_id]
        records.append(record)
        if self._max_records > 0 and len(records) > self._max_records:
            del records[: len(records) - self._max_records]

    async def recent(
        self, chat_id: str, hours: int, limit: int
    ) -> List[ConversationRecord]:
        if limit <= 0:
            return []
        return _within(self._records.get(chat_id, [])[-limit:], hours)

    async def remove(self, chat_id: str, message_ids: Iterable[int]) -> int:
        ids = set(message_ids)
        records = self._records.get(chat_id, [])
        kept = [r for r in records if r.external_message_id not in ids]
        removed = len(records) - len(kept)
        if removed:
            self._records[chat_id] = kept
        return removed


class RedisConversationStore:
    """Append-only chat history in a Redis list per chat, with TTL and a length cap."""

    def __init__(
        self,
        redis_crud: RedisCrudService,
        ttl_seconds: int,
        max_records: int = 1000,
    ) -> None:
        self._redis = redis_crud
        self._ttl = ttl_seconds
        self._max_records = max_records

    def _key(self, chat_id: str) -> str:
        return f"{CONVERSATION_KEY_PREFIX}{chat_id}"

    async def append(self, chat_id: str, record: ConversationRecord) -> None:
        """Append record to the chat history. Raises PersistenceError on failure."""
        try:
            payload = json.dumps(_record_to_dict(record))
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Record serialization failed for {chat_id}: {e}") from e
        ok = await self._redis.append(
            self._key(chat_id),
            payload,
            ttl_seconds=self._ttl,
            max_length=self._max_records,
        )
        if not ok:
            raise PersistenceError(f"Could not append record for chat {chat_id}")

    async def recent(
        self, chat_id: str, hours: int, limit: int
    ) -> List[ConversationRecord]:
        """Load the last ``limit`` records no older than ``hours``. Skips invalid entries."""
        records: List[ConversationRecord] = []
        for raw in await self._redis.tail(self._key(chat_id), limit):
            try:
                records.append(_dict_to_record(json.loads(raw)))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                logger.warning("Invalid conversation record for %s: %s", chat_id, e)
        return _within(records, hours)

    async def remove(self, chat_id: str, message_ids: Iterable[int]) -> int:
        """Drop the records whose external message id is in ``message_ids``."""
        ids = set(message_ids)
        key = self._key(chat_id)
        removed = 0
        for raw in await self._redis.tail(key, self._max_records):
            try:
                message_id = json.loads(raw).get("external_message_id")
            except (json.JSONDecodeError, AttributeError):
                continue
            if message_id in ids:
                removed += await self._redis.remove(key, raw)
        return removed


def build_conversation_store(
    redis_crud: RedisCrudService | None, ttl_seconds: int, max_records: int = 1000
) -> ConversationStore:
    """Use Redis when a connected CRUD service is given; else keep history in memory."""
    if redis_crud is None or redis_crud.client is None:
        logger.info("Conversation store: in-memory")
        return InMemoryConversationStore(max_records=max_records)
    logger.info("Conversation store: Redis")
    return RedisConversationStore(
        redis_crud=redis_crud, ttl_seconds=ttl_seconds, max_records=max_records
    )
