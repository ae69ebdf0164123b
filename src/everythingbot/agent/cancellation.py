"""Cooperative cancellation of running sessions.

A ``/cancel`` command records the chat id; the orchestrator consumes the
flag at the next iteration boundary. In-flight reasoning or tool calls are
not interrupted.

The in-memory registry only sees requests made to the same process. Deploy
more than one instance behind the webhook and the flag has to live in a
shared store instead, which is what ``RedisCancellationRegistry`` is for.
"""

import logging
import threading
from typing import Protocol, Set

from ..services.redis import RedisCrudService

logger = logging.getLogger(__name__)

CANCEL_KEY_PREFIX = "cancel:"


class CancellationRegistry(Protocol):
    async def request(self, session_id: str) -> None: ...

    async def consume(self, session_id: str) -> bool: ...


class InMemoryCancellationRegistry:
    def __init__(self) -> None:
        self._pending: Set[str] = set()
        self._lock = threading.Lock()

    async def request(self, session_id: str) -> None:
        with self._lock:
            self._pending.add(session_id)
        logger.info("Cancellation requested for chat %s", session_id)

    async def consume(self, session_id: str) -> bool:
        """Return True and clear the flag if a cancellation was pending."""
        with self._lock:
            if session_id in self._pending:
                self._pending.discard(session_id)
                return True
            return False

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)


class RedisCancellationRegistry:
    """Cancellation flags shared across instances through Redis.

    Flags expire after ``ttl_seconds`` so a cancel sent while nothing is
    running does not linger forever.
    """

    def __init__(self, redis_crud: RedisCrudService, ttl_seconds: int) -> None:
        self._redis = redis_crud
        self._ttl = ttl_seconds

    def _key(self, session_id: str) -> str:
        return f"{CANCEL_KEY_PREFIX}{session_id}"

    async def request(self, session_id: str) -> None:
        ok = await self._redis.set(self._key(session_id), "1", ttl_seconds=self._ttl)
        if ok:
            logger.info("Cancellation requested for chat %s", session_id)
        else:
            logger.error("Could not record cancellation for chat %s", session_id)

    async def consume(self, session_id: str) -> bool:
        return await self._redis.getdel(self._key(session_id)) is not None


def build_cancellation_registry(
    redis_crud: RedisCrudService | None, ttl_seconds: int
) -> CancellationRegistry:
    if redis_crud is None or redis_crud.client is None:
        return InMemoryCancellationRegistry()
    return RedisCancellationRegistry(redis_crud=redis_crud, ttl_seconds=ttl_seconds)
