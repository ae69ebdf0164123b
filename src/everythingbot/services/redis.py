import logging
from typing import List

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..settings import get_settings

logger = logging.getLogger(__name__)


class RedisCrudService:
    """Async CRUD operations against a Redis instance."""

    def __init__(self, url: str) -> None:
        """Create a Redis client for the given URL (e.g. redis://localhost:6379/0)."""
        self._url = url
        self._client: Redis | None = None

    async def connect(self) -> None:
        """Establish connection to Redis. Idempotent."""
        if self._client is not None:
            return
        self._client = Redis.from_url(
            self._url,
            decode_responses=True,
        )
        try:
            await self._client.ping()
            logger.info("Redis connection established: %s", self._url.split("@")[-1])
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis ping failed: %s", e)
            await self._client.aclose()
            self._client = None
            raise

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    @property
    def client(self) -> Redis | None:
        """Return the underlying Redis client, or None if not connected."""
        return self._client

    async def set(
        self,
        key: str,
        value: str,
        ttl_seconds: int | None = None,
    ) -> bool:
        """Set key to value. If ttl_seconds is set, the key will expire. Returns True on success."""
        if self._client is None:
            return False
        try:
            if ttl_seconds is not None and ttl_seconds > 0:
                await self._client.setex(key, ttl_seconds, value)
            else:
                await self._client.set(key, value)
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis set %s failed: %s", key, e)
            return False

    async def getdel(self, key: str) -> str | None:
        """Atomically read and remove key. Returns None if missing or on error."""
        if self._client is None:
            return None
        try:
            value = await self._client.getdel(key)
            return value if value is None else str(value)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis getdel %s failed: %s", key, e)
            return None

    async def append(
        self,
        key: str,
        value: str,
        ttl_seconds: int | None = None,
        max_length: int | None = None,
    ) -> bool:
        """Push value onto the list at key, refreshing its TTL.

        With ``max_length`` set, only the newest ``max_length`` items are kept.
        Returns True on success.
        """
        if self._client is None:
            return False
        try:
            await self._client.rpush(key, value)
            if max_length is not None and max_length > 0:
                await self._client.ltrim(key, -max_length, -1)
            if ttl_seconds is not None and ttl_seconds > 0:
                await self._client.expire(key, ttl_seconds)
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis append %s failed: %s", key, e)
            return False

    async def tail(self, key: str, count: int) -> List[str]:
        """Return the last ``count`` items of the list at key (oldest first)."""
        if self._client is None or count <= 0:
            return []
        try:
            values = await self._client.lrange(key, -count, -1)
            return [str(v) for v in values]
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis tail %s failed: %s", key, e)
            return []

    async def remove(self, key: str, value: str) -> int:
        """Remove every list item at key equal to value. Returns the number removed."""
        if self._client is None:
            return 0
        try:
            return int(await self._client.lrem(key, 0, value))
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis remove from %s failed: %s", key, e)
            return 0


def get_redis_crud_service() -> RedisCrudService | None:
    """Return a Redis CRUD service if redis_url is configured, else None."""
    settings = get_settings()
    if not settings.redis_url or not settings.redis_url.strip():
        return None
    return RedisCrudService(settings.redis_url.strip())
