"""
Shared key/value store clients.

Every coordination primitive (locks, rate limits, response cache) talks to
the store through the same four calls. ``set`` with ``only_if_absent`` must
be atomic: it is the compare-and-swap the mutex relies on.
"""

import json
import time
from typing import Any, Dict, Optional, Protocol, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.errors import StoreUnavailableError
from shared.logging import get_logger


class SharedStore(Protocol):
    """Key/value store shared by every process of the fleet."""

    async def get(self, key: str) -> Optional[Any]:
        ...

    async def set(self, key: str, value: Any, *, ttl_ms: Optional[int] = None,
                  only_if_absent: bool = False) -> bool:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        ...


class RedisStore:
    """Shared store backed by Redis.

    Values are JSON encoded. Any Redis error (connection refused, timeout,
    protocol error) is surfaced as StoreUnavailableError so callers only
    have one failure type to degrade on.
    """

    def __init__(self, redis_url: str, socket_timeout: float = 1.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.logger = get_logger("coordination.store")
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                socket_timeout=self.socket_timeout,
                socket_connect_timeout=self.socket_timeout,
            )
        return self._redis

    async def get(self, key: str) -> Optional[Any]:
        """Get and decode a value, None when absent."""
        try:
            redis_client = await self._get_redis()
            raw = await redis_client.get(key)
        except RedisError as e:
            raise StoreUnavailableError(details={"operation": "get", "error": str(e)}) from e

        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return json.loads(raw)

    async def set(self, key: str, value: Any, *, ttl_ms: Optional[int] = None,
                  only_if_absent: bool = False) -> bool:
        """SET key value [PX ttl] [NX]; False when NX prevented the write."""
        payload = json.dumps(value)
        try:
            redis_client = await self._get_redis()
            result = await redis_client.set(
                key,
                payload,
                px=int(ttl_ms) if ttl_ms is not None else None,
                nx=only_if_absent,
            )
        except RedisError as e:
            raise StoreUnavailableError(details={"operation": "set", "error": str(e)}) from e
        return bool(result)

    async def delete(self, key: str) -> None:
        """Delete a key."""
        try:
            redis_client = await self._get_redis()
            await redis_client.delete(key)
        except RedisError as e:
            raise StoreUnavailableError(details={"operation": "delete", "error": str(e)}) from e

    async def ping(self) -> bool:
        """Check connectivity."""
        try:
            redis_client = await self._get_redis()
            return bool(await redis_client.ping())
        except RedisError as e:
            raise StoreUnavailableError(details={"operation": "ping", "error": str(e)}) from e

    async def close(self) -> None:
        """Close the connection pool."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("Closed Redis connection", redis_url=self.redis_url)


class MemoryStore:
    """In-process store with millisecond TTLs.

    Only coordinates tasks of a single process; meant for local runs and
    tests. Operations never await, so each one is atomic under asyncio.
    """

    def __init__(self):
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    def _live_entry(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and time.monotonic() >= expires_at:
            del self._data[key]
            return None
        return entry

    async def get(self, key: str) -> Optional[Any]:
        entry = self._live_entry(key)
        if entry is None:
            return None
        return json.loads(entry[0])

    async def set(self, key: str, value: Any, *, ttl_ms: Optional[int] = None,
                  only_if_absent: bool = False) -> bool:
        if only_if_absent and self._live_entry(key) is not None:
            return False
        expires_at = time.monotonic() + ttl_ms / 1000 if ttl_ms is not None else None
        self._data[key] = (json.dumps(value), expires_at)
        return True

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._data.clear()
