"""
Unit tests for the shared store clients and registry.
"""

import asyncio
import json
import pytest
from unittest.mock import AsyncMock, patch

from redis.exceptions import ConnectionError as RedisConnectionError

from service_coordination.app.store import MemoryStore, RedisStore, StoreRegistry
from shared.config import BaseConfig
from shared.errors import StoreUnavailableError


class TestRedisStore:
    """Test cases for RedisStore."""

    @pytest.fixture
    def store(self):
        """Create RedisStore instance."""
        return RedisStore("redis://localhost:6379/0")

    @pytest.mark.asyncio
    async def test_get_decodes_json(self, store):
        """Test values are JSON decoded."""
        with patch.object(store, '_get_redis', new_callable=AsyncMock) as mock_get_redis:
            mock_redis = AsyncMock()
            mock_get_redis.return_value = mock_redis
            mock_redis.get.return_value = json.dumps({"total": 3}).encode()

            assert await store.get("ratelimit:/graphql:post") == {"total": 3}
            mock_redis.get.assert_called_once_with("ratelimit:/graphql:post")

    @pytest.mark.asyncio
    async def test_get_missing_key(self, store):
        """Test a missing key is None."""
        with patch.object(store, '_get_redis', new_callable=AsyncMock) as mock_get_redis:
            mock_redis = AsyncMock()
            mock_get_redis.return_value = mock_redis
            mock_redis.get.return_value = None

            assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_set_if_absent(self, store):
        """Test set maps to SET PX NX."""
        with patch.object(store, '_get_redis', new_callable=AsyncMock) as mock_get_redis:
            mock_redis = AsyncMock()
            mock_get_redis.return_value = mock_redis
            mock_redis.set.return_value = True

            result = await store.set("lock:order-1", 1, ttl_ms=600000, only_if_absent=True)

            assert result is True
            mock_redis.set.assert_called_once_with("lock:order-1", "1", px=600000, nx=True)

    @pytest.mark.asyncio
    async def test_set_if_absent_when_taken(self, store):
        """Test NX refusal is reported as False."""
        with patch.object(store, '_get_redis', new_callable=AsyncMock) as mock_get_redis:
            mock_redis = AsyncMock()
            mock_get_redis.return_value = mock_redis
            mock_redis.set.return_value = None

            assert await store.set("lock:order-1", 1, ttl_ms=1000, only_if_absent=True) is False

    @pytest.mark.asyncio
    async def test_set_without_ttl(self, store):
        """Test set without TTL sends no PX."""
        with patch.object(store, '_get_redis', new_callable=AsyncMock) as mock_get_redis:
            mock_redis = AsyncMock()
            mock_get_redis.return_value = mock_redis
            mock_redis.set.return_value = True

            await store.set("key", {"a": 1})

            mock_redis.set.assert_called_once_with("key", '{"a": 1}', px=None, nx=False)

    @pytest.mark.asyncio
    async def test_redis_errors_become_store_unavailable(self, store):
        """Test connection errors surface as StoreUnavailableError."""
        with patch.object(store, '_get_redis', new_callable=AsyncMock) as mock_get_redis:
            mock_redis = AsyncMock()
            mock_get_redis.return_value = mock_redis
            mock_redis.get.side_effect = RedisConnectionError("Connection refused")
            mock_redis.set.side_effect = RedisConnectionError("Connection refused")
            mock_redis.delete.side_effect = RedisConnectionError("Connection refused")
            mock_redis.ping.side_effect = RedisConnectionError("Connection refused")

            with pytest.raises(StoreUnavailableError) as exc_info:
                await store.get("key")
            assert exc_info.value.details["operation"] == "get"

            with pytest.raises(StoreUnavailableError):
                await store.set("key", 1, only_if_absent=True)
            with pytest.raises(StoreUnavailableError):
                await store.delete("key")
            with pytest.raises(StoreUnavailableError):
                await store.ping()

    @pytest.mark.asyncio
    async def test_close(self, store):
        """Test close releases the connection pool."""
        mock_redis = AsyncMock()
        store._redis = mock_redis

        await store.close()

        mock_redis.aclose.assert_called_once()
        assert store._redis is None


class TestMemoryStore:
    """Test cases for MemoryStore."""

    @pytest.fixture
    def store(self):
        """Create MemoryStore instance."""
        return MemoryStore()

    @pytest.mark.asyncio
    async def test_get_set_delete(self, store):
        """Test basic operations."""
        assert await store.get("key") is None
        assert await store.set("key", {"remaining": 2}) is True
        assert await store.get("key") == {"remaining": 2}

        await store.delete("key")
        assert await store.get("key") is None

    @pytest.mark.asyncio
    async def test_only_if_absent(self, store):
        """Test set-if-absent refuses to overwrite a live key."""
        assert await store.set("lock:a", 1, only_if_absent=True) is True
        assert await store.set("lock:a", 1, only_if_absent=True) is False

        await store.delete("lock:a")
        assert await store.set("lock:a", 1, only_if_absent=True) is True

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, store):
        """Test keys disappear after their TTL."""
        await store.set("lock:a", 1, ttl_ms=50, only_if_absent=True)
        assert await store.get("lock:a") == 1

        await asyncio.sleep(0.1)

        assert await store.get("lock:a") is None
        assert await store.set("lock:a", 1, ttl_ms=50, only_if_absent=True) is True

    @pytest.mark.asyncio
    async def test_values_are_copies(self, store):
        """Test stored values are not shared with the caller."""
        value = ["a"]
        await store.set("index", value)
        value.append("b")

        assert await store.get("index") == ["a"]

    @pytest.mark.asyncio
    async def test_ping_and_close(self, store):
        """Test ping and close."""
        await store.set("key", 1)
        assert await store.ping() is True

        await store.close()
        assert await store.get("key") is None


class TestStoreRegistry:
    """Test cases for StoreRegistry."""

    def test_redis_backend(self):
        """Test redis backend builds a RedisStore without connecting."""
        registry = StoreRegistry(BaseConfig(store_backend="redis", redis_url="redis://store:6379/1"))

        store = registry.init()

        assert isinstance(store, RedisStore)
        assert store.redis_url == "redis://store:6379/1"
        assert registry.enabled is True

    def test_memory_backend(self):
        """Test memory backend."""
        registry = StoreRegistry(BaseConfig(store_backend="memory"))

        assert isinstance(registry.store, MemoryStore)

    def test_none_backend(self):
        """Test disabled store yields None."""
        registry = StoreRegistry(BaseConfig(store_backend="none"))

        assert registry.store is None
        assert registry.enabled is False

    def test_init_is_idempotent(self):
        """Test the same store is handed out on every call."""
        registry = StoreRegistry(BaseConfig(store_backend="memory"))

        assert registry.init() is registry.init()
        assert registry.store is registry.init()

    def test_unknown_backend(self):
        """Test unknown backends are rejected."""
        with pytest.raises(ValueError):
            StoreRegistry(BaseConfig(store_backend="memcached"))

    @pytest.mark.asyncio
    async def test_close_keeps_handle(self):
        """Test close shuts connections but hands out the same store afterwards."""
        registry = StoreRegistry(BaseConfig(store_backend="redis"))
        store = registry.init()
        mock_redis = AsyncMock()
        store._redis = mock_redis

        await registry.close()

        mock_redis.aclose.assert_called_once()
        assert store._redis is None
        assert registry.store is store
        assert registry.init() is store
