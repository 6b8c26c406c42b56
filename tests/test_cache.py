"""
Tests for vault cache backends.

Tests cover:
- MemoryCache get/set/delete, TTL expiry and copy semantics
- MemoryCache eviction task lifecycle
- RedisCache connection close on stop
- RedisCache key prefixing and value encoding
- build_cache backend selection
"""
import asyncio
from unittest.mock import AsyncMock

import orjson
import pytest

from secret_context.vault.cache import MemoryCache, RedisCache, build_cache
from secret_context.vault.config import VaultConfig


class TestMemoryCache:
    """Tests for the in-process cache."""

    @pytest.mark.asyncio
    async def test_set_get_delete(self):
        cache = MemoryCache()
        await cache.set("k", {"a": 1}, 60)
        assert await cache.get("k") == {"a": 1}
        await cache.delete("k")
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_missing_key(self):
        assert await MemoryCache().get("nope") is None

    @pytest.mark.asyncio
    async def test_delete_missing_key_is_noop(self):
        await MemoryCache().delete("nope")

    @pytest.mark.asyncio
    async def test_expired_entry_not_returned(self):
        """Test an entry past its TTL is a miss and is dropped."""
        cache = MemoryCache()
        await cache.set("k", "v", 0)
        assert await cache.get("k") is None
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_returns_copies(self):
        """Test mutating a returned value does not change the cache."""
        cache = MemoryCache()
        original = {"maps": {"a": 1}}
        await cache.set("k", original, 60)
        original["maps"]["a"] = 2
        first = await cache.get("k")
        first["maps"]["a"] = 3
        assert await cache.get("k") == {"maps": {"a": 1}}

    @pytest.mark.asyncio
    async def test_purge_expired(self):
        cache = MemoryCache()
        await cache.set("old", 1, 0)
        await cache.set("fresh", 2, 60)
        assert cache.purge_expired() == 1
        assert len(cache) == 1
        assert await cache.get("fresh") == 2

    @pytest.mark.asyncio
    async def test_eviction_task(self):
        """Test the background task removes expired keys."""
        cache = MemoryCache(cleanup_interval=0.01)
        await cache.set("old", 1, 0)
        await cache.start()
        try:
            for _ in range(50):
                if len(cache) == 0:
                    break
                await asyncio.sleep(0.01)
            assert len(cache) == 0
        finally:
            await cache.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        await MemoryCache().stop()

    @pytest.mark.asyncio
    async def test_running(self):
        cache = MemoryCache()
        assert not cache.running
        await cache.start()
        assert cache.running
        await cache.start()
        assert cache.running
        await cache.stop()
        assert not cache.running


class TestRedisCache:
    """Tests for the redis adapter."""

    @pytest.fixture
    def redis(self):
        return AsyncMock()

    @pytest.mark.asyncio
    async def test_set_uses_setex(self, redis):
        cache = RedisCache(redis, prefix="cv:")
        await cache.set("ctx", {"a": 1}, 300)
        redis.setex.assert_awaited_once_with("cv:ctx", 300, orjson.dumps({"a": 1}))

    @pytest.mark.asyncio
    async def test_get_decodes(self, redis):
        redis.get.return_value = b'{"a":1}'
        cache = RedisCache(redis)
        assert await cache.get("ctx") == {"a": 1}
        redis.get.assert_awaited_once_with("vault:ctx")

    @pytest.mark.asyncio
    async def test_get_miss(self, redis):
        redis.get.return_value = None
        assert await RedisCache(redis).get("ctx") is None

    @pytest.mark.asyncio
    async def test_delete(self, redis):
        await RedisCache(redis).delete("ctx")
        redis.delete.assert_awaited_once_with("vault:ctx")

    @pytest.mark.asyncio
    async def test_stop_closes_client(self, redis):
        cache = RedisCache(redis)
        await cache.start()
        await cache.stop()
        redis.aclose.assert_awaited_once_with()


class TestBuildCache:
    """Tests for configuration-driven backend selection."""

    def test_memory_default(self):
        config = VaultConfig(encryption_key="a" * 32)
        assert isinstance(build_cache(config), MemoryCache)

    @pytest.mark.asyncio
    async def test_memory_cleanup_interval(self):
        """Test the configured interval drives eviction once started."""
        config = VaultConfig(encryption_key="a" * 32, cache_cleanup_interval=0.01)
        cache = build_cache(config)
        await cache.set("old", 1, 0)
        await cache.start()
        try:
            for _ in range(50):
                if len(cache) == 0:
                    break
                await asyncio.sleep(0.01)
            assert len(cache) == 0
        finally:
            await cache.stop()

    def test_redis(self):
        config = VaultConfig(
            encryption_key="a" * 32,
            cache_backend="redis",
            redis_url="redis://localhost:6379/0",
        )
        assert isinstance(build_cache(config), RedisCache)
