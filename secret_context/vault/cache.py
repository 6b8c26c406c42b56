"""
Vault Cache — Time-bounded copies of secret context documents.

Backends implement the async ``get`` / ``set`` / ``delete`` contract plus a
``start`` / ``stop`` lifecycle for background work and connections.
Values are stored serialized, so a cached document is always a copy and
never shares state with the caller. Error handling is left to the caller
(see ``SecretRecordStore``), which degrades any backend failure to a miss.
"""
import time
import asyncio
import logging
import contextlib
from typing import Any, Optional, Protocol

import orjson
from redis import asyncio as aioredis

from .config import VaultConfig

logger = logging.getLogger("secret_context.vault")


class CacheBackend(Protocol):
    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any, ttl: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


class MemoryCache:
    """In-process TTL cache.

    Expired keys are never returned. Between ``start()`` and ``stop()`` a
    background task purges them every ``cleanup_interval`` seconds, so keys
    that are never read again do not accumulate.
    """

    def __init__(self, cleanup_interval: float = 60.0):
        self._entries: dict[str, tuple[float, bytes]] = {}
        self._cleanup_interval = cleanup_interval
        self._cleanup_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def running(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires, payload = entry
        if expires <= time.monotonic():
            self._entries.pop(key, None)
            return None
        return orjson.loads(payload)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        self._entries[key] = (time.monotonic() + ttl, orjson.dumps(value))

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def purge_expired(self) -> int:
        """Remove expired keys. Returns the number removed."""
        now = time.monotonic()
        expired = [k for k, (expires, _) in self._entries.items() if expires <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def start(self) -> None:
        """Start the eviction task."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
            logger.debug("Vault cache eviction task started")

    async def stop(self) -> None:
        """Stop the eviction task."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._cleanup_task
            self._cleanup_task = None
            logger.debug("Vault cache eviction task stopped")

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval)
            removed = self.purge_expired()
            if removed:
                logger.debug("Vault cache evicted %d expired key(s)", removed)


class RedisCache:
    """Cache backend over a ``redis.asyncio`` client."""

    def __init__(self, redis: Any, prefix: str = "vault:"):
        self._redis = redis
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "vault:") -> "RedisCache":
        return cls(aioredis.from_url(url), prefix=prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> Optional[Any]:
        raw = await self._redis.get(self._key(key))
        if raw is None:
            return None
        return orjson.loads(raw)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        await self._redis.setex(self._key(key), ttl, orjson.dumps(value))

    async def delete(self, key: str) -> None:
        await self._redis.delete(self._key(key))

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        await self._redis.aclose()


def build_cache(config: VaultConfig) -> CacheBackend:
    """Create the cache backend selected by configuration.

    The backend's background work begins with ``start()``, which
    :meth:`SecretContextService.start` calls.
    """
    if config.cache_backend == "redis":
        return RedisCache.from_url(config.redis_url)
    return MemoryCache(cleanup_interval=config.cache_cleanup_interval)
