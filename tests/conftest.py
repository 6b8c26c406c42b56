"""Shared fixtures and in-memory collaborators for vault tests."""
import contextlib
from typing import Any, Optional
from unittest.mock import AsyncMock

import orjson
import pytest

from secret_context.vault.audit import AuditLog
from secret_context.vault.cache import MemoryCache
from secret_context.vault.crypto import EncryptionEngine, KeyRing
from secret_context.vault.service import SecretContextService
from secret_context.vault.store import SecretRecordStore


class FakeRowStore:
    """Row store keeping JSON copies of documents in a dict."""

    def __init__(self):
        self.rows: dict[str, dict[str, Any]] = {}
        self.fail = False
        self.reads = 0

    def _check(self) -> None:
        if self.fail:
            raise ConnectionError("row store unavailable")

    async def find_by_composite_key(
        self, workspace_id: str, user_id: str
    ) -> Optional[dict[str, Any]]:
        self._check()
        self.reads += 1
        for doc in self.rows.values():
            if doc["workspace_id"] == workspace_id and doc["user_id"] == user_id:
                return orjson.loads(orjson.dumps(doc))
        return None

    async def find_by_id(self, id: str) -> Optional[dict[str, Any]]:
        self._check()
        doc = self.rows.get(id)
        return orjson.loads(orjson.dumps(doc)) if doc else None

    async def insert(self, doc: dict[str, Any]) -> None:
        self._check()
        self.rows[doc["id"]] = orjson.loads(orjson.dumps(doc))

    async def update(self, id: str, doc: dict[str, Any]) -> None:
        self._check()
        self.rows[id] = orjson.loads(orjson.dumps(doc))


class FakeAuditSink:
    def __init__(self):
        self.entries = []
        self.fail = False

    async def append(self, entry) -> None:
        if self.fail:
            raise ConnectionError("audit sink unavailable")
        self.entries.append(entry)


class BrokenCache:
    """Cache backend whose every call fails."""

    async def get(self, key):
        raise ConnectionError("cache down")

    async def set(self, key, value, ttl):
        raise ConnectionError("cache down")

    async def delete(self, key):
        raise ConnectionError("cache down")


class FakePool:
    """asyncpg-style pool handing out a single mocked connection."""

    def __init__(self):
        self.conn = AsyncMock()

    @contextlib.asynccontextmanager
    async def acquire(self):
        yield self.conn


# scrypt key derivation is slow; derive each key once per session.

@pytest.fixture(scope="session")
def engine():
    return EncryptionEngine("test-key-for-encryption-testing", "1")


@pytest.fixture(scope="session")
def engine_v2():
    return EncryptionEngine("second-test-key-for-rotation", "2")


@pytest.fixture
def keyring(engine):
    return KeyRing(engine)


@pytest.fixture
def rows():
    return FakeRowStore()


@pytest.fixture
def audit_sink():
    return FakeAuditSink()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def store(rows, keyring, cache):
    return SecretRecordStore(rows, keyring, cache=cache)


@pytest.fixture
def service(store, keyring, audit_sink):
    return SecretContextService(store, keyring, AuditLog(audit_sink))
