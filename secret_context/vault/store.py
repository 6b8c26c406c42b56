"""
Secret Record Store — Durable secret contexts behind a read-through cache.

One document per (workspace_id, user_id) lives in the row store. Reads check
the cache first and fill it on a miss; writes persist the whole document and
then delete the cache entry so the next read repopulates it.

Security Note:
    Documents handed to the row store carry per-entry envelopes. When
    document encryption is enabled the secret maps are additionally
    wrapped with field-selective encryption before they leave the process.
"""
import logging
from typing import Any, Iterable, Optional, Protocol

import orjson
from pydantic import ValidationError

from .cache import CacheBackend
from .crypto import (
    ENCRYPTED_FIELDS_KEY,
    ENCRYPTED_JSON_FIELDS_KEY,
    KeyRing,
    is_envelope,
)
from .exceptions import NotFoundError, StoreError
from .models import SecretContext

logger = logging.getLogger("secret_context.vault")

DEFAULT_CACHE_TTL = 300
DEFAULT_SENSITIVE_FIELDS = ("credentials", "ssh_keys", "certificates")

# ---------------------------------------------------------------------------
# Row store contract
# ---------------------------------------------------------------------------


class RowStore(Protocol):
    async def find_by_composite_key(
        self, workspace_id: str, user_id: str
    ) -> Optional[dict[str, Any]]: ...

    async def find_by_id(self, id: str) -> Optional[dict[str, Any]]: ...

    async def insert(self, doc: dict[str, Any]) -> None: ...

    async def update(self, id: str, doc: dict[str, Any]) -> None: ...


# ---------------------------------------------------------------------------
# SQL statements
# ---------------------------------------------------------------------------

_SELECT_BY_IDENTITY = """
SELECT document FROM vault.secret_contexts
WHERE workspace_id = $1 AND user_id = $2
"""

_SELECT_BY_ID = """
SELECT document FROM vault.secret_contexts
WHERE id = $1
"""

_INSERT_CONTEXT = """
INSERT INTO vault.secret_contexts (id, workspace_id, user_id, document)
VALUES ($1, $2, $3, $4::jsonb)
"""

_UPDATE_CONTEXT = """
UPDATE vault.secret_contexts
SET document = $2::jsonb, updated_at = NOW()
WHERE id = $1
"""


def _load_document(value: Any) -> dict[str, Any]:
    if isinstance(value, (str, bytes)):
        return orjson.loads(value)
    return dict(value)


class PgRowStore:
    """Row store over an asyncpg-compatible pool.

    Expected table::

        CREATE TABLE vault.secret_contexts (
            id UUID PRIMARY KEY,
            workspace_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            document JSONB NOT NULL,
            updated_at TIMESTAMPTZ DEFAULT NOW(),
            UNIQUE (workspace_id, user_id)
        );
    """

    def __init__(self, db_pool: Any):
        self._db = db_pool

    async def find_by_composite_key(
        self, workspace_id: str, user_id: str
    ) -> Optional[dict[str, Any]]:
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(_SELECT_BY_IDENTITY, workspace_id, user_id)
        return _load_document(row["document"]) if row else None

    async def find_by_id(self, id: str) -> Optional[dict[str, Any]]:
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(_SELECT_BY_ID, id)
        return _load_document(row["document"]) if row else None

    async def insert(self, doc: dict[str, Any]) -> None:
        async with self._db.acquire() as conn:
            await conn.execute(
                _INSERT_CONTEXT,
                doc["id"], doc["workspace_id"], doc["user_id"],
                orjson.dumps(doc).decode("utf-8"),
            )

    async def update(self, id: str, doc: dict[str, Any]) -> None:
        async with self._db.acquire() as conn:
            await conn.execute(
                _UPDATE_CONTEXT, id, orjson.dumps(doc).decode("utf-8"),
            )


# ---------------------------------------------------------------------------
# Secret record store
# ---------------------------------------------------------------------------


class SecretRecordStore:
    """Read-through cached access to secret context documents.

    Cache failures are logged and treated as misses; row store failures
    raise :class:`StoreError`.
    """

    def __init__(
        self,
        rows: RowStore,
        keyring: KeyRing,
        cache: Optional[CacheBackend] = None,
        cache_ttl: int = DEFAULT_CACHE_TTL,
        sensitive_fields: Iterable[str] = DEFAULT_SENSITIVE_FIELDS,
    ):
        self._rows = rows
        self._keyring = keyring
        self._cache = cache
        self._ttl = cache_ttl
        self._sensitive_fields = tuple(sensitive_fields)

    @property
    def cache(self) -> Optional[CacheBackend]:
        return self._cache

    async def start(self) -> None:
        """Start the cache backend's background work, if any."""
        if self._cache is not None:
            await self._cache.start()

    async def close(self) -> None:
        """Stop the cache backend and release its connections."""
        if self._cache is not None:
            await self._cache.stop()

    @staticmethod
    def cache_key(workspace_id: str, user_id: str) -> str:
        return f"secret_context:{workspace_id}:{user_id}"

    # ------------------------------------------------------------------
    # Cache helpers
    # ------------------------------------------------------------------

    async def _cache_get(self, key: str) -> Optional[Any]:
        """Read from cache. Returns None on miss, no cache or cache failure."""
        if self._cache is None:
            return None
        try:
            return await self._cache.get(key)
        except Exception as err:
            logger.warning("Vault cache get failed key=%s: %s", key, err)
            return None

    async def _cache_set(self, key: str, value: Any) -> None:
        if self._cache is None:
            return
        try:
            await self._cache.set(key, value, self._ttl)
        except Exception as err:
            logger.warning("Vault cache set failed key=%s: %s", key, err)

    async def _cache_delete(self, key: str) -> None:
        if self._cache is None:
            return
        try:
            await self._cache.delete(key)
        except Exception as err:
            logger.warning("Vault cache delete failed key=%s: %s", key, err)

    # ------------------------------------------------------------------
    # Document codec
    # ------------------------------------------------------------------

    def _encode(self, context: SecretContext) -> dict[str, Any]:
        doc = context.to_document()
        sealed = context.sealed_fields
        if self._sensitive_fields or sealed:
            doc = self._keyring.active.encrypt_fields(
                doc, [name for name in self._sensitive_fields if name not in sealed],
            )
            # sealed maps go back exactly as they were read
            doc.update(sealed)
            doc[ENCRYPTED_FIELDS_KEY] += list(sealed)
            doc[ENCRYPTED_JSON_FIELDS_KEY] += list(sealed)
        return doc

    def _decode(self, doc: dict[str, Any]) -> SecretContext:
        encrypted = doc.get(ENCRYPTED_FIELDS_KEY) or []
        sealed: dict[str, dict[str, Any]] = {}
        if encrypted:
            doc = self._keyring.decrypt_fields(doc)
            for name in encrypted:
                if is_envelope(doc.get(name)):
                    sealed[name] = doc.pop(name)
        if sealed:
            logger.error(
                "Secret context %s has unreadable fields: %s",
                doc.get("id"), sorted(sealed),
            )
        try:
            return SecretContext.from_document(doc, sealed=sealed)
        except ValidationError as err:
            raise StoreError(
                "read", f"invalid secret context document {doc.get('id')}"
            ) from err

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def read(self, workspace_id: str, user_id: str) -> Optional[SecretContext]:
        """Load a secret context, cache first.

        Returns:
            The context, or None if the identity has none.

        Raises:
            StoreError: If the row store read fails.

        A secret map that fails document-level decryption is sealed on the
        returned context (see :meth:`SecretContext.entries`), and such a
        context is not cached.
        """
        key = self.cache_key(workspace_id, user_id)
        cached = await self._cache_get(key)
        if cached is not None:
            try:
                return SecretContext.from_document(cached)
            except ValidationError:
                logger.warning("Discarding unreadable cached context key=%s", key)
                await self._cache_delete(key)

        try:
            doc = await self._rows.find_by_composite_key(workspace_id, user_id)
        except Exception as err:
            raise StoreError("read", str(err)) from err
        if doc is None:
            return None

        context = self._decode(doc)
        if not context.sealed_fields:
            await self._cache_set(key, context.to_document())
        return context

    async def require(self, workspace_id: str, user_id: str) -> SecretContext:
        """Like :meth:`read`, but a missing context raises NotFoundError."""
        context = await self.read(workspace_id, user_id)
        if context is None:
            raise NotFoundError(
                f"No secret context for workspace={workspace_id} user={user_id}"
            )
        return context

    async def write(self, context: SecretContext) -> None:
        """Persist a context (insert or update by id), then invalidate cache.

        Raises:
            StoreError: If the row store write fails.
        """
        doc = self._encode(context)
        try:
            if await self._rows.find_by_id(context.id) is not None:
                await self._rows.update(context.id, doc)
            else:
                await self._rows.insert(doc)
        except Exception as err:
            raise StoreError("write", str(err)) from err
        await self.invalidate(context.workspace_id, context.user_id)
        logger.debug(
            "Secret context saved: workspace=%s user=%s",
            context.workspace_id, context.user_id,
        )

    async def invalidate(self, workspace_id: str, user_id: str) -> None:
        await self._cache_delete(self.cache_key(workspace_id, user_id))
