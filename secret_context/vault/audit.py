"""
Vault Audit Log — Append-only record of secret access and mutation.

Entries carry SHA-256 hashes of values, never the values. Appending is
best-effort: a failing sink is logged and never breaks the operation that
was being audited.
"""
import logging
from typing import Any, Optional, Protocol

from .models import AuditLogEntry, AuditStatus

logger = logging.getLogger("secret_context.vault")


class AuditSink(Protocol):
    async def append(self, entry: AuditLogEntry) -> None: ...


_INSERT_AUDIT = """
INSERT INTO vault.audit_logs (
    id, workspace_id, user_id, operation, context_type, resource_key,
    old_value_hash, new_value_hash, status, error_message, timestamp
)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
"""


class PgAuditSink:
    """Audit sink over an asyncpg-compatible pool."""

    def __init__(self, db_pool: Any):
        self._db = db_pool

    async def append(self, entry: AuditLogEntry) -> None:
        async with self._db.acquire() as conn:
            await conn.execute(
                _INSERT_AUDIT,
                entry.id, entry.workspace_id, entry.user_id, entry.operation,
                entry.context_kind, entry.resource_key,
                entry.old_value_hash, entry.new_value_hash,
                entry.status.value, entry.error_message, entry.timestamp,
            )


class AuditLog:
    """Builds audit entries and hands them to a sink."""

    def __init__(self, sink: AuditSink):
        self._sink = sink

    async def record(
        self,
        workspace_id: str,
        user_id: str,
        operation: str,
        resource_key: str,
        status: AuditStatus = AuditStatus.SUCCESS,
        old_value_hash: Optional[str] = None,
        new_value_hash: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Optional[AuditLogEntry]:
        """Append one entry.

        Returns:
            The entry, or None if the sink rejected it.
        """
        entry = AuditLogEntry(
            workspace_id=workspace_id,
            user_id=user_id,
            operation=operation,
            resource_key=resource_key,
            status=status,
            old_value_hash=old_value_hash,
            new_value_hash=new_value_hash,
            error_message=error_message,
        )
        try:
            await self._sink.append(entry)
        except Exception as err:
            logger.error(
                "Failed to write audit entry op=%s key=%s user=%s: %s",
                operation, resource_key, user_id, err,
            )
            return None
        return entry
