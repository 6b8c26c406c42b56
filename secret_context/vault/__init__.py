"""Secret Context Vault — Encrypted per-identity secret storage.

Security Note (Threat Model):
    Secrets are decrypted in process memory while a caller uses them, and
    the derived encryption keys live in process memory for the process
    lifetime. A memory dump of the application process could expose them.
    This is an accepted limitation: mitigation requires HSM/secure
    enclave integration which is out of scope.
"""

from .audit import AuditLog, AuditSink, PgAuditSink
from .cache import CacheBackend, MemoryCache, RedisCache, build_cache
from .config import VaultConfig
from .crypto import EncryptionEngine, KeyRing
from .exceptions import (
    ExpiredError,
    IntegrityError,
    NotFoundError,
    StoreError,
    VaultError,
)
from .key_rotation import rotate_key_version
from .models import (
    AuditLogEntry,
    AuditStatus,
    EncryptedEnvelope,
    SecretContext,
    SecretKind,
    SecretListing,
    SSHKeyMaterial,
)
from .service import SecretContextService
from .store import PgRowStore, RowStore, SecretRecordStore

__all__ = [
    "AuditLog",
    "AuditLogEntry",
    "AuditSink",
    "AuditStatus",
    "CacheBackend",
    "EncryptedEnvelope",
    "EncryptionEngine",
    "ExpiredError",
    "IntegrityError",
    "KeyRing",
    "MemoryCache",
    "NotFoundError",
    "PgAuditSink",
    "PgRowStore",
    "RedisCache",
    "RowStore",
    "SecretContext",
    "SecretContextService",
    "SecretKind",
    "SecretListing",
    "SecretRecordStore",
    "SSHKeyMaterial",
    "StoreError",
    "VaultConfig",
    "VaultError",
    "build_cache",
    "rotate_key_version",
]
