"""
SecretContextService — Encrypted credentials, SSH keys and certificates per identity.

Provides the public API of the vault:
- ``store_credential`` / ``get_credential``
- ``store_ssh_key`` / ``get_ssh_key``
- ``store_certificate`` / ``get_certificate``
- ``list_secrets``: metadata only, never decrypts
- ``delete_secret``: remove one entry
- ``reencrypt_context``: move entries onto the active key version

Every write follows the same order: load-or-create the context, encrypt,
upsert the entry, persist (which invalidates the cache), then audit.
Cache, store and audit are not updated atomically.

Security Note:
    Never log plaintext or ciphertext values. Only log key names, operations,
    and identities. Errors raised to callers name the key, never the value.
"""
import asyncio
import logging
import weakref
from typing import Any, Optional, Union
from datetime import datetime

from .audit import AuditLog, AuditSink
from .cache import CacheBackend, build_cache
from .config import VaultConfig
from .crypto import EncryptionEngine, KeyRing
from .exceptions import ExpiredError, IntegrityError
from .models import (
    AuditStatus,
    CertificateInfo,
    CredentialInfo,
    EncryptedCertificate,
    EncryptedCredential,
    EncryptedSSHKey,
    SecretContext,
    SecretEntry,
    SecretKind,
    SecretListing,
    SSHKeyInfo,
    SSHKeyMaterial,
    dump_json,
)
from .store import DEFAULT_SENSITIVE_FIELDS, RowStore, SecretRecordStore

logger = logging.getLogger("secret_context.vault")

_LABELS = {
    SecretKind.CREDENTIAL: "credential",
    SecretKind.SSH_KEY: "SSH key",
    SecretKind.CERTIFICATE: "certificate",
}


def ssh_fingerprint(public_key: str) -> str:
    """First 32 hex chars of SHA-256(public_key).

    Not an OpenSSH-compatible fingerprint.
    """
    return EncryptionEngine.hash(public_key)[:32]


class SecretContextService:
    """Secret contexts for (workspace, user) identities.

    Mutations of one context are serialized within this process; writers in
    other processes can still race (last write wins at the row level).
    """

    def __init__(
        self,
        store: SecretRecordStore,
        keyring: KeyRing,
        audit: AuditLog,
    ):
        self._store = store
        self._keyring = keyring
        self._audit = audit
        self._locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()

    @classmethod
    def from_config(
        cls,
        config: VaultConfig,
        rows: RowStore,
        audit_sink: AuditSink,
        cache: Optional[CacheBackend] = None,
    ) -> "SecretContextService":
        """Wire key ring, cache, store and audit log from configuration.

        Args:
            config: Validated vault configuration.
            rows: Row store holding secret context documents.
            audit_sink: Destination of audit entries.
            cache: Cache backend; built from ``config`` when omitted.

        Returns:
            Service ready for use; call :meth:`start` (or use it as an async
            context manager) to run cache eviction.
        """
        keyring = KeyRing.from_config(config)
        store = SecretRecordStore(
            rows,
            keyring,
            cache=cache if cache is not None else build_cache(config),
            cache_ttl=config.cache_ttl,
            sensitive_fields=DEFAULT_SENSITIVE_FIELDS if config.encrypt_documents else (),
        )
        return cls(store, keyring, AuditLog(audit_sink))

    @property
    def engine(self) -> EncryptionEngine:
        return self._keyring.active

    @property
    def store(self) -> SecretRecordStore:
        return self._store

    async def start(self) -> None:
        """Start background work of the cache backend (eviction)."""
        await self._store.start()

    async def close(self) -> None:
        """Stop the cache backend."""
        await self._store.close()

    async def __aenter__(self) -> "SecretContextService":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _lock(self, workspace_id: str, user_id: str) -> asyncio.Lock:
        lock = self._locks.get((workspace_id, user_id))
        if lock is None:
            lock = asyncio.Lock()
            self._locks[(workspace_id, user_id)] = lock
        return lock

    async def _load_or_create(self, workspace_id: str, user_id: str) -> SecretContext:
        context = await self._store.read(workspace_id, user_id)
        if context is None:
            logger.info(
                "Creating secret context: workspace=%s user=%s",
                workspace_id, user_id,
            )
            context = SecretContext(workspace_id=workspace_id, user_id=user_id)
        return context

    async def _integrity_failure(
        self,
        workspace_id: str,
        user_id: str,
        operation: str,
        key: str,
        err: IntegrityError,
        message: str,
    ) -> IntegrityError:
        """Audit a failed operation and build the error raised to the caller."""
        await self._audit.record(
            workspace_id, user_id, operation, key,
            status=AuditStatus.FAILED, error_message=str(err),
        )
        return IntegrityError(message, key=key)

    async def _put(
        self,
        kind: SecretKind,
        workspace_id: str,
        user_id: str,
        key: str,
        plaintext: str,
        expires_at: Optional[datetime],
        operation: str,
        **attrs: Any,
    ) -> None:
        if not key:
            raise ValueError("Secret key cannot be empty")
        model = {
            SecretKind.CREDENTIAL: EncryptedCredential,
            SecretKind.SSH_KEY: EncryptedSSHKey,
            SecretKind.CERTIFICATE: EncryptedCertificate,
        }[kind]
        try:
            async with self._lock(workspace_id, user_id):
                context = await self._load_or_create(workspace_id, user_id)
                entries = context.entries(kind)
                envelope = self.engine.encrypt(plaintext, expires_at)
                entries[key] = model(**envelope.model_dump(), **attrs)
                context.touch()
                await self._store.write(context)
        except IntegrityError as err:
            raise await self._integrity_failure(
                workspace_id, user_id, operation, key, err,
                f"Cannot store {_LABELS[kind]} '{key}': "
                f"stored {kind.field_name} failed integrity verification",
            ) from None
        await self._audit.record(
            workspace_id, user_id, operation, key,
            new_value_hash=self.engine.hash(plaintext),
        )
        logger.debug(
            "Vault %s: workspace=%s user=%s key=%s",
            operation, workspace_id, user_id, key,
        )

    async def _reveal(
        self,
        kind: SecretKind,
        workspace_id: str,
        user_id: str,
        key: str,
        operation: str,
    ) -> Optional[tuple[SecretEntry, str]]:
        label = _LABELS[kind]
        try:
            context = await self._store.read(workspace_id, user_id)
            entry = context.entries(kind).get(key) if context is not None else None
            if entry is None:
                return None
            plaintext = self._keyring.decrypt(entry)
        except ExpiredError as err:
            await self._audit.record(
                workspace_id, user_id, operation, key,
                status=AuditStatus.FAILED, error_message=str(err),
            )
            raise ExpiredError(
                f"The {label} '{key}' has expired and must be reissued", key=key,
            ) from None
        except IntegrityError as err:
            raise await self._integrity_failure(
                workspace_id, user_id, operation, key, err,
                f"Failed to decrypt {label} '{key}'",
            ) from None

        await self._audit.record(workspace_id, user_id, operation, key)
        return entry, plaintext

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def store_credential(
        self,
        workspace_id: str,
        user_id: str,
        key: str,
        value: str,
        credential_type: str,
        provider: str,
        expires_at: Optional[datetime] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        """Encrypt and store an API key, token, password or OAuth secret.

        Args:
            workspace_id: Owning workspace.
            user_id: Owning user.
            key: Credential name (e.g. ``"openai_key"``).
            value: Secret value.
            credential_type: One of ``oauth``, ``api_key``, ``password``, ``token``.
            provider: Service the credential belongs to.
            expires_at: Optional expiry; decryption is refused afterwards.
            metadata: Extra non-sensitive attributes.
        """
        await self._put(
            SecretKind.CREDENTIAL, workspace_id, user_id, key, value, expires_at,
            "store_credential",
            credential_type=credential_type,
            provider=provider,
            metadata={
                "created_by": user_id,
                "provider": provider,
                "key_name": key,
                **(metadata or {}),
            },
        )

    async def get_credential(
        self, workspace_id: str, user_id: str, key: str
    ) -> Optional[str]:
        """Return the decrypted credential, or None if absent.

        Raises:
            ExpiredError: The credential expired and must be reissued.
            IntegrityError: The stored credential failed verification.
        """
        found = await self._reveal(
            SecretKind.CREDENTIAL, workspace_id, user_id, key, "get_credential",
        )
        return found[1] if found else None

    # ------------------------------------------------------------------
    # SSH keys
    # ------------------------------------------------------------------

    async def store_ssh_key(
        self,
        workspace_id: str,
        user_id: str,
        key_name: str,
        private_key: str,
        public_key: str,
        key_type: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        """Store an SSH keypair; only the private key is encrypted."""
        await self._put(
            SecretKind.SSH_KEY, workspace_id, user_id, key_name, private_key, None,
            "store_ssh_key",
            key_type=key_type,
            public_key=public_key,
            fingerprint=ssh_fingerprint(public_key),
            metadata=metadata or {},
        )

    async def get_ssh_key(
        self, workspace_id: str, user_id: str, key_name: str
    ) -> Optional[SSHKeyMaterial]:
        found = await self._reveal(
            SecretKind.SSH_KEY, workspace_id, user_id, key_name, "get_ssh_key",
        )
        if found is None:
            return None
        entry, private_key = found
        return SSHKeyMaterial(
            private_key=private_key,
            public_key=entry.public_key,
            fingerprint=entry.fingerprint,
        )

    # ------------------------------------------------------------------
    # Certificates
    # ------------------------------------------------------------------

    async def store_certificate(
        self,
        workspace_id: str,
        user_id: str,
        name: str,
        certificate: str,
        certificate_type: str,
        common_name: str,
        expires_at: datetime,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        """Store certificate material that stops decrypting at ``expires_at``."""
        await self._put(
            SecretKind.CERTIFICATE, workspace_id, user_id, name, certificate,
            expires_at,
            "store_certificate",
            certificate_type=certificate_type,
            common_name=common_name,
            metadata=metadata or {},
        )

    async def get_certificate(
        self, workspace_id: str, user_id: str, name: str
    ) -> Optional[str]:
        found = await self._reveal(
            SecretKind.CERTIFICATE, workspace_id, user_id, name, "get_certificate",
        )
        return found[1] if found else None

    # ------------------------------------------------------------------
    # Listing and deletion
    # ------------------------------------------------------------------

    async def list_secrets(self, workspace_id: str, user_id: str) -> SecretListing:
        """List non-sensitive metadata of every stored secret.

        A secret map that failed integrity verification is left out.
        """
        context = await self._store.read(workspace_id, user_id)
        if context is None:
            return SecretListing()
        for kind in SecretKind:
            if not context.is_readable(kind):
                logger.warning(
                    "Listing skips unreadable %s: workspace=%s user=%s",
                    kind.field_name, workspace_id, user_id,
                )
        return SecretListing(
            credentials=[
                CredentialInfo(
                    key=key,
                    provider=cred.provider,
                    type=cred.credential_type,
                    created_at=cred.created_at,
                    expires_at=cred.expires_at,
                )
                for key, cred in context.credentials.items()
            ],
            ssh_keys=[
                SSHKeyInfo(
                    key=key,
                    type=ssh.key_type,
                    fingerprint=ssh.fingerprint,
                    created_at=ssh.created_at,
                )
                for key, ssh in context.ssh_keys.items()
            ],
            certificates=[
                CertificateInfo(
                    key=key,
                    type=cert.certificate_type,
                    common_name=cert.common_name,
                    created_at=cert.created_at,
                    expires_at=cert.expires_at,
                )
                for key, cert in context.certificates.items()
            ],
        )

    async def delete_secret(
        self,
        workspace_id: str,
        user_id: str,
        kind: Union[SecretKind, str],
        key: str,
    ) -> bool:
        """Delete one entry.

        Returns:
            True if the entry existed and was deleted, False otherwise.

        Raises:
            IntegrityError: If the map holding ``kind`` failed verification.
        """
        kind = SecretKind(kind)
        try:
            async with self._lock(workspace_id, user_id):
                context = await self._store.read(workspace_id, user_id)
                if context is None:
                    return False
                entries = context.entries(kind)
                entry = entries.get(key)
                if entry is None:
                    return False
                old_hash = self.engine.hash(dump_json(entry).decode("utf-8"))
                del entries[key]
                context.touch()
                await self._store.write(context)
        except IntegrityError as err:
            raise await self._integrity_failure(
                workspace_id, user_id, "delete_secret", key, err,
                f"Cannot delete {_LABELS[kind]} '{key}': "
                f"stored {kind.field_name} failed integrity verification",
            ) from None
        await self._audit.record(
            workspace_id, user_id, "delete_secret", key, old_value_hash=old_hash,
        )
        logger.debug(
            "Vault delete: workspace=%s user=%s %s=%s",
            workspace_id, user_id, kind.value, key,
        )
        return True

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def reencrypt_context(self, workspace_id: str, user_id: str) -> int:
        """Re-encrypt every entry not on the active key version.

        Expired entries cannot be decrypted and are left as they are.

        Returns:
            Number of entries re-encrypted.

        Raises:
            NotFoundError: If the identity has no secret context.
            IntegrityError: If an entry fails verification under its key,
                or a secret map of the context is unreadable.
        """
        active = self.engine
        rotated: list[tuple[str, str]] = []
        async with self._lock(workspace_id, user_id):
            context = await self._store.require(workspace_id, user_id)
            for kind in SecretKind:
                entries = context.entries(kind)
                for name, entry in list(entries.items()):
                    if entry.key_version == active.key_version:
                        continue
                    try:
                        plaintext = self._keyring.decrypt(entry)
                    except ExpiredError:
                        logger.warning(
                            "Skipping expired %s=%s during re-encryption (v%s)",
                            kind.value, name, entry.key_version,
                        )
                        continue
                    envelope = active.encrypt(plaintext, entry.expires_at)
                    entries[name] = type(entry).model_validate({
                        **entry.model_dump(),
                        **envelope.model_dump(exclude={"created_at"}),
                    })
                    rotated.append((name, active.hash(plaintext)))
            if rotated:
                context.touch()
                await self._store.write(context)

        for name, value_hash in rotated:
            await self._audit.record(
                workspace_id, user_id, "rotate_key", name,
                old_value_hash=value_hash, new_value_hash=value_hash,
            )
        return len(rotated)
