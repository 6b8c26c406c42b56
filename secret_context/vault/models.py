"""
Vault Data Model — Envelopes, secret contexts and audit entries.

Every model round-trips through JSON (``to_document`` / ``from_document``)
so a secret context can be handed to the row store and the cache as an
opaque document. Only envelopes carry sensitive material, and only in
encrypted form.
"""
import uuid
from enum import Enum
from typing import Any, Literal, Optional
from datetime import datetime, timedelta, timezone

import orjson
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator

from .exceptions import IntegrityError

ALGORITHM = "aes-256-gcm"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SecretKind(str, Enum):
    """Names of the three per-context secret maps."""

    CREDENTIAL = "credential"
    SSH_KEY = "ssh_key"
    CERTIFICATE = "certificate"

    @property
    def field_name(self) -> str:
        """Attribute of :class:`SecretContext` holding this kind."""
        return f"{self.value}s"


class AuditStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class EncryptedEnvelope(BaseModel):
    """Self-contained output of one ``encrypt`` call.

    ``ciphertext``, ``iv`` and ``auth_tag`` are lowercase hex strings.
    """

    ciphertext: str
    algorithm: str = ALGORITHM
    iv: str
    auth_tag: str
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    key_version: str

    @field_validator("created_at", "expires_at", check_fields=False)
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Naive timestamps are taken as UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def is_expired(self) -> bool:
        """True once ``expires_at`` has passed. Envelopes without expiry never expire."""
        return self.expires_at is not None and self.expires_at < utcnow()

    def time_until_expiry(self) -> Optional[timedelta]:
        """Time left before expiry (negative once expired), or None."""
        if self.expires_at is None:
            return None
        return self.expires_at - utcnow()


class EncryptedCredential(EncryptedEnvelope):
    credential_type: Literal["oauth", "api_key", "password", "token"]
    provider: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class EncryptedSSHKey(EncryptedEnvelope):
    """Encrypted private key; the public half and fingerprint stay plain."""

    key_type: Literal["rsa", "ed25519", "ecdsa"]
    public_key: str
    fingerprint: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class EncryptedCertificate(EncryptedEnvelope):
    """Encrypted certificate material.

    ``expires_at`` is mandatory here: the certificate validity end is also
    the envelope expiry.
    """

    certificate_type: Literal["ssl", "client", "ca"]
    common_name: str
    expires_at: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)


SecretEntry = EncryptedCredential | EncryptedSSHKey | EncryptedCertificate


class SecretContext(BaseModel):
    """All encrypted secrets of one (workspace, user) identity.

    A secret map whose document-level envelope failed verification is kept
    sealed: its raw envelope is carried along unchanged so a later write
    does not destroy it, and only access to that map raises.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workspace_id: str
    user_id: str
    credentials: dict[str, EncryptedCredential] = Field(default_factory=dict)
    ssh_keys: dict[str, EncryptedSSHKey] = Field(default_factory=dict)
    certificates: dict[str, EncryptedCertificate] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    _sealed: dict[str, dict[str, Any]] = PrivateAttr(default_factory=dict)

    def entries(self, kind: SecretKind) -> dict[str, Any]:
        """Return the map holding ``kind``.

        Raises:
            IntegrityError: If that map could not be decrypted.
        """
        if kind.field_name in self._sealed:
            raise IntegrityError(
                f"Secret context {self.id} field '{kind.field_name}' "
                "failed integrity verification"
            )
        return getattr(self, kind.field_name)

    def is_readable(self, kind: SecretKind) -> bool:
        return kind.field_name not in self._sealed

    @property
    def sealed_fields(self) -> dict[str, dict[str, Any]]:
        """Raw envelopes of the maps that failed verification."""
        return dict(self._sealed)

    def touch(self) -> None:
        self.updated_at = utcnow()

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_document(
        cls,
        doc: dict[str, Any],
        sealed: Optional[dict[str, dict[str, Any]]] = None,
    ) -> "SecretContext":
        context = cls.model_validate(doc)
        if sealed:
            context._sealed = dict(sealed)
        return context


class AuditLogEntry(BaseModel):
    """Immutable audit record. Holds value hashes, never values."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workspace_id: str
    user_id: str
    operation: str
    context_kind: str = "secret"
    resource_key: str
    old_value_hash: Optional[str] = None
    new_value_hash: Optional[str] = None
    status: AuditStatus
    error_message: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class SSHKeyMaterial(BaseModel):
    private_key: str
    public_key: str
    fingerprint: str


class CredentialInfo(BaseModel):
    key: str
    kind: SecretKind = SecretKind.CREDENTIAL
    provider: str
    type: str
    created_at: datetime
    expires_at: Optional[datetime] = None


class SSHKeyInfo(BaseModel):
    key: str
    kind: SecretKind = SecretKind.SSH_KEY
    type: str
    fingerprint: str
    created_at: datetime


class CertificateInfo(BaseModel):
    key: str
    kind: SecretKind = SecretKind.CERTIFICATE
    type: str
    common_name: str
    created_at: datetime
    expires_at: datetime


class SecretListing(BaseModel):
    """Non-sensitive metadata of every secret in a context."""

    credentials: list[CredentialInfo] = Field(default_factory=list)
    ssh_keys: list[SSHKeyInfo] = Field(default_factory=list)
    certificates: list[CertificateInfo] = Field(default_factory=list)


def dump_json(value: Any) -> bytes:
    """orjson-encode a model or plain JSON value."""
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    return orjson.dumps(value)
