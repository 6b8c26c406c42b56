"""
Vault Crypto Core — Key derivation, envelope encryption and field encryption.

The engine wraps AES-256-GCM:
- Key: scrypt(operator_secret, application salt) → 32 bytes, derived once
- Envelope: {ciphertext, iv, auth_tag} as hex + algorithm, timestamps, key_version
- Fields: selected document fields replaced by envelopes, reversible from
  the bookkeeping keys recorded on the document

Security Note:
    Never log plaintext, ciphertext or key material.
    IVs are random 96-bit; collision probability negligible under normal usage.
"""
import hashlib
import logging
import secrets
import string
from typing import Any, Callable, Iterable, Optional
from datetime import datetime

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .exceptions import ExpiredError, IntegrityError, VaultError
from .models import ALGORITHM, EncryptedEnvelope, utcnow

logger = logging.getLogger("secret_context.vault")

IV_SIZE = 12  # 96-bit IV
TAG_SIZE = 16  # GCM tag
KEY_LENGTH = 32  # AES-256

# scrypt cost parameters: 16 MiB of memory per derivation
SCRYPT_N = 2 ** 14
SCRYPT_R = 8
SCRYPT_P = 1
APPLICATION_SALT = b"secret-context-vault"

ENCRYPTED_FIELDS_KEY = "_encrypted_fields"
ENCRYPTED_JSON_FIELDS_KEY = "_encrypted_json_fields"

PASSWORD_ALPHABET = (
    string.ascii_letters + string.digits + "!@#$%^&*()_+-=[]{}|;:,.<>?"
)

_ENVELOPE_KEYS = frozenset({"ciphertext", "iv", "auth_tag"})


def derive_key(secret: str) -> bytes:
    """Derive the 32-byte engine key from an operator secret using scrypt.

    Args:
        secret: Operator-supplied secret, possibly low entropy.

    Returns:
        32-byte derived key.
    """
    kdf = Scrypt(
        salt=APPLICATION_SALT,
        length=KEY_LENGTH,
        n=SCRYPT_N,
        r=SCRYPT_R,
        p=SCRYPT_P,
    )
    return kdf.derive(secret.encode("utf-8"))


def is_envelope(value: Any) -> bool:
    """Check whether a document value looks like a serialized envelope."""
    return isinstance(value, dict) and _ENVELOPE_KEYS.issubset(value)


def _decrypt_document(
    doc: dict[str, Any],
    decrypt: Callable[[EncryptedEnvelope], str],
) -> dict[str, Any]:
    result = dict(doc)
    encrypted = result.pop(ENCRYPTED_FIELDS_KEY, None) or []
    structured = set(result.pop(ENCRYPTED_JSON_FIELDS_KEY, None) or [])
    for name in encrypted:
        value = result.get(name)
        if not is_envelope(value):
            continue
        try:
            plaintext = decrypt(EncryptedEnvelope.model_validate(value))
            result[name] = orjson.loads(plaintext) if name in structured else plaintext
        except (VaultError, ValueError) as err:
            logger.error("Failed to decrypt field %s: %s", name, err)
    return result


class EncryptionEngine:
    """Authenticated encryption under one key version.

    A new engine with a new secret and version is the unit of key rotation;
    envelopes keep the version they were written with.
    """

    def __init__(self, secret: str, key_version: str = "1"):
        if not secret:
            raise ValueError("Encryption secret cannot be empty")
        self._cipher = AESGCM(derive_key(secret))
        self.key_version = key_version

    def __repr__(self) -> str:
        return f"<EncryptionEngine key_version={self.key_version}>"

    # ------------------------------------------------------------------
    # Envelope encryption
    # ------------------------------------------------------------------

    def encrypt(
        self,
        plaintext: str,
        expires_at: Optional[datetime] = None,
    ) -> EncryptedEnvelope:
        """Encrypt a string into a fresh envelope.

        Args:
            plaintext: Text to encrypt (may be empty).
            expires_at: Optional instant after which decryption is refused.

        Returns:
            EncryptedEnvelope stamped with this engine's key version.
        """
        iv = secrets.token_bytes(IV_SIZE)
        sealed = self._cipher.encrypt(iv, plaintext.encode("utf-8"), None)
        return EncryptedEnvelope(
            ciphertext=sealed[:-TAG_SIZE].hex(),
            algorithm=ALGORITHM,
            iv=iv.hex(),
            auth_tag=sealed[-TAG_SIZE:].hex(),
            created_at=utcnow(),
            expires_at=expires_at,
            key_version=self.key_version,
        )

    def decrypt(self, envelope: EncryptedEnvelope) -> str:
        """Decrypt an envelope.

        Expiry is checked before any cryptographic work.

        Raises:
            ExpiredError: If ``expires_at`` is set and in the past.
            IntegrityError: If the envelope does not authenticate.
        """
        if envelope.is_expired():
            raise ExpiredError("Encrypted data has expired")
        if envelope.algorithm != ALGORITHM:
            raise IntegrityError(
                f"Unsupported envelope algorithm: {envelope.algorithm}"
            )
        try:
            iv = bytes.fromhex(envelope.iv)
            sealed = bytes.fromhex(envelope.ciphertext) + bytes.fromhex(envelope.auth_tag)
        except ValueError as err:
            raise IntegrityError("Malformed envelope encoding") from err
        if len(iv) != IV_SIZE or len(sealed) < TAG_SIZE:
            raise IntegrityError("Malformed envelope encoding")
        try:
            return self._cipher.decrypt(iv, sealed, None).decode("utf-8")
        except InvalidTag as err:
            raise IntegrityError("Envelope authentication failed") from err
        except UnicodeDecodeError as err:
            raise IntegrityError("Decrypted payload is not valid UTF-8") from err

    def verify(self, envelope: EncryptedEnvelope) -> bool:
        """Return True if the envelope decrypts under this engine."""
        try:
            self.decrypt(envelope)
        except VaultError:
            return False
        return True

    # ------------------------------------------------------------------
    # Hashing and key generation
    # ------------------------------------------------------------------

    @staticmethod
    def hash(data: str) -> str:
        """SHA-256 hex digest, for audit correlation only."""
        return hashlib.sha256(data.encode("utf-8")).hexdigest()

    @staticmethod
    def generate_key(length: int = 32) -> str:
        """Generate a random operator secret as a hex string.

        This is a utility for operators provisioning a new key version.
        """
        return secrets.token_hex(length)

    @staticmethod
    def generate_password(length: int = 32) -> str:
        """Generate a random password of letters, digits and punctuation."""
        if length < 1:
            raise ValueError("Password length must be at least 1")
        return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))

    # ------------------------------------------------------------------
    # Field-selective encryption
    # ------------------------------------------------------------------

    def encrypt_fields(
        self,
        doc: dict[str, Any],
        field_names: Iterable[str],
        expires_at: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Replace the named fields of a document with envelopes.

        Missing and None fields are skipped. Strings are encrypted as-is,
        anything else as JSON. The returned copy records which fields were
        transformed so :meth:`decrypt_fields` needs no extra input.
        """
        result = dict(doc)
        encrypted: list[str] = []
        structured: list[str] = []
        for name in field_names:
            value = doc.get(name)
            if value is None:
                continue
            if isinstance(value, str):
                plaintext = value
            else:
                plaintext = orjson.dumps(value).decode("utf-8")
                structured.append(name)
            result[name] = self.encrypt(plaintext, expires_at).model_dump(mode="json")
            encrypted.append(name)
        result[ENCRYPTED_FIELDS_KEY] = encrypted
        result[ENCRYPTED_JSON_FIELDS_KEY] = structured
        return result

    def decrypt_fields(self, doc: dict[str, Any]) -> dict[str, Any]:
        """Reverse :meth:`encrypt_fields`.

        A field that fails to decrypt keeps its envelope; the failure is
        logged and the remaining fields are still decrypted.
        """
        return _decrypt_document(doc, self.decrypt)


class KeyRing:
    """The active engine plus engines for retired key versions.

    Encryption always uses the active engine; decryption is routed by the
    ``key_version`` stamped on each envelope.
    """

    def __init__(
        self,
        active: EncryptionEngine,
        legacy: Iterable[EncryptionEngine] = (),
    ):
        self.active = active
        self._engines: dict[str, EncryptionEngine] = {
            engine.key_version: engine for engine in legacy
        }
        self._engines[active.key_version] = active

    @classmethod
    def from_config(cls, config: Any) -> "KeyRing":
        """Derive every configured key version. Called once at startup."""
        active = EncryptionEngine(
            config.encryption_key.get_secret_value(), config.key_version,
        )
        legacy = [
            EncryptionEngine(secret.get_secret_value(), version)
            for version, secret in config.legacy_keys.items()
        ]
        logger.info(
            "Vault key ring ready: active=v%s legacy=%s",
            active.key_version, sorted(e.key_version for e in legacy),
        )
        return cls(active, legacy)

    @property
    def versions(self) -> list[str]:
        return sorted(self._engines)

    def engine_for(self, key_version: str) -> EncryptionEngine:
        """Return the engine for a key version.

        Raises:
            IntegrityError: If no engine is registered for the version.
        """
        try:
            return self._engines[key_version]
        except KeyError:
            raise IntegrityError(
                f"No encryption key registered for version {key_version}"
            ) from None

    def decrypt(self, envelope: EncryptedEnvelope) -> str:
        return self.engine_for(envelope.key_version).decrypt(envelope)

    def decrypt_fields(self, doc: dict[str, Any]) -> dict[str, Any]:
        """Like :meth:`EncryptionEngine.decrypt_fields`, routing each field
        by the key version of its envelope.

        Fields of one document can carry different versions when a sealed
        field was written back unchanged next to freshly encrypted ones.
        """
        return _decrypt_document(doc, self.decrypt)
