"""
Vault Configuration — Encryption key loading and validated settings.

Reads settings from environment variables:
    VAULT_ENCRYPTION_KEY = <operator secret for the active key version>
    VAULT_KEY_VERSION = <active key version label, default "1">
    VAULT_ENCRYPTION_KEY_v{N} = <operator secret of a retired key version>
    VAULT_CACHE_BACKEND = memory | redis
    VAULT_REDIS_URL = redis://host:port/db
    VAULT_CACHE_TTL = <seconds, default 300>
    VAULT_CACHE_CLEANUP_INTERVAL = <seconds between cache evictions, default 60>
    VAULT_ENCRYPT_DOCUMENTS = true | false

Security Note:
    Never log key material. Only log key versions.
"""
import os
import re
import logging
from typing import Literal, Optional

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

logger = logging.getLogger("secret_context.vault")

_LEGACY_KEY_ENV_PATTERN = re.compile(r"^VAULT_ENCRYPTION_KEY_v(\w+)$")

_TRUTHY = ("1", "true", "yes", "on")

MIN_SECRET_LENGTH = 16


def load_encryption_key() -> str:
    """Read the active operator secret from VAULT_ENCRYPTION_KEY.

    Raises:
        RuntimeError: If the variable is missing or empty.
    """
    secret = os.environ.get("VAULT_ENCRYPTION_KEY")
    if not secret:
        raise RuntimeError(
            "VAULT_ENCRYPTION_KEY environment variable is not set. "
            "Generate one with EncryptionEngine.generate_key()"
        )
    return secret


def load_legacy_keys() -> dict[str, str]:
    """Load retired key versions from VAULT_ENCRYPTION_KEY_v{N} variables.

    Returns:
        Mapping of key version label to operator secret.
    """
    keys: dict[str, str] = {}
    for name, value in os.environ.items():
        match = _LEGACY_KEY_ENV_PATTERN.match(name)
        if match and value:
            keys[match.group(1)] = value
    if keys:
        logger.debug("Loaded %d legacy key version(s): %s", len(keys), sorted(keys))
    return keys


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    encryption_key: SecretStr
    key_version: str = Field(default="1", min_length=1)
    legacy_keys: dict[str, SecretStr] = Field(default_factory=dict)
    cache_backend: Literal["memory", "redis"] = "memory"
    redis_url: Optional[str] = None
    cache_ttl: int = Field(default=300, ge=1)
    cache_cleanup_interval: float = Field(default=60.0, gt=0)
    encrypt_documents: bool = True

    @field_validator("encryption_key")
    @classmethod
    def validate_key_length(cls, v: SecretStr) -> SecretStr:
        if len(v.get_secret_value()) < MIN_SECRET_LENGTH:
            raise ValueError(
                f"encryption_key must be at least {MIN_SECRET_LENGTH} characters"
            )
        return v

    @model_validator(mode="after")
    def validate_keys_and_cache(self) -> "VaultConfig":
        """Ensure the active version is not also listed as legacy, and that
        the redis backend has a URL."""
        if self.key_version in self.legacy_keys:
            raise ValueError(
                f"key_version {self.key_version} is also configured as a "
                f"legacy key (legacy versions: {sorted(self.legacy_keys)})"
            )
        if self.cache_backend == "redis" and not self.redis_url:
            raise ValueError("redis_url is required when cache_backend is 'redis'")
        return self

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Create VaultConfig by loading values from environment.

        Returns:
            Populated VaultConfig instance.
        """
        key_version = os.environ.get("VAULT_KEY_VERSION", "1")
        legacy = load_legacy_keys()
        legacy.pop(key_version, None)
        return cls(
            encryption_key=load_encryption_key(),
            key_version=key_version,
            legacy_keys=legacy,
            cache_backend=os.environ.get("VAULT_CACHE_BACKEND", "memory").lower(),
            redis_url=os.environ.get("VAULT_REDIS_URL"),
            cache_ttl=int(os.environ.get("VAULT_CACHE_TTL", "300")),
            cache_cleanup_interval=float(
                os.environ.get("VAULT_CACHE_CLEANUP_INTERVAL", "60")
            ),
            encrypt_documents=(
                os.environ.get("VAULT_ENCRYPT_DOCUMENTS", "true").lower() in _TRUTHY
            ),
        )
