"""
Tests for vault configuration.

Tests cover:
- Loading settings from environment variables
- Legacy key versions from VAULT_ENCRYPTION_KEY_v{N}
- Validation failures
"""
import os

import pytest
from pydantic import ValidationError

from secret_context.vault.config import VaultConfig, load_encryption_key, load_legacy_keys
from secret_context.vault.crypto import KeyRing

SECRET = "operator-secret-0123456789"


@pytest.fixture
def clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("VAULT_"):
            monkeypatch.delenv(name)
    return monkeypatch


class TestEnvironment:
    """Tests for environment loading."""

    def test_missing_key(self, clean_env):
        with pytest.raises(RuntimeError):
            load_encryption_key()

    def test_from_env_defaults(self, clean_env):
        clean_env.setenv("VAULT_ENCRYPTION_KEY", SECRET)
        config = VaultConfig.from_env()
        assert config.encryption_key.get_secret_value() == SECRET
        assert config.key_version == "1"
        assert config.legacy_keys == {}
        assert config.cache_backend == "memory"
        assert config.cache_ttl == 300
        assert config.encrypt_documents is True
        assert config.cache_cleanup_interval == 60.0

    def test_from_env_overrides(self, clean_env):
        clean_env.setenv("VAULT_ENCRYPTION_KEY", SECRET)
        clean_env.setenv("VAULT_KEY_VERSION", "3")
        clean_env.setenv("VAULT_CACHE_BACKEND", "REDIS")
        clean_env.setenv("VAULT_REDIS_URL", "redis://localhost:6379/1")
        clean_env.setenv("VAULT_CACHE_TTL", "60")
        clean_env.setenv("VAULT_ENCRYPT_DOCUMENTS", "false")
        clean_env.setenv("VAULT_CACHE_CLEANUP_INTERVAL", "2.5")
        config = VaultConfig.from_env()
        assert config.key_version == "3"
        assert config.cache_backend == "redis"
        assert config.redis_url == "redis://localhost:6379/1"
        assert config.cache_ttl == 60
        assert config.encrypt_documents is False
        assert config.cache_cleanup_interval == 2.5

    def test_legacy_keys(self, clean_env):
        clean_env.setenv("VAULT_ENCRYPTION_KEY", SECRET)
        clean_env.setenv("VAULT_KEY_VERSION", "3")
        clean_env.setenv("VAULT_ENCRYPTION_KEY_v1", "first-operator-secret-xyz")
        clean_env.setenv("VAULT_ENCRYPTION_KEY_v2", "second-operator-secret-xyz")
        assert load_legacy_keys() == {
            "1": "first-operator-secret-xyz",
            "2": "second-operator-secret-xyz",
        }
        config = VaultConfig.from_env()
        assert sorted(config.legacy_keys) == ["1", "2"]

    def test_active_version_dropped_from_legacy(self, clean_env):
        clean_env.setenv("VAULT_ENCRYPTION_KEY", SECRET)
        clean_env.setenv("VAULT_KEY_VERSION", "2")
        clean_env.setenv("VAULT_ENCRYPTION_KEY_v2", "duplicate-operator-secret")
        assert VaultConfig.from_env().legacy_keys == {}

    def test_secret_not_in_repr(self, clean_env):
        clean_env.setenv("VAULT_ENCRYPTION_KEY", SECRET)
        assert SECRET not in repr(VaultConfig.from_env())


class TestValidation:
    """Tests for VaultConfig validation."""

    def test_short_key(self):
        with pytest.raises(ValidationError):
            VaultConfig(encryption_key="short")

    def test_redis_requires_url(self):
        with pytest.raises(ValidationError):
            VaultConfig(encryption_key=SECRET, cache_backend="redis")

    def test_unknown_backend(self):
        with pytest.raises(ValidationError):
            VaultConfig(encryption_key=SECRET, cache_backend="memcached")

    def test_active_version_in_legacy(self):
        with pytest.raises(ValidationError):
            VaultConfig(
                encryption_key=SECRET, key_version="2",
                legacy_keys={"2": "another-operator-secret"},
            )

    @pytest.mark.parametrize("ttl", [0, -5])
    def test_cache_ttl_must_be_positive(self, ttl):
        with pytest.raises(ValidationError):
            VaultConfig(encryption_key=SECRET, cache_ttl=ttl)

    @pytest.mark.parametrize("interval", [0, -1.0])
    def test_cleanup_interval_must_be_positive(self, interval):
        with pytest.raises(ValidationError):
            VaultConfig(encryption_key=SECRET, cache_cleanup_interval=interval)


class TestKeyRingFromConfig:
    """Tests for KeyRing.from_config."""

    def test_versions(self):
        config = VaultConfig(
            encryption_key=SECRET, key_version="2",
            legacy_keys={"1": "first-operator-secret-xyz"},
        )
        ring = KeyRing.from_config(config)
        assert ring.active.key_version == "2"
        assert ring.versions == ["1", "2"]
