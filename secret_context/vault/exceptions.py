"""
Vault Exceptions — Typed failures surfaced by the secret context vault.

Security Note:
    Exception messages name keys and identities only. Never include
    plaintext, ciphertext or cryptographic diagnostics in a message.
"""


class VaultError(Exception):
    """Base class for every vault failure."""


class ExpiredError(VaultError):
    """Envelope expiry has passed; the secret must be reissued."""

    def __init__(self, message: str, key: str | None = None):
        super().__init__(message)
        self.key = key


class IntegrityError(VaultError):
    """Envelope failed authentication (tampered, corrupted or wrong key)."""

    def __init__(self, message: str, key: str | None = None):
        super().__init__(message)
        self.key = key


class NotFoundError(VaultError):
    """No secret context, or no entry under the requested key."""


class StoreError(VaultError):
    """The row store rejected a read or write."""

    def __init__(self, operation: str, message: str):
        super().__init__(f"Row store {operation} failed: {message}")
        self.operation = operation
