"""
Vault Key Rotation — Batch re-encryption of secret contexts onto the active key.

Re-encrypts the secrets of the given identities in configurable batches.
The operation is idempotent: entries already at the active key version are
left alone, and identities without a secret context are skipped.

Security Note:
    Plaintext exists in memory only during re-encryption of each entry.
    Never log plaintext or ciphertext values.
"""
import logging
from typing import Iterable

from .exceptions import NotFoundError, VaultError
from .service import SecretContextService

logger = logging.getLogger("secret_context.vault")


async def rotate_key_version(
    service: SecretContextService,
    identities: Iterable[tuple[str, str]],
    batch_size: int = 100,
) -> dict:
    """Re-encrypt the secrets of every identity onto the active key version.

    Args:
        service: Service whose key ring holds the active and legacy keys.
        identities: ``(workspace_id, user_id)`` pairs to process.
        batch_size: Number of identities per logged batch.

    Returns:
        Stats dict with keys: total, rotated, skipped, errors. ``rotated``
        counts entries; the other counters count identities.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    stats = {"total": 0, "rotated": 0, "skipped": 0, "errors": 0}
    pending = list(identities)
    target = service.engine.key_version

    logger.info(
        "Starting key rotation to v%s for %d identities (batch_size=%d)",
        target, len(pending), batch_size,
    )

    for offset in range(0, len(pending), batch_size):
        batch = pending[offset:offset + batch_size]
        logger.info(
            "Processing batch %d (%d identities)",
            offset // batch_size + 1, len(batch),
        )
        for workspace_id, user_id in batch:
            stats["total"] += 1
            try:
                count = await service.reencrypt_context(workspace_id, user_id)
            except NotFoundError:
                stats["skipped"] += 1
                continue
            except VaultError as err:
                logger.error(
                    "Error rotating secrets workspace=%s user=%s: %s",
                    workspace_id, user_id, err,
                )
                stats["errors"] += 1
                continue
            if count:
                stats["rotated"] += count
            else:
                stats["skipped"] += 1

    logger.info("Key rotation complete: %s", stats)
    return stats
