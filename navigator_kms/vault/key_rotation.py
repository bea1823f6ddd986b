"""
KMS Key Rotation — Batch re-encryption of secrets after a data key rotation.

Re-encrypts every secret that is not yet sealed under the active data key.
The operation is idempotent: secrets already at the active key are skipped.
Older data keys stay available, so an interrupted run leaves every secret
readable and can simply be started again.

Security Note:
    Plaintext exists in memory only during re-encryption of each record.
    Never log plaintext or ciphertext values.
"""
import logging

from ..exceptions import KMSError
from .store import SecretStore

logger = logging.getLogger("navigator.kms")


async def reencrypt_secrets(store: SecretStore, batch_size: int = 100) -> dict:
    """Re-seal all secrets under the active data key, in batches.

    Args:
        store: SecretStore whose records are re-encrypted.
        batch_size: Number of records processed per batch.

    Returns:
        Stats dict with keys: total, rotated, errors, skipped.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    active_id = store.key_manager.get_active_key().id
    records = await store.export_records()
    pending = [
        r["name"] for r in records if r["envelope"].get("keyId") != active_id
    ]
    stats = {
        "total": len(records),
        "rotated": 0,
        "errors": 0,
        "skipped": len(records) - len(pending),
    }

    logger.info(
        "Starting re-encryption to key %s: %d of %d secret(s) (batch_size=%d)",
        active_id, len(pending), len(records), batch_size,
    )

    for offset in range(0, len(pending), batch_size):
        batch = pending[offset:offset + batch_size]
        batch_num = (offset // batch_size) + 1
        logger.info("Processing batch %d (%d records)", batch_num, len(batch))
        for name in batch:
            try:
                if await store.reencrypt(name):
                    stats["rotated"] += 1
                else:
                    stats["skipped"] += 1
            except KMSError as err:
                logger.error(
                    "Error re-encrypting secret name=%s: %s",
                    name, type(err).__name__,
                )
                stats["errors"] += 1

    logger.info("Re-encryption complete: %s", stats)
    return stats
