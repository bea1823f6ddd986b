"""
KMS Audit — security event trail.

Every mutating operation and every failed decryption is recorded with the
secret name, key id and outcome.

Security Note:
    Never pass plaintext, ciphertext or key material as details.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger("navigator.kms.audit")


class AuditLog:
    """Writes audit events to the audit logger and, if given, a backend.

    Backend write failures are logged and never interrupt the operation
    being audited.
    """

    def __init__(self, backend: Any = None):
        self._backend = backend

    async def record(
        self,
        operation: str,
        name: Optional[str] = None,
        key_id: Optional[str] = None,
        success: bool = True,
        **details: Any,
    ) -> dict:
        event = {
            "operation": operation,
            "name": name,
            "key_id": key_id,
            "success": success,
            "details": details,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        level = logging.INFO if success else logging.WARNING
        logger.log(
            level,
            "kms audit: operation=%s name=%s key_id=%s success=%s",
            operation, name, key_id, success,
        )
        if self._backend is not None:
            try:
                await self._backend.record_audit(event)
            except Exception as err:
                logger.error(
                    "Audit write failed for operation=%s name=%s: %s",
                    operation, name, type(err).__name__,
                )
        return event
