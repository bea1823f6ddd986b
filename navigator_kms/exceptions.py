"""KMS error taxonomy.

Security Note:
    Messages carry secret names, key ids and timestamps only.
    Never build an error message from plaintext or key material.
"""


class KMSError(Exception):
    """Base class for every error raised by navigator_kms."""

    retryable: bool = False


class ConfigurationError(KMSError):
    """Missing or malformed master key or bootstrap configuration.

    Raised during startup; the process is expected to stop.
    """


class NotInitializedError(KMSError):
    """A component was used before its bootstrap step completed."""


class NotFoundError(KMSError):
    """The requested secret does not exist."""

    def __init__(self, name: str, message: str = None):
        self.name = name
        super().__init__(message or f"Secret not found: {name}")


class KeyNotFoundError(NotFoundError):
    """The requested data key id is unknown to the KeyManager."""

    def __init__(self, key_id: str):
        self.key_id = key_id
        super().__init__(key_id, f"Data key not found: {key_id}")


class ExpiredSecretError(KMSError):
    """The secret exists but its TTL has elapsed."""

    def __init__(self, name: str, expired_at=None):
        self.name = name
        self.expired_at = expired_at
        msg = f"Secret expired: {name}"
        if expired_at is not None:
            msg += f" (at {expired_at.isoformat()})"
        super().__init__(msg)


class DecryptionError(KMSError):
    """Authentication tag, AAD or key mismatch; fails closed."""

    def __init__(self, message: str = "Decryption failed", key_id: str = None):
        self.key_id = key_id
        if key_id is not None:
            message = f"{message} (key_id={key_id})"
        super().__init__(message)


class RotationConflictError(KMSError):
    """The record was deleted or rotated by another caller mid-rotation."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(
            f"Secret {name} was modified concurrently, rotation aborted"
        )


class SecretTimeoutError(KMSError, TimeoutError):
    """An external dependency did not answer in time."""

    retryable = True

    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} timed out after {timeout}s")


class StorageError(KMSError):
    """The storage backend failed; the operation may succeed on retry."""

    retryable = True

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Storage backend failed during {operation}")
