"""Navigator KMS.

Envelope-encrypted application secrets, data key rotation, and a cached,
auditable secret access layer.
"""
from .version import __version__
from .exceptions import (
    KMSError,
    ConfigurationError,
    NotInitializedError,
    NotFoundError,
    KeyNotFoundError,
    ExpiredSecretError,
    DecryptionError,
    RotationConflictError,
    SecretTimeoutError,
    StorageError,
)
from .config_loader import AppConfig, ConfigLoader
from .context import KMSContext

__all__ = [
    "__version__",
    "KMSError",
    "ConfigurationError",
    "NotInitializedError",
    "NotFoundError",
    "KeyNotFoundError",
    "ExpiredSecretError",
    "DecryptionError",
    "RotationConflictError",
    "SecretTimeoutError",
    "StorageError",
    "AppConfig",
    "ConfigLoader",
    "KMSContext",
]
