"""KMS Vault — envelope encryption, data keys and encrypted secret storage.

Security Note (Threat Model):
    Data keys and decrypted secret values live in process memory while in
    use. A memory dump of the application process could expose them.
    This is an accepted limitation; mitigation requires HSM/secure
    enclave integration which is out of scope.
"""

from .config import KMSSettings, MasterKeyProvider, generate_master_key
from .crypto import DataKey, Envelope, EnvelopeCipher
from .keys import KeyManager
from .store import SecretMetadata, SecretOptions, SecretRecord, SecretStore
from .manager import SecretResult, SecretsManager
from .key_rotation import reencrypt_secrets
from .backends import MemoryBackend, PostgresBackend, StorageBackend
from .audit import AuditLog

__all__ = [
    "KMSSettings",
    "MasterKeyProvider",
    "generate_master_key",
    "DataKey",
    "Envelope",
    "EnvelopeCipher",
    "KeyManager",
    "SecretMetadata",
    "SecretOptions",
    "SecretRecord",
    "SecretStore",
    "SecretResult",
    "SecretsManager",
    "reencrypt_secrets",
    "MemoryBackend",
    "PostgresBackend",
    "StorageBackend",
    "AuditLog",
]
