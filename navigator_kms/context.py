"""
KMSContext — the single object through which the application reaches
the key management subsystem.

Bootstrap runs strictly in order and stops at the first failure:

    MasterKeyProvider -> KeyManager -> SecretStore -> SecretsManager -> ConfigLoader

Construct one context at boot, ``await context.init()``, and pass it to the
collaborators that need secret access.
"""
import os
import logging
from collections.abc import Mapping
from typing import Any, Optional

from pydantic import SecretStr

from .config_loader import AppConfig, ConfigLoader
from .exceptions import (
    DecryptionError,
    KeyNotFoundError,
    KMSError,
    NotInitializedError,
)
from .vault.audit import AuditLog
from .vault.backends import MemoryBackend
from .vault.config import KMSSettings
from .vault.crypto import Envelope, EnvelopeCipher
from .vault.keys import KeyManager
from .vault.manager import SecretsManager
from .vault.store import SecretOptions, SecretStore

logger = logging.getLogger("navigator.kms")
audit_logger = logging.getLogger("navigator.kms.audit")


class KMSContext:
    """Owns the KMS components and their lifecycle."""

    def __init__(
        self,
        settings: Optional[KMSSettings] = None,
        backend: Any = None,
        environ: Optional[Mapping[str, str]] = None,
        load_config: bool = True,
    ):
        self._environ = environ if environ is not None else os.environ
        self.settings = settings or KMSSettings.from_env(self._environ)
        self.backend = backend if backend is not None else MemoryBackend()
        self.load_config = load_config
        self.cipher = EnvelopeCipher()
        self._key_manager: Optional[KeyManager] = None
        self._store: Optional[SecretStore] = None
        self._secrets: Optional[SecretsManager] = None
        self._config_loader: Optional[ConfigLoader] = None
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _seed_values(self) -> dict[str, Optional[SecretStr]]:
        seeds = {}
        for name in self.settings.seed_secrets:
            value = self._environ.get(name)
            seeds[name] = SecretStr(value) if value else None
        return seeds

    async def init(self) -> "KMSContext":
        """Run the ordered bootstrap.

        Raises:
            ConfigurationError: On a missing/malformed master key, keys that
                do not open with it, or invalid application configuration.
        """
        if self._started:
            raise KMSError("KMSContext is already initialized")
        settings = self.settings
        master_key = settings.master_key_provider(self._environ).load()

        key_manager = KeyManager(master_key, backend=self.backend)
        await key_manager.initialize()

        store = SecretStore(
            key_manager,
            backend=self.backend,
            audit=AuditLog(self.backend),
            timeout=settings.operation_timeout,
        )
        secrets = SecretsManager(
            store,
            cache_ttl=settings.cache_ttl,
            sweep_interval=settings.sweep_interval,
            max_cache_size=settings.max_cache_size,
        )
        await secrets.initialize(
            self._seed_values(),
            SecretOptions(
                ttl_days=settings.default_ttl_days,
                tags={"type": "application_secret"},
            ),
        )
        config_loader = None
        try:
            if self.load_config:
                config_loader = ConfigLoader(self._environ)
                await config_loader.load(secrets)
        except Exception:
            await secrets.shutdown()
            raise

        self._key_manager = key_manager
        self._store = store
        self._secrets = secrets
        self._config_loader = config_loader
        self._started = True
        logger.info(
            "KMS initialized: active_key=%s data_keys=%d",
            key_manager.active_key_id, key_manager.count,
        )
        return self

    async def shutdown(self) -> None:
        if not self._started:
            return
        await self._secrets.shutdown()
        self._started = False
        logger.info("KMS shut down")

    async def __aenter__(self) -> "KMSContext":
        return await self.init()

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self._started

    def _require(self, component: Any, name: str) -> Any:
        if not self._started or component is None:
            raise NotInitializedError(f"{name} is not available before init()")
        return component

    @property
    def key_manager(self) -> KeyManager:
        return self._require(self._key_manager, "KeyManager")

    @property
    def store(self) -> SecretStore:
        return self._require(self._store, "SecretStore")

    @property
    def secrets(self) -> SecretsManager:
        return self._require(self._secrets, "SecretsManager")

    @property
    def config_loader(self) -> ConfigLoader:
        return self._require(self._config_loader, "ConfigLoader")

    @property
    def config(self) -> AppConfig:
        return self.config_loader.config

    async def get_secret(self, name: str) -> SecretStr:
        return await self.secrets.get_secret(name)

    # ------------------------------------------------------------------
    # Ad hoc payload protection
    # ------------------------------------------------------------------

    def encrypt_payload(self, plaintext: bytes, aad: Optional[bytes] = None) -> Envelope:
        """Seal a collaborator payload (e.g. a recovery phrase) under the active key.

        Bind the payload to its owner through ``aad`` (for instance a user id).
        """
        return self.cipher.encrypt(plaintext, self.key_manager.get_active_key(), aad)

    def decrypt_payload(self, envelope: Envelope, aad: Optional[bytes] = None) -> bytes:
        """Open a payload sealed by ``encrypt_payload`` under any known key.

        Raises:
            DecryptionError: Unknown key, tampering, or AAD mismatch.
        """
        try:
            key = self.key_manager.get_key(envelope.key_id)
            return self.cipher.decrypt(envelope, key, aad)
        except (KeyNotFoundError, DecryptionError) as exc:
            audit_logger.warning(
                "kms audit: operation=decrypt_payload key_id=%s success=False reason=%s",
                envelope.key_id, type(exc).__name__,
            )
            if isinstance(exc, DecryptionError):
                raise
            raise DecryptionError(
                "Decryption failed", key_id=envelope.key_id
            ) from exc

    async def get_status(self) -> dict[str, Any]:
        status = await self.secrets.get_status()
        if self._config_loader is not None:
            status["config"] = self._config_loader.get_status()
        return status
