"""
SecretsManager — the application-facing secret access layer.

Wraps SecretStore with:
- a per-name, time-bounded cache of decrypted values
- coalescing of concurrent cache misses into one decrypt per name
- batch reads with per-name results
- backup/restore of encrypted records
- data key rotation orchestration
- a periodic expiry sweep

Security Note:
    Cached values are ``SecretStr`` and live in process memory only.
    Cache keys are secret names, never values.
"""
import asyncio
import time
import logging
from collections.abc import Iterable, Mapping
from typing import Any, Optional

from pydantic import BaseModel, SecretStr

from .. import conf
from ..exceptions import (
    KMSError,
    NotFoundError,
    NotInitializedError,
    SecretTimeoutError,
)
from .crypto import dumps, loads
from .key_rotation import reencrypt_secrets
from .store import SecretMetadata, SecretOptions, SecretStore, SecretValue

logger = logging.getLogger("navigator.kms")


class CacheEntry(BaseModel):
    name: str
    value: SecretStr
    expires_at: float  # time.monotonic()


class SecretResult(BaseModel):
    """Outcome of one name in a batch read."""

    name: str
    value: Optional[SecretStr] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class SecretsManager:
    """Caching, auditable facade over SecretStore."""

    def __init__(
        self,
        store: SecretStore,
        cache_ttl: float = conf.KMS_CACHE_TTL,
        sweep_interval: float = conf.KMS_SWEEP_INTERVAL,
        max_cache_size: Optional[int] = None,
    ):
        self.store = store
        self.cache_ttl = cache_ttl
        self.sweep_interval = sweep_interval
        self.max_cache_size = max_cache_size
        self._cache: dict[str, CacheEntry] = {}
        self._inflight: dict[str, asyncio.Future] = {}
        self._generation: dict[str, int] = {}
        self._sweeper: Optional[asyncio.Task] = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def key_manager(self):
        return self.store.key_manager

    def _ensure_ready(self) -> None:
        if not self._initialized:
            raise NotInitializedError("SecretsManager is not initialized")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(
        self,
        seed_secrets: Optional[Mapping[str, Optional[SecretValue]]] = None,
        seed_options: Optional[SecretOptions] = None,
        start_sweeper: bool = True,
    ) -> int:
        """Import seed secrets missing from the store and start the sweeper.

        Seeds already present in the store are left untouched, so a seed
        is only imported on first run.

        Returns:
            Number of seed secrets imported.
        """
        if self._initialized:
            logger.warning("SecretsManager already initialized")
            return 0
        if not self.key_manager.initialized:
            raise NotInitializedError("KeyManager must be initialized first")
        options = seed_options or SecretOptions(
            ttl_days=conf.KMS_DEFAULT_TTL_DAYS,
            tags={"type": "application_secret"},
        )
        imported = 0
        for name, value in (seed_secrets or {}).items():
            if value is None or value == "":
                continue
            try:
                await self.store.get_metadata(name)
                continue
            except NotFoundError:
                pass
            await self.store.store_secret(name, value, options)
            imported += 1
        if start_sweeper and self.sweep_interval:
            self._sweeper = asyncio.create_task(self._sweep_loop())
        self._initialized = True
        logger.info(
            "SecretsManager initialized: %d seed secret(s) imported", imported
        )
        return imported

    async def shutdown(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            except Exception as err:
                logger.error("Expiry sweeper had stopped: %s", type(err).__name__)
            self._sweeper = None
        for task in list(self._inflight.values()):
            task.cancel()
        self._inflight.clear()
        self.clear_cache()
        self._initialized = False
        logger.info("SecretsManager shut down")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep_expired()
            except Exception as err:
                # the sweeper outlives backend outages
                logger.error("Expiry sweep failed: %s", type(err).__name__)

    async def sweep_expired(self) -> int:
        return await self.store.sweep_expired()

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _cached(self, name: str) -> Optional[SecretStr]:
        entry = self._cache.get(name)
        if entry is None:
            return None
        if time.monotonic() >= entry.expires_at:
            self._cache.pop(name, None)
            return None
        return entry.value

    def _put(self, name: str, value: SecretStr) -> None:
        if self.cache_ttl <= 0:
            return
        if (
            self.max_cache_size is not None
            and name not in self._cache
            and len(self._cache) >= self.max_cache_size
        ):
            oldest = min(self._cache.values(), key=lambda e: e.expires_at)
            self._cache.pop(oldest.name, None)
        self._cache[name] = CacheEntry(
            name=name, value=value, expires_at=time.monotonic() + self.cache_ttl
        )

    def _invalidate(self, name: str) -> None:
        """Drop a cached value and detach any in-flight fetch for it.

        A fetch that started before invalidation finishes for its own
        waiters but cannot repopulate the cache.
        """
        self._cache.pop(name, None)
        self._inflight.pop(name, None)
        self._generation[name] = self._generation.get(name, 0) + 1

    def clear_cache(self) -> int:
        count = len(self._cache)
        for name in list(self._cache):
            self._invalidate(name)
        logger.info("Secrets cache cleared: %d entr(ies)", count)
        return count

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    async def _fetch(self, name: str, generation: int) -> SecretStr:
        value = await self.store.get_secret(name)
        if self._generation.get(name, 0) == generation:
            self._put(name, value)
        return value

    def _release(self, name: str, task: asyncio.Future) -> None:
        if self._inflight.get(name) is task:
            del self._inflight[name]
        if not task.cancelled():
            # consumed by waiters; avoid "exception was never retrieved"
            task.exception()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_secret(self, name: str, timeout: Optional[float] = None) -> SecretStr:
        """Return a secret value, from cache when fresh.

        Concurrent misses for one name share a single store read.

        Raises:
            NotFoundError, ExpiredSecretError, DecryptionError,
            SecretTimeoutError
        """
        self._ensure_ready()
        cached = self._cached(name)
        if cached is not None:
            logger.debug("Secret cache hit: name=%s", name)
            return cached
        task = self._inflight.get(name)
        if task is None:
            task = asyncio.ensure_future(
                self._fetch(name, self._generation.get(name, 0))
            )
            self._inflight[name] = task
            task.add_done_callback(lambda t, n=name: self._release(n, t))
        if timeout is None:
            return await asyncio.shield(task)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except SecretTimeoutError:
            raise
        except asyncio.TimeoutError as exc:
            logger.warning("get_secret timed out: name=%s", name)
            raise SecretTimeoutError("get_secret", timeout) from exc

    async def get_secrets(self, names: Iterable[str]) -> dict[str, SecretResult]:
        """Fetch several secrets; one failure does not affect the others."""
        self._ensure_ready()
        unique = list(dict.fromkeys(names))
        outcomes = await asyncio.gather(
            *(self.get_secret(name) for name in unique),
            return_exceptions=True,
        )
        results: dict[str, SecretResult] = {}
        for name, outcome in zip(unique, outcomes):
            if isinstance(outcome, SecretStr):
                results[name] = SecretResult(name=name, value=outcome)
            elif isinstance(outcome, Exception):
                logger.warning(
                    "Batch secret read failed: name=%s error=%s",
                    name, type(outcome).__name__,
                )
                results[name] = SecretResult(
                    name=name, error=type(outcome).__name__
                )
            else:
                raise outcome
        return results

    async def has_secret(self, name: str) -> bool:
        self._ensure_ready()
        if self._cached(name) is not None:
            return True
        return await self.store.has_secret(name)

    async def list_secrets(
        self, tag: Optional[str] = None, prefix: Optional[str] = None
    ) -> list[SecretMetadata]:
        self._ensure_ready()
        return await self.store.list_secrets(tag=tag, prefix=prefix)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def set_secret(
        self,
        name: str,
        value: SecretValue,
        options: Optional[SecretOptions] = None,
    ) -> SecretMetadata:
        self._ensure_ready()
        try:
            return await self.store.store_secret(name, value, options)
        finally:
            self._invalidate(name)

    async def rotate_secret(self, name: str, new_value: SecretValue) -> SecretMetadata:
        self._ensure_ready()
        try:
            return await self.store.rotate_secret(name, new_value)
        finally:
            self._invalidate(name)

    async def delete_secret(self, name: str) -> bool:
        self._ensure_ready()
        try:
            return await self.store.delete_secret(name)
        finally:
            self._invalidate(name)

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    async def rotate_data_key(self, reencrypt: bool = False) -> dict[str, Any]:
        """Rotate the active data key, optionally re-encrypting all secrets.

        Returns:
            ``{"key_id": <new id>, "previous_key_id": ..., "reencrypted": stats|None}``
        """
        self._ensure_ready()
        previous = self.key_manager.get_active_key().id
        new_key = await self.key_manager.rotate_data_key()
        await self.store.audit.record(
            "rotate_key", key_id=new_key.id, previous_key_id=previous
        )
        stats = None
        if reencrypt:
            stats = await reencrypt_secrets(self.store)
            self.clear_cache()
        return {
            "key_id": new_key.id,
            "previous_key_id": previous,
            "reencrypted": stats,
        }

    # ------------------------------------------------------------------
    # Backup / restore
    # ------------------------------------------------------------------

    async def backup_secrets(self) -> list[bytes]:
        """Export every record as an encrypted blob. Never decrypts."""
        self._ensure_ready()
        records = await self.store.export_records()
        blobs = [dumps(record) for record in records]
        await self.store.audit.record("backup", count=len(blobs))
        logger.info("Secrets backup created: %d record(s)", len(blobs))
        return blobs

    async def restore_secrets(
        self, blobs: Iterable[bytes], overwrite: bool = False
    ) -> dict[str, int]:
        """Import blobs produced by ``backup_secrets``.

        Records sealed under a data key this KeyManager does not hold are
        skipped, as are existing names unless ``overwrite`` is set.

        Returns:
            Stats dict with keys: total, restored, skipped, errors.
        """
        self._ensure_ready()
        stats = {"total": 0, "restored": 0, "skipped": 0, "errors": 0}
        for blob in blobs:
            stats["total"] += 1
            try:
                data = loads(blob)
                key_id = data["envelope"]["keyId"]
                if not self.key_manager.has_key(key_id):
                    logger.warning(
                        "Restore skipped name=%s: unknown key_id=%s",
                        data.get("name"), key_id,
                    )
                    stats["skipped"] += 1
                    continue
                if await self.store.import_record(data, overwrite=overwrite):
                    self._invalidate(data["name"])
                    stats["restored"] += 1
                else:
                    stats["skipped"] += 1
            except (KMSError, KeyError, TypeError, ValueError) as err:
                logger.error("Restore failed for a record: %s", type(err).__name__)
                stats["errors"] += 1
        logger.info("Secrets restore complete: %s", stats)
        return stats

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def get_status(self) -> dict[str, Any]:
        """Operational counters; no plaintext, no key material."""
        total, expired = (0, 0)
        if self._initialized:
            total, expired = await self.store.count()
        km = self.key_manager
        return {
            "initialized": self._initialized,
            "master_key_present": True,
            "data_keys_count": km.count,
            "active_key_id": km.active_key_id,
            "secrets_count": total,
            "expired_secrets_count": expired,
            "cache_size": len(self._cache),
            "sweeper_running": self._sweeper is not None and not self._sweeper.done(),
        }
