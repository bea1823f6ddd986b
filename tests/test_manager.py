"""
Tests for SecretsManager.

Tests cover:
- Cache hits, TTL and size bound
- Coalescing of concurrent misses
- Invalidation on write, including reads in flight during a rotation
- Batch reads, backup/restore and data key rotation
- Seed import, sweeper lifecycle and status
"""
import asyncio
import copy

import pytest
from pydantic import SecretBytes

from navigator_kms.exceptions import (
    ExpiredSecretError,
    NotFoundError,
    NotInitializedError,
    SecretTimeoutError,
)
from navigator_kms.vault import (
    KeyManager,
    MemoryBackend,
    SecretOptions,
    SecretsManager,
    SecretStore,
)
from navigator_kms.vault.key_rotation import reencrypt_secrets


class CountingStore(SecretStore):
    """SecretStore that counts reads and can hold them after loading."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.reads = 0
        self.gate = None

    async def get_secret(self, name):
        self.reads += 1
        value = await super().get_secret(name)
        if self.gate is not None:
            await self.gate.wait()
        return value


class FlakySweepBackend(MemoryBackend):
    """Backend whose conditional deletes always fail."""

    def __init__(self):
        super().__init__()
        self.sweep_attempts = 0

    async def delete_if_expired(self, name, now):
        self.sweep_attempts += 1
        raise OSError("db connection lost")


@pytest.fixture
def counting_store(key_manager, backend):
    return CountingStore(key_manager, backend=backend)


@pytest.fixture
async def counted(counting_store):
    mgr = SecretsManager(counting_store, cache_ttl=60)
    await mgr.initialize(start_sweeper=False)
    yield mgr
    await mgr.shutdown()


async def _manager_for(master_key, backend, **kwargs):
    km = KeyManager(master_key, backend=backend)
    await km.initialize()
    mgr = SecretsManager(SecretStore(km, backend=backend), **kwargs)
    await mgr.initialize(start_sweeper=False)
    return mgr


# --- Cache ---

class TestCache:
    """Caching of decrypted values."""

    async def test_second_read_is_cached(self, counted, counting_store):
        """Test a fresh cached value skips the store."""
        await counted.set_secret("A", "1")
        assert (await counted.get_secret("A")).get_secret_value() == "1"
        assert (await counted.get_secret("A")).get_secret_value() == "1"
        assert counting_store.reads == 1
        assert counted.cache_size == 1

    async def test_concurrent_misses_share_one_read(self, counted, counting_store):
        """Test five concurrent reads of one name decrypt once."""
        await counted.set_secret("A", "1")
        values = await asyncio.gather(*(counted.get_secret("A") for _ in range(5)))
        assert {v.get_secret_value() for v in values} == {"1"}
        assert counting_store.reads == 1

    async def test_concurrent_misses_share_failure(self, counted, counting_store):
        """Test coalesced waiters all see the same error."""
        results = await asyncio.gather(
            *(counted.get_secret("MISSING") for _ in range(3)),
            return_exceptions=True,
        )
        assert all(isinstance(r, NotFoundError) for r in results)
        assert counting_store.reads == 1

    async def test_zero_ttl_disables_cache(self, counting_store):
        """Test cache_ttl=0 reads through every time."""
        mgr = SecretsManager(counting_store, cache_ttl=0)
        await mgr.initialize(start_sweeper=False)
        try:
            await mgr.set_secret("A", "1")
            await mgr.get_secret("A")
            await mgr.get_secret("A")
            assert counting_store.reads == 2
            assert mgr.cache_size == 0
        finally:
            await mgr.shutdown()

    async def test_expired_cache_entry(self, counting_store):
        """Test an entry older than cache_ttl is read again."""
        mgr = SecretsManager(counting_store, cache_ttl=0.05)
        await mgr.initialize(start_sweeper=False)
        try:
            await mgr.set_secret("A", "1")
            await mgr.get_secret("A")
            await asyncio.sleep(0.1)
            await mgr.get_secret("A")
            assert counting_store.reads == 2
        finally:
            await mgr.shutdown()

    async def test_size_bound(self, store):
        """Test max_cache_size evicts the entry closest to expiry."""
        mgr = SecretsManager(store, cache_ttl=60, max_cache_size=2)
        await mgr.initialize(start_sweeper=False)
        try:
            for name in ("A", "B", "C"):
                await mgr.set_secret(name, name.lower())
                await mgr.get_secret(name)
            assert mgr.cache_size == 2
            assert mgr._cached("A") is None
            assert mgr._cached("C") is not None
        finally:
            await mgr.shutdown()

    async def test_clear_cache(self, counted):
        """Test clearing the cache."""
        await counted.set_secret("A", "1")
        await counted.get_secret("A")
        assert counted.clear_cache() == 1
        assert counted.cache_size == 0


# --- Invalidation ---

class TestInvalidation:
    """Writes through the manager are visible to the next read."""

    async def test_rotation_visible_immediately(self, manager):
        """Test a cached value is replaced by its rotation."""
        await manager.set_secret("JWT_SECRET", "abc123")
        assert (await manager.get_secret("JWT_SECRET")).get_secret_value() == "abc123"
        await manager.rotate_secret("JWT_SECRET", "xyz789")
        assert (await manager.get_secret("JWT_SECRET")).get_secret_value() == "xyz789"

    async def test_set_overwrites_cache(self, manager):
        """Test set_secret invalidates the cached value."""
        await manager.set_secret("A", "1")
        await manager.get_secret("A")
        await manager.set_secret("A", "2")
        assert (await manager.get_secret("A")).get_secret_value() == "2"

    async def test_delete_invalidates(self, manager):
        """Test a deleted secret is not served from cache."""
        await manager.set_secret("A", "1")
        await manager.get_secret("A")
        assert await manager.delete_secret("A") is True
        with pytest.raises(NotFoundError):
            await manager.get_secret("A")

    async def test_inflight_read_does_not_repopulate(self, counted, counting_store):
        """Test a read started before a rotation cannot cache the old value."""
        await counted.set_secret("A", "old")
        counting_store.gate = asyncio.Event()
        pending = asyncio.create_task(counted.get_secret("A"))
        await asyncio.sleep(0.01)
        await counted.rotate_secret("A", "new")
        counting_store.gate.set()
        assert (await pending).get_secret_value() == "old"
        assert (await counted.get_secret("A")).get_secret_value() == "new"
        assert (await counted.get_secret("A")).get_secret_value() == "new"

    async def test_failed_rotation_still_invalidates(self, manager):
        """Test rotating a missing name raises and leaves no cache entry."""
        with pytest.raises(NotFoundError):
            await manager.rotate_secret("MISSING", "v")
        assert manager.cache_size == 0


# --- Reads ---

class TestReads:
    """Single and batch reads."""

    async def test_batch_partial_failure(self, manager):
        """Test one missing name does not fail the batch."""
        await manager.set_secret("A", "1")
        await manager.set_secret("OLD", "x", SecretOptions(ttl_days=-1))
        results = await manager.get_secrets(["A", "MISSING", "OLD", "A"])
        assert list(results) == ["A", "MISSING", "OLD"]
        assert results["A"].ok
        assert results["A"].value.get_secret_value() == "1"
        assert results["MISSING"].error == "NotFoundError"
        assert results["OLD"].error == "ExpiredSecretError"
        assert results["MISSING"].value is None

    async def test_expired(self, manager):
        """Test expired secrets surface ExpiredSecretError."""
        await manager.set_secret("OLD", "x", SecretOptions(ttl_days=-1))
        with pytest.raises(ExpiredSecretError):
            await manager.get_secret("OLD")

    async def test_has_and_list(self, manager):
        """Test has_secret and list_secrets pass through."""
        await manager.set_secret("DB_A", "1", SecretOptions(tags={"env": "prod"}))
        await manager.set_secret("JWT", "1")
        assert await manager.has_secret("DB_A") is True
        assert await manager.has_secret("NOPE") is False
        assert [m.name for m in await manager.list_secrets(prefix="DB_")] == ["DB_A"]
        assert [m.name for m in await manager.list_secrets(tag="env=prod")] == ["DB_A"]

    async def test_timeout(self, counting_store):
        """Test a read exceeding its timeout raises SecretTimeoutError."""
        mgr = SecretsManager(counting_store, cache_ttl=60)
        await mgr.initialize(start_sweeper=False)
        try:
            await mgr.set_secret("A", "1")
            counting_store.gate = asyncio.Event()
            with pytest.raises(SecretTimeoutError) as exc:
                await mgr.get_secret("A", timeout=0.05)
            assert exc.value.retryable is True
        finally:
            await mgr.shutdown()

    async def test_not_initialized(self, store):
        """Test operations before initialize()."""
        mgr = SecretsManager(store)
        with pytest.raises(NotInitializedError):
            await mgr.get_secret("A")
        with pytest.raises(NotInitializedError):
            await mgr.set_secret("A", "1")


# --- Lifecycle ---

class TestLifecycle:
    """Seeding, sweeper and status."""

    async def test_seed_imports_only_missing(self, store):
        """Test seeds never overwrite stored secrets."""
        await store.store_secret("JWT_SECRET", "existing")
        mgr = SecretsManager(store)
        imported = await mgr.initialize(
            {"JWT_SECRET": "from-env", "REDIS_URL": "redis://cache:6379", "EMPTY": None},
            start_sweeper=False,
        )
        try:
            assert imported == 1
            assert (await mgr.get_secret("JWT_SECRET")).get_secret_value() == "existing"
            meta = await store.get_metadata("REDIS_URL")
            assert meta.tags == {"type": "application_secret"}
            assert meta.ttl_days == 365
            assert await store.has_secret("EMPTY") is False
        finally:
            await mgr.shutdown()

    async def test_requires_key_manager(self, master_key):
        """Test initialize() refuses an uninitialized KeyManager."""
        mgr = SecretsManager(SecretStore(KeyManager(master_key)))
        with pytest.raises(NotInitializedError):
            await mgr.initialize(start_sweeper=False)

    async def test_sweeper_removes_expired(self, store, backend):
        """Test the background sweep deletes expired records."""
        mgr = SecretsManager(store, sweep_interval=0.05)
        await mgr.initialize()
        try:
            await mgr.set_secret("OLD", "x", SecretOptions(ttl_days=-1))
            await mgr.set_secret("NEW", "x")
            assert (await mgr.get_status())["sweeper_running"] is True
            await asyncio.sleep(0.2)
            assert set(backend.records) == {"NEW"}
        finally:
            await mgr.shutdown()
        assert (await mgr.get_status())["sweeper_running"] is False

    async def test_sweeper_survives_backend_errors(self, key_manager):
        """Test a failing backend does not stop the sweeper or break shutdown."""
        backend = FlakySweepBackend()
        store = SecretStore(key_manager, backend=backend)
        mgr = SecretsManager(store, sweep_interval=0.01)
        await mgr.initialize()
        await mgr.set_secret("OLD", "x", SecretOptions(ttl_days=-1))
        await asyncio.sleep(0.1)
        assert backend.sweep_attempts >= 2
        assert (await mgr.get_status())["sweeper_running"] is True
        await mgr.shutdown()
        assert mgr.initialized is False
        assert "OLD" in backend.records

    async def test_shutdown_after_sweeper_died(self, store):
        """Test shutdown completes when the sweeper task ended with an error."""
        mgr = SecretsManager(store, cache_ttl=60)
        await mgr.initialize(start_sweeper=False)
        await mgr.set_secret("A", "1")
        await mgr.get_secret("A")

        async def crashed():
            raise OSError("db connection lost")

        mgr._sweeper = asyncio.create_task(crashed())
        await asyncio.sleep(0)
        await mgr.shutdown()
        assert mgr.initialized is False
        assert mgr.cache_size == 0

    async def test_status(self, manager, key_manager):
        """Test status counters carry no secret values."""
        await manager.set_secret("A", "value-a")
        await manager.set_secret("OLD", "value-old", SecretOptions(ttl_days=-1))
        await manager.get_secret("A")
        status = await manager.get_status()
        assert status == {
            "initialized": True,
            "master_key_present": True,
            "data_keys_count": 1,
            "active_key_id": key_manager.active_key_id,
            "secrets_count": 2,
            "expired_secrets_count": 1,
            "cache_size": 1,
            "sweeper_running": False,
        }
        assert "value-a" not in str(status)


# --- Keys ---

class TestDataKeyRotation:
    """Tests for rotate_data_key()."""

    async def test_rotate_without_reencrypt(self, manager, backend):
        """Test old secrets stay readable under the previous key."""
        await manager.set_secret("A", "1")
        result = await manager.rotate_data_key()
        assert result["previous_key_id"] != result["key_id"]
        assert result["reencrypted"] is None
        assert backend.records["A"]["envelope"]["keyId"] == result["previous_key_id"]
        manager.clear_cache()
        assert (await manager.get_secret("A")).get_secret_value() == "1"
        assert "rotate_key" in [e["operation"] for e in backend.audit_events]

    async def test_rotate_with_reencrypt(self, manager, backend):
        """Test all secrets move to the new key."""
        await manager.set_secret("A", "1")
        await manager.set_secret("B", "2")
        result = await manager.rotate_data_key(reencrypt=True)
        assert result["reencrypted"] == {
            "total": 2, "rotated": 2, "errors": 0, "skipped": 0,
        }
        for name in ("A", "B"):
            assert backend.records[name]["envelope"]["keyId"] == result["key_id"]
        assert (await manager.get_secret("B")).get_secret_value() == "2"

    async def test_reencrypt_is_idempotent(self, manager):
        """Test a second re-encryption pass skips everything."""
        await manager.set_secret("A", "1")
        await manager.rotate_data_key(reencrypt=True)
        stats = await reencrypt_secrets(manager.store, batch_size=1)
        assert stats == {"total": 1, "rotated": 0, "errors": 0, "skipped": 1}


# --- Backup / restore ---

class TestBackupRestore:
    """Encrypted export and import of records."""

    async def test_backup_holds_no_plaintext(self, manager):
        """Test backup blobs are envelopes only."""
        await manager.set_secret("A", "plain-value-a")
        blobs = await manager.backup_secrets()
        assert len(blobs) == 1
        assert isinstance(blobs[0], bytes)
        assert b"plain-value-a" not in blobs[0]

    async def test_restore_into_fresh_store(self, manager, backend, master_key):
        """Test restoring into a new store that shares the data keys."""
        await manager.set_secret("A", "1")
        await manager.set_secret("B", "2", SecretOptions(tags={"env": "prod"}))
        blobs = await manager.backup_secrets()

        target_backend = MemoryBackend()
        target_backend.data_keys = copy.deepcopy(backend.data_keys)
        target = await _manager_for(master_key, target_backend)
        try:
            stats = await target.restore_secrets(blobs)
            assert stats == {"total": 2, "restored": 2, "skipped": 0, "errors": 0}
            assert (await target.get_secret("A")).get_secret_value() == "1"
            meta = await target.store.get_metadata("B")
            assert meta.tags == {"env": "prod"}
        finally:
            await target.shutdown()

    async def test_restore_skips_unknown_keys(self, manager):
        """Test records sealed under foreign data keys are skipped."""
        await manager.set_secret("A", "1")
        blobs = await manager.backup_secrets()
        other = await _manager_for(SecretBytes(b"\x07" * 32), MemoryBackend())
        try:
            stats = await other.restore_secrets(blobs)
            assert stats == {"total": 1, "restored": 0, "skipped": 1, "errors": 0}
            assert await other.has_secret("A") is False
        finally:
            await other.shutdown()

    async def test_restore_existing_and_overwrite(self, manager):
        """Test existing names are skipped unless overwrite is set."""
        await manager.set_secret("A", "1")
        blobs = await manager.backup_secrets()
        await manager.set_secret("A", "2")
        assert (await manager.restore_secrets(blobs))["skipped"] == 1
        assert (await manager.get_secret("A")).get_secret_value() == "2"
        assert (await manager.restore_secrets(blobs, overwrite=True))["restored"] == 1
        assert (await manager.get_secret("A")).get_secret_value() == "1"

    async def test_restore_counts_garbage(self, manager):
        """Test unparseable blobs are counted as errors."""
        stats = await manager.restore_secrets([b"not json", b"{}"])
        assert stats == {"total": 2, "restored": 0, "skipped": 0, "errors": 2}
