"""
KMS Key Manager — data key generation, lookup and rotation.

Data keys are persisted wrapped: the key material is sealed as an
Envelope under a key-encryption key derived from the master key
(HKDF, context ``navigator-kms-kek``), with the data key id as AAD.

Security Note:
    Only key ids are ever logged.
"""
import asyncio
import time
import secrets
import logging
from datetime import datetime
from typing import Any, Optional

from pydantic import SecretBytes

from ..exceptions import (
    ConfigurationError,
    DecryptionError,
    KeyNotFoundError,
    KMSError,
    NotInitializedError,
)
from .crypto import (
    KEK_CONTEXT,
    KEY_LENGTH,
    DataKey,
    Envelope,
    EnvelopeCipher,
    derive_key,
)

logger = logging.getLogger("navigator.kms")

_KEK_ID = "kek"


def new_key_id() -> str:
    return f"dk-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def generate_data_key(active: bool = True) -> DataKey:
    """Create a data key from 32 bytes of CSPRNG output."""
    return DataKey(
        id=new_key_id(),
        material=secrets.token_bytes(KEY_LENGTH),
        active=active,
    )


class KeyManager:
    """Holds every known data key and the pointer to the active one.

    Reads are lock-free: a new key is published in the key map before the
    active pointer moves to it, and DataKey objects are immutable. Only
    rotation and purge are serialized.
    """

    def __init__(self, master_key: SecretBytes, backend: Any = None):
        raw = master_key.get_secret_value()
        if len(raw) != KEY_LENGTH:
            raise ConfigurationError(
                f"Master key must be {KEY_LENGTH} bytes"
            )
        self._kek = DataKey(
            id=_KEK_ID, material=derive_key(raw, KEK_CONTEXT), active=True
        )
        self._backend = backend
        self._cipher = EnvelopeCipher()
        self._keys: dict[str, DataKey] = {}
        self._active: Optional[DataKey] = None
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Wrapping
    # ------------------------------------------------------------------

    def wrap_key(self, key: DataKey) -> Envelope:
        """Seal a data key's material under the master-derived KEK."""
        return self._cipher.encrypt(
            key.material, self._kek, aad=key.id.encode("utf-8")
        )

    def unwrap_key(
        self,
        key_id: str,
        wrapped: Envelope,
        created_at: Optional[datetime] = None,
        active: bool = False,
    ) -> DataKey:
        """Open a wrapped data key.

        Raises:
            DecryptionError: If the envelope was not sealed by this master key.
        """
        material = self._cipher.decrypt(
            wrapped, self._kek, aad=key_id.encode("utf-8")
        )
        values = {"id": key_id, "material": material, "active": active}
        if created_at is not None:
            values["created_at"] = created_at
        return DataKey(**values)

    def _storage_form(self, key: DataKey) -> dict:
        return {
            "id": key.id,
            "wrapped": self.wrap_key(key).to_dict(),
            "created_at": key.created_at.isoformat(),
            "active": key.active,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self._active is not None

    async def initialize(self) -> DataKey:
        """Load persisted keys or create the first active key.

        Raises:
            ConfigurationError: If persisted keys cannot be unwrapped with
                the current master key.
        """
        if self._active is not None:
            return self._active
        stored = []
        if self._backend is not None:
            stored = await self._backend.load_data_keys()
        keys: dict[str, DataKey] = {}
        active: Optional[DataKey] = None
        for item in stored:
            try:
                key = self.unwrap_key(
                    item["id"],
                    Envelope.from_dict(item["wrapped"]),
                    created_at=datetime.fromisoformat(item["created_at"]),
                    active=bool(item["active"]),
                )
            except DecryptionError as exc:
                raise ConfigurationError(
                    f"Data key {item['id']} cannot be unwrapped with the "
                    "configured master key"
                ) from exc
            keys[key.id] = key
            if key.active and (active is None or key.created_at > active.created_at):
                active = key
        if keys and active is None:
            # no active flag survived; promote the newest key
            newest = max(keys.values(), key=lambda k: k.created_at)
            active = newest.model_copy(update={"active": True})
            keys[active.id] = active
        # a single active key, whatever was persisted
        for key_id, key in list(keys.items()):
            if key.active and key_id != active.id:
                keys[key_id] = key.demoted()
        if active is None:
            active = generate_data_key(active=True)
            keys[active.id] = active
            if self._backend is not None:
                await self._backend.save_data_key(self._storage_form(active))
            logger.info("Generated initial data key %s", active.id)
        self._keys = keys
        self._active = active
        logger.info(
            "KeyManager initialized: %d data key(s), active=%s",
            len(keys), active.id,
        )
        return active

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_active_key(self) -> DataKey:
        active = self._active
        if active is None:
            raise NotInitializedError("KeyManager is not initialized")
        return active

    def get_key(self, key_id: str) -> DataKey:
        try:
            return self._keys[key_id]
        except KeyError:
            raise KeyNotFoundError(key_id) from None

    def has_key(self, key_id: str) -> bool:
        return key_id in self._keys

    def keys(self) -> list[DataKey]:
        return sorted(self._keys.values(), key=lambda k: k.created_at)

    @property
    def key_ids(self) -> list[str]:
        return [k.id for k in self.keys()]

    @property
    def active_key_id(self) -> Optional[str]:
        return self._active.id if self._active is not None else None

    @property
    def count(self) -> int:
        return len(self._keys)

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    async def rotate_data_key(self) -> DataKey:
        """Generate a new active key; the previous one stays retrievable.

        Returns:
            The new active DataKey.
        """
        async with self._lock:
            previous = self.get_active_key()
            new_key = generate_data_key(active=True)
            demoted = previous.demoted()
            if self._backend is not None:
                await self._backend.save_data_key(self._storage_form(new_key))
                await self._backend.save_data_key(self._storage_form(demoted))
            # publish before switching so get_key() never misses the active id
            keys = dict(self._keys)
            keys[new_key.id] = new_key
            keys[demoted.id] = demoted
            self._keys = keys
            self._active = new_key
        logger.info(
            "Data key rotated: %s -> %s (total=%d)",
            previous.id, new_key.id, len(keys),
        )
        return new_key

    async def purge_key(self, key_id: str) -> bool:
        """Remove a historical key.

        Envelopes produced under it become undecryptable.

        Raises:
            KMSError: If key_id is the active key.
        """
        async with self._lock:
            if self._active is not None and key_id == self._active.id:
                raise KMSError(f"Cannot purge the active data key {key_id}")
            if key_id not in self._keys:
                return False
            if self._backend is not None:
                await self._backend.delete_data_key(key_id)
            keys = dict(self._keys)
            del keys[key_id]
            self._keys = keys
        logger.warning("Data key purged: %s", key_id)
        return True
