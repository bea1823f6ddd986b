"""
SecretStore — named secrets persisted as encrypted envelopes.

Provides:
- ``store_secret(name, value, options)`` — encrypt under the active key and persist
- ``get_secret(name)`` — expiry check, key lookup, decrypt
- ``rotate_secret(name, value)`` — replace the envelope of an existing record
- ``list_secrets()`` — metadata only
- ``sweep_expired()`` — remove records whose TTL has elapsed

Each envelope is bound to its record by using the secret name as AAD.

Security Note:
    Never log plaintext or ciphertext values. Only log names, key ids
    and timestamps.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, SecretStr, ValidationError

from ..exceptions import (
    DecryptionError,
    ExpiredSecretError,
    KeyNotFoundError,
    KMSError,
    NotFoundError,
    RotationConflictError,
    SecretTimeoutError,
    StorageError,
)
from .audit import AuditLog
from .backends import MemoryBackend
from .crypto import Envelope, EnvelopeCipher
from .keys import KeyManager

logger = logging.getLogger("navigator.kms")

SecretValue = Union[str, SecretStr]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_name(name: str) -> None:
    """Validate a secret name.

    Raises:
        ValueError: If name is empty, too long, or contains ':'.
    """
    if not name:
        raise ValueError("Secret name cannot be empty")
    if len(name) > 255:
        raise ValueError("Secret name cannot exceed 255 characters")
    if ":" in name:
        raise ValueError("Secret name cannot contain ':'")


def _reveal(value: SecretValue) -> str:
    if isinstance(value, SecretStr):
        return value.get_secret_value()
    if not isinstance(value, str):
        raise TypeError("Secret value must be str or SecretStr")
    return value


class SecretOptions(BaseModel):
    """Options applied when storing a secret.

    ``ttl_days=None`` stores a secret that never expires.
    """

    ttl_days: Optional[int] = None
    tags: dict[str, str] = Field(default_factory=dict)
    rotation_policy: str = "manual"


class SecretMetadata(BaseModel):
    """Plaintext-free view of a SecretRecord."""

    name: str
    key_id: str
    tags: dict[str, str]
    ttl_days: Optional[int]
    rotation_policy: str
    created_at: datetime
    updated_at: datetime
    expires_at: Optional[datetime]
    expired: bool

    @classmethod
    def from_storage(
        cls, data: dict[str, Any], now: Optional[datetime] = None
    ) -> "SecretMetadata":
        """Build metadata from a storage dict without parsing the envelope.

        A record whose envelope is damaged still lists; only reading its
        value fails.
        """
        envelope = data.get("envelope")
        key_id = envelope.get("keyId") if isinstance(envelope, dict) else None
        expires_at = data.get("expires_at")
        expires = datetime.fromisoformat(expires_at) if expires_at else None
        return cls(
            name=data["name"],
            key_id=str(key_id or ""),
            tags=data.get("tags") or {},
            ttl_days=data.get("ttl_days"),
            rotation_policy=data.get("rotation_policy") or "manual",
            created_at=data["created_at"],
            updated_at=data.get("updated_at") or data["created_at"],
            expires_at=expires,
            expired=expires is not None and (now or utcnow()) >= expires,
        )


class SecretRecord(BaseModel):
    """A named secret: envelope plus metadata."""

    name: str
    envelope: Envelope
    tags: dict[str, str] = Field(default_factory=dict)
    ttl_days: Optional[int] = None
    rotation_policy: str = "manual"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    revision: int = 1

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    def metadata(self, now: Optional[datetime] = None) -> SecretMetadata:
        return SecretMetadata(
            name=self.name,
            key_id=self.envelope.key_id,
            tags=dict(self.tags),
            ttl_days=self.ttl_days,
            rotation_policy=self.rotation_policy,
            created_at=self.created_at,
            updated_at=self.updated_at,
            expires_at=self.expires_at,
            expired=self.is_expired(now),
        )

    def to_storage(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "envelope": self.envelope.to_dict(),
            "tags": dict(self.tags),
            "ttl_days": self.ttl_days,
            "rotation_policy": self.rotation_policy,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "revision": self.revision,
        }

    @classmethod
    def from_storage(cls, data: dict[str, Any]) -> "SecretRecord":
        """Rebuild a record from its storage form.

        Raises:
            DecryptionError: If the stored envelope is malformed.
            ValueError: If the metadata is malformed.
        """
        envelope = Envelope.from_dict(data["envelope"])
        return cls(
            name=data["name"],
            envelope=envelope,
            tags=data.get("tags") or {},
            ttl_days=data.get("ttl_days"),
            rotation_policy=data.get("rotation_policy") or "manual",
            created_at=data["created_at"],
            updated_at=data.get("updated_at") or data["created_at"],
            expires_at=data.get("expires_at"),
            revision=data.get("revision") or 1,
        )


def _expiry(ttl_days: Optional[int], start: datetime) -> Optional[datetime]:
    if ttl_days is None:
        return None
    return start + timedelta(days=ttl_days)


class SecretStore:
    """Persists secrets encrypted under KeyManager's data keys."""

    def __init__(
        self,
        key_manager: KeyManager,
        backend: Any = None,
        audit: Optional[AuditLog] = None,
        timeout: Optional[float] = None,
    ):
        self.key_manager = key_manager
        self.backend = backend if backend is not None else MemoryBackend()
        self.audit = audit if audit is not None else AuditLog(self.backend)
        self.cipher = EnvelopeCipher()
        self.timeout = timeout

    async def _call(self, operation: str, coro):
        """Await a backend coroutine, bounded by the store timeout.

        Raises:
            SecretTimeoutError: The call exceeded the store timeout.
            StorageError: The backend raised anything else.
        """
        try:
            if self.timeout is None:
                return await coro
            return await asyncio.wait_for(coro, self.timeout)
        except asyncio.TimeoutError as exc:
            if self.timeout is None:
                raise StorageError(operation) from exc
            logger.warning(
                "Backend %s timed out after %ss", operation, self.timeout
            )
            raise SecretTimeoutError(operation, self.timeout) from exc
        except KMSError:
            raise
        except Exception as exc:
            logger.error(
                "Backend %s failed: %s", operation, type(exc).__name__
            )
            raise StorageError(operation) from exc

    def _seal(self, name: str, value: SecretValue) -> Envelope:
        key = self.key_manager.get_active_key()
        return self.cipher.encrypt(
            _reveal(value).encode("utf-8"), key, aad=name.encode("utf-8")
        )

    async def _load(self, name: str) -> SecretRecord:
        data = await self._call("get_record", self.backend.get_record(name))
        if data is None:
            raise NotFoundError(name)
        try:
            return SecretRecord.from_storage(data)
        except DecryptionError:
            await self.audit.record("decrypt_failed", name=name, success=False)
            raise
        except (KeyError, ValueError, ValidationError) as exc:
            raise KMSError(f"Stored record {name} is malformed") from exc

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def store_secret(
        self,
        name: str,
        value: SecretValue,
        options: Optional[SecretOptions] = None,
    ) -> SecretMetadata:
        """Encrypt and persist a secret, overwriting any existing record.

        Args:
            name: Secret name (max 255 chars, no ':').
            value: Plaintext value.
            options: TTL, tags and rotation policy.

        Returns:
            Metadata of the stored record.
        """
        validate_name(name)
        options = options or SecretOptions()
        envelope = self._seal(name, value)
        now = utcnow()
        existing = await self._call("get_record", self.backend.get_record(name))
        record = SecretRecord(
            name=name,
            envelope=envelope,
            tags=dict(options.tags),
            ttl_days=options.ttl_days,
            rotation_policy=options.rotation_policy,
            created_at=now,
            updated_at=now,
            expires_at=_expiry(options.ttl_days, now),
            revision=(existing.get("revision", 0) + 1) if existing else 1,
        )
        await self._call("put_record", self.backend.put_record(record.to_storage()))
        operation = "rotate" if existing else "set"
        await self.audit.record(operation, name=name, key_id=envelope.key_id)
        logger.debug(
            "Secret stored: name=%s key_id=%s ttl_days=%s",
            name, envelope.key_id, options.ttl_days,
        )
        return record.metadata(now)

    async def get_secret(self, name: str) -> SecretStr:
        """Load, check expiry and decrypt a secret.

        Raises:
            NotFoundError: No record with that name.
            ExpiredSecretError: The record's TTL has elapsed.
            DecryptionError: Key unknown, tag or AAD mismatch.
        """
        validate_name(name)
        record = await self._load(name)
        if record.is_expired():
            logger.warning("Secret expired: name=%s", name)
            raise ExpiredSecretError(name, record.expires_at)
        value = await self._open(record)
        logger.debug(
            "Secret retrieved: name=%s key_id=%s", name, record.envelope.key_id
        )
        return SecretStr(value)

    async def _open(self, record: SecretRecord) -> str:
        name = record.name
        key_id = record.envelope.key_id
        try:
            key = self.key_manager.get_key(key_id)
            plaintext = self.cipher.decrypt(
                record.envelope, key, aad=name.encode("utf-8")
            )
            return plaintext.decode("utf-8")
        except (KeyNotFoundError, DecryptionError, UnicodeDecodeError) as exc:
            logger.error(
                "Decryption failed: name=%s key_id=%s reason=%s",
                name, key_id, type(exc).__name__,
            )
            await self.audit.record(
                "decrypt_failed", name=name, key_id=key_id, success=False,
                reason=type(exc).__name__,
            )
            if isinstance(exc, DecryptionError):
                raise
            raise DecryptionError(
                "Decryption failed", key_id=key_id
            ) from exc

    async def rotate_secret(self, name: str, new_value: SecretValue) -> SecretMetadata:
        """Replace the value of an existing secret under the active key.

        Tags, TTL and rotation policy carry over; expiry restarts now.

        Raises:
            NotFoundError: The record does not exist.
            RotationConflictError: The record was deleted or rotated
                concurrently.
        """
        validate_name(name)
        current = await self._load(name)
        envelope = self._seal(name, new_value)
        now = utcnow()
        record = current.model_copy(update={
            "envelope": envelope,
            "updated_at": now,
            "expires_at": _expiry(current.ttl_days, now),
            "revision": current.revision + 1,
        })
        replaced = await self._call(
            "replace_record",
            self.backend.replace_record(record.to_storage(), current.revision),
        )
        if not replaced:
            await self.audit.record("rotate", name=name, success=False,
                                    reason="conflict")
            raise RotationConflictError(name)
        await self.audit.record(
            "rotate", name=name, key_id=envelope.key_id,
            previous_key_id=current.envelope.key_id,
        )
        logger.info(
            "Secret rotated: name=%s key_id=%s -> %s",
            name, current.envelope.key_id, envelope.key_id,
        )
        return record.metadata(now)

    async def reencrypt(self, name: str) -> bool:
        """Re-seal a secret's current value under the active key.

        Value, timestamps and expiry are unchanged.

        Returns:
            False if the record already uses the active key.
        """
        current = await self._load(name)
        active = self.key_manager.get_active_key()
        if current.envelope.key_id == active.id:
            return False
        value = await self._open(current)
        record = current.model_copy(update={
            "envelope": self._seal(name, value),
            "revision": current.revision + 1,
        })
        replaced = await self._call(
            "replace_record",
            self.backend.replace_record(record.to_storage(), current.revision),
        )
        if not replaced:
            raise RotationConflictError(name)
        await self.audit.record(
            "reencrypt", name=name, key_id=active.id,
            previous_key_id=current.envelope.key_id,
        )
        return True

    async def delete_secret(self, name: str) -> bool:
        validate_name(name)
        deleted = await self._call("delete_record", self.backend.delete_record(name))
        if deleted:
            await self.audit.record("delete", name=name)
            logger.info("Secret deleted: name=%s", name)
        return deleted

    async def has_secret(self, name: str) -> bool:
        """True if a non-expired record exists. Does not decrypt."""
        validate_name(name)
        data = await self._call("get_record", self.backend.get_record(name))
        if data is None:
            return False
        expires_at = data.get("expires_at")
        return expires_at is None or utcnow() < datetime.fromisoformat(expires_at)

    async def get_metadata(self, name: str) -> SecretMetadata:
        validate_name(name)
        return (await self._load(name)).metadata()

    async def list_secrets(
        self,
        tag: Optional[str] = None,
        prefix: Optional[str] = None,
    ) -> list[SecretMetadata]:
        """List secret metadata, never plaintext.

        Args:
            tag: ``"key"`` (tag present) or ``"key=value"``.
            prefix: Only names starting with prefix.
        """
        tag_key, tag_value = None, None
        if tag:
            tag_key, _, tag_value = tag.partition("=")
            tag_value = tag_value or None
        now = utcnow()
        result = []
        for data in await self._call("list_records", self.backend.list_records()):
            meta = SecretMetadata.from_storage(data, now)
            if prefix and not meta.name.startswith(prefix):
                continue
            if tag_key is not None:
                if tag_key not in meta.tags:
                    continue
                if tag_value is not None and meta.tags[tag_key] != tag_value:
                    continue
            result.append(meta)
        return sorted(result, key=lambda m: m.name)

    async def export_records(self) -> list[dict[str, Any]]:
        """Storage form of every record, envelopes verbatim."""
        return await self._call("list_records", self.backend.list_records())

    async def import_record(self, data: dict[str, Any], overwrite: bool = False) -> bool:
        """Persist a record exported by ``export_records``. Does not decrypt.

        Returns:
            False if the record exists and overwrite is not set.
        """
        record = SecretRecord.from_storage(data)
        validate_name(record.name)
        storage = record.to_storage()
        if overwrite:
            await self._call("put_record", self.backend.put_record(storage))
            imported = True
        else:
            imported = await self._call(
                "insert_record", self.backend.insert_record(storage)
            )
        if imported:
            await self.audit.record(
                "restore", name=record.name, key_id=record.envelope.key_id
            )
        return imported

    async def count(self) -> tuple[int, int]:
        """(total, expired) record counts."""
        now = utcnow()
        records = await self._call("list_records", self.backend.list_records())
        expired = 0
        for data in records:
            expires_at = data.get("expires_at")
            if expires_at is not None and datetime.fromisoformat(expires_at) <= now:
                expired += 1
        return len(records), expired

    async def sweep_expired(self) -> int:
        """Delete expired records, one check-and-delete per record.

        Returns:
            Number of records removed.
        """
        records = await self._call("list_records", self.backend.list_records())
        removed = 0
        for data in records:
            if data.get("expires_at") is None:
                continue
            name = data["name"]
            if await self._call(
                "delete_if_expired", self.backend.delete_if_expired(name, utcnow())
            ):
                removed += 1
                await self.audit.record("expire", name=name)
        if removed:
            logger.info("Expiry sweep removed %d secret(s)", removed)
        return removed
