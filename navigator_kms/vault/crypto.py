"""
KMS Crypto Core — Envelope encryption, key derivation and serialization.

Envelope layout (persisted/transmitted, base64 standard alphabet)::

    {"v": 1, "alg": "aes-256-gcm", "keyId": "...", "iv": "<12B>",
     "tag": "<16B>", "ciphertext": "...", "aad": "<optional>",
     "timestamp": <unix millis>}

Security Note:
    Never log plaintext or ciphertext values.
    Nonces are random 96-bit and drawn fresh on every encryption.
"""
import os
import time
import base64
import binascii
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from pydantic import BaseModel, Field, ValidationError, field_validator

from ..exceptions import DecryptionError

logger = logging.getLogger("navigator.kms")

ENVELOPE_VERSION = 1
ALGORITHM = "aes-256-gcm"
NONCE_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16
KEY_LENGTH = 32  # AES-256

KEK_CONTEXT = "navigator-kms-kek"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _b64e(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64d(data: str) -> bytes:
    return base64.b64decode(data, validate=True)


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_key(seed: bytes, context: str) -> bytes:
    """Derive a 32-byte encryption key using HKDF-SHA256.

    Args:
        seed: Input key material (the master key bytes).
        context: Context string for domain separation.

    Returns:
        32-byte derived key.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=None,
        info=context.encode("utf-8"),
    )
    return hkdf.derive(seed)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class DataKey(BaseModel):
    """Symmetric key used for envelope encryption.

    Instances are frozen; demoting a key yields a new instance.
    """

    id: str = Field(min_length=1)
    material: bytes = Field(repr=False, exclude=True)
    created_at: datetime = Field(default_factory=_utcnow)
    active: bool = False

    model_config = {"frozen": True}

    @field_validator("material")
    @classmethod
    def validate_material(cls, v: bytes) -> bytes:
        if len(v) != KEY_LENGTH:
            raise ValueError(f"Data key material must be {KEY_LENGTH} bytes")
        return v

    def demoted(self) -> "DataKey":
        return self.model_copy(update={"active": False})

    def __str__(self) -> str:
        return f"DataKey(id={self.id}, active={self.active})"


class Envelope(BaseModel):
    """Self-describing AES-256-GCM encrypted payload."""

    version: int = ENVELOPE_VERSION
    algorithm: str = ALGORITHM
    key_id: str = Field(min_length=1)
    iv: bytes = Field(repr=False)
    tag: bytes = Field(repr=False)
    ciphertext: bytes = Field(repr=False)
    aad: Optional[bytes] = Field(default=None, repr=False)
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))

    model_config = {"frozen": True}

    def to_dict(self) -> dict[str, Any]:
        """Return the wire representation."""
        data = {
            "v": self.version,
            "alg": self.algorithm,
            "keyId": self.key_id,
            "iv": _b64e(self.iv),
            "tag": _b64e(self.tag),
            "ciphertext": _b64e(self.ciphertext),
        }
        if self.aad is not None:
            data["aad"] = _b64e(self.aad)
        data["timestamp"] = self.timestamp
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Envelope":
        """Parse the wire representation.

        Raises:
            DecryptionError: If the envelope is malformed.
        """
        try:
            aad = data.get("aad")
            return cls(
                version=data["v"],
                algorithm=data["alg"],
                key_id=data["keyId"],
                iv=_b64d(data["iv"]),
                tag=_b64d(data["tag"]),
                ciphertext=_b64d(data["ciphertext"]),
                aad=_b64d(aad) if aad is not None else None,
                timestamp=data["timestamp"],
            )
        except (KeyError, TypeError, AttributeError, binascii.Error,
                ValueError, ValidationError) as exc:
            raise DecryptionError("Malformed envelope") from exc

    def to_json(self) -> bytes:
        return orjson.dumps(self.to_dict())

    @classmethod
    def from_json(cls, data: bytes | str) -> "Envelope":
        try:
            parsed = orjson.loads(data)
        except orjson.JSONDecodeError as exc:
            raise DecryptionError("Malformed envelope") from exc
        if not isinstance(parsed, dict):
            raise DecryptionError("Malformed envelope")
        return cls.from_dict(parsed)

    def created(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp / 1000, tz=timezone.utc)


# ---------------------------------------------------------------------------
# Cipher
# ---------------------------------------------------------------------------

class EnvelopeCipher:
    """Stateless AES-256-GCM envelope encryption.

    Holds no state; one instance can be shared by every caller.
    """

    algorithm = ALGORITHM

    def encrypt(
        self,
        plaintext: bytes,
        key: DataKey,
        aad: Optional[bytes] = None,
    ) -> Envelope:
        """Encrypt plaintext under a data key.

        Args:
            plaintext: Data to encrypt.
            key: Data key to use; its id is recorded in the envelope.
            aad: Optional additional authenticated data.

        Returns:
            A new Envelope with a fresh IV.
        """
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")
        nonce = os.urandom(NONCE_SIZE)
        sealed = AESGCM(key.material).encrypt(nonce, plaintext, aad)
        envelope = Envelope(
            key_id=key.id,
            iv=nonce,
            tag=sealed[-TAG_SIZE:],
            ciphertext=sealed[:-TAG_SIZE],
            aad=aad,
        )
        logger.debug(
            "Encrypted payload: key_id=%s length=%d", key.id, len(plaintext)
        )
        return envelope

    def decrypt(
        self,
        envelope: Envelope,
        key: DataKey,
        aad: Optional[bytes] = None,
    ) -> bytes:
        """Verify and decrypt an envelope.

        Args:
            envelope: Envelope produced by ``encrypt``.
            key: The data key whose id the envelope references.
            aad: Expected AAD; defaults to the AAD carried by the envelope.

        Returns:
            Decrypted plaintext bytes.

        Raises:
            DecryptionError: On any version, algorithm, key, tag or AAD mismatch.
        """
        if envelope.version != ENVELOPE_VERSION:
            raise DecryptionError(
                f"Unsupported envelope version {envelope.version}",
                key_id=envelope.key_id,
            )
        if envelope.algorithm != ALGORITHM:
            raise DecryptionError(
                f"Unsupported algorithm {envelope.algorithm}",
                key_id=envelope.key_id,
            )
        if len(envelope.iv) != NONCE_SIZE or len(envelope.tag) != TAG_SIZE:
            raise DecryptionError("Malformed envelope", key_id=envelope.key_id)
        if key.id != envelope.key_id:
            raise DecryptionError(
                f"Envelope was not produced by key {key.id}",
                key_id=envelope.key_id,
            )
        if aad is None:
            aad = envelope.aad
        try:
            return AESGCM(key.material).decrypt(
                envelope.iv, envelope.ciphertext + envelope.tag, aad
            )
        except InvalidTag as exc:
            raise DecryptionError(
                "Decryption failed - authentication tag verification failed",
                key_id=envelope.key_id,
            ) from exc


# ---------------------------------------------------------------------------
# Value serialization
# ---------------------------------------------------------------------------

def dumps(value: Any) -> bytes:
    """Serialize a storage/backup structure with orjson."""
    return orjson.dumps(value)


def loads(data: bytes | str) -> Any:
    return orjson.loads(data)
