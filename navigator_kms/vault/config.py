"""
KMS Configuration — Master key loading and validated settings.

Reads the master key from a single external source:
    KMS_MASTER_KEY = <base64-encoded 32-byte key>
or a file path holding that value (e.g. a mounted container secret).
A 64-character hex string is accepted as well.

Security Note:
    Never log key material. The master key is held as ``SecretBytes`` so
    that repr/str of it (or of anything holding it) is redacted.
"""
import os
import re
import base64
import binascii
import secrets
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Optional

from pydantic import (
    BaseModel,
    Field,
    SecretBytes,
    ValidationError,
    field_validator,
    model_validator,
)

from .. import conf
from ..exceptions import ConfigurationError

logger = logging.getLogger("navigator.kms")

MASTER_KEY_LENGTH = 32

_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")


def decode_master_key(raw: str, source: str = "master key") -> bytes:
    """Decode a base64 (or 64-char hex) string into 32 raw bytes.

    Raises:
        ConfigurationError: If the value is empty, malformed, or does not
            decode to exactly 32 bytes.
    """
    raw = (raw or "").strip()
    if not raw:
        raise ConfigurationError(f"{source} is empty")
    if _HEX_KEY.match(raw):
        return bytes.fromhex(raw)
    try:
        key_bytes = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ConfigurationError(
            f"{source} is not valid base64"
        ) from exc
    if len(key_bytes) != MASTER_KEY_LENGTH:
        raise ConfigurationError(
            f"{source} must decode to exactly {MASTER_KEY_LENGTH} bytes, "
            f"got {len(key_bytes)}"
        )
    return key_bytes


def generate_master_key() -> str:
    """Generate a random 32-byte master key and return as base64 string.

    This is a utility for operators to generate new keys.
    """
    return base64.b64encode(secrets.token_bytes(MASTER_KEY_LENGTH)).decode("ascii")


class MasterKeyProvider:
    """Loads the single root key at process start.

    There is no retry and no lazy loading: ``load()`` either returns the
    key or raises ``ConfigurationError``.
    """

    def __init__(
        self,
        env_var: str = conf.KMS_MASTER_KEY_ENV,
        environ: Optional[Mapping[str, str]] = None,
        path: Optional[str] = None,
    ):
        self.env_var = env_var
        self._environ = environ if environ is not None else os.environ
        self.path = path

    def _read_raw(self) -> tuple[str, str]:
        if self.path:
            try:
                return Path(self.path).read_text(encoding="utf-8"), self.path
            except OSError as exc:
                raise ConfigurationError(
                    f"Master key file {self.path} cannot be read"
                ) from exc
        raw = self._environ.get(self.env_var)
        if raw is None:
            raise ConfigurationError(
                f"{self.env_var} is not set. "
                f"Set {self.env_var}=<base64-encoded-32-byte-key>"
            )
        return raw, self.env_var

    def load(self) -> SecretBytes:
        """Read, decode and validate the master key.

        Returns:
            The 32-byte master key wrapped in ``SecretBytes``.

        Raises:
            ConfigurationError: If the key is absent, malformed, or not
                32 bytes after decoding.
        """
        raw, source = self._read_raw()
        key = SecretBytes(decode_master_key(raw, source))
        logger.info("Master key loaded from %s", source)
        return key


class KMSSettings(BaseModel):
    """Validated KMS runtime settings."""

    master_key_env: str = Field(default=conf.KMS_MASTER_KEY_ENV, min_length=1)
    master_key_file: Optional[str] = conf.KMS_MASTER_KEY_FILE
    cache_ttl: float = Field(default=conf.KMS_CACHE_TTL, ge=0)
    max_cache_size: Optional[int] = Field(default=None, ge=1)
    sweep_interval: float = Field(default=conf.KMS_SWEEP_INTERVAL, gt=0)
    operation_timeout: Optional[float] = Field(
        default=conf.KMS_OPERATION_TIMEOUT, gt=0
    )
    default_ttl_days: Optional[int] = conf.KMS_DEFAULT_TTL_DAYS
    seed_secrets: list[str] = Field(
        default_factory=lambda: list(conf.KMS_SEED_SECRETS)
    )

    @field_validator("seed_secrets")
    @classmethod
    def validate_seed_names(cls, v: list[str]) -> list[str]:
        """Seed names follow the same rules as secret names."""
        for name in v:
            if not name or ":" in name or len(name) > 255:
                raise ValueError(f"Invalid seed secret name: {name!r}")
        return v

    @model_validator(mode="after")
    def validate_sweep_vs_cache(self) -> "KMSSettings":
        """A zero cache TTL disables caching; a size bound makes no sense then."""
        if self.cache_ttl == 0 and self.max_cache_size is not None:
            raise ValueError("max_cache_size requires a positive cache_ttl")
        return self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "KMSSettings":
        """Create KMSSettings from environment values.

        Raises:
            ConfigurationError: If any value fails validation.
        """
        env = environ if environ is not None else os.environ
        values: dict = {}
        mapping = {
            "KMS_MASTER_KEY_ENV": "master_key_env",
            "KMS_MASTER_KEY_FILE": "master_key_file",
            "KMS_CACHE_TTL": "cache_ttl",
            "KMS_MAX_CACHE_SIZE": "max_cache_size",
            "KMS_SWEEP_INTERVAL": "sweep_interval",
            "KMS_OPERATION_TIMEOUT": "operation_timeout",
            "KMS_DEFAULT_TTL_DAYS": "default_ttl_days",
        }
        for var, field in mapping.items():
            if env.get(var):
                values[field] = env[var]
        if env.get("KMS_SEED_SECRETS") is not None:
            values["seed_secrets"] = [
                s.strip() for s in env["KMS_SEED_SECRETS"].split(",") if s.strip()
            ]
        try:
            return cls(**values)
        except ValidationError as exc:
            fields = sorted({".".join(map(str, e["loc"])) for e in exc.errors()})
            raise ConfigurationError(
                f"Invalid KMS settings: {', '.join(fields) or 'model'}"
            ) from exc

    def master_key_provider(
        self, environ: Optional[Mapping[str, str]] = None
    ) -> MasterKeyProvider:
        return MasterKeyProvider(
            env_var=self.master_key_env,
            environ=environ,
            path=self.master_key_file,
        )
