"""
ConfigLoader — typed application configuration built from plain
environment values and secrets resolved through SecretsManager.

Security Note:
    Secret fields are ``SecretStr``. ``get_public()`` and
    ``get_connections()`` are the only views meant for logs.
"""
import os
import logging
from collections.abc import Mapping
from typing import Any, Optional
from urllib.parse import urlsplit, urlunsplit

from pydantic import (
    BaseModel,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)

from .exceptions import ConfigurationError, NotInitializedError

logger = logging.getLogger("navigator.kms")

# field name -> secret name in the SecretStore
SECRET_FIELDS = {
    "jwt_secret": "JWT_SECRET",
    "mongodb_uri": "MONGODB_URI",
    "redis_url": "REDIS_URL",
    "encryption_master_key": "ENCRYPTION_MASTER_KEY",
}

# field name -> environment variable
ENV_FIELDS = {
    "environment": "ENVIRONMENT",
    "port": "PORT",
    "log_level": "LOG_LEVEL",
    "require_https": "REQUIRE_HTTPS",
    "use_https": "USE_HTTPS",
    "tls_key_path": "TLS_KEY_PATH",
    "tls_cert_path": "TLS_CERT_PATH",
    "cookie_domain": "COOKIE_DOMAIN",
    "refresh_token_expires_days": "REFRESH_TOKEN_EXPIRES_DAYS",
    "jobs_enabled": "JOBS_ENABLED",
    "balance_refresh_interval": "BALANCE_REFRESH_INTERVAL",
    "socket_cors_origin": "SOCKET_CORS_ORIGIN",
    "admin_ip_allowlist": "ADMIN_IP_ALLOWLIST",
}


def _is_uri(value: str) -> bool:
    try:
        parts = urlsplit(value)
        return bool(parts.scheme and parts.hostname)
    except ValueError:
        return False


def mask_connection_string(uri: Optional[Any]) -> str:
    """Replace user and password of a URI with ``****``."""
    if isinstance(uri, SecretStr):
        uri = uri.get_secret_value()
    if not uri:
        return "not configured"
    try:
        parts = urlsplit(uri)
    except ValueError:
        return "<invalid-uri>"
    # hosts stay verbatim; mongodb allows a comma-separated host list
    userinfo, _, hosts = parts.netloc.rpartition("@")
    if not parts.scheme or not hosts:
        return "<invalid-uri>"
    netloc = hosts
    if userinfo:
        user, _, password = userinfo.partition(":")
        masked = "****" if user else ""
        if password:
            masked += ":****"
        if masked:
            netloc = f"{masked}@{hosts}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


class AppConfig(BaseModel):
    """Validated application configuration."""

    environment: str = "development"
    port: int = Field(default=3000, ge=1, le=65535)
    log_level: str = "info"
    require_https: bool = False
    use_https: bool = False
    tls_key_path: Optional[str] = None
    tls_cert_path: Optional[str] = None
    cookie_domain: Optional[str] = None
    cookie_secure: bool = False
    refresh_token_expires_days: int = Field(default=30, ge=1)
    jobs_enabled: bool = False
    balance_refresh_interval: int = Field(default=300000, ge=1000)
    socket_cors_origin: str = "*"
    admin_ip_allowlist: list[str] = Field(default_factory=list)

    jwt_secret: SecretStr
    mongodb_uri: SecretStr
    redis_url: Optional[SecretStr] = None
    encryption_master_key: Optional[SecretStr] = None

    @field_validator("admin_ip_allowlist", mode="before")
    @classmethod
    def split_allowlist(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [ip.strip() for ip in v.split(",") if ip.strip()]
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.lower()
        if v not in ("debug", "info", "warning", "warn", "error", "critical"):
            raise ValueError(f"Unsupported log level: {v}")
        return v

    @field_validator("jwt_secret")
    @classmethod
    def validate_jwt_secret(cls, v: SecretStr) -> SecretStr:
        if len(v.get_secret_value()) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters")
        return v

    @field_validator("mongodb_uri", "redis_url")
    @classmethod
    def validate_uri(cls, v: Optional[SecretStr]) -> Optional[SecretStr]:
        if v is not None and not _is_uri(v.get_secret_value()):
            raise ValueError("must be a URI with scheme and host")
        return v

    @model_validator(mode="after")
    def validate_tls(self) -> "AppConfig":
        if self.use_https and not (self.tls_key_path and self.tls_cert_path):
            raise ValueError("USE_HTTPS requires TLS_KEY_PATH and TLS_CERT_PATH")
        return self


class ConfigLoader:
    """Loads and validates AppConfig at boot."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self._environ = environ if environ is not None else os.environ
        self._config: Optional[AppConfig] = None

    def _plain_values(self) -> dict[str, Any]:
        values = {}
        for field, var in ENV_FIELDS.items():
            raw = self._environ.get(var)
            if raw is not None and raw != "":
                values[field] = raw
        values["cookie_secure"] = values.get("environment") == "production"
        return values

    async def load(self, secrets_manager: Any) -> AppConfig:
        """Merge environment values with secrets and validate.

        Raises:
            ConfigurationError: If a required value is missing or invalid.
        """
        if secrets_manager is None:
            raise ConfigurationError("ConfigLoader.load requires a SecretsManager")
        values = self._plain_values()
        results = await secrets_manager.get_secrets(SECRET_FIELDS.values())
        for field, secret_name in SECRET_FIELDS.items():
            result = results.get(secret_name)
            if result is not None and result.ok:
                values[field] = result.value
            elif result is not None and result.error != "NotFoundError":
                logger.warning(
                    "Secret %s unavailable for configuration: %s",
                    secret_name, result.error,
                )
        try:
            config = AppConfig(**values)
        except ValidationError as exc:
            fields = sorted({
                ENV_FIELDS.get(str(e["loc"][0]))
                or SECRET_FIELDS.get(str(e["loc"][0]))
                or "configuration"
                for e in exc.errors()
                if e["loc"]
            } or {"configuration"})
            raise ConfigurationError(
                f"Invalid configuration: {', '.join(fields)}"
            ) from exc
        self._config = config
        logger.info(
            "Configuration loaded: environment=%s port=%s https_required=%s",
            config.environment, config.port, config.require_https,
        )
        return config

    @property
    def config(self) -> AppConfig:
        if self._config is None:
            raise NotInitializedError("Configuration has not been loaded")
        return self._config

    def _field(self, key: str) -> str:
        key = key.lower()
        if key == "node_env":
            return "environment"
        return key

    def get(self, key: str, default: Any = None) -> Any:
        """Typed accessor; accepts field names or environment-style names."""
        value = getattr(self.config, self._field(key), None)
        if value is None:
            if default is None:
                logger.warning("Configuration key missing: %s", key)
            return default
        return value

    def get_public(self) -> dict[str, Any]:
        """Secret-free projection for logs and diagnostics."""
        public = self.config.model_dump(exclude=set(SECRET_FIELDS))
        public["connections"] = self.get_connections()
        return public

    def get_connections(self) -> dict[str, str]:
        config = self.config
        return {
            "mongodb": mask_connection_string(config.mongodb_uri),
            "redis": mask_connection_string(config.redis_url),
        }

    def is_valid(self) -> bool:
        return self._config is not None

    def get_status(self) -> dict[str, Any]:
        if self._config is None:
            return {"validated": False}
        config = self._config
        return {
            "validated": True,
            "environment": config.environment,
            "https": {
                "required": config.require_https,
                "enabled": config.use_https,
            },
            "connections": self.get_connections(),
            "features": {
                "jobs_enabled": config.jobs_enabled,
                "encryption_master_key": config.encryption_master_key is not None,
            },
        }
