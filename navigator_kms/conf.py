"""Navigator KMS settings.

Names are read once from the process environment. Numeric settings are
plain defaults here; environment overrides for them are parsed and
validated by ``KMSSettings.from_env``, which reports bad values as
``ConfigurationError``.
"""
import os


def _env_list(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


KMS_MASTER_KEY_ENV = os.environ.get("KMS_MASTER_KEY_ENV", "KMS_MASTER_KEY")
KMS_MASTER_KEY_FILE = os.environ.get("KMS_MASTER_KEY_FILE") or None

# seconds
KMS_CACHE_TTL = 300.0
KMS_SWEEP_INTERVAL = 3600.0
KMS_OPERATION_TIMEOUT = 5.0

KMS_DEFAULT_TTL_DAYS = 365

# Environment variables imported into the store on first run.
KMS_SEED_SECRETS = _env_list(
    "KMS_SEED_SECRETS",
    "JWT_SECRET,MONGODB_URI,REDIS_URL,ENCRYPTION_MASTER_KEY",
)
