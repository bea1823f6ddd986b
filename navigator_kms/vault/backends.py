"""
KMS Storage Backends — persistence of secret records, wrapped data keys
and audit events.

Records cross this boundary in their storage form (see
``SecretRecord.to_storage``): plain dicts holding the envelope in wire
format. Backends never see plaintext or unwrapped key material.
"""
import copy
import logging
from datetime import datetime
from typing import Any, Optional, Protocol, runtime_checkable

import orjson

logger = logging.getLogger("navigator.kms")


@runtime_checkable
class StorageBackend(Protocol):
    """Persistence contract used by SecretStore, KeyManager and AuditLog."""

    async def get_record(self, name: str) -> Optional[dict]: ...

    async def put_record(self, record: dict) -> None: ...

    async def insert_record(self, record: dict) -> bool: ...

    async def replace_record(self, record: dict, expected_revision: int) -> bool: ...

    async def delete_record(self, name: str) -> bool: ...

    async def delete_if_expired(self, name: str, now: datetime) -> bool: ...

    async def list_records(self) -> list[dict]: ...

    async def load_data_keys(self) -> list[dict]: ...

    async def save_data_key(self, key: dict) -> None: ...

    async def delete_data_key(self, key_id: str) -> bool: ...

    async def record_audit(self, event: dict) -> None: ...


def _is_expired(record: dict, now: datetime) -> bool:
    expires_at = record.get("expires_at")
    if expires_at is None:
        return False
    return datetime.fromisoformat(expires_at) <= now


class MemoryBackend:
    """In-process backend.

    Each operation completes without awaiting, so it is atomic with respect
    to other coroutines on the same loop.
    """

    def __init__(self):
        self.records: dict[str, dict] = {}
        self.data_keys: dict[str, dict] = {}
        self.audit_events: list[dict] = []

    async def get_record(self, name: str) -> Optional[dict]:
        record = self.records.get(name)
        return copy.deepcopy(record) if record is not None else None

    async def put_record(self, record: dict) -> None:
        self.records[record["name"]] = copy.deepcopy(record)

    async def insert_record(self, record: dict) -> bool:
        if record["name"] in self.records:
            return False
        self.records[record["name"]] = copy.deepcopy(record)
        return True

    async def replace_record(self, record: dict, expected_revision: int) -> bool:
        current = self.records.get(record["name"])
        if current is None or current.get("revision") != expected_revision:
            return False
        self.records[record["name"]] = copy.deepcopy(record)
        return True

    async def delete_record(self, name: str) -> bool:
        return self.records.pop(name, None) is not None

    async def delete_if_expired(self, name: str, now: datetime) -> bool:
        record = self.records.get(name)
        if record is None or not _is_expired(record, now):
            return False
        del self.records[name]
        return True

    async def list_records(self) -> list[dict]:
        return [copy.deepcopy(r) for r in self.records.values()]

    async def load_data_keys(self) -> list[dict]:
        return [copy.deepcopy(k) for k in self.data_keys.values()]

    async def save_data_key(self, key: dict) -> None:
        self.data_keys[key["id"]] = copy.deepcopy(key)

    async def delete_data_key(self, key_id: str) -> bool:
        return self.data_keys.pop(key_id, None) is not None

    async def record_audit(self, event: dict) -> None:
        self.audit_events.append(dict(event))


# ---------------------------------------------------------------------------
# PostgreSQL (asyncpg-compatible pool)
# ---------------------------------------------------------------------------

SCHEMA = """
CREATE SCHEMA IF NOT EXISTS kms;
CREATE TABLE IF NOT EXISTS kms.secrets (
    name TEXT PRIMARY KEY,
    envelope JSONB NOT NULL,
    tags JSONB NOT NULL DEFAULT '{}'::jsonb,
    ttl_days INTEGER,
    rotation_policy TEXT NOT NULL DEFAULT 'manual',
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    expires_at TIMESTAMPTZ,
    revision INTEGER NOT NULL DEFAULT 1
);
CREATE TABLE IF NOT EXISTS kms.data_keys (
    id TEXT PRIMARY KEY,
    wrapped JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    active BOOLEAN NOT NULL DEFAULT FALSE
);
CREATE TABLE IF NOT EXISTS kms.audit (
    id BIGSERIAL PRIMARY KEY,
    operation TEXT NOT NULL,
    name TEXT,
    key_id TEXT,
    success BOOLEAN NOT NULL,
    details JSONB,
    created_at TIMESTAMPTZ NOT NULL
);
"""

_SECRET_COLUMNS = (
    "name, envelope, tags, ttl_days, rotation_policy, "
    "created_at, updated_at, expires_at, revision"
)

_SELECT_SECRET = f"""
SELECT {_SECRET_COLUMNS}
FROM kms.secrets
WHERE name = $1
"""

_SELECT_ALL_SECRETS = f"""
SELECT {_SECRET_COLUMNS}
FROM kms.secrets
ORDER BY name
"""

_UPSERT_SECRET = f"""
INSERT INTO kms.secrets ({_SECRET_COLUMNS})
VALUES ($1, $2::jsonb, $3::jsonb, $4, $5, $6, $7, $8, $9)
ON CONFLICT (name)
DO UPDATE SET envelope = EXCLUDED.envelope,
             tags = EXCLUDED.tags,
             ttl_days = EXCLUDED.ttl_days,
             rotation_policy = EXCLUDED.rotation_policy,
             created_at = EXCLUDED.created_at,
             updated_at = EXCLUDED.updated_at,
             expires_at = EXCLUDED.expires_at,
             revision = EXCLUDED.revision
"""

_INSERT_SECRET = f"""
INSERT INTO kms.secrets ({_SECRET_COLUMNS})
VALUES ($1, $2::jsonb, $3::jsonb, $4, $5, $6, $7, $8, $9)
ON CONFLICT (name) DO NOTHING
"""

_REPLACE_SECRET = """
UPDATE kms.secrets
SET envelope = $2::jsonb, tags = $3::jsonb, ttl_days = $4,
    rotation_policy = $5, created_at = $6, updated_at = $7,
    expires_at = $8, revision = $9
WHERE name = $1 AND revision = $10
"""

_DELETE_SECRET = """
DELETE FROM kms.secrets WHERE name = $1
"""

_DELETE_IF_EXPIRED = """
DELETE FROM kms.secrets
WHERE name = $1 AND expires_at IS NOT NULL AND expires_at <= $2
"""

_SELECT_DATA_KEYS = """
SELECT id, wrapped, created_at, active
FROM kms.data_keys
ORDER BY created_at
"""

_UPSERT_DATA_KEY = """
INSERT INTO kms.data_keys (id, wrapped, created_at, active)
VALUES ($1, $2::jsonb, $3, $4)
ON CONFLICT (id) DO UPDATE SET active = EXCLUDED.active
"""

_DELETE_DATA_KEY = """
DELETE FROM kms.data_keys WHERE id = $1
"""

_INSERT_AUDIT = """
INSERT INTO kms.audit (operation, name, key_id, success, details, created_at)
VALUES ($1, $2, $3, $4, $5::jsonb, $6)
"""


def _affected(status: str) -> int:
    """Row count from an asyncpg command status such as ``UPDATE 1``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


def _as_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value is not None else None


def _as_iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _as_json(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return orjson.loads(value)
    return value


class PostgresBackend:
    """Backend over an asyncpg-compatible connection pool."""

    def __init__(self, db_pool: Any):
        self._db = db_pool

    async def create_schema(self) -> None:
        async with self._db.acquire() as conn:
            await conn.execute(SCHEMA)
        logger.info("KMS schema ready")

    @staticmethod
    def _record_args(record: dict) -> tuple:
        return (
            record["name"],
            orjson.dumps(record["envelope"]).decode("utf-8"),
            orjson.dumps(record.get("tags") or {}).decode("utf-8"),
            record.get("ttl_days"),
            record.get("rotation_policy", "manual"),
            _as_datetime(record["created_at"]),
            _as_datetime(record["updated_at"]),
            _as_datetime(record.get("expires_at")),
            record.get("revision", 1),
        )

    @staticmethod
    def _row_to_record(row: Any) -> dict:
        return {
            "name": row["name"],
            "envelope": _as_json(row["envelope"]),
            "tags": _as_json(row["tags"]) or {},
            "ttl_days": row["ttl_days"],
            "rotation_policy": row["rotation_policy"],
            "created_at": _as_iso(row["created_at"]),
            "updated_at": _as_iso(row["updated_at"]),
            "expires_at": _as_iso(row["expires_at"]),
            "revision": row["revision"],
        }

    async def get_record(self, name: str) -> Optional[dict]:
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(_SELECT_SECRET, name)
        return self._row_to_record(row) if row is not None else None

    async def put_record(self, record: dict) -> None:
        async with self._db.acquire() as conn:
            await conn.execute(_UPSERT_SECRET, *self._record_args(record))

    async def insert_record(self, record: dict) -> bool:
        async with self._db.acquire() as conn:
            status = await conn.execute(_INSERT_SECRET, *self._record_args(record))
        return _affected(status) == 1

    async def replace_record(self, record: dict, expected_revision: int) -> bool:
        async with self._db.acquire() as conn:
            status = await conn.execute(
                _REPLACE_SECRET, *self._record_args(record), expected_revision,
            )
        return _affected(status) == 1

    async def delete_record(self, name: str) -> bool:
        async with self._db.acquire() as conn:
            status = await conn.execute(_DELETE_SECRET, name)
        return _affected(status) == 1

    async def delete_if_expired(self, name: str, now: datetime) -> bool:
        async with self._db.acquire() as conn:
            status = await conn.execute(_DELETE_IF_EXPIRED, name, now)
        return _affected(status) == 1

    async def list_records(self) -> list[dict]:
        async with self._db.acquire() as conn:
            rows = await conn.fetch(_SELECT_ALL_SECRETS)
        return [self._row_to_record(row) for row in rows]

    async def load_data_keys(self) -> list[dict]:
        async with self._db.acquire() as conn:
            rows = await conn.fetch(_SELECT_DATA_KEYS)
        return [
            {
                "id": row["id"],
                "wrapped": _as_json(row["wrapped"]),
                "created_at": _as_iso(row["created_at"]),
                "active": row["active"],
            }
            for row in rows
        ]

    async def save_data_key(self, key: dict) -> None:
        async with self._db.acquire() as conn:
            await conn.execute(
                _UPSERT_DATA_KEY,
                key["id"],
                orjson.dumps(key["wrapped"]).decode("utf-8"),
                _as_datetime(key["created_at"]),
                key["active"],
            )

    async def delete_data_key(self, key_id: str) -> bool:
        async with self._db.acquire() as conn:
            status = await conn.execute(_DELETE_DATA_KEY, key_id)
        return _affected(status) == 1

    async def record_audit(self, event: dict) -> None:
        async with self._db.acquire() as conn:
            await conn.execute(
                _INSERT_AUDIT,
                event["operation"],
                event.get("name"),
                event.get("key_id"),
                event.get("success", True),
                orjson.dumps(event.get("details") or {}).decode("utf-8"),
                _as_datetime(event["timestamp"]),
            )
