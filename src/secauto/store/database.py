"""
Definition Store Database

Durable storage for playbooks, executions, policy enforcements,
automated responses, compliance checks and vulnerability assessments.
The orchestration core only sees the abstract ``DefinitionStore``
interface; SQLite and in-memory implementations are provided.
"""

import asyncio
import json
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from secauto.store.models import RECORD_TYPES, RecordKind, to_iso, utcnow


# SQL Schema
SCHEMA = """
-- Playbook definitions
CREATE TABLE IF NOT EXISTS playbooks (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    enabled INTEGER DEFAULT 1,
    version TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    data TEXT NOT NULL
);

-- Playbook executions
CREATE TABLE IF NOT EXISTS playbook_executions (
    id TEXT PRIMARY KEY,
    playbook_id TEXT NOT NULL,
    status TEXT NOT NULL,
    start_time TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    data TEXT NOT NULL
);

-- Policy enforcements
CREATE TABLE IF NOT EXISTS policy_enforcements (
    id TEXT PRIMARY KEY,
    policy_id TEXT NOT NULL,
    enabled INTEGER DEFAULT 1,
    next_check TEXT,
    updated_at TEXT NOT NULL,
    data TEXT NOT NULL
);

-- Automated responses
CREATE TABLE IF NOT EXISTS automated_responses (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    enabled INTEGER DEFAULT 1,
    updated_at TEXT NOT NULL,
    data TEXT NOT NULL
);

-- Compliance checks
CREATE TABLE IF NOT EXISTS compliance_checks (
    id TEXT PRIMARY KEY,
    standard_id TEXT NOT NULL,
    status TEXT NOT NULL,
    enabled INTEGER DEFAULT 1,
    next_check TEXT,
    updated_at TEXT NOT NULL,
    data TEXT NOT NULL
);

-- Vulnerability assessments
CREATE TABLE IF NOT EXISTS vulnerability_assessments (
    id TEXT PRIMARY KEY,
    target TEXT NOT NULL,
    status TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    data TEXT NOT NULL
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_executions_playbook ON playbook_executions(playbook_id);
CREATE INDEX IF NOT EXISTS idx_executions_status ON playbook_executions(status);
CREATE INDEX IF NOT EXISTS idx_policies_policy ON policy_enforcements(policy_id);
CREATE INDEX IF NOT EXISTS idx_checks_standard ON compliance_checks(standard_id);
CREATE INDEX IF NOT EXISTS idx_assessments_target ON vulnerability_assessments(target);
"""

# Table name and indexed columns per record kind. Filters on any other
# field are applied to the decoded record.
TABLES: dict[RecordKind, tuple[str, tuple[str, ...]]] = {
    RecordKind.PLAYBOOK: ("playbooks", ("name", "type", "enabled", "version")),
    RecordKind.PLAYBOOK_EXECUTION: ("playbook_executions", ("playbook_id", "status", "start_time")),
    RecordKind.POLICY_ENFORCEMENT: ("policy_enforcements", ("policy_id", "enabled", "next_check")),
    RecordKind.AUTOMATED_RESPONSE: ("automated_responses", ("name", "enabled")),
    RecordKind.COMPLIANCE_CHECK: ("compliance_checks", ("standard_id", "status", "enabled", "next_check")),
    RecordKind.VULNERABILITY_ASSESSMENT: ("vulnerability_assessments", ("target", "status")),
}


def _matches(data: dict[str, Any], filters: Optional[dict[str, Any]]) -> bool:
    if not filters:
        return True
    return all(data.get(key) == value for key, value in filters.items())


def _normalize_filters(filters: Optional[dict[str, Any]]) -> dict[str, Any]:
    normalized = {}
    for key, value in (filters or {}).items():
        normalized[key] = value.value if hasattr(value, "value") else value
    return normalized


class DefinitionStore(ABC):
    """
    Abstract durable store.

    Records go in and come out as model dataclasses; every ``get`` and
    ``list`` returns detached copies, so callers persist changes with
    ``upsert``. ``lock`` hands out a per-entity asyncio lock for
    read-modify-write sequences such as statistics updates.
    """

    def __init__(self) -> None:
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    @abstractmethod
    def get(self, kind: RecordKind, record_id: str) -> Optional[Any]:
        """Fetch one record, or None when unknown."""

    @abstractmethod
    def upsert(self, kind: RecordKind, record: Any) -> Any:
        """Insert or replace a record."""

    @abstractmethod
    def list(self, kind: RecordKind, filters: Optional[dict[str, Any]] = None) -> list[Any]:
        """List records whose serialized fields equal every filter value."""

    def lock(self, kind: RecordKind, record_id: str) -> asyncio.Lock:
        """Per-entity lock serializing writes to one record."""
        key = (RecordKind(kind).value, record_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def close(self) -> None:
        """Release backend resources."""


class MemoryStore(DefinitionStore):
    """In-process store holding serialized snapshots."""

    def __init__(self) -> None:
        super().__init__()
        self._records: dict[RecordKind, dict[str, dict[str, Any]]] = {
            kind: {} for kind in RecordKind
        }

    def get(self, kind: RecordKind, record_id: str) -> Optional[Any]:
        kind = RecordKind(kind)
        data = self._records[kind].get(record_id)
        if data is None:
            return None
        return RECORD_TYPES[kind].from_dict(json.loads(json.dumps(data)))

    def upsert(self, kind: RecordKind, record: Any) -> Any:
        kind = RecordKind(kind)
        self._records[kind][record.id] = json.loads(json.dumps(record.to_dict(), default=str))
        return record

    def list(self, kind: RecordKind, filters: Optional[dict[str, Any]] = None) -> list[Any]:
        kind = RecordKind(kind)
        filters = _normalize_filters(filters)
        record_type = RECORD_TYPES[kind]
        return [
            record_type.from_dict(json.loads(json.dumps(data)))
            for data in self._records[kind].values()
            if _matches(data, filters)
        ]


class SQLiteStore(DefinitionStore):
    """
    SQLite-based definition store.

    One table per record kind; a handful of columns are indexed for
    listing, the full record lives in the JSON ``data`` column.
    """

    def __init__(self, db_path: str = "./data/orchestration.db"):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database file.
        """
        super().__init__()
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)
            conn.commit()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def get(self, kind: RecordKind, record_id: str) -> Optional[Any]:
        kind = RecordKind(kind)
        table, _ = TABLES[kind]
        with self._get_connection() as conn:
            row = conn.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            if row:
                return RECORD_TYPES[kind].from_dict(json.loads(row["data"]))
        return None

    def upsert(self, kind: RecordKind, record: Any) -> Any:
        kind = RecordKind(kind)
        table, columns = TABLES[kind]
        data = record.to_dict()
        values = [self._column_value(data.get(col)) for col in columns]
        all_columns = ("id", *columns, "updated_at", "data")
        placeholders = ", ".join("?" for _ in all_columns)
        with self._get_connection() as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO {table} ({', '.join(all_columns)}) VALUES ({placeholders})",
                (record.id, *values, to_iso(utcnow()), json.dumps(data, default=str)),
            )
            conn.commit()
        return record

    def list(self, kind: RecordKind, filters: Optional[dict[str, Any]] = None) -> list[Any]:
        kind = RecordKind(kind)
        table, columns = TABLES[kind]
        filters = _normalize_filters(filters)
        indexed = {k: v for k, v in filters.items() if k in columns}
        remaining = {k: v for k, v in filters.items() if k not in columns}

        query = f"SELECT data FROM {table}"
        params: list[Any] = []
        if indexed:
            query += " WHERE " + " AND ".join(f"{col} = ?" for col in indexed)
            params = [self._column_value(v) for v in indexed.values()]
        query += " ORDER BY rowid"

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()

        record_type = RECORD_TYPES[kind]
        records = []
        for row in rows:
            data = json.loads(row["data"])
            if _matches(data, remaining):
                records.append(record_type.from_dict(data))
        return records

    @staticmethod
    def _column_value(value: Any) -> Any:
        if isinstance(value, bool):
            return 1 if value else 0
        return value


def get_store(settings: Optional[Any] = None) -> DefinitionStore:
    """Create the store selected by settings."""
    if settings is None:
        from secauto.config import settings as default_settings
        settings = default_settings
    from secauto.config.settings import StoreBackend
    if StoreBackend(settings.store_backend) == StoreBackend.MEMORY:
        return MemoryStore()
    return SQLiteStore(settings.db_path)
