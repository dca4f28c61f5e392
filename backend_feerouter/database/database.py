"""
Pluggable key-value persistence for engine snapshots.

The engine writes one full snapshot (wallets, transactions, status) after every
mutation under fixed keys and loads it on startup. All access goes through the
KeyValueStore interface; MemoryStore is the default for tests and ephemeral
runs, SQLiteStore writes every key of a snapshot in a single transaction so a
reader never sees a torn snapshot.
"""

from __future__ import annotations

import json
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator

from backend_feerouter.core.exceptions import PersistenceFailure
from backend_feerouter.database.models import SNAPSHOT_KEYS, Snapshot
from backend_feerouter.logging import get_logger

logger = get_logger(__name__)

SCHEMA_KV_STORE = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at INTEGER
);
"""


# -----------------------------------------------------------------------------
# Abstract store: swap implementation for any backing key-value service.
# -----------------------------------------------------------------------------


class KeyValueStore(ABC):
    """Abstract key-value interface; implementations raise PersistenceFailure on I/O errors."""

    @abstractmethod
    def read(self, keys: Iterable[str]) -> dict[str, str]:
        """Return {key: value} for the keys that exist."""
        ...

    @abstractmethod
    def write(self, items: dict[str, str]) -> None:
        """Write all items atomically (all or nothing)."""
        ...


class MemoryStore(KeyValueStore):
    """In-process store; survives engine restarts within one process (tests, demos)."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def read(self, keys: Iterable[str]) -> dict[str, str]:
        with self._lock:
            return {k: self._data[k] for k in keys if k in self._data}

    def write(self, items: dict[str, str]) -> None:
        with self._lock:
            self._data.update(items)


# -----------------------------------------------------------------------------
# SQLite store
# -----------------------------------------------------------------------------


class SQLiteStore(KeyValueStore):
    """SQLite implementation; single file, one connection per operation."""

    def __init__(self, path: str | Path, *, timeout_sec: float = 5.0) -> None:
        self._path = Path(path)
        self._timeout_sec = timeout_sec
        self.ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self._path), timeout=self._timeout_sec)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")
        return conn

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        try:
            conn = self._connect()
        except (sqlite3.Error, OSError) as exc:
            raise PersistenceFailure(f"Cannot open snapshot store {self._path}: {exc}") from exc
        try:
            cur = conn.cursor()
            yield cur
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise PersistenceFailure(f"Snapshot store error: {exc}") from exc
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        with self._cursor() as cur:
            cur.executescript(SCHEMA_KV_STORE)

    def read(self, keys: Iterable[str]) -> dict[str, str]:
        keys = list(keys)
        if not keys:
            return {}
        placeholders = ",".join("?" for _ in keys)
        with self._cursor() as cur:
            cur.execute(f"SELECT key, value FROM kv_store WHERE key IN ({placeholders})", keys)
            return {row["key"]: row["value"] for row in cur.fetchall()}

    def write(self, items: dict[str, str]) -> None:
        now = int(time.time())
        with self._cursor() as cur:
            cur.executemany(
                """
                INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                [(k, v, now) for k, v in items.items()],
            )


# -----------------------------------------------------------------------------
# Snapshot repository
# -----------------------------------------------------------------------------


class SnapshotRepository:
    """Load and save engine snapshots under the fixed snapshot keys."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    def load(self) -> Snapshot | None:
        """
        Return the latest snapshot, or None when nothing has been saved yet.
        Raises PersistenceFailure when the store fails or the data is corrupt.
        """
        items = self._store.read(SNAPSHOT_KEYS)
        if not items:
            return None
        try:
            return Snapshot.from_items(items)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, ArithmeticError) as exc:
            raise PersistenceFailure(f"Corrupt snapshot: {exc}") from exc

    def save(self, snapshot: Snapshot) -> None:
        self._store.write(snapshot.to_items())


def get_store(db_path: str | Path | None) -> KeyValueStore:
    """Return a SQLiteStore for db_path, or a MemoryStore when db_path is None or ':memory:'."""
    if db_path is None or str(db_path) == ":memory:":
        return MemoryStore()
    return SQLiteStore(db_path)
