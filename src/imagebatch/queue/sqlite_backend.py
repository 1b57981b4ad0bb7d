"""SQLite and in-memory implementations of KeyValueStore.

The SQLite store provides the local-first, crash-safe durable storage using:
- sqlite-utils for schema management and row access
- WAL mode for better concurrent performance
- One transaction per bulk operation
- A process-local lock so the processor thread and the caller thread can
  share one connection
"""

import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from sqlite_utils import Database

from .backends import KeyValueStore

# SQLite schema SQL
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

# Stay well below SQLITE_MAX_VARIABLE_NUMBER
_CHUNK = 500


def _chunks(keys: List[str]):
    for i in range(0, len(keys), _CHUNK):
        yield keys[i:i + _CHUNK]


class SQLiteKeyValueStore(KeyValueStore):
    """SQLite-based key-value store with ACID guarantees.

    Features:
    - WAL mode for better concurrent reads
    - Primary-key lookups (O(log n))
    - Atomic single and bulk upserts
    """

    def __init__(self, db_path: str):
        """Initialize key-value database.

        Args:
            db_path: Path to SQLite database file

        Creates schema if database doesn't exist.
        Enables WAL mode for concurrent performance.
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.db = Database(conn)
        self._lock = threading.RLock()

        self.db.conn.execute("PRAGMA journal_mode=WAL")
        self.db.conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
        self.db.conn.commit()

        self._create_schema()

    def _create_schema(self):
        """Create tables if they don't exist."""
        with self._lock:
            self.db.executescript(SCHEMA_SQL)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            row = self.db.execute(
                "SELECT value FROM kv_store WHERE key = ?", [key]
            ).fetchone()
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        self.set_many({key: value})

    def delete(self, key: str) -> None:
        self.delete_many([key])

    def get_many(self, keys: Iterable[str]) -> Dict[str, str]:
        keys = list(keys)
        found: Dict[str, str] = {}
        with self._lock:
            for chunk in _chunks(keys):
                placeholders = ",".join("?" for _ in chunk)
                rows = self.db.execute(
                    f"SELECT key, value FROM kv_store WHERE key IN ({placeholders})", chunk
                ).fetchall()
                found.update({k: v for k, v in rows})
        return found

    def set_many(self, items: Dict[str, str]) -> None:
        """Upsert many values in one transaction."""
        if not items:
            return
        now = datetime.now().isoformat()
        rows = [{"key": k, "value": v, "updated_at": now} for k, v in items.items()]
        with self._lock:
            with self.db.conn:
                self.db["kv_store"].insert_all(rows, pk="key", replace=True)

    def delete_many(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        if not keys:
            return
        with self._lock:
            with self.db.conn:
                for chunk in _chunks(keys):
                    placeholders = ",".join("?" for _ in chunk)
                    self.db.execute(f"DELETE FROM kv_store WHERE key IN ({placeholders})", chunk)

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            rows = self.db.execute(
                "SELECT key FROM kv_store WHERE substr(key, 1, ?) = ? ORDER BY key",
                [len(prefix), prefix],
            ).fetchall()
        return [r[0] for r in rows]

    def close(self) -> None:
        with self._lock:
            self.db.conn.close()


class InMemoryKeyValueStore(KeyValueStore):
    """Dict-backed store for tests and ephemeral sessions."""

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def get_many(self, keys: Iterable[str]) -> Dict[str, str]:
        with self._lock:
            return {k: self._data[k] for k in keys if k in self._data}

    def set_many(self, items: Dict[str, str]) -> None:
        with self._lock:
            self._data.update(items)

    def delete_many(self, keys: Iterable[str]) -> None:
        with self._lock:
            for k in keys:
                self._data.pop(k, None)

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))
