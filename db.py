"""Persistence layer: a key -> bytes store backed by SQLite or memory.

The engine only needs last-run timestamps, settings and cache entries to
survive restarts, so both stores expose the same four operations.
"""

import sqlite3
import threading
from datetime import datetime, timezone
from typing import Optional

from config import DB_PATH


def get_conn(db_path: str = DB_PATH) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def init_db(db_path: str = DB_PATH):
    conn = get_conn(db_path)
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS kv_store (
            key             TEXT PRIMARY KEY,
            value           BLOB NOT NULL,
            updated_at      TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_kv_store_updated_at ON kv_store(updated_at);
    """)
    conn.commit()
    conn.close()


class SqliteStore:
    """Key-value store in a single SQLite table. Safe to share across threads."""

    def __init__(self, db_path: str = DB_PATH):
        self.db_path = db_path
        init_db(db_path)

    def get(self, key: str) -> Optional[bytes]:
        conn = get_conn(self.db_path)
        try:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
        finally:
            conn.close()
        return bytes(row["value"]) if row else None

    def put(self, key: str, value: bytes):
        now = datetime.now(timezone.utc).isoformat()
        conn = get_conn(self.db_path)
        try:
            conn.execute("""
                INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """, (key, sqlite3.Binary(value), now))
            conn.commit()
        finally:
            conn.close()

    def delete(self, key: str) -> bool:
        conn = get_conn(self.db_path)
        try:
            cursor = conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def keys(self, prefix: str = "") -> list[str]:
        conn = get_conn(self.db_path)
        try:
            rows = conn.execute(
                "SELECT key FROM kv_store WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            ).fetchall()
        finally:
            conn.close()
        return [row["key"] for row in rows]


class MemoryStore:
    """In-process store with the same interface as SqliteStore."""

    def __init__(self):
        self._data: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, value: bytes):
        with self._lock:
            self._data[key] = bytes(value)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))
