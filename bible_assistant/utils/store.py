# utils/store.py
"""
Key-value persistence used by the memory store, offline cache, preferences
and conversation state.

Anything with get(key) -> Optional[bytes] and set(key, bytes) works; the two
implementations here are an in-process dict (tests, ephemeral sessions) and
a single-table SQLite file.
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)


class Store(Protocol):
    def get(self, key: str) -> Optional[bytes]:
        ...

    def set(self, key: str, value: bytes) -> None:
        ...


class InMemoryStore:
    def __init__(self):
        self._data: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class SQLiteStore:
    """Key-value table in a SQLite file."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()
        self._init_db()

    def _connect(self):
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        conn = self._connect()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value BLOB NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )
            conn.commit()
        finally:
            conn.close()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            conn = self._connect()
            try:
                row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
            finally:
                conn.close()
        return bytes(row["value"]) if row else None

    def set(self, key: str, value: bytes) -> None:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute(
                    """INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                       ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                                      updated_at = excluded.updated_at""",
                    (key, sqlite3.Binary(value), datetime.now().isoformat()),
                )
                conn.commit()
            finally:
                conn.close()

    def delete(self, key: str) -> None:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
                conn.commit()
            finally:
                conn.close()


def load_json(store: Store, key: str, default: Any = None) -> Any:
    """Decode a JSON value from the store; corrupt data is logged and treated as missing."""
    raw = store.get(key)
    if raw is None:
        return default
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        logger.warning(f"Discarding unreadable value for '{key}': {e}")
        return default


def save_json(store: Store, key: str, value: Any) -> None:
    store.set(key, json.dumps(value, ensure_ascii=False).encode("utf-8"))
