"""Persistent state store: opaque key -> JSON blob.

Feedback state is kept here, one blob per session. The store uses a simple
key-value schema when backed by SQLite:
    state_kv(key TEXT PRIMARY KEY, value TEXT, updated_at REAL)

Values are JSON-serialized dicts. Keys are validated against a strict
allowlist so they are safe as file names and SQL parameters alike.
"""
from __future__ import annotations

import json
import logging
import re
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)

_VALID_KEY_RE = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")

_STATE_SCHEMA = """
CREATE TABLE IF NOT EXISTS state_kv (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    updated_at  REAL NOT NULL
);
"""


def is_valid_key(key: str) -> bool:
    return bool(_VALID_KEY_RE.match(key))


class PersistentStore(ABC):
    """get/set by key. Implementations never raise on I/O failure."""

    @abstractmethod
    def get(self, key: str) -> dict[str, Any] | None:
        """Load a blob by key. Returns None if missing or unreadable."""

    @abstractmethod
    def set(self, key: str, data: dict[str, Any]) -> None:
        """Store a blob under a key, replacing any previous value."""

    def delete(self, key: str) -> None:
        """Remove a blob. Optional for implementations."""

    def keys(self) -> list[str]:
        return []


class MemoryStateStore(PersistentStore):
    """In-process store; values round-trip through JSON like the durable one."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> dict[str, Any] | None:
        if not is_valid_key(key):
            return None
        with self._lock:
            raw = self._data.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return None

    def set(self, key: str, data: dict[str, Any]) -> None:
        if not is_valid_key(key):
            log.warning("Invalid state key rejected: %r", key)
            return
        with self._lock:
            self._data[key] = json.dumps(data, default=str)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._data)


class SQLiteStateStore(PersistentStore):
    """Key-value state store backed by a local SQLite file."""

    def __init__(self, path: Path | str) -> None:
        self._path = str(path)
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self._path, check_same_thread=False)
        self._init_schema()

    def _init_schema(self) -> None:
        try:
            with self._lock:
                self._conn.executescript(_STATE_SCHEMA)
                self._conn.commit()
        except sqlite3.Error:
            log.warning("Failed to initialize state_kv schema", exc_info=True)

    def _execute(self, sql: str, params: tuple = ()) -> list[dict]:
        try:
            with self._lock:
                cursor = self._conn.execute(sql, params)
                if cursor.description:
                    cols = [d[0] for d in cursor.description]
                    return [dict(zip(cols, row)) for row in cursor.fetchall()]
                self._conn.commit()
            return []
        except sqlite3.Error:
            log.warning("State store SQL failed: %s", sql[:80], exc_info=True)
            return []

    def set(self, key: str, data: dict[str, Any]) -> None:
        if not is_valid_key(key):
            log.warning("Invalid state key rejected: %r", key)
            return
        value = json.dumps(data, default=str)
        self._execute(
            "INSERT OR REPLACE INTO state_kv (key, value, updated_at) VALUES (?, ?, ?)",
            (key, value, time.time()),
        )

    def get(self, key: str) -> dict[str, Any] | None:
        if not is_valid_key(key):
            return None
        rows = self._execute("SELECT value FROM state_kv WHERE key = ?", (key,))
        if rows:
            try:
                return json.loads(rows[0]["value"])
            except (json.JSONDecodeError, KeyError, TypeError):
                return None
        return None

    def delete(self, key: str) -> None:
        if is_valid_key(key):
            self._execute("DELETE FROM state_kv WHERE key = ?", (key,))

    def keys(self) -> list[str]:
        rows = self._execute("SELECT key FROM state_kv ORDER BY key")
        return [r["key"] for r in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()
