"""
Key-value storage port and its adapters.
The record store, audit trail and rule configuration persist JSON text
through this interface; they never talk to a backend directly.
"""

import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Optional

from .db import get_db, init_db


class StorageError(Exception):
    """Raised when a storage backend cannot complete a read or write."""
    pass


class IStorage(ABC):
    """Abstract interface for string key-value persistence."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored text for key, or None when absent."""
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store text under key, replacing any previous value."""
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove key. Removing an absent key is not an error."""
        pass


class MemoryStorage(IStorage):
    """In-process storage, used for tests and ephemeral sessions."""

    def __init__(self, initial: Dict[str, str] = None):
        self._data = dict(initial or {})
        self.write_count = 0

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value
        self.write_count += 1

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self):
        return list(self._data.keys())


class SqliteStorage(IStorage):
    """SQLite-backed storage using the kv table."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        try:
            init_db(db_path)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to initialize database at {db_path}: {e}") from e

    def get(self, key: str) -> Optional[str]:
        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT value FROM kv WHERE key = ?", (key,))
                row = cursor.fetchone()
                return row[0] if row else None
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read key '{key}': {e}") from e

    def set(self, key: str, value: str) -> None:
        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "INSERT OR REPLACE INTO kv (key, value, updated_at) VALUES (?, ?, ?)",
                    (key, value, datetime.now().isoformat())
                )
                conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to write key '{key}': {e}") from e

    def remove(self, key: str) -> None:
        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute("DELETE FROM kv WHERE key = ?", (key,))
                conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to remove key '{key}': {e}") from e
