"""
Storage adapter tests - memory and SQLite key-value backends.
"""

import sqlite3
import pytest
from unittest.mock import patch

from slabtrack.core.db import health_check
from slabtrack.core.storage import MemoryStorage, SqliteStorage, StorageError


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "data" / "test.db")


class TestMemoryStorage:
    """Test in-process storage."""

    def test_set_get_remove(self):
        storage = MemoryStorage()
        storage.set("k", "v")
        assert storage.get("k") == "v"
        storage.remove("k")
        assert storage.get("k") is None

    def test_remove_absent_key(self):
        MemoryStorage().remove("missing")

    def test_initial_values_and_write_count(self):
        storage = MemoryStorage({"a": "1"})
        assert storage.keys() == ["a"]
        assert storage.write_count == 0
        storage.set("b", "2")
        storage.set("b", "3")
        assert storage.write_count == 2


class TestSqliteStorage:
    """Test the SQLite kv table adapter."""

    def test_creates_database_and_table(self, db_path):
        SqliteStorage(db_path)
        assert health_check(db_path)

    def test_set_replaces_value(self, db_path):
        storage = SqliteStorage(db_path)
        storage.set("inventory_schema", '{"version": "1.0.0"}')
        storage.set("inventory_schema", '{"version": "1.0.1"}')
        assert storage.get("inventory_schema") == '{"version": "1.0.1"}'

    def test_values_survive_new_adapter(self, db_path):
        SqliteStorage(db_path).set("k", "v")
        assert SqliteStorage(db_path).get("k") == "v"

    def test_get_absent_key(self, db_path):
        assert SqliteStorage(db_path).get("missing") is None

    def test_remove(self, db_path):
        storage = SqliteStorage(db_path)
        storage.set("k", "v")
        storage.remove("k")
        storage.remove("k")
        assert storage.get("k") is None

    def test_errors_become_storage_errors(self, db_path):
        storage = SqliteStorage(db_path)
        with patch("slabtrack.core.storage.get_db", side_effect=sqlite3.OperationalError("database is locked")):
            with pytest.raises(StorageError, match="Failed to write key 'k'"):
                storage.set("k", "v")
            with pytest.raises(StorageError, match="Failed to read key 'k'"):
                storage.get("k")

    def test_health_check_without_table(self, tmp_path):
        assert not health_check(str(tmp_path / "empty.db"))
