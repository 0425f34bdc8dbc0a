"""
Snapshot CLI tests - export, import, audit export and maintenance checks
against a temporary SQLite database.
"""

import csv
import io
import json
import pytest
from dataclasses import replace

from scripts.snapshot import main
from slabtrack.core.schema import InventoryRecord, SlabStatus
from slabtrack.core.storage import SqliteStorage
from slabtrack.core.store import RecordStore


def make_record(record_id, serial):
    return InventoryRecord(
        id=record_id,
        serial_number=serial,
        material="Granite",
        color="Black Galaxy",
        thickness=20,
        length=3000,
        width=1500,
        supplier="Stone Co",
        status=SlabStatus.STOCK,
    )


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "inventory.db")


@pytest.fixture
def populated_db(db_path):
    with RecordStore(storage=SqliteStorage(db_path), autosave_delay=60) as store:
        store.save(make_record("a", "GRA-001"))
        store.save(make_record("b", "GRA-002"))
        store.save(replace(make_record("a", "GRA-001"), color="Kashmir White"))
    return db_path


class TestExportImport:
    """Test moving the record envelope in and out."""

    def test_export_to_file(self, populated_db, tmp_path, capsys):
        output = tmp_path / "export.json"
        assert main(["--db-path", populated_db, "export", str(output)]) == 0

        data = json.loads(output.read_text())
        assert data["metadata"]["recordCount"] == 2
        assert "Exported 2 records" in capsys.readouterr().out

    def test_export_to_stdout(self, populated_db, capsys):
        assert main(["--db-path", populated_db, "export", "-"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert [r["id"] for r in data["data"]["records"]] == ["a", "b"]

    def test_import_into_empty_database(self, populated_db, tmp_path, capsys):
        output = tmp_path / "export.json"
        main(["--db-path", populated_db, "export", str(output)])

        target = str(tmp_path / "target.db")
        assert main(["--db-path", target, "import", str(output)]) == 0
        assert "Imported 2 records" in capsys.readouterr().out

        with RecordStore(storage=SqliteStorage(target), autosave_delay=60) as store:
            assert store.get_by_id("a").data.color == "Kashmir White"

    def test_import_requires_confirmation(self, populated_db, tmp_path, capsys):
        output = tmp_path / "export.json"
        main(["--db-path", populated_db, "export", str(output)])
        capsys.readouterr()

        assert main(["--db-path", populated_db, "import", str(output)]) == 1
        assert "pass --yes to confirm" in capsys.readouterr().out
        assert main(["--db-path", populated_db, "import", str(output), "--yes"]) == 0

    def test_import_rejects_malformed_file(self, db_path, tmp_path, capsys):
        source = tmp_path / "bad.json"
        source.write_text(json.dumps({"version": "1.0.0"}))
        assert main(["--db-path", db_path, "import", str(source)]) == 1
        assert "Import failed: Invalid schema" in capsys.readouterr().out

    def test_import_missing_file(self, db_path, tmp_path, capsys):
        assert main(["--db-path", db_path, "import", str(tmp_path / "missing.json")]) == 1
        assert "ERROR" in capsys.readouterr().out


class TestAuditExport:
    """Test CSV export of one record's history."""

    def test_audit_export_to_stdout(self, populated_db, capsys):
        assert main(["--db-path", populated_db, "audit-export", "a"]) == 0
        rows = list(csv.reader(io.StringIO(capsys.readouterr().out)))
        assert rows[0][0] == "Timestamp"
        assert [row[1] for row in rows[1:]] == ["UPDATE", "CREATE"]

    def test_audit_export_to_file(self, populated_db, tmp_path):
        output = tmp_path / "a.csv"
        assert main(["--db-path", populated_db, "audit-export", "a", "-o", str(output)]) == 0
        assert output.read_text().startswith("Timestamp,Action")


class TestChecks:
    """Test the maintenance subcommands."""

    def test_integrity(self, populated_db, capsys):
        assert main(["--db-path", populated_db, "integrity"]) == 0
        out = capsys.readouterr().out
        assert "Operation: envelope_integrity_check" in out
        assert "Issues found: 0" in out

    def test_compliance(self, populated_db, capsys):
        assert main(["--db-path", populated_db, "compliance"]) == 0
        assert "Operation: rule_compliance_check" in capsys.readouterr().out
