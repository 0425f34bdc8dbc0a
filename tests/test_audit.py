"""
Audit trail tests - diffing, entry creation, retention, queries,
summaries, CSV export and failure handling.
"""

import csv
import io
import itertools
import json
import pytest
from dataclasses import replace
from datetime import datetime, timedelta
from unittest.mock import patch

from slabtrack.api.schemas import AuditFilter
from slabtrack.core.audit import Actor, AuditTrail, diff_records, format_value, values_equal
from slabtrack.core.config import AUDIT_KEY
from slabtrack.core.schema import AuditAction, InventoryRecord, SlabStatus
from slabtrack.core.storage import MemoryStorage, StorageError

BASE_TIME = datetime(2025, 6, 1, 12, 0, 0)


def make_record(**overrides):
    values = dict(
        id="rec-1",
        serial_number="GRA-001",
        material="Granite",
        color="Black Galaxy",
        thickness=20,
        length=3000,
        width=1500,
        supplier="Stone Co",
        status=SlabStatus.STOCK,
    )
    values.update(overrides)
    return InventoryRecord(**values)


class TickingClock:
    """Clock that advances one minute per call."""

    def __init__(self, start=BASE_TIME):
        self.current = start - timedelta(minutes=1)

    def __call__(self):
        self.current += timedelta(minutes=1)
        return self.current


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def trail(storage):
    counter = itertools.count(1)
    return AuditTrail(storage, id_factory=lambda: f"entry-{next(counter)}", clock=TickingClock())


class TestComparators:
    """Test type-aware value comparison and display formatting."""

    def test_absent_values_are_equal(self):
        assert values_equal(None, None)
        assert not values_equal(None, "")

    def test_dates_compare_by_instant(self):
        assert values_equal(datetime(2025, 1, 1, 10), "2025-01-01T10:00:00")
        assert not values_equal(datetime(2025, 1, 1, 10), datetime(2025, 1, 1, 11))

    def test_sequences_and_mappings(self):
        assert values_equal([1, 2], (1, 2))
        assert not values_equal([1, 2], [2, 1])
        assert values_equal({"a": [1]}, {"a": [1]})
        assert not values_equal({"a": 1}, {"a": 1, "b": 2})

    def test_enum_against_plain_value(self):
        assert values_equal(SlabStatus.STOCK, "STOCK")

    def test_format_value(self):
        assert format_value(None) == "—"
        assert format_value(True) == "Yes"
        assert format_value(False) == "No"
        assert format_value(20.0) == "20"
        assert format_value(12.5) == "12.5"
        assert format_value(["a", "b"]) == "a, b"
        assert format_value(SlabStatus.CONSUMED) == "CONSUMED"
        assert format_value(datetime(2025, 1, 2)) == datetime(2025, 1, 2).strftime("%x")

    def test_diff_reports_changed_fields_only(self):
        changes = diff_records(make_record(), make_record(color="Kashmir White", notes="chipped"))
        assert [c.field for c in changes] == ["color", "notes"]
        assert changes[0].display_name == "Color"
        assert changes[1].old_value == "—"

    def test_diff_exclude_fields(self):
        changes = diff_records(make_record(), make_record(status=SlabStatus.ALLOCATED), exclude_fields=("status",))
        assert changes == []


class TestRecordingEntries:
    """Test each kind of audit entry."""

    def test_create_entry(self, trail):
        entry = trail.record_create(make_record())
        assert entry.action == AuditAction.CREATE
        assert entry.changes == ()
        assert entry.actor_name == "System"
        assert entry.metadata == {"reason": "Record created"}

    def test_update_entry(self, trail):
        entry = trail.record_update(make_record(), make_record(color="Kashmir White"), reason="Relabelled",
                                    actor=Actor(id="u-1", name="Dana"))
        assert entry.action == AuditAction.UPDATE
        assert len(entry.changes) == 1
        assert entry.changes[0].new_value == "Kashmir White"
        assert entry.actor_id == "u-1"
        assert entry.actor_name == "Dana"
        assert entry.metadata["reason"] == "Relabelled"

    def test_update_without_changes_logs_nothing(self, trail):
        assert trail.record_update(make_record(), make_record()) is None
        assert trail.get_history("rec-1") == []

    def test_status_change_entry(self, trail):
        entry = trail.record_status_change(make_record(), SlabStatus.STOCK, SlabStatus.ALLOCATED)
        assert entry.action == AuditAction.STATUS_CHANGE
        assert entry.metadata == {"reason": "Status changed", "previousStatus": "STOCK", "newStatus": "ALLOCATED"}
        assert entry.changes[0].field == "status"

    def test_delete_entry(self, trail):
        entry = trail.record_delete(make_record(), reason="Broken in transit")
        assert entry.action == AuditAction.DELETE
        assert entry.metadata["reason"] == "Broken in transit"

    def test_bulk_update_shares_batch_id(self, trail):
        records = [make_record(id="a"), make_record(id="b"), make_record(id="c", status=SlabStatus.CONSUMED)]
        entries = trail.record_bulk_update(records, {"status": SlabStatus.CONSUMED})

        # "c" already had the status, so it has nothing to log
        assert [e.record_id for e in entries] == ["a", "b"]
        assert entries[0].metadata["batchId"] == entries[1].metadata["batchId"]
        assert entries[0].metadata["reason"] == "Bulk update"
        assert all(e.action == AuditAction.BULK_UPDATE for e in entries)

    def test_bulk_update_with_explicit_after_snapshots(self, trail):
        before = make_record()
        after = replace(before, status=SlabStatus.CONSUMED, consumed_date=BASE_TIME)
        entries = trail.record_bulk_update([before], {"status": "CONSUMED"}, updated=[after])
        assert [c.field for c in entries[0].changes] == ["status", "consumed_date"]

    def test_entries_persisted_newest_first(self, trail, storage):
        trail.record_create(make_record())
        trail.record_update(make_record(), make_record(color="White"))
        stored = json.loads(storage.get(AUDIT_KEY))
        assert [item["action"] for item in stored] == ["UPDATE", "CREATE"]
        assert stored[0]["recordId"] == "rec-1"


class TestRetention:
    """Test the per-record retention cap."""

    def test_cap_evicts_oldest_of_same_record(self, storage):
        counter = itertools.count(1)
        trail = AuditTrail(storage, max_entries_per_record=100,
                           id_factory=lambda: f"entry-{next(counter)}", clock=TickingClock())
        other = trail.record_create(make_record(id="other"))

        for i in range(101):
            trail.record_update(make_record(), make_record(notes=f"note {i}"))

        history = trail.get_history("rec-1")
        assert len(history) == 100
        assert "entry-2" not in [e.id for e in history]
        assert history[-1].id == "entry-3"
        assert [e.id for e in trail.get_history("other")] == [other.id]


class TestQueries:
    """Test history, query, summary and recent activity."""

    def populate(self, trail):
        trail.record_create(make_record(id="a"))
        trail.record_status_change(make_record(id="a"), "STOCK", "ALLOCATED", actor=Actor(id="u-1", name="Dana"))
        trail.record_update(make_record(id="a"), make_record(id="a", job_id="JOB-1"))
        trail.record_create(make_record(id="b"))

    def test_history_limit(self, trail):
        self.populate(trail)
        history = trail.get_history("a", limit=2)
        assert [e.action for e in history] == [AuditAction.UPDATE, AuditAction.STATUS_CHANGE]

    def test_history_limit_zero(self, trail):
        self.populate(trail)
        assert trail.get_history("a", limit=0) == []

    def test_recent_activity(self, trail):
        self.populate(trail)
        assert [e.record_id for e in trail.get_recent_activity(limit=2)] == ["b", "a"]

    def test_query_filters(self, trail):
        self.populate(trail)

        by_action = trail.query(AuditFilter(actions=[AuditAction.CREATE]))
        assert by_action.total_count == 2

        by_actor = trail.query(AuditFilter(actor_id="u-1"))
        assert [e.action for e in by_actor.entries] == [AuditAction.STATUS_CHANGE]

        by_field = trail.query(AuditFilter(field="jobId"))
        assert by_field.total_count == 1

        by_range = trail.query(AuditFilter(date_from=BASE_TIME + timedelta(minutes=1),
                                           date_to=BASE_TIME + timedelta(minutes=2)))
        assert by_range.total_count == 2

    def test_query_pagination(self, trail):
        self.populate(trail)
        first = trail.query(AuditFilter(), page=1, page_size=3)
        assert len(first.entries) == 3
        assert first.total_count == 4
        assert first.has_more

        second = trail.query(AuditFilter(), page=2, page_size=3)
        assert len(second.entries) == 1
        assert not second.has_more

    def test_summary(self, trail):
        self.populate(trail)
        summary = trail.get_summary("a")
        assert summary.total_entries == 3
        assert summary.status_changes == 1
        assert summary.field_updates == 1
        assert summary.last_action == AuditAction.UPDATE
        assert summary.created_date == BASE_TIME
        assert summary.last_modified == BASE_TIME + timedelta(minutes=2)

    def test_summary_without_history(self, trail):
        assert trail.get_summary("missing") is None


class TestExportAndClear:
    """Test CSV export and clearing."""

    def test_export_rows(self, trail):
        trail.record_create(make_record())
        trail.record_update(make_record(), make_record(color="White, polished"), reason="Recut")

        rows = list(csv.reader(io.StringIO(trail.export_history("rec-1"))))
        assert rows[0] == ["Timestamp", "Action", "Actor", "Field", "OldValue", "NewValue", "Reason"]
        assert rows[1][1:] == ["UPDATE", "System", "Color", "Black Galaxy", "White, polished", "Recut"]
        assert rows[2][1:] == ["CREATE", "System", "", "", "", "Record created"]
        assert len(rows) == 3

    def test_clear_one_record(self, trail):
        trail.record_create(make_record(id="a"))
        trail.record_create(make_record(id="b"))
        trail.clear("a")
        assert trail.get_history("a") == []
        assert len(trail.get_history("b")) == 1

    def test_clear_everything(self, trail, storage):
        trail.record_create(make_record())
        trail.clear()
        assert storage.get(AUDIT_KEY) is None


class TestFailureHandling:
    """Audit failures are logged and swallowed."""

    def test_write_failure_returns_none(self, trail, storage):
        with patch.object(storage, "set", side_effect=StorageError("disk full")):
            with patch("slabtrack.core.audit.logger") as mock_logger:
                assert trail.record_create(make_record()) is None
                mock_logger.error.assert_called_once()

    def test_corrupt_log_reads_as_empty(self, trail, storage):
        storage.set(AUDIT_KEY, "{not json")
        assert trail.get_history("rec-1") == []
