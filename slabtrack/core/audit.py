"""
Append-only audit trail for inventory records.
Entries are stored newest first under a single storage key. History is
auxiliary: a failed audit write is logged and never blocks the mutation
it describes.
"""

import csv
import io
import json
import uuid
from dataclasses import dataclass, replace
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from ..api.schemas import AuditFilter
from ..util.logging import logger
from .config import AUDIT_KEY, get_audit_cap
from .schema import (
    CAMEL_TO_FIELD, DATE_FIELDS, FIELD_DISPLAY_NAMES, AuditAction, AuditEntry, AuditQueryResult,
    AuditSummary, FieldChange, InventoryRecord, parse_timestamp,
)
from .storage import IStorage, StorageError

EMPTY_DISPLAY = "—"
CSV_HEADER = ["Timestamp", "Action", "Actor", "Field", "OldValue", "NewValue", "Reason"]


@dataclass(frozen=True)
class Actor:
    """Who performed a mutation."""
    id: Optional[str] = None
    name: str = "System"


SYSTEM = Actor()


def _is_absent(value: Any) -> bool:
    return value is None


def values_equal(old: Any, new: Any) -> bool:
    """Type-aware equality used for audit diffs."""
    if _is_absent(old) and _is_absent(new):
        return True
    if _is_absent(old) or _is_absent(new):
        return False

    if isinstance(old, (datetime, date)) or isinstance(new, (datetime, date)):
        try:
            return parse_timestamp(old) == parse_timestamp(new)
        except (TypeError, ValueError):
            return False

    if isinstance(old, Enum) or isinstance(new, Enum):
        return getattr(old, 'value', old) == getattr(new, 'value', new)

    if isinstance(old, (list, tuple)) and isinstance(new, (list, tuple)):
        return len(old) == len(new) and all(values_equal(a, b) for a, b in zip(old, new))

    if isinstance(old, Mapping) and isinstance(new, Mapping):
        return old.keys() == new.keys() and all(values_equal(old[k], new[k]) for k in old)

    return old == new


def format_value(value: Any) -> str:
    """Render a field value for storage in a FieldChange."""
    if value is None:
        return EMPTY_DISPLAY
    if isinstance(value, (datetime, date)):
        return value.strftime("%x")
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        return ", ".join(format_value(item) for item in value)
    if isinstance(value, Mapping):
        return json.dumps(value, default=str, sort_keys=True)
    return str(value)


def _field_value(record: Any, name: str) -> Any:
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


def diff_records(old: Any, new: Any, exclude_fields: Sequence[str] = ()) -> List[FieldChange]:
    """Field changes between two record snapshots, in display order."""
    changes = []
    for name, display_name in FIELD_DISPLAY_NAMES.items():
        if name in exclude_fields:
            continue
        old_value = _field_value(old, name)
        new_value = _field_value(new, name)
        if not values_equal(old_value, new_value):
            changes.append(FieldChange(name, display_name, format_value(old_value), format_value(new_value)))
    return changes


class AuditTrail:
    """Records, queries and exports the mutation history of records."""

    def __init__(self, storage: IStorage, max_entries_per_record: int = None,
                 id_factory: Callable[[], str] = None, clock: Callable[[], datetime] = datetime.now):
        self.storage = storage
        self.max_entries_per_record = max_entries_per_record or get_audit_cap()
        self.id_factory = id_factory or (lambda: str(uuid.uuid4()))
        self.clock = clock

    def _load(self) -> List[AuditEntry]:
        try:
            raw = self.storage.get(AUDIT_KEY)
            if not raw:
                return []
            return [AuditEntry.from_dict(item) for item in json.loads(raw)]
        except (StorageError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Failed to load audit entries: {e}")
            return []

    def _save(self, entries: List[AuditEntry]):
        self.storage.set(AUDIT_KEY, json.dumps([entry.to_dict() for entry in entries]))

    def _append(self, new_entries: List[AuditEntry]) -> List[AuditEntry]:
        """Prepend entries, enforce the per-record cap and persist."""
        if not new_entries:
            return []
        try:
            entries = list(reversed(new_entries)) + self._load()

            kept = []
            per_record: Dict[str, int] = {}
            for entry in entries:
                count = per_record.get(entry.record_id, 0)
                if count < self.max_entries_per_record:
                    kept.append(entry)
                per_record[entry.record_id] = count + 1

            self._save(kept)
        except Exception as e:
            logger.error(f"Failed to save audit entries: {e}")
            return []

        for entry in new_entries:
            logger.log_audit_entry(entry.id, entry.record_id, entry.action.value, len(entry.changes))
        return new_entries

    def _entry(self, record_id: str, action: AuditAction, changes: List[FieldChange],
               actor: Optional[Actor], metadata: Dict[str, Any]) -> AuditEntry:
        actor = actor or SYSTEM
        return AuditEntry(
            id=self.id_factory(),
            record_id=record_id,
            action=action,
            timestamp=self.clock(),
            changes=tuple(changes),
            actor_id=actor.id,
            actor_name=actor.name or "System",
            metadata=metadata,
        )

    def record_create(self, record: InventoryRecord, reason: str = None,
                      actor: Actor = None) -> Optional[AuditEntry]:
        entry = self._entry(record.id, AuditAction.CREATE, [], actor, {"reason": reason or "Record created"})
        created = self._append([entry])
        return created[0] if created else None

    def record_update(self, old: InventoryRecord, new: InventoryRecord, reason: str = None,
                      actor: Actor = None, exclude_fields: Sequence[str] = ()) -> Optional[AuditEntry]:
        """Log changed fields; returns None when nothing changed."""
        changes = diff_records(old, new, exclude_fields)
        if not changes:
            return None
        entry = self._entry(new.id, AuditAction.UPDATE, changes, actor, {"reason": reason or "Record updated"})
        created = self._append([entry])
        return created[0] if created else None

    def record_status_change(self, record: InventoryRecord, old_status: Any, new_status: Any,
                             reason: str = None, actor: Actor = None) -> Optional[AuditEntry]:
        old_value = format_value(old_status)
        new_value = format_value(new_status)
        change = FieldChange("status", FIELD_DISPLAY_NAMES["status"], old_value, new_value)
        metadata = {
            "reason": reason or "Status changed",
            "previousStatus": old_value,
            "newStatus": new_value,
        }
        entry = self._entry(record.id, AuditAction.STATUS_CHANGE, [change], actor, metadata)
        created = self._append([entry])
        return created[0] if created else None

    def record_delete(self, record: InventoryRecord, reason: str = None,
                      actor: Actor = None) -> Optional[AuditEntry]:
        entry = self._entry(record.id, AuditAction.DELETE, [], actor, {"reason": reason or "Record deleted"})
        created = self._append([entry])
        return created[0] if created else None

    def record_bulk_update(self, records: List[InventoryRecord], changes: Mapping[str, Any],
                           reason: str = None, actor: Actor = None,
                           updated: Optional[List[InventoryRecord]] = None) -> List[AuditEntry]:
        """Log one BULK_UPDATE entry per changed record, sharing a batch id.

        ``updated`` supplies the after-snapshots when they differ from
        ``record`` merged with ``changes`` (e.g. stamped dates).
        """
        batch_id = self.id_factory()
        normalized = {CAMEL_TO_FIELD.get(k, k): v for k, v in (changes or {}).items()}
        normalized = {k: v for k, v in normalized.items() if k in FIELD_DISPLAY_NAMES}
        for name in DATE_FIELDS:
            if name in normalized:
                normalized[name] = parse_timestamp(normalized[name])

        entries = []
        for index, record in enumerate(records):
            after = updated[index] if updated is not None else replace(record, **normalized)
            field_changes = diff_records(record, after)
            if field_changes:
                entries.append(self._entry(
                    record.id, AuditAction.BULK_UPDATE, field_changes, actor,
                    {"reason": reason or "Bulk update", "batchId": batch_id}
                ))
        return self._append(entries)

    def get_history(self, record_id: str, limit: int = None) -> List[AuditEntry]:
        """Entries for one record, newest first."""
        entries = [entry for entry in self._load() if entry.record_id == record_id]
        return entries[:limit] if limit is not None else entries

    def get_recent_activity(self, limit: int = 20) -> List[AuditEntry]:
        return self._load()[:limit]

    def query(self, audit_filter: AuditFilter = None, page: int = 1, page_size: int = 50) -> AuditQueryResult:
        audit_filter = audit_filter or AuditFilter()
        entries = self._load()

        if audit_filter.record_id:
            entries = [e for e in entries if e.record_id == audit_filter.record_id]
        if audit_filter.actions:
            actions = set(audit_filter.actions)
            entries = [e for e in entries if e.action in actions]
        if audit_filter.date_from:
            date_from = parse_timestamp(audit_filter.date_from)
            entries = [e for e in entries if e.timestamp >= date_from]
        if audit_filter.date_to:
            date_to = parse_timestamp(audit_filter.date_to)
            entries = [e for e in entries if e.timestamp <= date_to]
        if audit_filter.actor_id:
            entries = [e for e in entries if e.actor_id == audit_filter.actor_id]
        if audit_filter.field:
            field_name = CAMEL_TO_FIELD.get(audit_filter.field, audit_filter.field)
            entries = [e for e in entries if any(c.field == field_name for c in e.changes)]

        start = (max(page, 1) - 1) * page_size
        end = start + page_size
        return AuditQueryResult(entries=entries[start:end], total_count=len(entries), has_more=end < len(entries))

    def get_summary(self, record_id: str) -> Optional[AuditSummary]:
        entries = self.get_history(record_id)
        if not entries:
            return None

        return AuditSummary(
            total_entries=len(entries),
            created_date=entries[-1].timestamp,
            last_modified=entries[0].timestamp,
            status_changes=sum(1 for e in entries if e.action == AuditAction.STATUS_CHANGE),
            field_updates=sum(1 for e in entries if e.action == AuditAction.UPDATE),
            last_action=entries[0].action,
        )

    def export_history(self, record_id: str) -> str:
        """CSV of a record's history: one row per field change, or one reason-only row."""
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_HEADER)

        for entry in self.get_history(record_id):
            reason = entry.metadata.get("reason", "")
            prefix = [entry.timestamp.isoformat(), entry.action.value, entry.actor_name or "System"]
            if not entry.changes:
                writer.writerow(prefix + ["", "", "", reason])
            for change in entry.changes:
                writer.writerow(prefix + [change.display_name, change.old_value, change.new_value, reason])

        return buffer.getvalue()

    def clear(self, record_id: str = None):
        """Remove one record's history, or everything."""
        try:
            if record_id:
                self._save([e for e in self._load() if e.record_id != record_id])
            else:
                self.storage.remove(AUDIT_KEY)
            logger.log_operation("audit.clear", "success", {"record_id": record_id or "all"})
        except StorageError as e:
            logger.error(f"Failed to clear audit history: {e}")
