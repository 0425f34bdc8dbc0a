"""
Record store for inventory records.
Owns the in-memory record set and its persisted envelope. Every public
operation returns a result envelope; nothing raises across this boundary.
"""

import json
import re
import uuid
from collections import Counter
from dataclasses import asdict, replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import ValidationError

from ..api.schemas import BusinessRuleSet, RecordFilters, StorageSchema
from ..util.logging import logger
from .audit import Actor, AuditTrail
from .autosave import BufferedWriter
from .config import (
    AUTOSAVE_ENABLED, AUTOSAVE_KEY, LOW_STOCK_THRESHOLD, SCHEMA_KEY, SCHEMA_VERSION,
    get_autosave_delay, get_storage,
)
from .rules import DEFAULT_BUSINESS_RULES
from .schema import (
    CAMEL_TO_FIELD, DATE_FIELDS, FIELD_DISPLAY_NAMES, BulkOperationResult, InventoryRecord,
    InventorySummary, RepositoryResult, SlabStatus, SlabType, ValidationResult, parse_timestamp,
)
from .storage import IStorage, StorageError
from .validation import ValidationEngine, record_fields
from .workflow import WorkflowEngine, WorkflowError

RulesSource = Union[BusinessRuleSet, Callable[[], BusinessRuleSet]]
CancelCheck = Callable[[], bool]


STORE_CLOSED_ERROR = "Record store is closed"


def _not_found(record_id: str) -> str:
    return f"Record with ID {record_id} not found"


def _value(value: Any) -> str:
    return str(getattr(value, "value", value))


def _normalize_changes(changes: Mapping[str, Any]) -> Dict[str, Any]:
    values = {}
    for key, value in (changes or {}).items():
        name = CAMEL_TO_FIELD.get(key, key)
        if name in FIELD_DISPLAY_NAMES and name != 'id':
            values[name] = value
    return values


class RecordStore:
    """Persistence-backed store of inventory records.

    Mutations are validated, applied in memory, audited, and flushed to
    storage after a quiet period (``autosave_delay``). A crash inside that
    window loses the unflushed mutations. ``flush()``, ``close()`` and the
    context manager write pending state immediately.
    """

    def __init__(self, storage: IStorage = None, audit: AuditTrail = None,
                 validator: ValidationEngine = None, workflow: WorkflowEngine = None,
                 rules: RulesSource = None, id_factory: Callable[[], str] = None,
                 clock: Callable[[], datetime] = datetime.now, autosave_delay: float = None):
        self.storage = storage or get_storage()
        self.clock = clock
        self.audit = audit or AuditTrail(self.storage, clock=clock)
        self._rules = rules
        self.validator = validator or ValidationEngine(
            serial_lookup=self._find_by_serial, rules=lambda: self.rules, clock=clock
        )
        self.workflow = workflow or WorkflowEngine(clock=clock)
        self.id_factory = id_factory or (lambda: str(uuid.uuid4()))

        self._records: Dict[str, InventoryRecord] = {}
        self._created_at: Optional[datetime] = None
        self._writer = BufferedWriter(
            self._write_envelope,
            delay=get_autosave_delay() if autosave_delay is None else autosave_delay,
            name="inventory",
        )
        self._auto_save = self._load_auto_save()
        self._load()

    @property
    def rules(self) -> BusinessRuleSet:
        if self._rules is None:
            return DEFAULT_BUSINESS_RULES
        if callable(self._rules) and not isinstance(self._rules, BusinessRuleSet):
            return self._rules()
        return self._rules

    # Persistence

    def _load_auto_save(self) -> bool:
        try:
            raw = self.storage.get(AUTOSAVE_KEY)
            return bool(json.loads(raw)) if raw is not None else AUTOSAVE_ENABLED
        except (StorageError, ValueError) as e:
            logger.error(f"Failed to load auto-save preference: {e}")
            return AUTOSAVE_ENABLED

    def _load(self):
        try:
            raw = self.storage.get(SCHEMA_KEY)
        except StorageError as e:
            logger.error(f"Failed to load inventory: {e}")
            return
        if not raw:
            return

        try:
            data = json.loads(raw)
        except ValueError as e:
            logger.error(f"Stored inventory is not valid JSON: {e}")
            return

        try:
            schema = StorageSchema.model_validate(data)
            records = schema.to_records()
            self._created_at = parse_timestamp(schema.metadata.created_at)
        except ValidationError as e:
            # Keep whatever records can still be read rather than dropping them on the next flush
            logger.warning(f"Stored inventory envelope failed validation, loading leniently: {e.error_count()} errors")
            records = self._load_leniently(data)

        self._records = {record.id: record for record in records}
        logger.log_operation("store.load", "success", {"record_count": len(self._records)})

    def _load_leniently(self, data: Any) -> List[InventoryRecord]:
        records = []
        items = (data.get("data") or {}).get("records") or [] if isinstance(data, dict) else []
        for item in items:
            try:
                records.append(InventoryRecord.from_dict(item))
            except (TypeError, AttributeError) as e:
                logger.error(f"Skipping unreadable stored record: {e}")
        return records

    def _snapshot(self) -> Dict[str, Any]:
        """Envelope of the current record set, detached from live state."""
        now = self.clock()
        if self._created_at is None:
            self._created_at = now
        records = [record.to_dict() for record in self._records.values()]
        return {
            "version": SCHEMA_VERSION,
            "data": {"records": records},
            "metadata": {
                "createdAt": self._created_at.isoformat(),
                "lastModified": now.isoformat(),
                "recordCount": len(records),
            },
        }

    def _write_envelope(self, payload: Dict[str, Any]):
        record_count = payload["metadata"]["recordCount"]
        try:
            self.storage.set(SCHEMA_KEY, json.dumps(payload))
        except StorageError as e:
            logger.log_flush(SCHEMA_KEY, record_count, "failed", {"error": str(e)})
            raise
        logger.log_flush(SCHEMA_KEY, record_count)

    def _mark_dirty(self):
        payload = self._snapshot()
        if self._auto_save:
            self._writer.schedule(payload)
        else:
            self._writer.hold(payload)

    def flush(self) -> RepositoryResult:
        """Write pending changes now."""
        if self._writer.flush():
            return RepositoryResult(success=True)
        return RepositoryResult(success=False, error="Failed to save inventory data")

    @property
    def auto_save_enabled(self) -> bool:
        return self._auto_save

    def set_auto_save(self, enabled: bool) -> RepositoryResult:
        """Toggle debounced flushing. When off, changes wait for flush() or close()."""
        self._auto_save = bool(enabled)
        try:
            self.storage.set(AUTOSAVE_KEY, json.dumps(self._auto_save))
        except StorageError as e:
            logger.error(f"Failed to persist auto-save preference: {e}")
            return RepositoryResult(success=False, error=str(e))

        if self._writer.pending:
            if self._auto_save:
                return self.flush()
            self._writer.hold(self._snapshot())
        return RepositoryResult(success=True, data=self._auto_save)

    @property
    def closed(self) -> bool:
        return self._writer.closed

    def close(self) -> RepositoryResult:
        """Flush pending changes and stop accepting scheduled writes."""
        if self._writer.close():
            return RepositoryResult(success=True)
        return RepositoryResult(success=False, error="Failed to save inventory data on close")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # Reads

    def get_all(self) -> RepositoryResult:
        return RepositoryResult(success=True, data=[replace(r) for r in self._records.values()])

    def get_by_id(self, record_id: str) -> RepositoryResult:
        record = self._records.get(record_id)
        if record is None:
            return RepositoryResult(success=False, error=_not_found(record_id))
        return RepositoryResult(success=True, data=replace(record))

    def _find_by_serial(self, serial_number: str) -> Optional[InventoryRecord]:
        for record in self._records.values():
            if record.serial_number == serial_number:
                return record
        return None

    def get_by_serial_number(self, serial_number: str) -> RepositoryResult:
        record = self._find_by_serial(serial_number)
        return RepositoryResult(success=True, data=replace(record) if record else None)

    # Single-record mutations

    def _normalize_record(self, record: InventoryRecord) -> InventoryRecord:
        return replace(
            record,
            status=SlabStatus(record.status),
            slab_type=SlabType(record.slab_type or SlabType.FULL),
            received_date=parse_timestamp(record.received_date),
            consumed_date=parse_timestamp(record.consumed_date),
        )

    def _check(self, record: InventoryRecord, rules: BusinessRuleSet) -> ValidationResult:
        validation = self.validator.validate_record(record, rules)
        if rules.require_serial_number and record.serial_number:
            validation.merge(self.validator.validate_unique_serial_number(
                record.serial_number, record.id, lookup=self._find_by_serial
            ))
        return validation

    def save(self, record: InventoryRecord, reason: str = None, actor: Actor = None) -> RepositoryResult:
        """Insert or replace a record by id."""
        try:
            if self.closed:
                return RepositoryResult(success=False, error=STORE_CLOSED_ERROR)

            validation = self._check(record, self.rules)
            if not validation.is_valid:
                logger.log_validation_error("save", validation.error_messages(), record.id)
                return RepositoryResult(success=False, error="; ".join(validation.error_messages()),
                                        validation=validation)

            existing = self._records.get(record.id)
            if existing is not None and existing.status != record.status:
                transition = self.workflow.validate_transition(existing, record.status, asdict(record))
                if not transition.is_valid:
                    logger.log_transition(record.id, _value(existing.status), _value(record.status), "rejected", transition.error)
                    return RepositoryResult(success=False, error=transition.error, validation=validation)

            stored = self._normalize_record(record)
            self._records[stored.id] = stored
            self._mark_dirty()

            if existing is None:
                self.audit.record_create(stored, reason, actor)
                logger.log_record_operation("create", stored.id, details={"serial_number": stored.serial_number})
            else:
                if existing.status != stored.status:
                    self.audit.record_status_change(stored, existing.status, stored.status, reason, actor)
                    logger.log_transition(stored.id, existing.status.value, stored.status.value, reason=reason or "")
                self.audit.record_update(existing, stored, reason, actor, exclude_fields=("status",))
                logger.log_record_operation("update", stored.id)

            return RepositoryResult(success=True, data=replace(stored), validation=validation)
        except Exception as e:
            logger.error(f"Failed to save record '{getattr(record, 'id', None)}': {e}")
            return RepositoryResult(success=False, error=f"Failed to save record: {e}")

    def _generate_serial_number(self, material: Optional[str]) -> str:
        prefix = re.sub(r'[^A-Za-z0-9]', '', material or '')[:3].upper() or "SLB"
        taken = {record.serial_number for record in self._records.values()}
        number = 1
        while f"{prefix}-{number:03d}" in taken:
            number += 1
        return f"{prefix}-{number:03d}"

    def create(self, data: Mapping[str, Any], reason: str = None, actor: Actor = None) -> RepositoryResult:
        """Build a record from partial data, filling defaults from the rule set, then save it."""
        try:
            if self.closed:
                return RepositoryResult(success=False, error=STORE_CLOSED_ERROR)

            rules = self.rules
            values = record_fields(data)
            values['id'] = values['id'] or self.id_factory()
            if values['id'] in self._records:
                return RepositoryResult(success=False, error=f"Record with ID {values['id']} already exists")

            values['status'] = values['status'] or rules.default_status
            values['slab_type'] = values['slab_type'] or SlabType.FULL
            values['location'] = values['location'] or rules.default_location
            if not values['serial_number']:
                values['serial_number'] = (
                    self._generate_serial_number(values['material']) if rules.auto_generate_serial_number else ""
                )

            return self.save(InventoryRecord.from_dict(values), reason or "Record created", actor)
        except Exception as e:
            logger.error(f"Failed to create record: {e}")
            return RepositoryResult(success=False, error=f"Failed to create record: {e}")

    def transition_status(self, record_id: str, target: SlabStatus, additional_data: Mapping[str, Any] = None,
                          reason: str = None, actor: Actor = None) -> RepositoryResult:
        """Move a record along the workflow, stamping dates the target status implies."""
        if self.closed:
            return RepositoryResult(success=False, error=STORE_CLOSED_ERROR)
        existing = self._records.get(record_id)
        if existing is None:
            return RepositoryResult(success=False, error=_not_found(record_id))

        try:
            warnings = self.workflow.validate_transition(existing, target, additional_data).warnings
            updated, _ = self.workflow.execute_transition(existing, target, additional_data, reason)
        except WorkflowError as e:
            return RepositoryResult(success=False, error=str(e))
        except Exception as e:
            logger.error(f"Failed to transition record '{record_id}': {e}")
            return RepositoryResult(success=False, error=f"Failed to transition record: {e}")

        result = self.save(updated, reason, actor)
        if result.success and result.validation is not None:
            for warning in warnings:
                result.validation.warn('status', warning, 'TRANSITION_WARNING')
        return result

    def delete(self, record_id: str, reason: str = None, actor: Actor = None) -> RepositoryResult:
        try:
            if self.closed:
                return RepositoryResult(success=False, error=STORE_CLOSED_ERROR)

            removed = self._records.pop(record_id, None)
            if removed is None:
                return RepositoryResult(success=False, error=_not_found(record_id))

            self._mark_dirty()
            self.audit.record_delete(removed, reason, actor)
            logger.log_record_operation("delete", record_id)
            return RepositoryResult(success=True, data=removed)
        except Exception as e:
            logger.error(f"Failed to delete record '{record_id}': {e}")
            return RepositoryResult(success=False, error=f"Failed to delete record: {e}")

    # Bulk mutations

    def _bulk_apply(self, operation: str, ids: Iterable[str], apply_one: Callable[[InventoryRecord], Optional[str]],
                    should_cancel: Optional[CancelCheck]) -> BulkOperationResult:
        """Run apply_one per id in sequence; it returns an error string or None."""
        ids = list(ids)
        if self.closed:
            return BulkOperationResult(False, 0, len(ids), [STORE_CLOSED_ERROR])

        processed = 0
        failed = 0
        errors: List[str] = []
        cancelled = False

        for record_id in ids:
            if should_cancel is not None and should_cancel():
                cancelled = True
                break

            existing = self._records.get(record_id)
            if existing is None:
                failed += 1
                errors.append(_not_found(record_id))
                continue

            try:
                error = apply_one(existing)
            except Exception as e:
                error = f"Failed to process record {record_id}: {e}"
                logger.error(error)

            if error:
                failed += 1
                errors.append(error)
            else:
                processed += 1

        if processed:
            self._mark_dirty()
        logger.log_bulk_operation(operation, processed, failed, cancelled=cancelled)
        return BulkOperationResult(
            success=processed > 0,
            processed_count=processed,
            failed_count=failed,
            errors=errors,
            cancelled=cancelled,
        )

    def bulk_update_status(self, ids: List[str], status: SlabStatus, reason: str = None, actor: Actor = None,
                           should_cancel: CancelCheck = None) -> BulkOperationResult:
        """Set one status on each id independently.

        The transition graph is not consulted here. Moving to CONSUMED stamps
        a consumed date on records that lack one.
        """
        try:
            target = SlabStatus(status)
        except ValueError:
            return BulkOperationResult(False, 0, len(ids), [f"Unknown status: {status}"])

        before: List[InventoryRecord] = []
        after: List[InventoryRecord] = []

        def apply_one(existing):
            changes = {'status': target}
            if target == SlabStatus.CONSUMED and not existing.consumed_date:
                changes['consumed_date'] = self.clock()
            updated = replace(existing, **changes)
            self._records[existing.id] = updated
            before.append(existing)
            after.append(updated)
            return None

        result = self._bulk_apply("update_status", ids, apply_one, should_cancel)
        if before:
            self.audit.record_bulk_update(before, {'status': target}, reason, actor, updated=after)
        return result

    def bulk_update(self, ids: List[str], changes: Mapping[str, Any], reason: str = None, actor: Actor = None,
                    should_cancel: CancelCheck = None) -> BulkOperationResult:
        """Merge the same field changes into each id; invalid results count as failures."""
        normalized = _normalize_changes(changes)
        for name in DATE_FIELDS:
            if name in normalized:
                normalized[name] = parse_timestamp(normalized[name])
        rules = self.rules

        before: List[InventoryRecord] = []
        after: List[InventoryRecord] = []

        def apply_one(existing):
            updated = replace(existing, **normalized)
            validation = self._check(updated, rules)
            if not validation.is_valid:
                logger.log_validation_error("bulk_update", validation.error_messages(), existing.id)
                return f"Record {existing.id}: {'; '.join(validation.error_messages())}"
            updated = self._normalize_record(updated)
            self._records[existing.id] = updated
            before.append(existing)
            after.append(updated)
            return None

        result = self._bulk_apply("update", ids, apply_one, should_cancel)
        if before:
            self.audit.record_bulk_update(before, normalized, reason, actor, updated=after)
        return result

    def bulk_delete(self, ids: List[str], reason: str = None, actor: Actor = None,
                    should_cancel: CancelCheck = None) -> BulkOperationResult:
        def apply_one(existing):
            del self._records[existing.id]
            self.audit.record_delete(existing, reason, actor)
            return None

        return self._bulk_apply("delete", ids, apply_one, should_cancel)

    # Queries

    def search(self, filters: Union[RecordFilters, Mapping[str, Any]] = None, search_term: str = None) -> RepositoryResult:
        """Records matching every non-empty filter and the free-text term."""
        try:
            if filters is None:
                filters = RecordFilters()
            elif not isinstance(filters, RecordFilters):
                filters = RecordFilters.model_validate(filters)
        except ValidationError as e:
            logger.log_validation_error("search", [err["msg"] for err in e.errors()])
            return RepositoryResult(success=False, error=f"Invalid filters: {e.error_count()} errors")

        records = list(self._records.values())
        if filters.status:
            records = [r for r in records if r.status in filters.status]
        if filters.slab_type:
            records = [r for r in records if r.slab_type in filters.slab_type]
        if filters.material:
            records = [r for r in records if r.material in filters.material]
        if filters.supplier:
            records = [r for r in records if r.supplier in filters.supplier]
        if filters.location:
            records = [r for r in records if r.location and r.location in filters.location]

        term = (search_term or "").strip().lower()
        if term:
            def matches(record):
                haystack = (record.serial_number, record.material, record.color,
                            record.supplier, record.location, record.notes)
                return any(value and term in value.lower() for value in haystack)
            records = [r for r in records if matches(r)]

        return RepositoryResult(success=True, data=[replace(r) for r in records])

    def summarize(self) -> RepositoryResult:
        try:
            records = list(self._records.values())
            total_value = sum(r.cost or 0 for r in records)

            by_status = {status.value: 0 for status in SlabStatus}
            by_type = {slab_type.value: 0 for slab_type in SlabType}
            by_material: Dict[str, int] = {}
            by_supplier: Dict[str, int] = {}
            in_stock: Dict[str, int] = {}

            for record in records:
                status_key = _value(record.status)
                type_key = _value(record.slab_type)
                by_status[status_key] = by_status.get(status_key, 0) + 1
                by_type[type_key] = by_type.get(type_key, 0) + 1
                by_material[record.material] = by_material.get(record.material, 0) + 1
                by_supplier[record.supplier] = by_supplier.get(record.supplier, 0) + 1
                if record.status == SlabStatus.STOCK:
                    in_stock[record.material] = in_stock.get(record.material, 0) + 1

            low_stock = [m for m in by_material if in_stock.get(m, 0) < LOW_STOCK_THRESHOLD]

            summary = InventorySummary(
                total_records=len(records),
                total_value=total_value,
                average_cost=total_value / len(records) if records else 0,
                by_status=by_status,
                by_type=by_type,
                by_material=by_material,
                by_supplier=by_supplier,
                low_stock_alerts=low_stock,
            )
            return RepositoryResult(success=True, data=summary)
        except Exception as e:
            logger.error(f"Failed to generate inventory summary: {e}")
            return RepositoryResult(success=False, error=f"Failed to generate inventory summary: {e}")

    # Snapshots

    def export_snapshot(self) -> RepositoryResult:
        """The whole record set in its versioned envelope."""
        try:
            return RepositoryResult(success=True, data=self._snapshot())
        except Exception as e:
            logger.error(f"Failed to export inventory: {e}")
            return RepositoryResult(success=False, error=f"Failed to export inventory: {e}")

    def _snapshot_conflicts(self, records: List[InventoryRecord], record_count: int) -> List[str]:
        """Problems that would lose or corrupt records if the envelope were imported as is."""
        conflicts = []
        if record_count != len(records):
            conflicts.append(f"Record count mismatch: metadata says {record_count}, found {len(records)}")
        for record_id, count in Counter(r.id for r in records).items():
            if count > 1:
                conflicts.append(f"Duplicate record id {record_id} ({count} copies)")
        if self.rules.require_serial_number:
            for serial, count in Counter(r.serial_number for r in records if r.serial_number).items():
                if count > 1:
                    conflicts.append(f"Duplicate serial number {serial} ({count} records)")
        return conflicts

    def import_snapshot(self, schema: Union[str, Mapping[str, Any], StorageSchema]) -> RepositoryResult:
        """Replace the record set from an envelope and flush immediately."""
        if self.closed:
            return RepositoryResult(success=False, error=STORE_CLOSED_ERROR)

        try:
            if isinstance(schema, StorageSchema):
                parsed = schema
            elif isinstance(schema, str):
                parsed = StorageSchema.model_validate_json(schema)
            else:
                parsed = StorageSchema.model_validate(schema)
        except ValidationError as e:
            logger.log_validation_error("import_snapshot", [err["msg"] for err in e.errors()])
            return RepositoryResult(success=False, error=f"Invalid schema: {e.error_count()} validation errors")

        try:
            records = parsed.to_records()
            conflicts = self._snapshot_conflicts(records, parsed.metadata.record_count)
            if conflicts:
                logger.log_validation_error("import_snapshot", conflicts)
                return RepositoryResult(success=False, error=f"Inconsistent snapshot: {'; '.join(conflicts)}")

            self._records = {record.id: record for record in records}
            self._created_at = parse_timestamp(parsed.metadata.created_at)
            self._writer.hold(self._snapshot())
            if not self._writer.flush():
                return RepositoryResult(success=False, error="Failed to save imported inventory")

            logger.log_operation("store.import", "success", {"record_count": len(records)})
            return RepositoryResult(success=True, data=len(records))
        except Exception as e:
            logger.error(f"Failed to import inventory: {e}")
            return RepositoryResult(success=False, error=f"Failed to import inventory: {e}")
