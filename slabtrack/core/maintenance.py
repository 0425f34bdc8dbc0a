"""
Maintenance routines for the stored inventory.
Re-checks records against the current business rules and verifies the
integrity of the persisted envelope. Read-only: reports, never repairs.
"""

import json
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..api.schemas import BusinessRuleSet, StorageSchema
from ..util.logging import logger
from .config import MAINTENANCE_ENABLED, SCHEMA_KEY, SCHEMA_VERSION
from .schema import parse_timestamp
from .storage import IStorage, StorageError


@dataclass
class MaintenanceReport:
    """Outcome of one maintenance operation."""
    operation: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    issues_found: int = 0
    recommendations: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return self.issues_found == 0 and not self.errors

    def to_dict(self) -> Dict[str, Any]:
        """Convert report to dictionary for serialization."""
        data = {
            "operation": self.operation,
            "started_at": self.started_at.isoformat(),
            "issues_found": self.issues_found,
            "recommendations": self.recommendations,
            "errors": self.errors,
            "metadata": self.metadata
        }
        if self.completed_at:
            data["completed_at"] = self.completed_at.isoformat()
        return data


class MaintenanceError(Exception):
    """Custom exception for maintenance operations."""
    pass


def _require_enabled():
    if not MAINTENANCE_ENABLED:
        raise MaintenanceError("Maintenance system is disabled. Enable with MAINTENANCE_ENABLED=true")


def check_rule_compliance(store, rules: BusinessRuleSet = None) -> MaintenanceReport:
    """
    Re-check every stored record against the business rules.

    Use after the rule set changes: records saved under older bounds may
    now violate them.

    Returns:
        MaintenanceReport: violations per record id in metadata["violations"]
    """
    _require_enabled()
    report = MaintenanceReport(operation="rule_compliance_check", started_at=datetime.now())
    rules = rules or store.rules

    result = store.get_all()
    if not result.success:
        report.errors.append(result.error)
        report.completed_at = datetime.now()
        return report

    violations: Dict[str, List[str]] = {}
    warning_count = 0
    for record in result.data:
        compliance = store.validator.validate_business_rule_compliance(record, rules)
        if not compliance.is_valid:
            violations[record.id] = compliance.error_messages()
        warning_count += len(compliance.warnings)

    report.issues_found = len(violations)
    report.metadata["records_checked"] = len(result.data)
    report.metadata["violations"] = violations
    report.metadata["warning_count"] = warning_count
    if violations:
        report.recommendations.append(
            f"Review {len(violations)} records that violate the current business rules"
        )

    report.completed_at = datetime.now()
    logger.log_operation("maintenance.rule_compliance", "success", {
        "records_checked": len(result.data),
        "violations": len(violations)
    })
    return report


def check_envelope_integrity(storage: IStorage) -> MaintenanceReport:
    """
    Verify the persisted inventory envelope.

    Checks structure, version, record count, duplicate ids and serial
    numbers, and consumed-before-received date ordering.
    """
    _require_enabled()
    report = MaintenanceReport(operation="envelope_integrity_check", started_at=datetime.now())

    try:
        raw = storage.get(SCHEMA_KEY)
    except StorageError as e:
        report.errors.append(f"Storage read failed: {e}")
        report.completed_at = datetime.now()
        return report

    if not raw:
        report.recommendations.append("No stored inventory found")
        report.completed_at = datetime.now()
        return report

    try:
        schema = StorageSchema.model_validate(json.loads(raw))
    except ValueError as e:
        # ValidationError is a ValueError subclass
        count = e.error_count() if isinstance(e, ValidationError) else 1
        report.issues_found += count
        report.errors.append(f"Stored envelope is malformed: {e}")
        report.completed_at = datetime.now()
        return report

    records = schema.data.records
    report.metadata["record_count"] = len(records)
    report.metadata["version"] = schema.version

    if schema.version != SCHEMA_VERSION:
        report.recommendations.append(f"Envelope version {schema.version} differs from current {SCHEMA_VERSION}")

    if schema.metadata.record_count != len(records):
        report.issues_found += 1
        report.errors.append(
            f"Record count mismatch: metadata says {schema.metadata.record_count}, found {len(records)}"
        )

    for record_id, count in Counter(r.id for r in records).items():
        if count > 1:
            report.issues_found += 1
            report.errors.append(f"Duplicate record id {record_id} ({count} copies)")

    for serial, count in Counter(r.serial_number for r in records if r.serial_number).items():
        if count > 1:
            report.issues_found += 1
            report.errors.append(f"Duplicate serial number {serial} ({count} records)")

    for record in records:
        received = parse_timestamp(record.received_date)
        consumed = parse_timestamp(record.consumed_date)
        if received and consumed and consumed < received:
            report.issues_found += 1
            report.errors.append(f"Record {record.id} was consumed before it was received")

    report.completed_at = datetime.now()
    status = "success" if report.healthy else "failed"
    logger.log_operation("maintenance.envelope_integrity", status, {
        "record_count": len(records),
        "issues_found": report.issues_found
    })
    return report
