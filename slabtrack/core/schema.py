"""
Domain types for the record lifecycle core.
Inventory records, audit entries, validation results and result envelopes.
"""

from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class SlabStatus(str, Enum):
    WANTED = "WANTED"
    ORDERED = "ORDERED"
    RECEIVED = "RECEIVED"
    STOCK = "STOCK"
    ALLOCATED = "ALLOCATED"
    CONSUMED = "CONSUMED"
    REMNANT = "REMNANT"


class SlabType(str, Enum):
    FULL = "FULL"
    REMNANT = "REMNANT"


class AuditAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    STATUS_CHANGE = "STATUS_CHANGE"
    DELETE = "DELETE"
    BULK_UPDATE = "BULK_UPDATE"


STATUS_GROUPS = {
    "ACTIVE": frozenset({SlabStatus.STOCK, SlabStatus.ALLOCATED, SlabStatus.RECEIVED}),
    "INACTIVE": frozenset({SlabStatus.CONSUMED, SlabStatus.REMNANT}),
    "PENDING": frozenset({SlabStatus.WANTED, SlabStatus.ORDERED}),
}

DATE_FIELDS = ("received_date", "consumed_date")

# Field name -> display name, in audit diff order
FIELD_DISPLAY_NAMES = {
    "id": "ID",
    "serial_number": "Serial Number",
    "material": "Material",
    "color": "Color",
    "thickness": "Thickness",
    "length": "Length",
    "width": "Width",
    "supplier": "Supplier",
    "status": "Status",
    "slab_type": "Slab Type",
    "job_id": "Job ID",
    "received_date": "Received Date",
    "consumed_date": "Consumed Date",
    "notes": "Notes",
    "cost": "Cost",
    "location": "Location",
}


def to_camel(name: str) -> str:
    head, *tail = name.split("_")
    return head + "".join(part.title() for part in tail)


CAMEL_TO_FIELD = {to_camel(name): name for name in FIELD_DISPLAY_NAMES}


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Materialize a timestamp from its persisted or user-supplied form.

    Accepts datetimes, dates and ISO-8601 strings. Aware datetimes are
    converted to naive local time so they compare with ``datetime.now()``.
    Raises ValueError for anything that cannot be read as a timestamp.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone().replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime.combine(value, datetime.min.time())
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return parse_timestamp(datetime.fromisoformat(text))
    raise ValueError(f"Cannot interpret {value!r} as a timestamp")


def _materialize_date(value: Any) -> Any:
    # Malformed input is kept as-is so validation can report it
    try:
        return parse_timestamp(value)
    except (TypeError, ValueError):
        return value


def _coerce_enum(enum_cls, value: Any) -> Any:
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        return value


@dataclass
class InventoryRecord:
    id: str
    serial_number: str
    material: str
    color: str
    thickness: float
    length: float
    width: float
    supplier: str
    status: SlabStatus
    slab_type: SlabType = SlabType.FULL
    job_id: Optional[str] = None
    received_date: Optional[datetime] = None
    consumed_date: Optional[datetime] = None
    cost: Optional[float] = None
    notes: Optional[str] = None
    location: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the camelCase persisted form."""
        data = {}
        for name, value in asdict(self).items():
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, Enum):
                value = value.value
            data[to_camel(name)] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InventoryRecord':
        """Create from a camelCase or snake_case mapping, materializing dates."""
        values = {}
        for key, value in data.items():
            name = CAMEL_TO_FIELD.get(key, key)
            if name in FIELD_DISPLAY_NAMES:
                values[name] = value

        for name in DATE_FIELDS:
            if name in values:
                values[name] = _materialize_date(values[name])
        if "status" in values:
            values["status"] = _coerce_enum(SlabStatus, values["status"])
        if "slab_type" in values:
            values["slab_type"] = _coerce_enum(SlabType, values["slab_type"])
        return cls(**values)


@dataclass(frozen=True)
class ValidationIssue:
    field: str
    message: str
    code: str


@dataclass
class ValidationResult:
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    def error(self, field_name: str, message: str, code: str):
        self.errors.append(ValidationIssue(field_name, message, code))

    def warn(self, field_name: str, message: str, code: str):
        self.warnings.append(ValidationIssue(field_name, message, code))

    def merge(self, other: 'ValidationResult') -> 'ValidationResult':
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)
        return self

    def field_errors(self, field_name: str) -> List[ValidationIssue]:
        return [e for e in self.errors if e.field == field_name]

    def field_warnings(self, field_name: str) -> List[ValidationIssue]:
        return [w for w in self.warnings if w.field == field_name]

    def error_messages(self) -> List[str]:
        return [e.message for e in self.errors]

    def summary(self) -> Dict[str, Any]:
        """Summarize counts with a human-readable sentence."""
        error_count = len(self.errors)
        warning_count = len(self.warnings)

        def plural(count, word):
            return f"{count} {word}{'s' if count != 1 else ''}"

        if error_count and warning_count:
            text = f"{plural(error_count, 'error')} and {plural(warning_count, 'warning')} found"
        elif error_count:
            text = f"{plural(error_count, 'error')} found"
        elif warning_count:
            text = f"{plural(warning_count, 'warning')} found"
        else:
            text = "Validation passed"

        return {
            "has_errors": error_count > 0,
            "has_warnings": warning_count > 0,
            "error_count": error_count,
            "warning_count": warning_count,
            "summary": text,
        }


@dataclass(frozen=True)
class FieldChange:
    field: str
    display_name: str
    old_value: str
    new_value: str


@dataclass(frozen=True)
class AuditEntry:
    """Immutable record of one accepted mutation."""
    id: str
    record_id: str
    action: AuditAction
    timestamp: datetime
    changes: Tuple[FieldChange, ...] = ()
    actor_id: Optional[str] = None
    actor_name: str = "System"
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "recordId": self.record_id,
            "action": self.action.value,
            "timestamp": self.timestamp.isoformat(),
            "actorId": self.actor_id,
            "actorName": self.actor_name,
            "changes": [
                {
                    "field": c.field,
                    "displayName": c.display_name,
                    "oldValue": c.old_value,
                    "newValue": c.new_value,
                }
                for c in self.changes
            ],
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'AuditEntry':
        """Create from dictionary (for loading from storage)."""
        return cls(
            id=data["id"],
            record_id=data["recordId"],
            action=AuditAction(data["action"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            changes=tuple(
                FieldChange(
                    field=c["field"],
                    display_name=c["displayName"],
                    old_value=c["oldValue"],
                    new_value=c["newValue"],
                )
                for c in data.get("changes", [])
            ),
            actor_id=data.get("actorId"),
            actor_name=data.get("actorName") or "System",
            metadata=data.get("metadata") or {},
        )


@dataclass
class RepositoryResult:
    success: bool
    data: Any = None
    error: Optional[str] = None
    validation: Optional[ValidationResult] = None


@dataclass
class BulkOperationResult:
    success: bool
    processed_count: int
    failed_count: int
    errors: List[str] = field(default_factory=list)
    cancelled: bool = False


@dataclass
class InventorySummary:
    total_records: int
    total_value: float
    average_cost: float
    by_status: Dict[str, int]
    by_type: Dict[str, int]
    by_material: Dict[str, int]
    by_supplier: Dict[str, int]
    low_stock_alerts: List[str]


@dataclass
class AuditSummary:
    total_entries: int
    created_date: datetime
    last_modified: datetime
    status_changes: int
    field_updates: int
    last_action: AuditAction


@dataclass
class AuditQueryResult:
    entries: List[AuditEntry]
    total_count: int
    has_more: bool


@dataclass
class TransitionResult:
    is_valid: bool
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class StatusTransition:
    from_status: SlabStatus
    to_status: SlabStatus
    timestamp: datetime
    reason: Optional[str] = None
