"""
Status workflow for inventory records.
A closed state machine: which status moves are legal, what each move
requires, and display metadata for every status.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple

from ..util.logging import logger
from .schema import (
    CAMEL_TO_FIELD, DATE_FIELDS, FIELD_DISPLAY_NAMES, InventoryRecord, SlabStatus, SlabType,
    StatusTransition, TransitionResult, parse_timestamp,
)


class WorkflowError(Exception):
    """Raised when a transition is executed that the workflow does not allow."""
    pass


STATUS_TRANSITIONS: Dict[SlabStatus, FrozenSet[SlabStatus]] = {
    SlabStatus.WANTED: frozenset({SlabStatus.ORDERED}),
    # ORDERED -> WANTED cancels the order
    SlabStatus.ORDERED: frozenset({SlabStatus.RECEIVED, SlabStatus.WANTED}),
    SlabStatus.RECEIVED: frozenset({SlabStatus.STOCK, SlabStatus.ALLOCATED}),
    SlabStatus.STOCK: frozenset({SlabStatus.ALLOCATED, SlabStatus.REMNANT}),
    # ALLOCATED -> STOCK deallocates
    SlabStatus.ALLOCATED: frozenset({SlabStatus.CONSUMED, SlabStatus.STOCK}),
    SlabStatus.CONSUMED: frozenset({SlabStatus.REMNANT}),
    SlabStatus.REMNANT: frozenset(),
}


@dataclass(frozen=True)
class StatusMetadata:
    label: str
    description: str
    color: str
    icon: str
    is_destructive: bool = False
    requires_confirmation: bool = False


STATUS_METADATA: Dict[SlabStatus, StatusMetadata] = {
    SlabStatus.WANTED: StatusMetadata(
        "Wanted", "Slab is needed but not yet ordered",
        "bg-gray-100 text-gray-800 border-gray-300", "search"),
    SlabStatus.ORDERED: StatusMetadata(
        "Ordered", "Slab has been ordered from supplier",
        "bg-blue-100 text-blue-800 border-blue-300", "shopping-cart"),
    SlabStatus.RECEIVED: StatusMetadata(
        "Received", "Slab has arrived and been inspected",
        "bg-green-100 text-green-800 border-green-300", "package"),
    SlabStatus.STOCK: StatusMetadata(
        "In Stock", "Slab is available for allocation",
        "bg-emerald-100 text-emerald-800 border-emerald-300", "warehouse"),
    SlabStatus.ALLOCATED: StatusMetadata(
        "Allocated", "Slab is reserved for a specific job",
        "bg-yellow-100 text-yellow-800 border-yellow-300", "bookmark"),
    SlabStatus.CONSUMED: StatusMetadata(
        "Consumed", "Slab has been used in production",
        "bg-purple-100 text-purple-800 border-purple-300", "check-circle",
        is_destructive=True, requires_confirmation=True),
    SlabStatus.REMNANT: StatusMetadata(
        "Remnant", "Leftover material from consumed slab",
        "bg-orange-100 text-orange-800 border-orange-300", "scissors"),
}

WORKFLOW_PROGRESS = {
    SlabStatus.WANTED: 0,
    SlabStatus.ORDERED: 20,
    SlabStatus.RECEIVED: 40,
    SlabStatus.STOCK: 60,
    SlabStatus.ALLOCATED: 80,
    SlabStatus.CONSUMED: 100,
    SlabStatus.REMNANT: 100,
}

# Forward path shown in progress indicators; REMNANT shares CONSUMED's step
WORKFLOW_STEPS = (
    (SlabStatus.WANTED, "Wanted", "Identified need"),
    (SlabStatus.ORDERED, "Ordered", "Purchase order sent"),
    (SlabStatus.RECEIVED, "Received", "Delivered and inspected"),
    (SlabStatus.STOCK, "In Stock", "Available for use"),
    (SlabStatus.ALLOCATED, "Allocated", "Reserved for job"),
    (SlabStatus.CONSUMED, "Consumed", "Used in production"),
)


def _normalize(additional_data: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    values = {}
    for key, value in (additional_data or {}).items():
        name = CAMEL_TO_FIELD.get(key, key)
        if name in FIELD_DISPLAY_NAMES and name != 'id':
            values[name] = value
    return values


def _as_status(value: Any) -> Optional[SlabStatus]:
    try:
        return SlabStatus(value)
    except (ValueError, TypeError):
        return None


class WorkflowEngine:
    """Transition guard and executor for record status."""

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self.clock = clock

    def get_valid_next_statuses(self, current: SlabStatus) -> FrozenSet[SlabStatus]:
        status = _as_status(current)
        return STATUS_TRANSITIONS.get(status, frozenset()) if status else frozenset()

    def is_transition_allowed(self, current: SlabStatus, target: SlabStatus) -> bool:
        return _as_status(target) in self.get_valid_next_statuses(current)

    def validate_transition(self, record: InventoryRecord, target: SlabStatus,
                            additional_data: Optional[Mapping[str, Any]] = None) -> TransitionResult:
        """Check a status move and its data requirements. Never mutates."""
        current = getattr(record.status, 'value', record.status)
        target_value = getattr(target, 'value', target)

        if not self.is_transition_allowed(record.status, target):
            return TransitionResult(is_valid=False, error=f"Cannot transition from {current} to {target_value}")

        extra = _normalize(additional_data)
        warnings: List[str] = []

        def present(name):
            return bool(extra.get(name)) or bool(getattr(record, name))

        target = SlabStatus(target)
        if target == SlabStatus.RECEIVED:
            if not present('received_date'):
                return TransitionResult(is_valid=False, error="Received date is required when marking slab as received")
        elif target == SlabStatus.ALLOCATED:
            if not present('job_id'):
                warnings.append("Consider adding a job ID for better tracking")
        elif target == SlabStatus.CONSUMED:
            if not present('consumed_date'):
                return TransitionResult(is_valid=False, error="Consumed date is required when marking slab as consumed")
            if not present('job_id'):
                warnings.append("No job ID specified for consumed slab")
        elif target == SlabStatus.REMNANT:
            if record.slab_type == SlabType.REMNANT:
                warnings.append("Slab is already marked as remnant type")

        return TransitionResult(is_valid=True, warnings=warnings)

    def execute_transition(self, record: InventoryRecord, target: SlabStatus,
                           additional_data: Optional[Mapping[str, Any]] = None,
                           reason: str = None) -> Tuple[InventoryRecord, StatusTransition]:
        """Apply a validated status move, stamping dates on RECEIVED and CONSUMED.

        Returns a new record and the transition; the input record is untouched.
        Raises WorkflowError when the move is not allowed.
        """
        validation = self.validate_transition(record, target, additional_data)
        if not validation.is_valid:
            logger.log_transition(record.id, getattr(record.status, 'value', record.status),
                                  getattr(target, 'value', target), "rejected", validation.error)
            raise WorkflowError(validation.error)

        target = SlabStatus(target)
        now = self.clock()
        changes = _normalize(additional_data)
        for name in DATE_FIELDS:
            if name in changes:
                changes[name] = parse_timestamp(changes[name])
        changes['status'] = target

        updated = replace(record, **changes)
        if target == SlabStatus.RECEIVED and not updated.received_date:
            updated = replace(updated, received_date=now)
        elif target == SlabStatus.CONSUMED and not updated.consumed_date:
            updated = replace(updated, consumed_date=now)

        transition = StatusTransition(from_status=record.status, to_status=target, timestamp=now, reason=reason)
        return updated, transition

    def get_workflow_progress(self, status: SlabStatus) -> int:
        return WORKFLOW_PROGRESS.get(_as_status(status), 0)

    def get_workflow_step_index(self, status: SlabStatus) -> int:
        status = _as_status(status)
        if status == SlabStatus.REMNANT:
            return len(WORKFLOW_STEPS) - 1
        for index, (step_status, _, _) in enumerate(WORKFLOW_STEPS):
            if step_status == status:
                return index
        return 0

    def get_workflow_steps(self) -> List[Dict[str, Any]]:
        return [
            {"status": status, "label": label, "description": description}
            for status, label, description in WORKFLOW_STEPS
        ]

    def get_status_metadata(self, status: SlabStatus) -> Optional[StatusMetadata]:
        return STATUS_METADATA.get(_as_status(status))
