"""
Validation engine for inventory records.
Pure functions of (record, business rules): errors block persistence,
warnings are informational. Issue fields use the record's attribute names.
"""

import math
import re
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from ..api.schemas import BusinessRuleSet
from ..util.logging import logger
from .config import HIGH_COST_THRESHOLD
from .schema import (
    CAMEL_TO_FIELD, FIELD_DISPLAY_NAMES, InventoryRecord, SlabStatus, SlabType,
    ValidationResult, parse_timestamp,
)

SERIAL_PATTERN = re.compile(r'^[A-Za-z0-9-]+$')
JOB_ID_PATTERN = re.compile(r'^[A-Za-z0-9_-]+$')

SERIAL_MIN_LENGTH = 3
SERIAL_MAX_LENGTH = 20
JOB_ID_MAX_LENGTH = 50
LOCATION_MAX_LENGTH = 100
NOTES_MAX_LENGTH = 1000

# Square metres
SMALL_AREA_M2 = 0.1
LARGE_AREA_M2 = 10

# Order in which validate_record checks fields
VALIDATED_FIELDS = (
    'serial_number', 'material', 'color', 'supplier',
    'thickness', 'length', 'width', 'cost',
    'received_date', 'consumed_date', 'job_id', 'location', 'notes',
    'status', 'slab_type',
)

RulesSource = Union[BusinessRuleSet, Callable[[], BusinessRuleSet]]
RecordLike = Union[InventoryRecord, Mapping[str, Any]]


def record_fields(record: RecordLike) -> Dict[str, Any]:
    """Flatten a record or a partial mapping (either key casing) to attribute names."""
    if isinstance(record, InventoryRecord):
        return {name: getattr(record, name) for name in FIELD_DISPLAY_NAMES}
    values = {name: None for name in FIELD_DISPLAY_NAMES}
    for key, value in record.items():
        name = CAMEL_TO_FIELD.get(key, key)
        if name in values:
            values[name] = value
    return values


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return not math.isnan(value)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _read_date(value: Any) -> Optional[datetime]:
    # Raises ValueError for malformed input
    try:
        return parse_timestamp(value)
    except TypeError as e:
        raise ValueError(str(e)) from e


def _in_enum(enum_cls, value: Any) -> bool:
    try:
        enum_cls(value)
        return True
    except (ValueError, TypeError):
        return False


def _years_before(moment: datetime, years: int) -> datetime:
    try:
        return moment.replace(year=moment.year - years)
    except ValueError:
        # 29 February
        return moment.replace(year=moment.year - years, day=28)


def _fmt(value: float) -> str:
    return f"{value:g}"


class ValidationEngine:
    """Field, record, uniqueness and business-rule validation."""

    def __init__(self, serial_lookup: Callable[[str], Optional[InventoryRecord]] = None,
                 rules: RulesSource = None, clock: Callable[[], datetime] = datetime.now):
        self.serial_lookup = serial_lookup
        self._rules = rules
        self.clock = clock

    def _resolve_rules(self, rules: Optional[RulesSource]) -> BusinessRuleSet:
        source = rules if rules is not None else self._rules
        if source is None:
            return BusinessRuleSet()
        if callable(source) and not isinstance(source, BusinessRuleSet):
            return source()
        return source

    def validate_field(self, field_name: str, value: Any, context: Optional[RecordLike] = None,
                       rules: RulesSource = None) -> ValidationResult:
        """Validate one field value. Unknown fields pass."""
        field_name = CAMEL_TO_FIELD.get(field_name, field_name)
        rules = self._resolve_rules(rules)
        result = ValidationResult()
        check = getattr(self, f'_check_{field_name}', None)
        if check is not None:
            check(result, value, rules, record_fields(context) if context is not None else {})
        return result

    def _check_serial_number(self, result, value, rules, context):
        if _is_blank(value):
            if rules.require_serial_number:
                result.error('serial_number', "Serial number is required", 'REQUIRED_FIELD')
            return
        value = str(value)
        if not SERIAL_PATTERN.match(value):
            result.error('serial_number', "Serial number can only contain letters, numbers, and hyphens", 'INVALID_FORMAT')
        if len(value) < SERIAL_MIN_LENGTH:
            result.error('serial_number', f"Serial number must be at least {SERIAL_MIN_LENGTH} characters long", 'MIN_LENGTH')
        if len(value) > SERIAL_MAX_LENGTH:
            result.error('serial_number', f"Serial number cannot exceed {SERIAL_MAX_LENGTH} characters", 'MAX_LENGTH')

    def _check_material(self, result, value, rules, context):
        if _is_blank(value):
            result.error('material', "Material is required", 'REQUIRED_FIELD')

    def _check_color(self, result, value, rules, context):
        if _is_blank(value):
            result.error('color', "Color is required", 'REQUIRED_FIELD')

    def _check_supplier(self, result, value, rules, context):
        if _is_blank(value):
            result.error('supplier', "Supplier is required", 'REQUIRED_FIELD')

    def _check_thickness(self, result, value, rules, context):
        if not _is_number(value):
            result.error('thickness', "Thickness must be a valid number", 'INVALID_TYPE')
            return
        if value <= 0:
            result.error('thickness', "Thickness must be greater than 0", 'MIN_VALUE')
        elif value < rules.min_thickness:
            result.error('thickness', f"Thickness must be at least {_fmt(rules.min_thickness)}mm", 'MIN_VALUE')
        if value > rules.max_thickness:
            result.error('thickness', f"Thickness cannot exceed {_fmt(rules.max_thickness)}mm", 'MAX_VALUE')

    def _dimension_bounds(self, result, field_name, value, minimum, maximum):
        label = FIELD_DISPLAY_NAMES[field_name]
        if not _is_number(value):
            result.error(field_name, f"{label} must be a valid number", 'INVALID_TYPE')
            return
        if value <= 0:
            result.error(field_name, f"{label} must be greater than 0", 'MIN_VALUE')
        elif value < minimum:
            result.warn(field_name, f"{label} is below recommended minimum of {_fmt(minimum)}mm", 'BELOW_RECOMMENDED')
        if value > maximum:
            result.warn(field_name, f"{label} exceeds typical maximum of {_fmt(maximum)}mm", 'ABOVE_TYPICAL')

    def _check_length(self, result, value, rules, context):
        self._dimension_bounds(result, 'length', value, rules.min_length, rules.max_length)

    def _check_width(self, result, value, rules, context):
        self._dimension_bounds(result, 'width', value, rules.min_width, rules.max_width)

    def _check_cost(self, result, value, rules, context):
        if value is None:
            return
        if not _is_number(value):
            result.error('cost', "Cost must be a valid number", 'INVALID_TYPE')
            return
        if value < 0 and not rules.allow_negative_cost:
            result.error('cost', "Cost cannot be negative", 'NEGATIVE_VALUE')
        if value == 0:
            result.warn('cost', "Cost is zero - please verify this is correct", 'ZERO_COST')
        if value > HIGH_COST_THRESHOLD:
            result.warn('cost', "Cost is unusually high - please verify", 'HIGH_COST')

    def _check_received_date(self, result, value, rules, context):
        if _is_blank(value):
            return
        try:
            received = _read_date(value)
        except ValueError:
            result.error('received_date', "Invalid date format", 'INVALID_DATE')
            return
        now = self.clock()
        if received > now:
            result.warn('received_date', "Received date is in the future", 'FUTURE_DATE')
        if received < _years_before(now, 2):
            result.warn('received_date', "Received date is more than 2 years ago", 'OLD_DATE')

    def _check_consumed_date(self, result, value, rules, context):
        if _is_blank(value):
            return
        try:
            consumed = _read_date(value)
        except ValueError:
            result.error('consumed_date', "Invalid date format", 'INVALID_DATE')
            return
        if consumed > self.clock():
            result.error('consumed_date', "Consumed date cannot be in the future", 'FUTURE_DATE')
        try:
            received = _read_date(context.get('received_date'))
        except ValueError:
            # Reported against received_date itself
            received = None
        if received is not None and consumed < received:
            result.error('consumed_date', "Consumed date cannot be before received date", 'INVALID_DATE_ORDER')

    def _check_job_id(self, result, value, rules, context):
        if not value or not isinstance(value, str):
            return
        if len(value) > JOB_ID_MAX_LENGTH:
            result.error('job_id', f"Job ID cannot exceed {JOB_ID_MAX_LENGTH} characters", 'MAX_LENGTH')
        if not JOB_ID_PATTERN.match(value):
            result.warn('job_id', "Job ID should only contain letters, numbers, hyphens, and underscores", 'RECOMMENDED_FORMAT')

    def _check_location(self, result, value, rules, context):
        if isinstance(value, str) and len(value) > LOCATION_MAX_LENGTH:
            result.error('location', f"Location cannot exceed {LOCATION_MAX_LENGTH} characters", 'MAX_LENGTH')

    def _check_notes(self, result, value, rules, context):
        if isinstance(value, str) and len(value) > NOTES_MAX_LENGTH:
            result.error('notes', f"Notes cannot exceed {NOTES_MAX_LENGTH} characters", 'MAX_LENGTH')

    def _check_status(self, result, value, rules, context):
        if value is None:
            result.error('status', "Status is required", 'REQUIRED_FIELD')
        elif not _in_enum(SlabStatus, value):
            result.error('status', f"Unknown status: {value}", 'INVALID_VALUE')

    def _check_slab_type(self, result, value, rules, context):
        if value is not None and not _in_enum(SlabType, value):
            result.error('slab_type', f"Unknown slab type: {value}", 'INVALID_VALUE')

    def validate_record(self, record: RecordLike, rules: RulesSource = None) -> ValidationResult:
        """Run every field check plus record-level warnings."""
        rules = self._resolve_rules(rules)
        values = record_fields(record)
        result = ValidationResult()

        for field_name in VALIDATED_FIELDS:
            getattr(self, f'_check_{field_name}')(result, values[field_name], rules, values)

        status = values['status']
        if status == SlabStatus.CONSUMED and _is_blank(values['consumed_date']):
            result.warn('consumed_date', "Consumed slabs should have a consumed date", 'MISSING_CONSUMED_DATE')
        if status == SlabStatus.ALLOCATED and _is_blank(values['job_id']):
            result.warn('job_id', "Allocated slabs should have a job ID", 'MISSING_JOB_ID')

        return result

    def validate_unique_serial_number(self, serial_number: str, exclude_id: str = None,
                                      lookup: Callable[[str], Optional[InventoryRecord]] = None) -> ValidationResult:
        """Flag a serial number held by any record other than exclude_id."""
        result = ValidationResult()
        lookup = lookup or self.serial_lookup
        if lookup is None or _is_blank(serial_number):
            return result

        try:
            existing = lookup(serial_number)
        except Exception as e:
            # Uniqueness is advisory when the lookup itself fails
            logger.error(f"Error validating unique serial number '{serial_number}': {e}")
            return result

        if existing is not None and existing.id != exclude_id:
            result.error('serial_number', f'Serial number "{serial_number}" is already in use', 'DUPLICATE_SERIAL')
        return result

    def validate_business_rule_compliance(self, record: RecordLike, rules: RulesSource = None) -> ValidationResult:
        """Check a record against the active rule set's hard and soft bounds."""
        rules = self._resolve_rules(rules)
        values = record_fields(record)
        result = ValidationResult()

        thickness = values['thickness']
        if _is_number(thickness) and (thickness < rules.min_thickness or thickness > rules.max_thickness):
            result.error(
                'thickness',
                f"Thickness must be between {_fmt(rules.min_thickness)}mm and {_fmt(rules.max_thickness)}mm",
                'BUSINESS_RULE_VIOLATION'
            )

        length = values['length']
        if _is_number(length) and length < rules.min_length:
            result.warn('length', f"Length is below business minimum of {_fmt(rules.min_length)}mm", 'BUSINESS_RULE_WARNING')

        width = values['width']
        if _is_number(width) and width < rules.min_width:
            result.warn('width', f"Width is below business minimum of {_fmt(rules.min_width)}mm", 'BUSINESS_RULE_WARNING')

        cost = values['cost']
        if _is_number(cost) and cost < 0 and not rules.allow_negative_cost:
            result.error('cost', "Negative costs are not allowed by business rules", 'BUSINESS_RULE_VIOLATION')

        return result

    def validate_form(self, record: RecordLike, mode: str = "create", existing_id: str = None,
                      rules: RulesSource = None) -> ValidationResult:
        """Validation for an add/edit form: record checks, uniqueness, area and status guidance."""
        rules = self._resolve_rules(rules)
        values = record_fields(record)
        result = self.validate_record(values, rules)

        if not _is_blank(values['serial_number']):
            exclude_id = existing_id if mode == "edit" else None
            result.merge(self.validate_unique_serial_number(values['serial_number'], exclude_id))

        length, width = values['length'], values['width']
        if _is_number(length) and _is_number(width) and length and width:
            area = (length * width) / 1_000_000
            if area < SMALL_AREA_M2:
                result.warn('dimensions', f"Slab area is very small (less than {SMALL_AREA_M2} m²)", 'SMALL_AREA')
            if area > LARGE_AREA_M2:
                result.warn('dimensions', f"Slab area is unusually large (over {LARGE_AREA_M2} m²)", 'LARGE_AREA')

        status = values['status']
        if status == SlabStatus.ALLOCATED and _is_blank(values['job_id']):
            result.warn('job_id', "Job ID is recommended for allocated slabs", 'MISSING_RECOMMENDED')
        if status == SlabStatus.CONSUMED:
            if _is_blank(values['consumed_date']):
                result.error('consumed_date', "Consumed date is required for consumed slabs", 'REQUIRED_FOR_STATUS')
            if _is_blank(values['job_id']):
                result.warn('job_id', "Job ID is recommended for consumed slabs", 'MISSING_RECOMMENDED')
        if status == SlabStatus.RECEIVED and _is_blank(values['received_date']):
            result.warn('received_date', "Received date is recommended for received slabs", 'MISSING_RECOMMENDED')

        if not result.is_valid:
            logger.log_validation_error("validate_form", result.error_messages(), values.get('id'))
        return result

    def validate_batch(self, records: List[RecordLike], rules: RulesSource = None) -> List[ValidationResult]:
        """Validate each record independently, in order."""
        rules = self._resolve_rules(rules)
        return [self.validate_record(record, rules) for record in records]
