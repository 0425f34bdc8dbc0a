"""
Boundary schemas for the record lifecycle core.
Business-rule configuration, persisted snapshot envelope and query filters.
Inputs accept camelCase or snake_case keys; output is camelCase.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from ..core.schema import AuditAction, InventoryRecord, SlabStatus, SlabType, parse_timestamp, to_camel


class BusinessRuleSet(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    min_thickness: float = 10
    max_thickness: float = 50
    min_length: float = 1000
    max_length: float = 4000
    min_width: float = 500
    max_width: float = 2000
    require_serial_number: bool = True
    allow_negative_cost: bool = False
    auto_generate_serial_number: bool = True
    default_status: SlabStatus = SlabStatus.STOCK
    default_location: str = "Warehouse A"

    @model_validator(mode='after')
    def bounds_must_be_ordered(self):
        for dimension in ('thickness', 'length', 'width'):
            low = getattr(self, f'min_{dimension}')
            high = getattr(self, f'max_{dimension}')
            if low >= high:
                raise ValueError(f'minimum {dimension} must be less than maximum')
        return self


class RecordPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    id: str
    serial_number: str = ""
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

    @field_validator('id')
    @classmethod
    def id_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('id cannot be empty')
        return v

    def to_record(self) -> InventoryRecord:
        values = self.model_dump()
        values['received_date'] = parse_timestamp(values['received_date'])
        values['consumed_date'] = parse_timestamp(values['consumed_date'])
        return InventoryRecord(**values)

    @classmethod
    def from_record(cls, record: InventoryRecord) -> 'RecordPayload':
        return cls.model_validate(record.to_dict())


class SnapshotData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Older exports used "slabs" for the record list
    records: List[RecordPayload] = Field(validation_alias=AliasChoices('records', 'slabs'))


class SnapshotMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    created_at: datetime
    last_modified: datetime
    record_count: int = Field(ge=0)


class StorageSchema(BaseModel):
    """Versioned envelope around the whole record set."""
    version: str
    data: SnapshotData
    metadata: SnapshotMetadata

    @field_validator('version')
    @classmethod
    def version_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('version cannot be empty')
        return v

    def to_records(self) -> List[InventoryRecord]:
        return [payload.to_record() for payload in self.data.records]


class RecordFilters(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    status: List[SlabStatus] = Field(default_factory=list)
    slab_type: List[SlabType] = Field(default_factory=list)
    material: List[str] = Field(default_factory=list)
    supplier: List[str] = Field(default_factory=list)
    location: List[str] = Field(default_factory=list)


class AuditFilter(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    record_id: Optional[str] = None
    actions: List[AuditAction] = Field(default_factory=list)
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    actor_id: Optional[str] = None
    field: Optional[str] = None

    @model_validator(mode='after')
    def date_range_must_be_ordered(self):
        if self.date_from and self.date_to and parse_timestamp(self.date_from) > parse_timestamp(self.date_to):
            raise ValueError('date_from must not be after date_to')
        return self
