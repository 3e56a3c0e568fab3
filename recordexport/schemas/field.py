import enum
from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict, Any


class FieldType(str, enum.Enum):
    string = "string"
    number = "number"
    boolean = "boolean"
    date = "date"
    array = "array"
    object = "object"
    richtext = "richtext"  # Rich text with HTML formatting
    rating = "rating"  # 1-5 star rating
    user = "user"  # Single user reference
    users = "users"  # Multiple user references


class FieldSource(str, enum.Enum):
    standard = "standard"
    custom = "custom"
    discovered = "discovered"


class CamelModel(BaseModel):
    """Base for schemas exchanged with the UI, serialised with camelCase keys"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CustomFieldDefinition(BaseModel):
    """A tenant custom field as returned by the platform /customfields endpoint"""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Optional[str] = Field(default=None, alias="_id")
    name: str
    type: str = "text"  # Vendor type vocabulary (text, multiselect, teammember, ...)
    isActive: bool = True
    isHidden: Optional[bool] = None


class DetectedField(CamelModel):
    key: str  # Dotted path, custom fields use "custom.<Name>"
    label: str
    type: FieldType
    source: FieldSource
    is_standard: bool = False
    is_custom: bool = False
    is_discovered: bool = False
    custom_field_config: Optional[CustomFieldDefinition] = None


class FieldMapping(CamelModel):
    """Merged, orderable projection of a detected field used for columns and exports"""
    key: str
    label: str
    type: FieldType
    include: bool
    order: int
    width: int
    source: Optional[FieldSource] = None
    custom_field_config: Optional[CustomFieldDefinition] = None


class FieldDetectionResult(CamelModel):
    entity_type: str
    tenant_slug: Optional[str] = None
    standard_fields: List[DetectedField]
    custom_fields: List[DetectedField]
    discovered_fields: List[DetectedField]
    all_fields: List[DetectedField]
    field_mappings: List[FieldMapping]
    detected_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def is_stale(self, window_seconds: float, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return (now - self.detected_at).total_seconds() > window_seconds


class FieldStats(CamelModel):
    total_fields: int
    included_count: int
    standard_count: int
    custom_count: int
    discovered_count: int


class CustomFieldsResponse(CamelModel):
    visible: List[CustomFieldDefinition]
    hidden: List[CustomFieldDefinition]


class DetectFieldsRequest(CamelModel):
    sample_data: List[Any] = []
    force_refresh: bool = False


# Persisted state blobs. Stored as JSON under
# field-selections-*, column-order-* and column-widths-* keys.

class PersistedState(CamelModel):
    entity_type: str
    tenant_slug: Optional[str] = None
    last_updated: str


class SelectionState(PersistedState):
    selected_fields: List[str]
    # Every key present when the selection was saved; lets newly seen
    # fields keep their default inclusion
    known_fields: Optional[List[str]] = None


class ColumnOrderState(PersistedState):
    column_order: List[str]


class ColumnWidthState(PersistedState):
    column_widths: Dict[str, int]


class SelectionUpdate(CamelModel):
    selected_fields: List[str]
    known_fields: Optional[List[str]] = None


class ColumnOrderUpdate(CamelModel):
    column_order: List[str]


class ColumnWidthUpdate(CamelModel):
    column_widths: Dict[str, int]


class SavedCustomization(CamelModel):
    """Everything persisted for one (entity type, tenant) pair"""
    entity_type: str
    tenant_slug: Optional[str] = None
    selection: Optional[SelectionState] = None
    column_order: List[str] = []
    column_widths: Dict[str, int] = {}
