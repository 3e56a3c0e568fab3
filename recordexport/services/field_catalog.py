from typing import Dict, List, Tuple
from recordexport.schemas.field import DetectedField, FieldSource, FieldType


# (key, label, type) per entity type. Standard fields are consistent across tenants.
STANDARD_FIELDS: Dict[str, List[Tuple[str, str, FieldType]]] = {
    "issue": [
        ("_id", "ID", FieldType.string),
        ("title", "Title", FieldType.string),
        ("status", "Status", FieldType.string),
        ("priority", "Priority", FieldType.string),
        ("type", "Type", FieldType.string),
    ],
    "company": [
        ("_id", "ID", FieldType.string),
        ("name", "Company Name", FieldType.string),
        ("domain", "Domain", FieldType.string),
        ("mrr", "MRR", FieldType.number),
    ],
    "user": [
        ("_id", "ID", FieldType.string),
        ("email", "Email", FieldType.string),
        ("name", "Name", FieldType.string),
        ("title", "Title", FieldType.string),
        ("isExposedAsSenderOption", "Public Email", FieldType.boolean),
    ],
    "workflow": [
        ("_id", "ID", FieldType.string),
        ("name", "Name", FieldType.string),
        ("type", "Type", FieldType.string),
        ("disabled", "Active", FieldType.boolean),
        ("createdBy", "Created By", FieldType.user),
    ],
    "enduser": [
        ("_id", "ID", FieldType.string),
        ("name", "Name", FieldType.string),
        ("email", "Email", FieldType.string),
        ("companyName", "Company", FieldType.string),
    ],
    "asset": [
        ("_id", "ID", FieldType.string),
        ("name", "Name", FieldType.string),
        ("companyName", "Company", FieldType.string),
    ],
}

# Appended to every entity type, including unknown ones
COMMON_FIELDS: List[Tuple[str, str, FieldType]] = [
    ("createdAt", "Created At", FieldType.date),
    ("updatedAt", "Updated At", FieldType.date),
]


def _standard(key: str, label: str, field_type: FieldType) -> DetectedField:
    return DetectedField(
        key=key,
        label=label,
        type=field_type,
        source=FieldSource.standard,
        is_standard=True,
    )


def standard_fields(entity_type: str) -> List[DetectedField]:
    """
    Get standard fields for an entity type.

    Pure lookup: returns new DetectedField objects on every call so callers
    may mutate the result freely.
    """
    entries = STANDARD_FIELDS.get(entity_type, []) + COMMON_FIELDS
    return [_standard(key, label, field_type) for key, label, field_type in entries]


def supported_entity_types() -> List[str]:
    return list(STANDARD_FIELDS.keys())
