import pytest

from recordexport.schemas.field import FieldSource, FieldType
from recordexport.services.field_catalog import standard_fields
from recordexport.services.field_discovery import (
    FieldDiscoverer,
    detect_value_type,
    format_field_label,
    infer_field_type,
    is_iso_date_string,
)


@pytest.mark.parametrize("value", [
    "2024-02-29T10:15:00Z",
    "2000-02-29T00:00:00.000Z",
    "2023-12-31T23:59:59+14:00",
    "2023-06-15T08:30:00.123456-05:30",
    "2023-06-15T08:30:00",
    "2023-01-01T00:00:00+00:00",
])
def test_valid_iso_dates(value):
    assert is_iso_date_string(value)


@pytest.mark.parametrize("value", [
    "2023-02-29T10:15:00Z",   # not a leap year
    "1900-02-29T10:15:00Z",   # century, not divisible by 400
    "2023-02-30T00:00:00Z",
    "2023-04-31T00:00:00Z",
    "2023-13-01T00:00:00Z",
    "2023-00-10T00:00:00Z",
    "2023-06-15T24:00:00Z",
    "2023-06-15T12:60:00Z",
    "2023-06-15T12:00:60Z",
    "2023-06-15T12:00:00-00:00",
    "2023-06-15T12:00:00+14:30",
    "2023-06-15T12:00:00+05:60",
    "2023-06-15",
    "2023-06-15 12:00:00",
    "2023-06-15T12:00:00Z\n",
    "not a date",
])
def test_invalid_iso_dates(value):
    assert not is_iso_date_string(value)


def test_non_string_is_not_a_date():
    assert not is_iso_date_string(20230615)


@pytest.mark.parametrize("value, expected", [
    (None, "null"),
    (True, "boolean"),
    (0, "number"),
    (1.5, "number"),
    ([1, 2], "array"),
    ({"a": 1}, "object"),
    ("hello", "string"),
    ("2023-06-15T12:00:00Z", "date"),
])
def test_detect_value_type(value, expected):
    assert detect_value_type(value) == expected


@pytest.mark.parametrize("types, expected", [
    ({"string", "date"}, FieldType.date),
    ({"string", "number"}, FieldType.number),
    ({"boolean", "null"}, FieldType.boolean),
    ({"array", "string"}, FieldType.array),
    ({"object", "null"}, FieldType.object),
    ({"object", "string"}, FieldType.string),
    ({"null"}, FieldType.string),
])
def test_infer_field_type_precedence(types, expected):
    assert infer_field_type(types) == expected


def test_format_field_label():
    assert format_field_label("owner.firstName") == "Owner → First Name"
    assert format_field_label("custom.Renewal Date") == "Custom → Renewal Date"
    assert format_field_label("status") == "Status"


def _records(count, with_key):
    records = [{"_id": str(i), "name": f"Company {i}"} for i in range(count)]
    for record in records[:with_key]:
        record["phase"] = "onboarding"
    return records


def test_presence_threshold_boundary():
    discoverer = FieldDiscoverer(sample_limit=100, presence_ratio=0.10)
    known = standard_fields("company")

    below = discoverer.discover(_records(100, 9), known)
    at = discoverer.discover(_records(100, 10), known)

    assert "phase" not in [f.key for f in below]
    assert "phase" in [f.key for f in at]


def test_only_first_sample_limit_records_are_inspected():
    records = _records(150, 0)
    for record in records[100:]:
        record["late"] = 1

    discovered = FieldDiscoverer(sample_limit=100, presence_ratio=0.10).discover(records, standard_fields("company"))
    assert "late" not in [f.key for f in discovered]


def test_discover_walks_nested_objects_and_custom_container():
    records = [
        {
            "_id": "1",
            "name": "Acme",
            "owner": {"firstName": "Ada", "tags": ["a", "b"]},
            "custom": {"Tier": "Gold", "Renewal": "2024-01-31T00:00:00Z"},
            "lastTouch": "2024-02-01T09:00:00Z",
            "score": 7,
        }
        for _ in range(5)
    ]
    discovered = FieldDiscoverer().discover(records, standard_fields("company"))
    by_key = {f.key: f for f in discovered}

    assert "custom" not in by_key
    assert by_key["custom.Tier"].type == FieldType.string
    assert by_key["custom.Renewal"].type == FieldType.date
    assert by_key["owner"].type == FieldType.object
    assert by_key["owner.firstName"].label == "Owner → First Name"
    assert by_key["owner.tags"].type == FieldType.array
    assert by_key["lastTouch"].type == FieldType.date
    assert by_key["score"].type == FieldType.number
    assert all(f.source == FieldSource.discovered and f.is_discovered for f in discovered)
    # Known keys never reappear
    assert "_id" not in by_key and "name" not in by_key


def test_arrays_are_not_walked():
    records = [{"items": [{"sku": "x"}]} for _ in range(3)]
    keys = [f.key for f in FieldDiscoverer().discover(records)]
    assert keys == ["items"]


def test_known_custom_fields_are_skipped():
    from recordexport.schemas.field import DetectedField

    custom = [DetectedField(key="custom.Tier", label="Tier", type=FieldType.string,
                            source=FieldSource.custom, is_custom=True)]
    records = [{"custom": {"Tier": "Gold", "Region": "EU"}} for _ in range(3)]
    keys = [f.key for f in FieldDiscoverer().discover(records, [], custom)]
    assert keys == ["custom.Region"]


def test_mixed_types_resolve_deterministically():
    records = [{"value": 1}, {"value": "one"}, {"value": None}]
    discovered = FieldDiscoverer().discover(records)
    assert discovered[0].type == FieldType.number


def test_empty_or_missing_sample_data():
    discoverer = FieldDiscoverer()
    assert discoverer.discover([]) == []
    assert discoverer.discover(None) == []


def test_non_dict_records_are_skipped():
    discovered = FieldDiscoverer().discover(["junk", 3, {"a": 1}])
    assert [f.key for f in discovered] == ["a"]


def test_non_list_sample_data_raises():
    with pytest.raises(TypeError):
        FieldDiscoverer().discover({"a": 1})
