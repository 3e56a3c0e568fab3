from recordexport.schemas.field import FieldSource, FieldType
from recordexport.services.field_catalog import standard_fields, supported_entity_types


def test_company_standard_fields():
    fields = standard_fields("company")
    assert [f.key for f in fields] == ["_id", "name", "domain", "mrr", "createdAt", "updatedAt"]
    assert fields[3].type == FieldType.number
    assert all(f.source == FieldSource.standard and f.is_standard for f in fields)
    assert not any(f.is_custom or f.is_discovered for f in fields)


def test_common_fields_are_dates_on_every_type():
    for entity_type in supported_entity_types():
        tail = standard_fields(entity_type)[-2:]
        assert [(f.key, f.type) for f in tail] == [("createdAt", FieldType.date), ("updatedAt", FieldType.date)]


def test_unknown_entity_type_gets_common_fields_only():
    assert [f.key for f in standard_fields("invoice")] == ["createdAt", "updatedAt"]


def test_standard_fields_is_deterministic_and_returns_fresh_objects():
    first = standard_fields("workflow")
    second = standard_fields("workflow")
    assert first == second
    assert first[0] is not second[0]

    first[0].label = "changed"
    assert standard_fields("workflow")[0].label == "ID"


def test_workflow_creator_is_a_user_field():
    created_by = next(f for f in standard_fields("workflow") if f.key == "createdBy")
    assert created_by.type == FieldType.user
