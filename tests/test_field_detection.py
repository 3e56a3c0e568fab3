import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from recordexport.core.exceptions import FieldDetectionError
from recordexport.schemas.field import FieldMapping, FieldSource, FieldType, SelectionState
from recordexport.services.custom_fields import CustomFieldFetcher
from recordexport.services.field_detection import (
    FieldDetectionService,
    apply_column_order,
    apply_column_widths,
    apply_field_selections,
    deselect_all_fields,
    field_stats,
    included_fields,
    reorder_selected_first,
    select_all_fields,
    toggle_field_inclusion,
)

SAMPLES = [
    {"_id": str(i), "name": f"Company {i}", "phase": "live", "health": 7, "custom": {"Tier": "Gold"}}
    for i in range(20)
]


def _mapping(key, order, include=True, width=150, field_type=FieldType.string):
    return FieldMapping(key=key, label=key, type=field_type, include=include, order=order, width=width)


def test_merge_order_defaults_and_widths(detection_service):
    result = asyncio.run(detection_service.detect_fields("company", SAMPLES, "acme"))

    keys = [m.key for m in result.field_mappings]
    assert keys == [
        "_id", "name", "domain", "mrr", "createdAt", "updatedAt",
        "custom.Tier", "custom.Owners", "custom.Internal Notes",
        "phase", "health",
    ]
    assert [m.order for m in result.field_mappings] == list(range(len(keys)))

    by_key = {m.key: m for m in result.field_mappings}
    assert by_key["_id"].include
    assert by_key["domain"].include
    assert by_key["custom.Internal Notes"].include
    assert not by_key["phase"].include
    assert not by_key["health"].include

    assert by_key["mrr"].width == 100
    assert by_key["createdAt"].width == 120
    assert by_key["name"].width == 200
    assert by_key["custom.Owners"].width == 150
    assert by_key["health"].width == 100

    assert by_key["health"].source == FieldSource.discovered
    assert len(result.all_fields) == len(keys)
    assert result.tenant_slug == "acme"


def test_custom_field_failure_degrades_to_no_custom_fields(client_factory, selection_store):
    client, _ = client_factory({})  # every path answers 404
    service = FieldDetectionService(CustomFieldFetcher(client), selection_store)

    result = asyncio.run(service.detect_fields("company", None, "acme"))
    assert result.custom_fields == []
    assert [m.key for m in result.field_mappings][:2] == ["_id", "name"]


def test_malformed_sample_data_fails_whole_detection(detection_service):
    with pytest.raises(FieldDetectionError):
        asyncio.run(detection_service.detect_fields("company", {"not": "a list"}, "acme"))


def test_selection_overlay_with_custom_prefix_compatibility():
    mappings = [_mapping("name", 0), _mapping("custom.Tier", 1, include=False), _mapping("phase", 2, include=False)]
    state = SelectionState(entity_type="company", last_updated="x", selected_fields=["Tier", "ghost"])

    result = apply_field_selections(mappings, state)

    assert [m.include for m in result] == [True, True, False]


def test_selection_overlay_excludes_known_unselected_fields_only():
    mappings = [_mapping("name", 0), _mapping("domain", 1), _mapping("custom.New", 2)]
    state = SelectionState(
        entity_type="company", last_updated="x",
        selected_fields=["name"], known_fields=["name", "domain"],
    )

    result = apply_field_selections(mappings, state)

    # domain was seen and left out; custom.New appeared later and keeps its default
    assert [m.include for m in result] == [True, False, True]


def test_selection_without_known_fields_only_switches_fields_on():
    mappings = [_mapping("name", 0, include=False), _mapping("domain", 1), _mapping("phase", 2, include=False)]
    state = SelectionState(entity_type="company", last_updated="x", selected_fields=["name"])

    result = apply_field_selections(mappings, state)

    assert [m.include for m in result] == [True, True, False]


def test_column_order_overlay_appends_unknown_fields_and_renumbers():
    mappings = [_mapping("a", 0), _mapping("b", 1), _mapping("c", 2), _mapping("d", 3)]

    result = apply_column_order(mappings, ["c", "missing", "a"])

    assert [m.key for m in result] == ["c", "a", "b", "d"]
    assert [m.order for m in result] == [0, 1, 2, 3]


def test_column_width_overlay_ignores_non_positive_widths():
    mappings = [_mapping("a", 0), _mapping("b", 1), _mapping("c", 2)]

    result = apply_column_widths(mappings, {"a": 300, "b": 0, "c": -5, "zzz": 90})

    assert [m.width for m in result] == [300, 150, 150]


def test_saved_state_round_trip_is_idempotent(detection_service):
    first = asyncio.run(detection_service.detect_fields("company", SAMPLES, "acme"))

    customised = toggle_field_inclusion(first.field_mappings, "phase")
    customised = toggle_field_inclusion(customised, "domain")
    customised = apply_column_order(customised, ["custom.Tier", "name"])
    customised = [m.model_copy(update={"width": 275}) if m.key == "name" else m for m in customised]
    asyncio.run(detection_service.save_mapping_state("company", customised, "acme"))

    second = asyncio.run(detection_service.detect_fields("company", SAMPLES, "acme"))
    assert second.field_mappings == customised

    asyncio.run(detection_service.save_mapping_state("company", second.field_mappings, "acme"))
    third = asyncio.run(detection_service.detect_fields("company", SAMPLES, "acme"))
    assert third.field_mappings == second.field_mappings


def test_all_fields_excluded_survives_round_trip(detection_service):
    first = asyncio.run(detection_service.detect_fields("issue", None, "acme"))
    asyncio.run(detection_service.save_mapping_state("issue", deselect_all_fields(first.field_mappings), "acme"))

    second = asyncio.run(detection_service.detect_fields("issue", None, "acme"))
    assert not any(m.include for m in second.field_mappings)


def test_results_are_cached_until_refresh(detection_service, platform_handler, custom_field_definitions):
    first = asyncio.run(detection_service.detect_fields("company", None, "acme"))
    custom_field_definitions.append({"_id": "cf4", "name": "Region", "type": "text", "isActive": True})

    second = asyncio.run(detection_service.detect_fields("company", None, "acme"))
    assert second is first
    assert len(platform_handler.calls_to("/customfields")) == 1

    # A forced refresh refetches custom fields added upstream in the meantime
    refreshed = asyncio.run(detection_service.detect_fields("company", None, "acme", force_refresh=True))
    assert refreshed is not first
    assert "custom.Region" in [f.key for f in refreshed.custom_fields]
    assert len(platform_handler.calls_to("/customfields")) == 2


def test_detection_with_new_samples_keeps_cached_custom_fields(detection_service, platform_handler):
    asyncio.run(detection_service.detect_fields("company", None, "acme"))
    asyncio.run(detection_service.detect_fields("company", SAMPLES, "acme"))

    assert len(platform_handler.calls_to("/customfields")) == 1


def test_stale_results_are_served_and_flagged(detection_service):
    result = asyncio.run(detection_service.detect_fields("company", None, "acme"))
    assert not detection_service.is_stale(result)

    result.detected_at = datetime.now(timezone.utc) - timedelta(minutes=21)
    again = asyncio.run(detection_service.detect_fields("company", None, "acme"))
    assert again is result
    assert detection_service.is_stale(again)


def test_concurrent_detections_share_one_run(client_factory, selection_store, custom_field_definitions):
    client, handler = client_factory({"/customfields": custom_field_definitions})
    service = FieldDetectionService(CustomFieldFetcher(client), selection_store)

    async def run_both():
        return await asyncio.gather(
            service.detect_fields("company", SAMPLES, "acme"),
            service.detect_fields("company", SAMPLES, "acme"),
        )

    first, second = asyncio.run(run_both())
    assert first is second
    assert len(handler.calls_to("/customfields")) == 1


def test_saving_state_invalidates_cached_result(detection_service):
    first = asyncio.run(detection_service.detect_fields("company", None, "acme"))
    asyncio.run(detection_service.save_column_widths("company", {"name": 333}, "acme"))

    second = asyncio.run(detection_service.detect_fields("company", None, "acme"))
    assert second is not first
    assert next(m for m in second.field_mappings if m.key == "name").width == 333


def test_invalidate_tenant(detection_service):
    asyncio.run(detection_service.detect_fields("company", None, "acme"))
    asyncio.run(detection_service.detect_fields("issue", None, "acme"))
    asyncio.run(detection_service.detect_fields("company", None, "globex"))

    detection_service.invalidate_tenant("acme")

    assert detection_service.get_cached_result("company", "acme") is None
    assert detection_service.get_cached_result("issue", "acme") is None
    assert detection_service.get_cached_result("company", "globex") is not None
    assert detection_service.custom_field_fetcher.get_cached_definitions("company", "acme") is None


def test_mapping_helpers():
    mappings = [_mapping("a", 0, include=False), _mapping("b", 1), _mapping("c", 2, include=False)]

    assert [m.key for m in reorder_selected_first(mappings)] == ["b", "a", "c"]
    assert [m.order for m in reorder_selected_first(mappings)] == [0, 1, 2]
    assert [m.key for m in included_fields(mappings)] == ["b"]
    assert all(m.include for m in select_all_fields(mappings))
    assert toggle_field_inclusion(mappings, "a")[0].include
    # Helpers never mutate their input
    assert not mappings[0].include

    stats = field_stats(mappings)
    assert stats.total_fields == 3
    assert stats.included_count == 1


def test_invalidate_tenant_matches_whole_slug(detection_service):
    asyncio.run(detection_service.detect_fields("company", None, "acme"))
    asyncio.run(detection_service.detect_fields("company", None, "big-acme"))

    detection_service.invalidate_tenant("acme")

    assert detection_service.get_cached_result("company", "acme") is None
    assert detection_service.get_cached_result("company", "big-acme") is not None
    assert detection_service.custom_field_fetcher.get_cached_definitions("company", "big-acme") is not None
