"""
Field detection: merges catalog, custom and discovered fields into one
field-mapping list and overlays persisted selection, order and widths.
"""

import asyncio
import time
from typing import Any, Dict, Iterable, List, Optional
from recordexport.core.config import settings
from recordexport.core.exceptions import FieldDetectionError
from recordexport.core.logging_config import logger
from recordexport.schemas.field import (
    DetectedField,
    FieldDetectionResult,
    FieldMapping,
    FieldSource,
    FieldStats,
    FieldType,
    SavedCustomization,
    SelectionState,
)
from recordexport.services.cache import MemoryCache
from recordexport.services.custom_fields import CUSTOM_PREFIX, CustomFieldFetcher
from recordexport.services.field_catalog import standard_fields
from recordexport.services.field_discovery import FieldDiscoverer
from recordexport.services.selection_store import SelectionStore


DEFAULT_TENANT = "default-tenant"

WIDTH_BY_TYPE = {
    FieldType.boolean: 80,
    FieldType.number: 100,
    FieldType.rating: 100,
    FieldType.date: 120,
    FieldType.string: 200,
    FieldType.richtext: 200,
    FieldType.user: 150,
    FieldType.users: 150,
    FieldType.array: 250,
    FieldType.object: 250,
}
DEFAULT_WIDTH = 150

ALWAYS_INCLUDED_KEYS = {"_id", "name", "title"}


def default_width(field_type: FieldType) -> int:
    return WIDTH_BY_TYPE.get(field_type, DEFAULT_WIDTH)


def default_include(field: DetectedField) -> bool:
    """Identity fields, public standard fields and custom fields start included; discovered fields do not"""
    if field.key in ALWAYS_INCLUDED_KEYS:
        return True
    if field.is_standard and not field.key.startswith("_"):
        return True
    if field.is_custom:
        return True
    return False


def build_field_mappings(fields: Iterable[DetectedField]) -> List[FieldMapping]:
    return [
        FieldMapping(
            key=field.key,
            label=field.label,
            type=field.type,
            include=default_include(field),
            order=index,
            width=default_width(field.type),
            source=field.source,
            custom_field_config=field.custom_field_config,
        )
        for index, field in enumerate(fields)
    ]


def key_variants(key: str) -> List[str]:
    """The key itself, then its form with the custom. prefix stripped or added"""
    if key.startswith(CUSTOM_PREFIX):
        return [key, key[len(CUSTOM_PREFIX):]]
    return [key, f"{CUSTOM_PREFIX}{key}"]


def _matches(key: str, keys: set) -> bool:
    return any(variant in keys for variant in key_variants(key))


def apply_field_selections(mappings: List[FieldMapping], state: Optional[SelectionState]) -> List[FieldMapping]:
    """
    Overlay a saved inclusion list.

    A field matched by the selection is included. A field the user saw when
    saving (known_fields) but did not select is excluded. Any other field
    keeps its computed default, and unmatched saved keys are ignored.
    """
    if state is None:
        return mappings

    selected = set(state.selected_fields)
    known = set(state.known_fields or [])
    result = []
    for mapping in mappings:
        if _matches(mapping.key, selected):
            mapping = mapping.model_copy(update={"include": True})
        elif _matches(mapping.key, known):
            mapping = mapping.model_copy(update={"include": False})
        result.append(mapping)
    return result


def apply_column_order(mappings: List[FieldMapping], saved_order: List[str]) -> List[FieldMapping]:
    """
    Overlay a saved column order.

    Saved keys take their saved index, remaining fields are appended after the
    saved ones in their current order. The sort is stable and order values
    are renumbered densely afterwards.
    """
    if not saved_order:
        return mappings

    positions: Dict[str, int] = {}
    for index, key in enumerate(saved_order):
        positions.setdefault(key, index)

    next_order = len(saved_order)
    ranked = []
    for mapping in mappings:
        position = positions.get(mapping.key)
        if position is None:
            position = next_order
            next_order += 1
        ranked.append((position, mapping))

    ranked.sort(key=lambda item: item[0])
    return [mapping.model_copy(update={"order": index}) for index, (_, mapping) in enumerate(ranked)]


def apply_column_widths(mappings: List[FieldMapping], saved_widths: Dict[str, int]) -> List[FieldMapping]:
    if not saved_widths:
        return mappings
    result = []
    for mapping in mappings:
        width = saved_widths.get(mapping.key)
        if width is not None and width > 0:
            mapping = mapping.model_copy(update={"width": width})
        result.append(mapping)
    return result


# Helpers for callers manipulating a mapping list. All return new lists.

def toggle_field_inclusion(mappings: List[FieldMapping], key: str) -> List[FieldMapping]:
    return [
        m.model_copy(update={"include": not m.include}) if m.key == key else m
        for m in mappings
    ]


def select_all_fields(mappings: List[FieldMapping]) -> List[FieldMapping]:
    return [m.model_copy(update={"include": True}) for m in mappings]


def deselect_all_fields(mappings: List[FieldMapping]) -> List[FieldMapping]:
    return [m.model_copy(update={"include": False}) for m in mappings]


def reorder_selected_first(mappings: List[FieldMapping]) -> List[FieldMapping]:
    """Move included fields ahead of excluded ones, keeping relative order within each group"""
    ordered = [m for m in mappings if m.include] + [m for m in mappings if not m.include]
    return [m.model_copy(update={"order": index}) for index, m in enumerate(ordered)]


def included_fields(mappings: List[FieldMapping]) -> List[FieldMapping]:
    return sorted((m for m in mappings if m.include), key=lambda m: m.order)


def field_stats(mappings: List[FieldMapping]) -> FieldStats:
    return FieldStats(
        total_fields=len(mappings),
        included_count=sum(1 for m in mappings if m.include),
        standard_count=sum(1 for m in mappings if m.source == FieldSource.standard),
        custom_count=sum(1 for m in mappings if m.source == FieldSource.custom),
        discovered_count=sum(1 for m in mappings if m.source == FieldSource.discovered),
    )


class FieldDetectionService:
    """
    Builds field detection results per entity type and tenant.

    Results are cached per (entity_type, tenant) key. Concurrent requests for
    the same key share one in-flight task. Cached results older than the
    staleness window are still served but reported stale.
    """

    def __init__(
        self,
        custom_field_fetcher: CustomFieldFetcher,
        selection_store: SelectionStore,
        discoverer: Optional[FieldDiscoverer] = None,
        stale_seconds: Optional[float] = None,
    ):
        self.custom_field_fetcher = custom_field_fetcher
        self.selection_store = selection_store
        self.discoverer = discoverer or FieldDiscoverer()
        self.stale_seconds = stale_seconds if stale_seconds is not None else settings.detection_stale_seconds
        self.results: MemoryCache[FieldDetectionResult] = MemoryCache()
        self._in_flight: Dict[str, asyncio.Task] = {}

    @staticmethod
    def cache_key(entity_type: str, tenant_slug: Optional[str] = None) -> str:
        return f"{entity_type}-{tenant_slug or DEFAULT_TENANT}"

    async def detect_fields(
        self,
        entity_type: str,
        sample_data: Optional[List[Any]] = None,
        tenant_slug: Optional[str] = None,
        force_refresh: bool = False,
    ) -> FieldDetectionResult:
        """
        Detect all available fields for an entity type.

        A cached result is reused when no new sample data is supplied and a
        refresh is not forced. A request arriving while another for the same
        key is running awaits that run instead of starting a second one.

        Args:
            entity_type: Entity type (e.g., "company")
            sample_data: Records to run field discovery over
            tenant_slug: Tenant slug, scopes custom fields and saved state
            force_refresh: Recompute even if a cached result exists

        Returns:
            FieldDetectionResult with overlaid field mappings

        Raises:
            FieldDetectionError: If detection fails for any reason other than custom field retrieval
        """
        key = self.cache_key(entity_type, tenant_slug)

        in_flight = self._in_flight.get(key)
        if in_flight is not None:
            logger.debug(f"Awaiting in-flight field detection for '{key}'")
            return await asyncio.shield(in_flight)

        if force_refresh and tenant_slug:
            # Refetch definitions so fields added upstream since the last fetch show up
            self.custom_field_fetcher.invalidate(entity_type, tenant_slug)
        if not force_refresh and sample_data is None:
            cached = self.results.get(key)
            if cached is not None:
                if self.is_stale(cached):
                    logger.debug(f"Serving stale field detection result for '{key}'")
                return cached

        task = asyncio.create_task(self._detect(entity_type, sample_data, tenant_slug))
        self._in_flight[key] = task
        try:
            result = await asyncio.shield(task)
        finally:
            if self._in_flight.get(key) is task:
                del self._in_flight[key]

        self.results.set(key, result)
        return result

    async def _detect(
        self,
        entity_type: str,
        sample_data: Optional[List[Any]],
        tenant_slug: Optional[str],
    ) -> FieldDetectionResult:
        logger.info(
            f"Starting field detection: entity={entity_type}, tenant={tenant_slug}, "
            f"samples={len(sample_data) if isinstance(sample_data, list) else 0}"
        )
        started = time.perf_counter()

        try:
            standard = standard_fields(entity_type)
            # Never raises, failures come back as no custom fields
            custom = await self.custom_field_fetcher.get_custom_fields(entity_type, tenant_slug)
            discovered = self.discoverer.discover(sample_data, standard, custom) if sample_data is not None else []

            all_fields = [*standard, *custom, *discovered]
            mappings = build_field_mappings(all_fields)

            selection = await self.selection_store.load_field_selections(entity_type, tenant_slug)
            if selection is not None and (selection.selected_fields or selection.known_fields):
                mappings = apply_field_selections(mappings, selection)
                logger.debug(f"Applied saved field selections: entity={entity_type}, count={len(selection.selected_fields)}")

            saved_order = await self.selection_store.load_column_order(entity_type, tenant_slug)
            if saved_order:
                mappings = apply_column_order(mappings, saved_order)
                logger.debug(f"Applied saved column order: entity={entity_type}, length={len(saved_order)}")

            saved_widths = await self.selection_store.load_column_widths(entity_type, tenant_slug)
            if saved_widths:
                mappings = apply_column_widths(mappings, saved_widths)
                logger.debug(f"Applied saved column widths: entity={entity_type}, count={len(saved_widths)}")
        except Exception as e:
            logger.error(f"Field detection failed: entity={entity_type}, tenant={tenant_slug}, error={str(e)}")
            raise FieldDetectionError(entity_type, str(e)) from e

        duration_ms = round((time.perf_counter() - started) * 1000)
        logger.info(
            f"Field detection completed: entity={entity_type}, duration={duration_ms}ms, "
            f"total={len(all_fields)}, standard={len(standard)}, custom={len(custom)}, "
            f"discovered={len(discovered)}"
        )
        return FieldDetectionResult(
            entity_type=entity_type,
            tenant_slug=tenant_slug,
            standard_fields=standard,
            custom_fields=custom,
            discovered_fields=discovered,
            all_fields=all_fields,
            field_mappings=mappings,
        )

    def get_cached_result(self, entity_type: str, tenant_slug: Optional[str] = None) -> Optional[FieldDetectionResult]:
        return self.results.get(self.cache_key(entity_type, tenant_slug))

    def is_stale(self, result: FieldDetectionResult) -> bool:
        return result.is_stale(self.stale_seconds)

    def invalidate(self, entity_type: str, tenant_slug: Optional[str] = None) -> None:
        """Drop the cached detection result and custom fields for one key"""
        self.results.delete(self.cache_key(entity_type, tenant_slug))
        if tenant_slug:
            self.custom_field_fetcher.invalidate(entity_type, tenant_slug)
        logger.debug(f"Field detection cache invalidated: entity={entity_type}, tenant={tenant_slug}")

    def invalidate_tenant(self, tenant_slug: str) -> None:
        """Drop every cached detection result and custom field entry for a tenant"""
        removed = 0
        for key in self.results:
            if key.split("-", 1)[-1] == tenant_slug:
                self.results.delete(key)
                removed += 1
        self.custom_field_fetcher.invalidate(tenant_slug=tenant_slug)
        logger.info(f"Field detection cache invalidated for tenant '{tenant_slug}': results={removed}")

    def invalidate_results(self, entity_type: Optional[str] = None) -> int:
        """Drop cached detection results for every tenant of an entity type, or all of them"""
        if entity_type:
            return self.results.delete_prefix(f"{entity_type}-")
        count = len(self.results)
        self.results.clear()
        return count

    # Persistence passthroughs; each invalidates the cached result for the key

    async def save_field_selections(
        self,
        entity_type: str,
        selected_fields: List[str],
        tenant_slug: Optional[str] = None,
        known_fields: Optional[List[str]] = None,
    ) -> SelectionState:
        state = await self.selection_store.save_field_selections(entity_type, selected_fields, tenant_slug, known_fields)
        self.results.delete(self.cache_key(entity_type, tenant_slug))
        return state

    async def save_column_order(self, entity_type: str, column_order: List[str], tenant_slug: Optional[str] = None) -> None:
        await self.selection_store.save_column_order(entity_type, column_order, tenant_slug)
        self.results.delete(self.cache_key(entity_type, tenant_slug))

    async def save_column_widths(self, entity_type: str, column_widths: Dict[str, int], tenant_slug: Optional[str] = None) -> None:
        await self.selection_store.save_column_widths(entity_type, column_widths, tenant_slug)
        self.results.delete(self.cache_key(entity_type, tenant_slug))

    async def save_mapping_state(
        self,
        entity_type: str,
        mappings: List[FieldMapping],
        tenant_slug: Optional[str] = None,
    ) -> None:
        """
        Persist inclusion, order and widths of a mapping list in one call.

        Re-running detection with the same inputs afterwards reproduces the
        same mapping list.
        """
        ordered = sorted(mappings, key=lambda m: m.order)
        await self.save_field_selections(
            entity_type,
            [m.key for m in ordered if m.include],
            tenant_slug,
            known_fields=[m.key for m in ordered],
        )
        await self.save_column_order(entity_type, [m.key for m in ordered], tenant_slug)
        await self.save_column_widths(entity_type, {m.key: m.width for m in ordered}, tenant_slug)

    async def load_customization(self, entity_type: str, tenant_slug: Optional[str] = None) -> SavedCustomization:
        return SavedCustomization(
            entity_type=entity_type,
            tenant_slug=tenant_slug,
            selection=await self.selection_store.load_field_selections(entity_type, tenant_slug),
            column_order=await self.selection_store.load_column_order(entity_type, tenant_slug),
            column_widths=await self.selection_store.load_column_widths(entity_type, tenant_slug),
        )
