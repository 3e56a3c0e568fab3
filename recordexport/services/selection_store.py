import enum
from datetime import datetime, timezone
from typing import Dict, List, Optional
from pydantic import ValidationError
from recordexport.core.logging_config import logger
from recordexport.schemas.field import ColumnOrderState, ColumnWidthState, SelectionState
from recordexport.services.cache import MemoryCache
from recordexport.services.preference_store import KeyValueStore


class PreferenceKind(str, enum.Enum):
    selections = "field-selections"
    order = "column-order"
    widths = "column-widths"


# Older clients wrote widths under this prefix; cleared alongside column-widths
LEGACY_WIDTH_PREFIX = "table-column-widths"


def storage_key(kind: PreferenceKind, entity_type: str, tenant_slug: Optional[str] = None) -> str:
    """`<kind>-<entityType>[-<tenantSlug>]`; without a tenant this is the global fallback key"""
    if tenant_slug:
        return f"{kind.value}-{entity_type}-{tenant_slug}"
    return f"{kind.value}-{entity_type}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class SelectionStore:
    """
    Persists field inclusion, column order and column widths per entity type and tenant.

    Each kind has its own in-memory cache consulted before the store. Writes
    update the cache and then persist on a best-effort basis: a failed write
    is logged and the caller carries on.
    """

    def __init__(self, store: KeyValueStore):
        self.store = store
        self.selections_cache: MemoryCache[SelectionState] = MemoryCache()
        self.order_cache: MemoryCache[List[str]] = MemoryCache()
        self.widths_cache: MemoryCache[Dict[str, int]] = MemoryCache()

    def _cache_for(self, kind: PreferenceKind) -> MemoryCache:
        return {
            PreferenceKind.selections: self.selections_cache,
            PreferenceKind.order: self.order_cache,
            PreferenceKind.widths: self.widths_cache,
        }[kind]

    async def _persist(self, key: str, state, entity_type: str, tenant_slug: Optional[str], what: str) -> None:
        try:
            await self.store.set(key, state.model_dump(by_alias=True, exclude_none=True))
            logger.info(f"{what} saved: entity={entity_type}, tenant={tenant_slug}")
        except Exception as e:
            logger.error(f"Failed to save {what.lower()}: entity={entity_type}, tenant={tenant_slug}, error={str(e)}")

    async def _read(self, key: str, model, entity_type: str, tenant_slug: Optional[str], what: str):
        try:
            raw = await self.store.get(key)
            if raw is None:
                logger.debug(f"No saved {what.lower()} found: entity={entity_type}, tenant={tenant_slug}")
                return None
            return model.model_validate(raw)
        except ValidationError as e:
            logger.error(f"Corrupt {what.lower()} entry '{key}', ignoring: {e.errors()[0]['msg']}")
            return None
        except Exception as e:
            logger.error(f"Failed to load {what.lower()}: entity={entity_type}, tenant={tenant_slug}, error={str(e)}")
            return None

    # Field selections

    async def save_field_selections(
        self,
        entity_type: str,
        selected_fields: List[str],
        tenant_slug: Optional[str] = None,
        known_fields: Optional[List[str]] = None,
    ) -> SelectionState:
        """
        Save the list of included field keys.

        Args:
            entity_type: Entity type (e.g., "company")
            selected_fields: Keys of included fields
            tenant_slug: Tenant slug, None for the global fallback
            known_fields: Every field key present when the user made the selection
        """
        key = storage_key(PreferenceKind.selections, entity_type, tenant_slug)
        state = SelectionState(
            entity_type=entity_type,
            tenant_slug=tenant_slug,
            last_updated=_now_iso(),
            selected_fields=list(selected_fields),
            known_fields=list(known_fields) if known_fields is not None else None,
        )
        self.selections_cache.set(key, state)
        await self._persist(key, state, entity_type, tenant_slug, "Field selections")
        return state

    async def load_field_selections(self, entity_type: str, tenant_slug: Optional[str] = None) -> Optional[SelectionState]:
        key = storage_key(PreferenceKind.selections, entity_type, tenant_slug)
        cached = self.selections_cache.get(key)
        if cached is not None:
            return cached

        state = await self._read(key, SelectionState, entity_type, tenant_slug, "Field selections")
        if state is not None:
            self.selections_cache.set(key, state)
            logger.debug(
                f"Field selections loaded: entity={entity_type}, tenant={tenant_slug}, "
                f"selected={len(state.selected_fields)}, last_updated={state.last_updated}"
            )
        return state

    # Column order

    async def save_column_order(self, entity_type: str, column_order: List[str], tenant_slug: Optional[str] = None) -> None:
        key = storage_key(PreferenceKind.order, entity_type, tenant_slug)
        state = ColumnOrderState(
            entity_type=entity_type,
            tenant_slug=tenant_slug,
            last_updated=_now_iso(),
            column_order=list(column_order),
        )
        self.order_cache.set(key, state.column_order)
        await self._persist(key, state, entity_type, tenant_slug, "Column order")

    async def load_column_order(self, entity_type: str, tenant_slug: Optional[str] = None) -> List[str]:
        key = storage_key(PreferenceKind.order, entity_type, tenant_slug)
        cached = self.order_cache.get(key)
        if cached is not None:
            return cached

        state = await self._read(key, ColumnOrderState, entity_type, tenant_slug, "Column order")
        if state is None:
            return []
        self.order_cache.set(key, state.column_order)
        return state.column_order

    # Column widths

    async def save_column_widths(self, entity_type: str, column_widths: Dict[str, int], tenant_slug: Optional[str] = None) -> None:
        key = storage_key(PreferenceKind.widths, entity_type, tenant_slug)
        state = ColumnWidthState(
            entity_type=entity_type,
            tenant_slug=tenant_slug,
            last_updated=_now_iso(),
            column_widths=dict(column_widths),
        )
        self.widths_cache.set(key, state.column_widths)
        await self._persist(key, state, entity_type, tenant_slug, "Column widths")

    async def load_column_widths(self, entity_type: str, tenant_slug: Optional[str] = None) -> Dict[str, int]:
        key = storage_key(PreferenceKind.widths, entity_type, tenant_slug)
        cached = self.widths_cache.get(key)
        if cached is not None:
            return cached

        state = await self._read(key, ColumnWidthState, entity_type, tenant_slug, "Column widths")
        if state is None:
            return {}
        self.widths_cache.set(key, state.column_widths)
        return state.column_widths

    # Reset

    async def clear(
        self,
        kind: Optional[PreferenceKind] = None,
        entity_type: Optional[str] = None,
        tenant_slug: Optional[str] = None,
    ) -> int:
        """
        Remove persisted customisation.

        Granularity: one (entity_type, tenant_slug) pair, every tenant of one
        entity type, or a global wipe. Restricted to one kind when given,
        otherwise selections, order and widths are all cleared.

        Returns:
            Number of storage keys removed

        Raises:
            Exception: Storage failures propagate, a reset must not silently fail
        """
        kinds = [kind] if kind else list(PreferenceKind)
        removed = 0
        for current in kinds:
            keys = await self._keys_to_clear(current, entity_type, tenant_slug)
            cache = self._cache_for(current)
            if keys:
                await self.store.remove(keys)
                for key in keys:
                    cache.delete(key)
            if not entity_type:
                cache.clear()
            removed += len(keys)

        logger.info(
            f"Cleared stored customisation: kind={kind.value if kind else 'all'}, "
            f"entity={entity_type}, tenant={tenant_slug}, keys={removed}"
        )
        return removed

    async def _keys_to_clear(self, kind: PreferenceKind, entity_type: Optional[str], tenant_slug: Optional[str]) -> List[str]:
        prefixes = [kind.value]
        if kind == PreferenceKind.widths:
            prefixes.append(LEGACY_WIDTH_PREFIX)

        if entity_type and tenant_slug:
            return [f"{prefix}-{entity_type}-{tenant_slug}" for prefix in prefixes]

        keys: List[str] = []
        for prefix in prefixes:
            if entity_type:
                base = f"{prefix}-{entity_type}"
                stored = await self.store.keys(f"{base}-")
                keys.append(base)
                keys.extend(stored)
            else:
                keys.extend(await self.store.keys(f"{prefix}-"))
        return keys

    def clear_caches(self) -> None:
        """Drop in-memory caches only, persisted state is untouched"""
        for kind in PreferenceKind:
            self._cache_for(kind).clear()
        logger.debug("Selection store caches cleared")
