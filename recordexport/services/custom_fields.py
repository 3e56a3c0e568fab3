from typing import List, Optional, Tuple
from pydantic import ValidationError
from recordexport.core.logging_config import logger
from recordexport.schemas.field import CustomFieldDefinition, DetectedField, FieldSource, FieldType
from recordexport.services.cache import MemoryCache
from recordexport.services.platform_client import PlatformClient


# Vendor custom field type vocabulary -> internal field type.
# Anything not listed is treated as a string.
CUSTOM_FIELD_TYPE_MAP = {
    "text": FieldType.string,
    "textarea": FieldType.string,
    "select": FieldType.string,
    "url": FieldType.string,
    "email": FieldType.string,
    "phone": FieldType.string,
    "richtext": FieldType.richtext,
    "number": FieldType.number,
    "rating": FieldType.rating,
    "boolean": FieldType.boolean,
    "date": FieldType.date,
    "datetime": FieldType.date,
    "day": FieldType.date,
    "multiselect": FieldType.array,
    "teammember": FieldType.user,
    "enduser": FieldType.user,
    "teammembers": FieldType.users,
    "endusers": FieldType.users,
}

CUSTOM_PREFIX = "custom."


def map_custom_field_type(custom_type: Optional[str]) -> FieldType:
    return CUSTOM_FIELD_TYPE_MAP.get((custom_type or "").lower(), FieldType.string)


def to_detected_fields(definitions: List[CustomFieldDefinition]) -> List[DetectedField]:
    """Convert platform custom field definitions to detected fields keyed custom.<name>"""
    return [
        DetectedField(
            key=f"{CUSTOM_PREFIX}{definition.name}",
            label=definition.name,
            type=map_custom_field_type(definition.type),
            source=FieldSource.custom,
            is_custom=True,
            custom_field_config=definition,
        )
        for definition in definitions
    ]


def split_visibility(
    definitions: List[CustomFieldDefinition],
) -> Tuple[List[CustomFieldDefinition], List[CustomFieldDefinition]]:
    """Split definitions into (visible, hidden) by the isHidden flag"""
    visible = [d for d in definitions if not d.isHidden]
    hidden = [d for d in definitions if d.isHidden]
    return visible, hidden


class CustomFieldFetcher:
    """Retrieves and caches tenant custom field definitions per entity type"""

    def __init__(
        self,
        platform_client: PlatformClient,
        cache: Optional[MemoryCache[List[CustomFieldDefinition]]] = None,
    ):
        self.platform_client = platform_client
        self.cache = cache if cache is not None else MemoryCache()

    @staticmethod
    def cache_key(entity_type: str, tenant_slug: str) -> str:
        return f"{entity_type}-{tenant_slug}"

    async def get_custom_fields(self, entity_type: str, tenant_slug: Optional[str] = None) -> List[DetectedField]:
        """
        Get custom fields for an entity type as detected fields.

        Never raises: any failure is logged and treated as "no custom fields".

        Args:
            entity_type: Entity type (e.g., "company")
            tenant_slug: Tenant slug; custom fields only exist per tenant

        Returns:
            Detected fields for every custom field, visible and hidden
        """
        if not tenant_slug:
            logger.debug(f"No tenant provided, skipping custom fields for '{entity_type}'")
            return []

        key = self.cache_key(entity_type, tenant_slug)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"Using cached custom fields: entity={entity_type}, tenant={tenant_slug}, count={len(cached)}")
            return to_detected_fields(cached)

        try:
            definitions = await self._fetch_definitions(entity_type, tenant_slug)
        except Exception as e:
            logger.error(
                f"Failed to fetch custom fields: entity={entity_type}, tenant={tenant_slug}, "
                f"error={type(e).__name__}: {str(e)}"
            )
            return []

        if definitions is None:
            return []

        # Cache everything, hidden fields included, so the UI can split them later
        self.cache.set(key, definitions)
        visible, hidden = split_visibility(definitions)
        logger.info(
            f"Custom fields loaded: entity={entity_type}, tenant={tenant_slug}, "
            f"total={len(definitions)}, visible={len(visible)}, hidden={len(hidden)}"
        )
        return to_detected_fields(definitions)

    async def _fetch_definitions(self, entity_type: str, tenant_slug: str) -> Optional[List[CustomFieldDefinition]]:
        logger.debug(f"Fetching custom fields from API: entity={entity_type}, tenant={tenant_slug}")
        body = await self.platform_client.get(
            "/customfields",
            params={"parent": entity_type.lower(), "tenantSlug": tenant_slug},
        )

        if not isinstance(body, list):
            logger.warning(
                f"Unexpected custom fields response format: entity={entity_type}, "
                f"tenant={tenant_slug}, type={type(body).__name__}"
            )
            return None

        definitions = []
        for raw in body:
            try:
                definitions.append(CustomFieldDefinition.model_validate(raw))
            except ValidationError as e:
                logger.warning(f"Skipping malformed custom field definition for '{entity_type}': {e.errors()[0]['msg']}")
        return definitions

    def get_cached_definitions(self, entity_type: str, tenant_slug: str) -> Optional[List[CustomFieldDefinition]]:
        return self.cache.get(self.cache_key(entity_type, tenant_slug))

    def invalidate(self, entity_type: Optional[str] = None, tenant_slug: Optional[str] = None) -> None:
        """
        Drop cached definitions.

        With both arguments a single entry is dropped, with only entity_type
        every tenant of that entity type, with only tenant_slug every entity
        type of that tenant, with neither everything.
        """
        if entity_type and tenant_slug:
            self.cache.delete(self.cache_key(entity_type, tenant_slug))
        elif entity_type:
            self.cache.delete_prefix(f"{entity_type}-")
        elif tenant_slug:
            for key in self.cache:
                # Entity types never contain a dash, tenant slugs may
                if key.split("-", 1)[-1] == tenant_slug:
                    self.cache.delete(key)
        else:
            self.cache.clear()
        logger.debug(f"Custom fields cache invalidated: entity={entity_type}, tenant={tenant_slug}")
