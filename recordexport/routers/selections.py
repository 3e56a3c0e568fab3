from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, status

from recordexport.core.logging_config import logger
from recordexport.core.tenant_context import get_tenant_slug
from recordexport.dependencies import get_field_detection_service, get_selection_store
from recordexport.schemas.field import (
    ColumnOrderUpdate,
    ColumnWidthUpdate,
    SavedCustomization,
    SelectionState,
    SelectionUpdate,
)
from recordexport.services.field_detection import FieldDetectionService
from recordexport.services.selection_store import PreferenceKind, SelectionStore


router = APIRouter()


@router.get("/{entity_type}", response_model=SavedCustomization)
async def get_saved_customization(
    entity_type: str,
    tenant_slug: Optional[str] = Depends(get_tenant_slug),
    detection: FieldDetectionService = Depends(get_field_detection_service),
):
    """Get the saved selection, column order and column widths for an entity type"""
    return await detection.load_customization(entity_type, tenant_slug)


@router.put("/{entity_type}", response_model=SelectionState)
async def save_field_selections(
    entity_type: str,
    update: SelectionUpdate,
    tenant_slug: Optional[str] = Depends(get_tenant_slug),
    detection: FieldDetectionService = Depends(get_field_detection_service),
):
    """
    Save which fields are included.

    Persistence is best-effort: a storage failure is logged and the request
    still succeeds with the state kept in memory.

    Args:
        entity_type: Entity type (e.g., "company")
        update: Selected field keys and, optionally, every key the user saw
    """
    return await detection.save_field_selections(
        entity_type,
        update.selected_fields,
        tenant_slug=tenant_slug,
        known_fields=update.known_fields,
    )


@router.put("/{entity_type}/order", response_model=SavedCustomization)
async def save_column_order(
    entity_type: str,
    update: ColumnOrderUpdate,
    tenant_slug: Optional[str] = Depends(get_tenant_slug),
    detection: FieldDetectionService = Depends(get_field_detection_service),
):
    await detection.save_column_order(entity_type, update.column_order, tenant_slug)
    return await detection.load_customization(entity_type, tenant_slug)


@router.put("/{entity_type}/widths", response_model=SavedCustomization)
async def save_column_widths(
    entity_type: str,
    update: ColumnWidthUpdate,
    tenant_slug: Optional[str] = Depends(get_tenant_slug),
    detection: FieldDetectionService = Depends(get_field_detection_service),
):
    invalid = [key for key, width in update.column_widths.items() if width < 0]
    if invalid:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Column widths must not be negative: {', '.join(invalid)}"
        )
    await detection.save_column_widths(entity_type, update.column_widths, tenant_slug)
    return await detection.load_customization(entity_type, tenant_slug)


@router.delete("")
async def clear_customization(
    entity_type: Optional[str] = None,
    kind: Optional[PreferenceKind] = None,
    tenant_slug: Optional[str] = Depends(get_tenant_slug),
    store: SelectionStore = Depends(get_selection_store),
    detection: FieldDetectionService = Depends(get_field_detection_service),
):
    """
    Reset saved customisation.

    With entity_type and a tenant header one pair is cleared, with only
    entity_type every tenant of that entity type, with neither everything.
    The tenant header is ignored when entity_type is missing.

    Args:
        entity_type: Restrict to one entity type
        kind: Restrict to field-selections, column-order or column-widths
    """
    scoped_tenant = tenant_slug if entity_type else None
    try:
        removed = await store.clear(kind=kind, entity_type=entity_type, tenant_slug=scoped_tenant)
    except Exception as e:
        logger.error(f"Error clearing saved customisation: {type(e).__name__}: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to clear saved customisation: {str(e)}"
        )

    if entity_type and scoped_tenant:
        detection.invalidate(entity_type, scoped_tenant)
    else:
        detection.invalidate_results(entity_type)

    return {
        "removed": removed,
        "entityType": entity_type,
        "tenantSlug": scoped_tenant,
        "kind": kind.value if kind else None,
    }
