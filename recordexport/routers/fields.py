from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Response, status

from recordexport.core.config import settings
from recordexport.core.exceptions import FieldDetectionError, PlatformAPIError
from recordexport.core.logging_config import logger
from recordexport.core.tenant_context import get_tenant_slug
from recordexport.dependencies import (
    get_custom_field_fetcher,
    get_field_detection_service,
    get_platform_client,
)
from recordexport.schemas.export import SampleCollectionRequest, SampleCollectionSummary
from recordexport.schemas.field import CustomFieldsResponse, DetectFieldsRequest, FieldDetectionResult
from recordexport.services.custom_fields import CustomFieldFetcher, split_visibility
from recordexport.services.field_detection import FieldDetectionService
from recordexport.services.platform_client import PlatformClient


router = APIRouter()


def _mark_staleness(response: Response, detection: FieldDetectionService, result: FieldDetectionResult) -> None:
    response.headers["X-Detection-Stale"] = "true" if detection.is_stale(result) else "false"


@router.post("/samples", response_model=SampleCollectionSummary)
async def collect_samples(
    request: SampleCollectionRequest,
    platform: PlatformClient = Depends(get_platform_client),
):
    """
    Fetch one sample page per entity type.

    Endpoints that fail are reported in the summary instead of failing the request.
    """
    unknown = [t for t in request.entity_types if t not in platform.ENDPOINTS]
    if unknown:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown entity types: {', '.join(unknown)}"
        )
    return await platform.collect_samples(request.entity_types, request.limit)


@router.get("/{entity_type}", response_model=FieldDetectionResult)
async def get_fields(
    entity_type: str,
    response: Response,
    sample: bool = False,
    refresh: bool = False,
    tenant_slug: Optional[str] = Depends(get_tenant_slug),
    detection: FieldDetectionService = Depends(get_field_detection_service),
    platform: PlatformClient = Depends(get_platform_client),
):
    """
    Detect fields for an entity type.

    Args:
        entity_type: Entity type (e.g., "company")
        sample: Pull one page of records from the platform and run field discovery on it
        refresh: Recompute even if a cached result exists

    Returns:
        FieldDetectionResult; the X-Detection-Stale header tells whether it is past the staleness window
    """
    try:
        sample_data = None
        if sample:
            sample_data = await platform.fetch_sample(entity_type, settings.DISCOVERY_SAMPLE_LIMIT)

        result = await detection.detect_fields(
            entity_type,
            sample_data=sample_data,
            tenant_slug=tenant_slug,
            force_refresh=refresh,
        )
        _mark_staleness(response, detection, result)
        return result

    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except (FieldDetectionError, PlatformAPIError) as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    except Exception as e:
        logger.error(f"Error detecting fields for '{entity_type}': {type(e).__name__}: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to detect fields: {str(e)}"
        )


@router.post("/{entity_type}/detect", response_model=FieldDetectionResult)
async def detect_fields(
    entity_type: str,
    request: DetectFieldsRequest,
    response: Response,
    tenant_slug: Optional[str] = Depends(get_tenant_slug),
    detection: FieldDetectionService = Depends(get_field_detection_service),
):
    """Detect fields using sample records supplied by the caller"""
    try:
        result = await detection.detect_fields(
            entity_type,
            sample_data=request.sample_data,
            tenant_slug=tenant_slug,
            force_refresh=request.force_refresh,
        )
        _mark_staleness(response, detection, result)
        return result
    except FieldDetectionError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


@router.get("/{entity_type}/custom", response_model=CustomFieldsResponse)
async def get_custom_fields(
    entity_type: str,
    tenant_slug: Optional[str] = Depends(get_tenant_slug),
    fetcher: CustomFieldFetcher = Depends(get_custom_field_fetcher),
):
    """
    List a tenant's custom field definitions split into visible and hidden.

    Without a tenant there are no custom fields.
    """
    if not tenant_slug:
        return CustomFieldsResponse(visible=[], hidden=[])

    await fetcher.get_custom_fields(entity_type, tenant_slug)
    definitions = fetcher.get_cached_definitions(entity_type, tenant_slug) or []
    visible, hidden = split_visibility(definitions)
    return CustomFieldsResponse(visible=visible, hidden=hidden)
