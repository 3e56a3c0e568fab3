from typing import Any, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Response, status

from recordexport.core.exceptions import (
    ExportJobNotFoundError,
    PlatformAPIError,
    UnsupportedExportFormatError,
)
from recordexport.core.logging_config import logger
from recordexport.core.tenant_context import get_tenant_slug
from recordexport.dependencies import get_export_job_manager, get_platform_client
from recordexport.schemas.export import ExportCreateRequest, ExportProgress, PageResult
from recordexport.services.export_job import ExportJobManager
from recordexport.services.platform_client import PlatformClient


router = APIRouter()


def records_provider(records: List[Any]):
    """Serve resident records through the (offset, limit) data provider contract"""

    async def provider(offset: int, limit: int) -> PageResult:
        return PageResult(data=records[offset:offset + limit], total=len(records))

    return provider


@router.post("", response_model=ExportProgress, status_code=status.HTTP_202_ACCEPTED)
async def create_export(
    request: ExportCreateRequest,
    tenant_slug: Optional[str] = Depends(get_tenant_slug),
    manager: ExportJobManager = Depends(get_export_job_manager),
    platform: PlatformClient = Depends(get_platform_client),
):
    """
    Start an export.

    Records sent in the body below the streaming threshold are formatted
    immediately. Larger bodies are streamed in batches. Without records the
    export streams from the platform API using the given filters.

    Returns:
        ExportProgress to poll via GET /api/exports/{job_id}
    """
    if not any(field.include for field in request.fields):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="At least one field must be included in the export"
        )

    manager.cleanup_stale_jobs()
    try:
        if request.data is not None:
            if not manager.should_stream(len(request.data)):
                return manager.start_export(
                    request.data,
                    request.fields,
                    request.format,
                    request.entity_type,
                    tenant_slug=tenant_slug,
                    options=request.options,
                )
            provider = records_provider(request.data)
            total_records = len(request.data)
        else:
            provider = platform.create_paginated_data_provider(request.entity_type, request.filters)
            total_records = request.total_records

        logger.info(f"Streaming export requested: entity={request.entity_type}, tenant={tenant_slug}")
        return await manager.start_streaming_export(
            provider,
            request.fields,
            request.format,
            request.entity_type,
            tenant_slug=tenant_slug,
            options=request.options,
            total_records=total_records,
        )

    except (UnsupportedExportFormatError, ValueError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except PlatformAPIError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


@router.get("", response_model=List[ExportProgress])
def list_exports(
    active: bool = False,
    manager: ExportJobManager = Depends(get_export_job_manager),
):
    """List known export jobs, or only running ones with active=true"""
    manager.cleanup_stale_jobs()
    return manager.get_active_jobs() if active else manager.list_jobs()


@router.get("/{job_id}", response_model=ExportProgress)
def get_export_progress(
    job_id: str,
    manager: ExportJobManager = Depends(get_export_job_manager),
):
    progress = manager.get_progress(job_id)
    if progress is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Export job '{job_id}' not found"
        )
    return progress


@router.post("/{job_id}/cancel", response_model=ExportProgress)
def cancel_export(
    job_id: str,
    manager: ExportJobManager = Depends(get_export_job_manager),
):
    """
    Cancel a running export.

    Raises:
        404 if the job is unknown, 409 if it already finished
    """
    progress = manager.get_progress(job_id)
    if progress is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Export job '{job_id}' not found"
        )
    if not manager.cancel_export(job_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Export job '{job_id}' is already {progress.status.value}"
        )
    return manager.get_progress(job_id)


@router.get("/{job_id}/download")
def download_export(
    job_id: str,
    manager: ExportJobManager = Depends(get_export_job_manager),
):
    try:
        artifact = manager.get_artifact(job_id)
    except ExportJobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return Response(
        content=artifact.content,
        media_type=artifact.mime_type,
        headers={"Content-Disposition": f'attachment; filename="{artifact.filename}"'},
    )
