"""
Direct-to-storage upload endpoints.

The browser asks for an upload target, PUTs the file straight to the bucket,
then calls complete with the size and SHA-256 it computed locally.
"""
from fastapi import APIRouter, Depends

from app.api.dependencies import get_coordinator, to_http_exception
from app.api.schemas.shared import (
    CompleteUploadRequest,
    CompleteUploadResponse,
    InitiateUploadRequest,
    InitiateUploadResponse,
    UploadTarget,
)
from app.domain.imports.errors import ImportPipelineError
from app.domain.uploads.coordinator import UploadCoordinator
from app.integrations.storage import StorageError

router = APIRouter(tags=["uploads"])


@router.post("/imports/initiate", response_model=InitiateUploadResponse)
async def initiate_upload_endpoint(
    request: InitiateUploadRequest,
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    """
    Reserve an upload and return a presigned target.

    Returns 400 for an unknown schema type or a file that is not CSV/XLS/XLSX,
    503 when storage is not configured.
    """
    try:
        ticket = coordinator.initiate(request.file_name, request.content_type, request.schema_type)
    except (ImportPipelineError, StorageError) as e:
        raise to_http_exception(e)

    return InitiateUploadResponse(
        success=True,
        upload_id=ticket.upload_id,
        upload_target=UploadTarget(**ticket.upload_target),
        file_key=ticket.file_key,
        idempotency_key=ticket.idempotency_key,
        expires_at=ticket.expires_at,
    )


@router.post("/imports/complete", response_model=CompleteUploadResponse, status_code=202)
async def complete_upload_endpoint(
    request: CompleteUploadRequest,
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    """
    Start (or replay) the import for a finished upload.

    Repeating the call with the same idempotency key and checksum returns the
    same job id.
    """
    try:
        result = await coordinator.complete(
            upload_id=request.upload_id,
            file_key=request.file_key,
            file_size=request.file_size,
            file_sha256=request.file_sha256,
            idempotency_key=request.idempotency_key,
            defaults=request.defaults,
        )
    except (ImportPipelineError, StorageError) as e:
        raise to_http_exception(e)

    return CompleteUploadResponse(
        success=True,
        job_id=result.job_id,
        status=result.status,
        replayed=result.replayed,
    )
