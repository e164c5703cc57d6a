"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, status

from autotagger.api.middleware import get_settings_from_request, limit_upload_size, verify_api_key
from autotagger.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
)
from autotagger.errors import InvalidImageError, WorkerNotReadyError
from autotagger.host.coordinator import UploadEvent, WorkerState
from autotagger.host.tag_fields import format_labels

if TYPE_CHECKING:
    from autotagger.host.coordinator import ClassificationCoordinator

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _get_coordinator(request: Request) -> ClassificationCoordinator:
    coordinator: ClassificationCoordinator = request.app.state.coordinator
    return coordinator


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_415_UNSUPPORTED_MEDIA_TYPE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    dependencies=[Depends(limit_upload_size)],
    summary="Classify an image with tags",
)
async def classify_image(request: Request, file: UploadFile) -> ClassifyImageResponse:
    """Classify an uploaded image and return its tags."""
    settings = get_settings_from_request(request)
    coordinator = _get_coordinator(request)

    data = await file.read()
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Upload exceeds the {settings.max_file_size} byte limit",
        )

    event = UploadEvent(mime_type=file.content_type or "", data=data, source=file.filename or "upload")
    try:
        result = await coordinator.classify(event)
    except WorkerNotReadyError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except InvalidImageError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    if result is None:
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"Only image uploads can be classified, got '{event.mime_type}'",
        )

    return ClassifyImageResponse(
        source=event.source,
        labels=sorted(result.labels),
        tags=format_labels(result.labels),
        error=result.error,
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return worker state and queue depth."""
    coordinator = _get_coordinator(request)
    return HealthResponse(
        status="ok" if coordinator.state is WorkerState.READY else "degraded",
        worker_state=coordinator.state.value,
        model_name=coordinator.model_name,
        queue_depth=coordinator.queue_depth,
        classified_images=coordinator.classified_count,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List configured models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return the configured model and whether the worker has it loaded."""
    settings = get_settings_from_request(request)
    coordinator = _get_coordinator(request)
    return ModelsResponse(
        models=[
            ModelInfo(
                name=coordinator.model_name,
                source=settings.model_source,
                status=coordinator.state.value,
            )
        ]
    )
