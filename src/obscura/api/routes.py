"""API route definitions."""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, Form, Request, Response, UploadFile, status
from fastapi.responses import JSONResponse

from obscura.api.middleware import verify_api_key
from obscura.api.schemas import ErrorResponse, HealthResponse, ModelInfo, ModelsResponse
from obscura.ml.model_manager import MODEL_REGISTRY
from obscura.ml.orchestrator import CaptureBusyError
from obscura.ml.preprocessing import ImageTooLargeError, decode_image, encode_png

if TYPE_CHECKING:
    from obscura.config import Settings
    from obscura.ml.inference import InferencePool
    from obscura.ml.model_manager import OnnxModelManager
    from obscura.ml.orchestrator import CaptureSessions

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

FACES_OBSCURED_HEADER = "X-Faces-Obscured"
BUSY_RETRY_AFTER_SECONDS = "1"


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model_manager(request: Request) -> OnnxModelManager:
    manager: OnnxModelManager = request.app.state.model_manager
    return manager


def _get_capture_sessions(request: Request) -> CaptureSessions:
    sessions: CaptureSessions = request.app.state.capture_sessions
    return sessions


@router.post(
    "/obfuscate",
    response_class=Response,
    responses={
        status.HTTP_200_OK: {"content": {"image/png": {}}},
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
    },
    summary="Obscure faces in a captured photo",
)
async def obfuscate(
    request: Request,
    file: UploadFile,
    session_id: Annotated[str | None, Form()] = None,
) -> Response:
    """Obscure every detected face and return the photo as PNG.

    The ``X-Faces-Obscured`` header is ``true`` only when at least one region
    was transformed. Callers must not treat ``false`` as "no faces present".
    """
    settings = _get_settings(request)
    image_bytes = await file.read()
    if len(image_bytes) > settings.max_file_size:
        return JSONResponse(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            content={"detail": f"File exceeds {settings.max_file_size} bytes"},
        )

    try:
        buffer = decode_image(image_bytes, settings.max_image_pixels)
    except ImageTooLargeError as exc:
        return JSONResponse(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, content={"detail": str(exc)})
    except ValueError as exc:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})

    sessions = _get_capture_sessions(request)
    key = session_id or uuid.uuid4().hex
    try:
        result = await sessions.get(key).obfuscate(buffer)
    except CaptureBusyError as exc:
        logger.info("Rejected obfuscation for busy capture session %s", key)
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": str(exc)},
            headers={"Retry-After": BUSY_RETRY_AFTER_SECONDS},
        )
    finally:
        sessions.release(key)

    return Response(
        content=encode_png(result.buffer),
        media_type="image/png",
        headers={FACES_OBSCURED_HEADER: "true" if result.any_region_transformed else "false"},
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    manager = _get_model_manager(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        detector_state=str(manager.state),
        active_backend=str(manager.backend_kind),
        models_loaded=manager.get_loaded_models(),
        active_captures=_get_capture_sessions(request).active_count,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return available detection models and which one is configured."""
    settings = _get_settings(request)

    models: list[ModelInfo] = []
    for spec in MODEL_REGISTRY.values():
        models.append(
            ModelInfo(
                name=spec.name,
                status="active" if spec.name == settings.face_detection_model else "available",
                license=spec.license,
                input_size=f"{spec.input_width}x{spec.input_height}",
            )
        )

    return ModelsResponse(models=models)
