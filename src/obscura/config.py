"""Environment-based configuration for Obscura."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from OBSCURA_* environment variables.

    The detector weights are the UltraFace ONNX exports, fetched from the
    HuggingFace repo in ``model_repo_id`` (default ``obscura/face-detectors``).
    Without reachable weights the detector ends ``unavailable`` and no face is
    obscured; point ``model_repo_id`` at a mirror or ``model_path`` at a local
    ``.onnx`` file in that case.
    """

    model_config = SettingsConfigDict(
        env_prefix="OBSCURA_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model selection
    face_detection_model: str = "ultraface_rfb_320"
    models_dir: str = "models"
    model_repo_id: str | None = None
    model_path: str | None = None
    preload_model: bool = True

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)

    # Detection
    neural_min_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    heuristic_min_confidence: float = Field(default=0.3, ge=0.0, le=1.0)
    detector_score_floor: float = Field(default=0.3, ge=0.0, le=1.0)
    nms_iou_threshold: float = Field(default=0.3, gt=0.0, le=1.0)
    face_padding: int = Field(default=40, ge=0)
    max_faces: int = Field(default=10, ge=1)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
