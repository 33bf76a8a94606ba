"""Model manager: download, load, and hold the face detection model.

Handles downloading models from HuggingFace, creating and caching ONNX
InferenceSessions, and the process-wide detector lifecycle. The detector is
loaded at most once per process: a failed load is never retried and the
pipeline falls back to heuristic detection for the rest of the process.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

if TYPE_CHECKING:
    from obscura.config import Settings

logger = logging.getLogger(__name__)


class BackendState(StrEnum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    UNAVAILABLE = "unavailable"


class BackendKind(StrEnum):
    NEURAL = "neural"
    HEURISTIC = "heuristic"


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for detector lifecycle management."""

    @property
    def state(self) -> BackendState:
        """Return the current detector state."""
        ...

    @property
    def backend_kind(self) -> BackendKind:
        """Return which detection backend is usable right now."""
        ...

    @property
    def model_spec(self) -> ModelSpec:
        """Return the registry entry of the configured detector."""
        ...

    async def initialize(self) -> bool:
        """Load the detector once; return whether it is ready."""
        ...

    def detector_session(self) -> InferenceSession:
        """Return the loaded detector session."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------

# Expected to hold the UltraFace ONNX exports (version-RFB-320.onnx,
# version-slim-320.onnx, version-RFB-640.onnx) from
# Linzaer/Ultra-Light-Fast-Generic-Face-Detector-1MB, MIT licensed, at the repo
# root. Deployments without access to it set OBSCURA_MODEL_REPO_ID to a mirror
# or OBSCURA_MODEL_PATH to a local file.
DEFAULT_REPO_ID = "obscura/face-detectors"


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX face detector."""

    name: str
    repo_id: str
    filename: str
    subfolder: str | None
    license: str
    input_width: int
    input_height: int


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "ultraface_rfb_320": ModelSpec(
        name="ultraface_rfb_320",
        repo_id=DEFAULT_REPO_ID,
        filename="version-RFB-320.onnx",
        subfolder=None,
        license="MIT",
        input_width=320,
        input_height=240,
    ),
    "ultraface_slim_320": ModelSpec(
        name="ultraface_slim_320",
        repo_id=DEFAULT_REPO_ID,
        filename="version-slim-320.onnx",
        subfolder=None,
        license="MIT",
        input_width=320,
        input_height=240,
    ),
    "ultraface_rfb_640": ModelSpec(
        name="ultraface_rfb_640",
        repo_id=DEFAULT_REPO_ID,
        filename="version-RFB-640.onnx",
        subfolder=None,
        license="MIT",
        input_width=640,
        input_height=480,
    ),
}


def get_spec(model_name: str) -> ModelSpec:
    try:
        return MODEL_REGISTRY[model_name]
    except KeyError:
        raise KeyError(f"Unknown model: {model_name}") from None


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Downloads and loads the ONNX face detector, exactly once per process."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)

        self._lock = threading.Lock()
        self._sessions: dict[str, InferenceSession] = {}
        self._model_paths: dict[str, Path] = {}

        self._state = BackendState.UNINITIALIZED
        self._load_task: asyncio.Task[bool] | None = None
        self._detector: InferenceSession | None = None

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Lifecycle ----------------------------------------------------------

    @property
    def state(self) -> BackendState:
        return self._state

    @property
    def backend_kind(self) -> BackendKind:
        if self._state is BackendState.READY:
            return BackendKind.NEURAL
        return BackendKind.HEURISTIC

    @property
    def model_spec(self) -> ModelSpec:
        return get_spec(self._settings.face_detection_model)

    async def initialize(self) -> bool:
        """Load the configured detector, once.

        The first call starts the load; concurrent callers wait on the same
        load instead of starting their own. Once the detector is ``READY`` or
        ``UNAVAILABLE`` this returns immediately. Load errors are logged and
        reported through the return value, never raised.
        """
        if self._state is BackendState.READY:
            return True
        if self._state is BackendState.UNAVAILABLE:
            return False

        if self._load_task is None:
            self._state = BackendState.LOADING
            self._load_task = asyncio.ensure_future(self._load())
        return await asyncio.shield(self._load_task)

    async def _load(self) -> bool:
        model_name = self._settings.face_detection_model
        logger.info("Loading face detection model %s", model_name)
        loop = asyncio.get_running_loop()
        try:
            session = await loop.run_in_executor(None, self.get_session, model_name)
        except Exception:
            spec = MODEL_REGISTRY.get(model_name)
            logger.exception(
                "Failed to load %s from %s; faces will NOT be obscured for this process. "
                "Set OBSCURA_MODEL_PATH to a local %s or OBSCURA_MODEL_REPO_ID to a repo that hosts it",
                model_name,
                self._settings.model_path or self._settings.model_repo_id or (spec.repo_id if spec else "registry"),
                spec.filename if spec else "ONNX detector",
            )
            self._state = BackendState.UNAVAILABLE
            return False

        self._detector = session
        self._state = BackendState.READY
        logger.info("Face detection model %s ready", model_name)
        return True

    def detector_session(self) -> InferenceSession:
        """Return the loaded detector session.

        Raises:
            RuntimeError: If the detector is not ``READY``.
        """
        if self._state is not BackendState.READY:
            raise RuntimeError(f"Face detector is not ready (state={self._state})")
        return self._detector

    # -- Loading ------------------------------------------------------------

    def ensure_downloaded(self, model_name: str) -> Path:
        """Return a local path for the model, downloading it from HuggingFace if needed."""
        spec = get_spec(model_name)

        if self._settings.model_path is not None:
            return Path(self._settings.model_path)

        if model_name in self._model_paths:
            path = self._model_paths[model_name]
            if path.exists():
                return path

        self._models_dir.mkdir(parents=True, exist_ok=True)
        downloaded = Path(
            hf_hub_download(
                repo_id=self._settings.model_repo_id or spec.repo_id,
                filename=spec.filename,
                subfolder=spec.subfolder,
                local_dir=str(self._models_dir),
            )
        )
        self._model_paths[model_name] = downloaded
        logger.info("Downloaded %s to %s", model_name, downloaded)
        return downloaded

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached InferenceSession, creating one if needed."""
        with self._lock:
            cached = self._sessions.get(model_name)
            if cached is not None:
                return cached

        model_path = self.ensure_downloaded(model_name)
        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )

        with self._lock:
            # Double-check: another thread may have created it while we loaded.
            existing = self._sessions.get(model_name)
            if existing is not None:
                return existing
            self._sessions[model_name] = session
            logger.info("Loaded session for %s", model_name)
            return session

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return list(self._sessions.keys())

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        with self._lock:
            self._sessions.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
