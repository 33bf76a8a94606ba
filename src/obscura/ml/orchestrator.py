"""Obfuscation pipeline: detect, gate, clamp, and blur faces in a captured buffer.

One ``ObfuscationOrchestrator`` serves one capture session and runs at most
one obfuscation at a time; a call made while another is in flight is
rejected with ``CaptureBusyError`` instead of being queued.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from obscura.ml.blur_engine import BlurEngine
from obscura.ml.face_detector import HeuristicBackend, NeuralBackend
from obscura.ml.model_manager import BackendKind
from obscura.ml.regions import ConfidenceGate, RegionExpander

if TYPE_CHECKING:
    from obscura.config import Settings
    from obscura.ml.face_detector import DetectionBackend
    from obscura.ml.inference import InferencePool
    from obscura.ml.model_manager import ModelManager
    from obscura.ml.pixel_buffer import PixelBuffer
    from obscura.ml.regions import FaceRegion

logger = logging.getLogger(__name__)


class CaptureBusyError(RuntimeError):
    """An obfuscation is already running for this capture session. Retry after it completes."""


class PipelineStage(StrEnum):
    IDLE = "idle"
    DETECTING = "detecting"
    FILTERING = "filtering"
    TRANSFORMING = "transforming"


@dataclass(frozen=True)
class ObfuscationResult:
    """The caller's buffer, mutated in place, and whether any region was obscured."""

    buffer: PixelBuffer
    any_region_transformed: bool


class ObfuscationOrchestrator:
    """Runs the face-obfuscation pipeline for one capture session."""

    def __init__(
        self,
        model_manager: ModelManager,
        pool: InferencePool,
        settings: Settings,
        *,
        gate: ConfidenceGate | None = None,
        expander: RegionExpander | None = None,
        engine: BlurEngine | None = None,
    ) -> None:
        self._models = model_manager
        self._pool = pool
        self._settings = settings
        self._gate = gate or ConfidenceGate(
            neural_min_confidence=settings.neural_min_confidence,
            heuristic_min_confidence=settings.heuristic_min_confidence,
        )
        self._expander = expander or RegionExpander()
        self._engine = engine or BlurEngine()
        self._heuristic = HeuristicBackend()
        self._neural: NeuralBackend | None = None
        self._stage = PipelineStage.IDLE

    @property
    def stage(self) -> PipelineStage:
        return self._stage

    @property
    def busy(self) -> bool:
        return self._stage is not PipelineStage.IDLE

    async def obfuscate(self, buffer: PixelBuffer) -> ObfuscationResult:
        """Obscure every accepted face region of ``buffer`` in place.

        Raises:
            CaptureBusyError: If a previous call on this session has not finished.
        """
        if self.busy:
            raise CaptureBusyError("Capture busy, try again once the current photo is processed")

        self._stage = PipelineStage.DETECTING
        try:
            await self._models.initialize()
            backend = self._select_backend()
            candidates = await self._detect(backend, buffer)

            self._stage = PipelineStage.FILTERING
            accepted = self._gate.filter(candidates, backend.kind)
            regions = self._expander.expand_all(accepted, buffer)
            if not regions:
                logger.info("No face regions to obscure (backend=%s, candidates=%d)", backend.kind, len(candidates))
                return ObfuscationResult(buffer=buffer, any_region_transformed=False)

            self._stage = PipelineStage.TRANSFORMING
            loop = asyncio.get_running_loop()
            transformed = await loop.run_in_executor(None, self._transform, buffer, regions)
            logger.info("Obscured %d of %d face region(s) (backend=%s)", transformed, len(regions), backend.kind)
            return ObfuscationResult(buffer=buffer, any_region_transformed=transformed > 0)
        finally:
            self._stage = PipelineStage.IDLE

    def _transform(self, buffer: PixelBuffer, regions: list[FaceRegion]) -> int:
        # Runs on a worker thread; the stage stays TRANSFORMING until it returns.
        return sum(1 for region in regions if self._engine.obfuscate(buffer, region))

    def _select_backend(self) -> DetectionBackend:
        if self._models.backend_kind is BackendKind.HEURISTIC:
            return self._heuristic
        if self._neural is None:
            self._neural = NeuralBackend(
                self._models.detector_session(),
                self._pool,
                self._models.model_spec,
                score_floor=self._settings.detector_score_floor,
                iou_threshold=self._settings.nms_iou_threshold,
                padding=self._settings.face_padding,
                max_faces=self._settings.max_faces,
            )
        return self._neural

    async def _detect(self, backend: DetectionBackend, buffer: PixelBuffer) -> list[FaceRegion]:
        try:
            return await backend.detect(buffer)
        except Exception:
            logger.warning("Face detection failed (backend=%s); treating as no faces", backend.kind, exc_info=True)
            return []


class CaptureSessions:
    """One orchestrator per capture session, all sharing the process-wide model manager."""

    def __init__(self, model_manager: ModelManager, pool: InferencePool, settings: Settings) -> None:
        self._models = model_manager
        self._pool = pool
        self._settings = settings
        self._engine = BlurEngine()
        self._sessions: dict[str, ObfuscationOrchestrator] = {}

    def get(self, session_id: str) -> ObfuscationOrchestrator:
        orchestrator = self._sessions.get(session_id)
        if orchestrator is None:
            orchestrator = ObfuscationOrchestrator(self._models, self._pool, self._settings, engine=self._engine)
            self._sessions[session_id] = orchestrator
        return orchestrator

    def release(self, session_id: str) -> None:
        """Forget an idle session. Busy sessions are kept until they finish."""
        orchestrator = self._sessions.get(session_id)
        if orchestrator is not None and not orchestrator.busy:
            del self._sessions[session_id]

    @property
    def active_count(self) -> int:
        return sum(1 for orchestrator in self._sessions.values() if orchestrator.busy)

    def clear(self) -> None:
        self._sessions.clear()
