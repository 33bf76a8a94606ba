"""Face detection backends.

Implementations: NeuralBackend (UltraFace ONNX detector) and HeuristicBackend,
the fallback used when the detector could not be loaded.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, ClassVar, Protocol

import numpy as np

from obscura.ml.model_manager import BackendKind
from obscura.ml.preprocessing import preprocess_for_detection
from obscura.ml.regions import FaceRegion

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from obscura.ml.inference import InferencePool
    from obscura.ml.model_manager import ModelSpec
    from obscura.ml.pixel_buffer import PixelBuffer

logger = logging.getLogger(__name__)

DEFAULT_PADDING: int = 40
DEFAULT_SCORE_FLOOR: float = 0.3
DEFAULT_IOU_THRESHOLD: float = 0.3
MAX_CANDIDATES: int = 200
DEFAULT_MAX_FACES: int = 10


class DetectionBackend(Protocol):
    """Protocol for face detection backends."""

    kind: ClassVar[BackendKind]

    async def detect(self, buffer: PixelBuffer) -> list[FaceRegion]:
        """Detect faces in a buffer.

        Args:
            buffer: RGBA pixel buffer. Not modified.

        Returns:
            Candidate regions in buffer pixels with the backend's confidence.
        """
        ...


def hard_nms(boxes: NDArray[np.float32], scores: NDArray[np.float32], iou_threshold: float) -> list[int]:
    """Greedy non-maximum suppression over corner-form boxes.

    Returns indices of kept boxes, highest score first.
    """
    order = np.argsort(scores)[::-1][:MAX_CANDIDATES]
    areas = np.clip(boxes[:, 2] - boxes[:, 0], 0, None) * np.clip(boxes[:, 3] - boxes[:, 1], 0, None)
    keep: list[int] = []
    while order.size > 0:
        best = int(order[0])
        keep.append(best)
        rest = order[1:]
        x1 = np.maximum(boxes[best, 0], boxes[rest, 0])
        y1 = np.maximum(boxes[best, 1], boxes[rest, 1])
        x2 = np.minimum(boxes[best, 2], boxes[rest, 2])
        y2 = np.minimum(boxes[best, 3], boxes[rest, 3])
        inter = np.clip(x2 - x1, 0, None) * np.clip(y2 - y1, 0, None)
        union = areas[best] + areas[rest] - inter
        iou = np.divide(inter, union, out=np.zeros_like(inter), where=union > 0)
        order = rest[iou <= iou_threshold]
    return keep


class NeuralBackend:
    """Runs the ONNX face detector and pads each detection by a fixed margin.

    Scores are the model's own; no confidence is invented here. Inference is
    offloaded to the inference pool so the event loop is not blocked.
    """

    kind: ClassVar[BackendKind] = BackendKind.NEURAL

    def __init__(
        self,
        session: InferenceSession,
        pool: InferencePool,
        spec: ModelSpec,
        *,
        score_floor: float = DEFAULT_SCORE_FLOOR,
        iou_threshold: float = DEFAULT_IOU_THRESHOLD,
        padding: int = DEFAULT_PADDING,
        max_faces: int = DEFAULT_MAX_FACES,
    ) -> None:
        self._session = session
        self._pool = pool
        self._spec = spec
        self._score_floor = score_floor
        self._iou_threshold = iou_threshold
        self._padding = padding
        self._max_faces = max_faces

    async def detect(self, buffer: PixelBuffer) -> list[FaceRegion]:
        tensor = preprocess_for_detection(buffer, self._spec.input_width, self._spec.input_height)
        scores, boxes = await self._pool.run(self._infer, tensor)
        regions = self.decode(scores, boxes, buffer.width, buffer.height)
        logger.debug("Detector returned %d face(s)", len(regions))
        return regions

    def _infer(self, tensor: NDArray[np.float32]) -> tuple[NDArray[np.float32], NDArray[np.float32]]:
        input_name = self._session.get_inputs()[0].name
        outputs = self._session.run(None, {input_name: tensor})
        return outputs[0], outputs[1]

    def decode(
        self,
        scores: NDArray[np.float32],
        boxes: NDArray[np.float32],
        image_width: int,
        image_height: int,
    ) -> list[FaceRegion]:
        """Turn raw detector output into padded regions in buffer pixels.

        Args:
            scores: ``(1, N, 2)`` background/face probabilities.
            boxes: ``(1, N, 4)`` corner-form boxes normalised to ``[0, 1]``.

        Raises:
            ValueError: If the outputs do not describe the same candidates.
        """
        face_scores = np.asarray(scores, dtype=np.float32).reshape(-1, 2)[:, 1]
        corner_boxes = np.asarray(boxes, dtype=np.float32).reshape(-1, 4)
        if face_scores.shape[0] != corner_boxes.shape[0]:
            raise ValueError(
                f"Detector returned {face_scores.shape[0]} scores for {corner_boxes.shape[0]} boxes"
            )

        mask = face_scores > self._score_floor
        face_scores = face_scores[mask]
        corner_boxes = corner_boxes[mask]
        if face_scores.size == 0:
            return []

        pad = self._padding
        regions: list[FaceRegion] = []
        for index in hard_nms(corner_boxes, face_scores, self._iou_threshold):
            x1, y1, x2, y2 = corner_boxes[index]
            left = round(float(x1) * image_width)
            top = round(float(y1) * image_height)
            right = round(float(x2) * image_width)
            bottom = round(float(y2) * image_height)
            if right <= left or bottom <= top:
                continue
            if len(regions) == self._max_faces:
                logger.warning("Detector found more than %d faces; keeping the highest scoring", self._max_faces)
                break
            regions.append(
                FaceRegion(
                    x=left - pad,
                    y=top - pad,
                    width=right - left + 2 * pad,
                    height=bottom - top + 2 * pad,
                    confidence=float(face_scores[index]),
                )
            )
        return regions


class HeuristicBackend:
    """Fallback used when the neural detector is unavailable.

    Returns no candidates for any input. A guessed region (for example a
    fixed upper-centre box) would blur an arbitrary part of the image while
    reporting success, so the pipeline reports "nothing obscured" instead and
    the caller decides how to proceed.
    """

    kind: ClassVar[BackendKind] = BackendKind.HEURISTIC

    async def detect(self, buffer: PixelBuffer) -> list[FaceRegion]:
        logger.debug("Heuristic detection on %dx%d buffer: no regions", buffer.width, buffer.height)
        return []
