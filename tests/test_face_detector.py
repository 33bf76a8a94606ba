"""Tests for the neural and heuristic detection backends."""

from __future__ import annotations

from typing import TYPE_CHECKING
from unittest.mock import MagicMock

import numpy as np
import pytest

from obscura.config import Settings
from obscura.ml.face_detector import HeuristicBackend, NeuralBackend, hard_nms
from obscura.ml.inference import InferencePool
from obscura.ml.model_manager import MODEL_REGISTRY, BackendKind
from obscura.ml.pixel_buffer import PixelBuffer
from obscura.ml.regions import FaceRegion

if TYPE_CHECKING:
    from collections.abc import Iterator


def _detector_outputs(detections: list[tuple[float, float, float, float, float]]) -> tuple[np.ndarray, np.ndarray]:
    """Build UltraFace-shaped outputs from (score, x1, y1, x2, y2) tuples, normalised coordinates."""
    scores = np.array([[[1.0 - s, s] for s, *_ in detections]], dtype=np.float32).reshape(1, -1, 2)
    boxes = np.array([[box for _, *box in detections]], dtype=np.float32).reshape(1, -1, 4)
    return scores, boxes


def _fake_session(scores: np.ndarray, boxes: np.ndarray) -> MagicMock:
    model_input = MagicMock()
    model_input.name = "input"
    session = MagicMock()
    session.get_inputs.return_value = [model_input]
    session.run.return_value = [scores, boxes]
    return session


@pytest.fixture()
def pool() -> Iterator[InferencePool]:
    inference_pool = InferencePool(Settings(max_concurrent=1))
    yield inference_pool
    inference_pool.shutdown()


class TestHardNms:
    def test_suppresses_overlapping_lower_score(self) -> None:
        boxes = np.array([[0, 0, 10, 10], [1, 1, 11, 11], [50, 50, 60, 60]], dtype=np.float32)
        scores = np.array([0.9, 0.8, 0.7], dtype=np.float32)
        assert hard_nms(boxes, scores, 0.3) == [0, 2]

    def test_keeps_disjoint_boxes_in_score_order(self) -> None:
        boxes = np.array([[0, 0, 10, 10], [20, 20, 30, 30]], dtype=np.float32)
        scores = np.array([0.6, 0.95], dtype=np.float32)
        assert hard_nms(boxes, scores, 0.3) == [1, 0]


class TestNeuralBackend:
    def test_decode_pads_by_forty_pixels(self, pool: InferencePool) -> None:
        backend = NeuralBackend(MagicMock(), pool, MODEL_REGISTRY["ultraface_rfb_320"])
        scores, boxes = _detector_outputs([(0.9, 300 / 640, 50 / 480, 400 / 640, 150 / 480)])

        regions = backend.decode(scores, boxes, 640, 480)

        assert len(regions) == 1
        region = regions[0]
        assert (region.x, region.y, region.width, region.height) == (260, 10, 180, 180)
        assert region.confidence == pytest.approx(0.9)

    def test_decode_keeps_native_confidence_below_gate(self, pool: InferencePool) -> None:
        backend = NeuralBackend(MagicMock(), pool, MODEL_REGISTRY["ultraface_rfb_320"])
        scores, boxes = _detector_outputs([(0.4, 0.1, 0.1, 0.3, 0.3)])

        regions = backend.decode(scores, boxes, 100, 100)

        assert [r.confidence for r in regions] == [pytest.approx(0.4)]

    def test_decode_drops_scores_below_floor(self, pool: InferencePool) -> None:
        backend = NeuralBackend(MagicMock(), pool, MODEL_REGISTRY["ultraface_rfb_320"], score_floor=0.3)
        scores, boxes = _detector_outputs([(0.1, 0.1, 0.1, 0.3, 0.3), (0.05, 0.5, 0.5, 0.7, 0.7)])
        assert backend.decode(scores, boxes, 100, 100) == []

    def test_decode_skips_degenerate_boxes(self, pool: InferencePool) -> None:
        backend = NeuralBackend(MagicMock(), pool, MODEL_REGISTRY["ultraface_rfb_320"])
        scores, boxes = _detector_outputs([(0.9, 0.5, 0.5, 0.5, 0.7)])
        assert backend.decode(scores, boxes, 100, 100) == []

    def test_decode_rejects_mismatched_outputs(self, pool: InferencePool) -> None:
        backend = NeuralBackend(MagicMock(), pool, MODEL_REGISTRY["ultraface_rfb_320"])
        scores = np.zeros((1, 3, 2), dtype=np.float32)
        boxes = np.zeros((1, 2, 4), dtype=np.float32)
        with pytest.raises(ValueError, match="3 scores for 2 boxes"):
            backend.decode(scores, boxes, 100, 100)

    def test_decode_keeps_at_most_ten_highest_scoring_faces(self, pool: InferencePool) -> None:
        backend = NeuralBackend(MagicMock(), pool, MODEL_REGISTRY["ultraface_rfb_320"])
        detections = [(0.95 - i * 0.05, i / 12 + 0.01, 0.1, (i + 1) / 12 - 0.01, 0.3) for i in range(12)]
        scores, boxes = _detector_outputs(detections)

        regions = backend.decode(scores, boxes, 1200, 400)

        assert len(regions) == 10
        assert [r.confidence for r in regions] == [pytest.approx(0.95 - i * 0.05) for i in range(10)]

    def test_custom_max_faces(self, pool: InferencePool) -> None:
        backend = NeuralBackend(MagicMock(), pool, MODEL_REGISTRY["ultraface_rfb_320"], max_faces=2)
        scores, boxes = _detector_outputs(
            [(0.6, 0.0, 0.0, 0.2, 0.2), (0.9, 0.4, 0.4, 0.6, 0.6), (0.8, 0.8, 0.8, 1.0, 1.0)]
        )

        regions = backend.decode(scores, boxes, 100, 100)

        assert [r.confidence for r in regions] == [pytest.approx(0.9), pytest.approx(0.8)]

    def test_custom_padding(self, pool: InferencePool) -> None:
        backend = NeuralBackend(MagicMock(), pool, MODEL_REGISTRY["ultraface_rfb_320"], padding=0)
        scores, boxes = _detector_outputs([(0.9, 0.25, 0.25, 0.75, 0.75)])
        regions = backend.decode(scores, boxes, 200, 100)
        assert regions == [FaceRegion(x=50, y=25, width=100, height=50, confidence=pytest.approx(0.9))]

    async def test_detect_runs_session_with_detector_input(self, pool: InferencePool) -> None:
        scores, boxes = _detector_outputs([(0.95, 0.25, 0.25, 0.5, 0.5)])
        session = _fake_session(scores, boxes)
        backend = NeuralBackend(session, pool, MODEL_REGISTRY["ultraface_rfb_320"])
        buffer = PixelBuffer.blank(640, 480, color=(127, 127, 127, 255))

        regions = await backend.detect(buffer)

        assert backend.kind is BackendKind.NEURAL
        assert len(regions) == 1
        feeds = session.run.call_args.args[1]
        (tensor,) = feeds.values()
        assert tensor.shape == (1, 3, 240, 320)
        assert tensor.dtype == np.float32
        np.testing.assert_allclose(tensor, 0.0)

    async def test_detect_does_not_modify_buffer(self, pool: InferencePool) -> None:
        scores, boxes = _detector_outputs([(0.95, 0.25, 0.25, 0.5, 0.5)])
        backend = NeuralBackend(_fake_session(scores, boxes), pool, MODEL_REGISTRY["ultraface_rfb_320"])
        buffer = PixelBuffer.blank(64, 48, color=(10, 20, 30, 255))
        original = buffer.data.copy()

        await backend.detect(buffer)

        np.testing.assert_array_equal(buffer.data, original)


class TestHeuristicBackend:
    """The fallback never fabricates a region.

    An earlier fallback guessed a fixed upper-centre box with confidence 0.5;
    that behaviour is intentionally not supported.
    """

    @pytest.mark.parametrize(
        ("width", "height", "color"),
        [
            (640, 480, (0, 0, 0, 255)),
            (1, 1, (255, 255, 255, 255)),
            (320, 240, (224, 172, 105, 255)),
        ],
    )
    async def test_returns_no_regions(self, width: int, height: int, color: tuple[int, int, int, int]) -> None:
        backend = HeuristicBackend()
        assert await backend.detect(PixelBuffer.blank(width, height, color=color)) == []

    async def test_returns_no_regions_for_noise(self) -> None:
        rng = np.random.default_rng(11)
        data = rng.integers(0, 256, size=(120, 160, 4), dtype=np.uint8)
        assert await HeuristicBackend().detect(PixelBuffer(width=160, height=120, data=data)) == []

    def test_kind(self) -> None:
        assert HeuristicBackend.kind is BackendKind.HEURISTIC
