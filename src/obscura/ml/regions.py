"""Candidate face regions: confidence gating and clamping to buffer bounds."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from obscura.ml.model_manager import BackendKind

if TYPE_CHECKING:
    from collections.abc import Sequence

    from obscura.ml.pixel_buffer import PixelBuffer

logger = logging.getLogger(__name__)

NEURAL_MIN_CONFIDENCE: float = 0.5
HEURISTIC_MIN_CONFIDENCE: float = 0.3


@dataclass(frozen=True)
class FaceRegion:
    """Axis-aligned face rectangle in buffer pixels.

    ``x`` and ``y`` may be negative, and the rectangle may overhang the
    buffer, until it has passed through :class:`RegionExpander`.
    """

    x: int
    y: int
    width: int
    height: int
    confidence: float

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height


class ConfidenceGate:
    """Drop candidates whose score is below the bar for the backend that produced them."""

    def __init__(
        self,
        neural_min_confidence: float = NEURAL_MIN_CONFIDENCE,
        heuristic_min_confidence: float = HEURISTIC_MIN_CONFIDENCE,
    ) -> None:
        self._thresholds = {
            BackendKind.NEURAL: neural_min_confidence,
            BackendKind.HEURISTIC: heuristic_min_confidence,
        }

    def threshold(self, backend_kind: BackendKind) -> float:
        return self._thresholds[backend_kind]

    def filter(self, regions: Sequence[FaceRegion], backend_kind: BackendKind) -> list[FaceRegion]:
        threshold = self.threshold(backend_kind)
        accepted: list[FaceRegion] = []
        for region in regions:
            if region.confidence >= threshold:
                accepted.append(region)
            else:
                logger.info(
                    "Face detected but not acted upon (backend=%s, confidence=%.3f < %.2f, box=%d,%d %dx%d)",
                    backend_kind,
                    region.confidence,
                    threshold,
                    region.x,
                    region.y,
                    region.width,
                    region.height,
                )
        return accepted


class RegionExpander:
    """Clamp regions to the buffer and discard the ones left with no area."""

    def expand(self, region: FaceRegion, buffer: PixelBuffer) -> FaceRegion | None:
        x = max(0, region.x)
        y = max(0, region.y)
        right = min(region.right, buffer.width)
        bottom = min(region.bottom, buffer.height)
        width = right - x
        height = bottom - y
        if width <= 0 or height <= 0:
            logger.debug("Discarding region %s: no area inside %dx%d buffer", region, buffer.width, buffer.height)
            return None
        return replace(region, x=x, y=y, width=width, height=height)

    def expand_all(self, regions: Sequence[FaceRegion], buffer: PixelBuffer) -> list[FaceRegion]:
        expanded = (self.expand(region, buffer) for region in regions)
        return [region for region in expanded if region is not None]
