"""Irreversible face-region obfuscation.

Each region goes through a fixed sequence of passes:

    gaussian(25) -> pixelate(12) -> gaussian(20) -> pixelate(16) -> gaussian(15) -> dark overlay

Gaussian passes use a separable normalised kernel with sigma = radius / 3.
Samples past the region edge are clamped to the nearest pixel inside the
region, so nothing outside the region is read or written. Sums are kept in
float64 and rounded once per pass when written back to uint8.

The passes run on a copy of the region, which replaces the original pixels
only after every pass has succeeded. If the passes fail the engine falls back
to a three-pass box blur; if that fails too the region is left untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import cv2
import numpy as np

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from obscura.ml.pixel_buffer import PixelBuffer
    from obscura.ml.regions import FaceRegion

logger = logging.getLogger(__name__)

# rgba(0, 0, 0, 0.7) drawn with globalAlpha 0.5
OVERLAY_ALPHA: float = 0.7 * 0.5

FALLBACK_BOX_RADIUS: int = 20
FALLBACK_BOX_PASSES: int = 3


class PassKind(StrEnum):
    GAUSSIAN = "gaussian"
    PIXELATE = "pixelate"


@dataclass(frozen=True)
class BlurPass:
    kind: PassKind
    size: int


DEFAULT_PASSES: tuple[BlurPass, ...] = (
    BlurPass(PassKind.GAUSSIAN, 25),
    BlurPass(PassKind.PIXELATE, 12),
    BlurPass(PassKind.GAUSSIAN, 20),
    BlurPass(PassKind.PIXELATE, 16),
    BlurPass(PassKind.GAUSSIAN, 15),
)


# ---------------------------------------------------------------------------
# Pixel operations
# ---------------------------------------------------------------------------


def gaussian_kernel(radius: int) -> NDArray[np.float64]:
    """Return the normalised 1-D Gaussian kernel of length ``2 * radius + 1``."""
    if radius <= 0:
        return np.ones(1, dtype=np.float64)
    sigma = radius / 3
    offsets = np.arange(-radius, radius + 1, dtype=np.float64)
    kernel = np.exp(-(offsets**2) / (2 * sigma * sigma))
    return kernel / kernel.sum()


def _to_uint8(acc: NDArray[np.float64]) -> NDArray[np.uint8]:
    return np.clip(np.rint(acc), 0, 255).astype(np.uint8)


def gaussian_blur(pixels: NDArray[np.uint8], radius: int) -> NDArray[np.uint8]:
    """Gaussian-blur an ``(h, w, c)`` uint8 array with clamp-to-edge sampling."""
    kernel = gaussian_kernel(radius)
    acc = cv2.sepFilter2D(
        np.ascontiguousarray(pixels, dtype=np.float64),
        cv2.CV_64F,
        kernel,
        kernel,
        borderType=cv2.BORDER_REPLICATE,
    )
    return _to_uint8(acc.reshape(pixels.shape))


def box_blur(pixels: NDArray[np.uint8], radius: int, passes: int = 1) -> NDArray[np.uint8]:
    """Mean filter over a ``(2r+1)``-square window, repeated ``passes`` times."""
    size = 2 * radius + 1
    for _ in range(passes):
        acc = cv2.blur(
            np.ascontiguousarray(pixels, dtype=np.float64),
            (size, size),
            borderType=cv2.BORDER_REPLICATE,
        )
        pixels = _to_uint8(acc.reshape(pixels.shape))
    return pixels


def pixelate(pixels: NDArray[np.uint8], block_size: int) -> NDArray[np.uint8]:
    """Replace each ``block_size`` square (clipped at the edges) with its mean colour."""
    height, width = pixels.shape[:2]
    row_starts = np.arange(0, height, block_size)
    col_starts = np.arange(0, width, block_size)
    row_sizes = np.diff(np.append(row_starts, height))
    col_sizes = np.diff(np.append(col_starts, width))

    sums = np.add.reduceat(pixels.astype(np.float64), row_starts, axis=0)
    sums = np.add.reduceat(sums, col_starts, axis=1)
    means = _to_uint8(sums / np.outer(row_sizes, col_sizes)[..., np.newaxis])
    return np.repeat(np.repeat(means, row_sizes, axis=0), col_sizes, axis=1)


def dark_overlay(pixels: NDArray[np.uint8], alpha: float = OVERLAY_ALPHA) -> NDArray[np.uint8]:
    """Composite opaque-black at ``alpha`` over RGBA pixels (source-over)."""
    rgb = pixels[..., :3].astype(np.float64)
    dst_alpha = pixels[..., 3:].astype(np.float64) / 255
    out_alpha = alpha + dst_alpha * (1 - alpha)
    out_rgb = np.divide(
        rgb * dst_alpha * (1 - alpha),
        out_alpha,
        out=np.zeros_like(rgb),
        where=out_alpha > 0,
    )

    out = np.empty_like(pixels)
    out[..., :3] = np.clip(np.rint(out_rgb), 0, 255).astype(np.uint8)
    out[..., 3:] = np.clip(np.rint(out_alpha * 255), 0, 255).astype(np.uint8)
    return out


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class BlurEngine:
    """Applies the multi-pass obfuscation to a region of a buffer, in place."""

    def __init__(self, passes: Sequence[BlurPass] = DEFAULT_PASSES, overlay_alpha: float = OVERLAY_ALPHA) -> None:
        self._passes = tuple(passes)
        self._overlay_alpha = overlay_alpha

    def obfuscate(self, buffer: PixelBuffer, region: FaceRegion) -> bool:
        """Obfuscate ``region`` of ``buffer``.

        The region must already be clamped to the buffer. Returns ``True`` if
        the region was transformed, by the full passes or by the fallback.
        """
        view = buffer.region(region)
        try:
            view[...] = self._run_passes(view.copy())
        except Exception:
            logger.warning("Obfuscation passes failed for %s; falling back to box blur", region, exc_info=True)
        else:
            return True

        try:
            view[...] = self._run_fallback(view.copy())
        except Exception:
            logger.exception("Fallback blur failed for %s; region left untouched", region)
            return False
        return True

    def _run_passes(self, pixels: NDArray[np.uint8]) -> NDArray[np.uint8]:
        for blur_pass in self._passes:
            if blur_pass.kind is PassKind.GAUSSIAN:
                pixels = gaussian_blur(pixels, blur_pass.size)
            else:
                pixels = pixelate(pixels, blur_pass.size)
        return dark_overlay(pixels, self._overlay_alpha)

    def _run_fallback(self, pixels: NDArray[np.uint8]) -> NDArray[np.uint8]:
        pixels = box_blur(pixels, FALLBACK_BOX_RADIUS, passes=FALLBACK_BOX_PASSES)
        return dark_overlay(pixels, self._overlay_alpha)
