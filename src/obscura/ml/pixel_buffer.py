"""Mutable RGBA pixel buffer shared by every stage of the obfuscation pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from obscura.ml.regions import FaceRegion

CHANNELS = 4


@dataclass(eq=False)
class PixelBuffer:
    """RGBA image data, mutated in place by the pipeline.

    ``data`` has shape ``(height, width, 4)`` and dtype ``uint8``. The caller
    owns the buffer; the pipeline never keeps a reference after returning.
    """

    width: int
    height: int
    data: NDArray[np.uint8]

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Invalid buffer size {self.width}x{self.height}")
        if self.data.dtype != np.uint8:
            raise ValueError(f"Pixel data must be uint8, got {self.data.dtype}")
        if self.data.size != self.width * self.height * CHANNELS:
            raise ValueError(
                f"Pixel data has {self.data.size} values, expected {self.width * self.height * CHANNELS}"
            )
        if self.data.shape != (self.height, self.width, CHANNELS):
            self.data = self.data.reshape(self.height, self.width, CHANNELS)

    @classmethod
    def from_bytes(cls, width: int, height: int, raw: bytes | bytearray | memoryview) -> PixelBuffer:
        """Wrap raw RGBA bytes.

        Writable inputs (``bytearray``) are wrapped without copying, so the
        obfuscated pixels are visible to the caller through ``raw``.
        """
        data = np.frombuffer(raw, dtype=np.uint8)
        if not data.flags.writeable:
            data = data.copy()
        return cls(width=width, height=height, data=data)

    @classmethod
    def blank(cls, width: int, height: int, color: tuple[int, int, int, int] = (0, 0, 0, 255)) -> PixelBuffer:
        data = np.empty((height, width, CHANNELS), dtype=np.uint8)
        data[:] = color
        return cls(width=width, height=height, data=data)

    def region(self, region: FaceRegion) -> NDArray[np.uint8]:
        """Return a writable view of ``region``. The region must already be clamped."""
        return self.data[region.y : region.y + region.height, region.x : region.x + region.width]

    def rgb(self) -> NDArray[np.uint8]:
        return self.data[..., :3]

    def tobytes(self) -> bytes:
        return self.data.tobytes()
