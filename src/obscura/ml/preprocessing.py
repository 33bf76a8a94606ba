"""Image preprocessing.

Decodes uploaded images into pixel buffers (with EXIF orientation applied),
encodes obfuscated buffers back to PNG, and prepares detector input tensors.
"""

from __future__ import annotations

import io

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from obscura.ml.pixel_buffer import PixelBuffer

DETECTOR_MEAN: float = 127.0
DETECTOR_SCALE: float = 128.0


class ImageTooLargeError(ValueError):
    """The decoded image exceeds the configured pixel limit."""


def decode_image(image_bytes: bytes, max_pixels: int) -> PixelBuffer:
    """Decode raw image bytes into an RGBA pixel buffer.

    Raises:
        ImageTooLargeError: If the image has more than ``max_pixels`` pixels.
        ValueError: If the bytes are not a decodable image.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            if image.width * image.height > max_pixels:
                raise ImageTooLargeError(
                    f"Image is {image.width}x{image.height}, limit is {max_pixels} pixels"
                )
            oriented = ImageOps.exif_transpose(image)
            rgba = oriented.convert("RGBA")
    except Image.DecompressionBombError as exc:
        raise ImageTooLargeError(f"Image exceeds the decoder limit: {exc}") from exc
    except (UnidentifiedImageError, OSError) as exc:
        raise ValueError(f"Cannot decode image: {exc}") from exc

    data = np.array(rgba, dtype=np.uint8)
    return PixelBuffer(width=rgba.width, height=rgba.height, data=data)


def encode_png(buffer: PixelBuffer) -> bytes:
    """Encode a pixel buffer as PNG."""
    out = io.BytesIO()
    Image.fromarray(buffer.data).save(out, format="PNG")
    return out.getvalue()


def preprocess_for_detection(buffer: PixelBuffer, input_width: int, input_height: int) -> np.ndarray:
    """Resize and normalise a buffer for the face detector.

    Returns:
        ``(1, 3, input_height, input_width)`` float32 tensor.
    """
    image = Image.fromarray(np.ascontiguousarray(buffer.rgb()))
    resized = np.asarray(image.resize((input_width, input_height), Image.Resampling.BILINEAR), dtype=np.float32)
    normalised = (resized - DETECTOR_MEAN) / DETECTOR_SCALE
    return np.ascontiguousarray(normalised.transpose(2, 0, 1)[np.newaxis])
