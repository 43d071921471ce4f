from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import cv2
import numpy as np
from PIL import Image

from .errors import BufferTooLargeError, InvalidInputError


@dataclass(frozen=True)
class PixelBuffer:
    """Rasterized page: RGBA, 8 bits per channel, row-major, no stride padding.

    Construction does not validate; ``validate_buffer`` does, so that callers
    get a classified error instead of a constructor crash.
    """
    width: int
    height: int
    data: bytes

    @property
    def byte_size(self) -> int:
        return len(self.data)

    @classmethod
    def from_image(cls, img: Image.Image) -> "PixelBuffer":
        rgba = img if img.mode == "RGBA" else img.convert("RGBA")
        return cls(width=rgba.width, height=rgba.height, data=rgba.tobytes())

    @classmethod
    def from_array(cls, arr: np.ndarray) -> "PixelBuffer":
        """Accept HxW (gray), HxWx3 (RGB) or HxWx4 (RGBA) uint8 arrays."""
        a = np.asarray(arr)
        if a.dtype != np.uint8:
            a = np.clip(a, 0, 255).astype(np.uint8)
        if a.ndim == 2:
            a = np.dstack([a, a, a, np.full_like(a, 255)])
        elif a.ndim == 3 and a.shape[2] == 3:
            a = np.dstack([a, np.full(a.shape[:2], 255, dtype=np.uint8)])
        elif not (a.ndim == 3 and a.shape[2] == 4):
            raise InvalidInputError(f"unsupported array shape {a.shape}")
        h, w = a.shape[:2]
        return cls(width=int(w), height=int(h), data=np.ascontiguousarray(a).tobytes())

    def to_array(self) -> np.ndarray:
        """HxWx4 uint8 view over the buffer bytes (read-only)."""
        return np.frombuffer(self.data, dtype=np.uint8).reshape(self.height, self.width, 4)

    def to_image(self) -> Image.Image:
        return Image.frombytes("RGBA", (self.width, self.height), bytes(self.data))


def validate_buffer(buffer: Any, max_bytes: int) -> PixelBuffer:
    """Structural checks shared by the decoder and the orchestrator.

    Any object with ``width``, ``height`` and RGBA ``data`` is accepted and
    returned as a PixelBuffer.
    """
    if buffer is None:
        raise InvalidInputError("buffer is missing")
    width = getattr(buffer, "width", None)
    height = getattr(buffer, "height", None)
    data = getattr(buffer, "data", None)
    if isinstance(width, bool) or isinstance(height, bool):
        raise InvalidInputError("dimensions must be integers")
    if not isinstance(width, int) or not isinstance(height, int):
        raise InvalidInputError("dimensions must be integers")
    if width <= 0 or height <= 0:
        raise InvalidInputError(f"dimensions must be positive, got {width}x{height}")
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise InvalidInputError("pixel data must be bytes")
    expected = width * height * 4
    if len(data) != expected:
        raise InvalidInputError(f"expected {expected} bytes for {width}x{height} RGBA, got {len(data)}")
    if expected > max_bytes:
        raise BufferTooLargeError(expected, max_bytes)
    if isinstance(buffer, PixelBuffer) and isinstance(data, bytes):
        return buffer
    return PixelBuffer(width=width, height=height, data=bytes(data))


def to_gray(buffer: PixelBuffer) -> np.ndarray:
    """Flatten RGBA onto white and convert to 8-bit grayscale."""
    rgba = buffer.to_array()
    alpha = rgba[:, :, 3:4].astype(np.float32) / 255.0
    rgb = rgba[:, :, :3].astype(np.float32) * alpha + 255.0 * (1.0 - alpha)
    rgb = np.clip(rgb, 0, 255).astype(np.uint8)
    return cv2.cvtColor(rgb, cv2.COLOR_RGB2GRAY)
