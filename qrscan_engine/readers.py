from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

import cv2
import numpy as np

logger = logging.getLogger(__name__)


class InversionMode(str, Enum):
    DEFAULT = "default"
    DONT_INVERT = "dont-invert"
    ATTEMPT_BOTH = "attempt-both"


@dataclass(frozen=True)
class RawCode:
    """One code as a reader reports it, in the pixel space of the image it was given."""
    content: str
    points: tuple[tuple[float, float], ...]
    anchors_found: bool = True


class CodeReader(Protocol):
    def read(self, gray: np.ndarray, mode: InversionMode) -> list[RawCode]:
        ...


class OpenCVQRReader:
    """CodeReader backed by ``cv2.QRCodeDetector``.

    A detector is created per call; OpenCV detector objects are not safe to
    share between threads.
    """

    def read(self, gray: np.ndarray, mode: InversionMode) -> list[RawCode]:
        if mode is InversionMode.DEFAULT:
            return self._detect(gray)
        if mode is InversionMode.DONT_INVERT:
            _, binary = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
            return self._detect(binary)
        # light-on-dark codes only show up after inversion
        return self._detect(gray) + self._detect(cv2.bitwise_not(gray))

    @staticmethod
    def _detect(img: np.ndarray) -> list[RawCode]:
        detector = cv2.QRCodeDetector()
        ok, decoded, points, _ = detector.detectAndDecodeMulti(img)
        if not ok or points is None:
            return []

        codes: list[RawCode] = []
        for text, quad in zip(decoded, points):
            if not text:
                continue
            corners = tuple((float(p[0]), float(p[1])) for p in np.asarray(quad).reshape(-1, 2))
            codes.append(RawCode(content=str(text), points=corners, anchors_found=len(corners) == 4))
        return codes


def opencv_available() -> tuple[bool, str | None]:
    try:
        cv2.QRCodeDetector()
    except (AttributeError, cv2.error) as e:
        return False, f"OpenCV QR detector unavailable: {e}"
    return True, None
