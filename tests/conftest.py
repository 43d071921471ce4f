"""Shared fixtures and fakes for the qrscan_engine tests."""
from __future__ import annotations

import threading
import time
from typing import Any, Callable

import numpy as np
import pytest

from qrscan_engine.config import ScanConfig
from qrscan_engine.decoder import SupportInfo
from qrscan_engine.metrics import MemoryMonitor
from qrscan_engine.pixels import PixelBuffer
from qrscan_engine.readers import InversionMode, RawCode
from qrscan_engine.types import BoundingBox, Detection


def white_buffer(width: int, height: int) -> PixelBuffer:
    return PixelBuffer(width=width, height=height, data=b"\xff" * (width * height * 4))


def buffer_with_block(width: int, height: int, box: tuple[int, int, int, int]) -> PixelBuffer:
    """White page with one black square (x, y, w, h) standing in for a code."""
    arr = np.full((height, width), 255, dtype=np.uint8)
    x, y, w, h = box
    arr[y : y + h, x : x + w] = 0
    return PixelBuffer.from_array(arr)


def square_points(x: float, y: float, size: float) -> tuple[tuple[float, float], ...]:
    return ((x, y), (x + size, y), (x + size, y + size), (x, y + size))


class ScriptedReader:
    """CodeReader whose answers come from a function of (gray, mode)."""

    def __init__(self, fn: Callable[[np.ndarray, InversionMode], list[RawCode]]) -> None:
        self.fn = fn
        self.calls: list[tuple[tuple[int, ...], InversionMode]] = []

    def read(self, gray: np.ndarray, mode: InversionMode) -> list[RawCode]:
        self.calls.append((gray.shape, mode))
        return self.fn(gray, mode)


class BlobReader:
    """Reports the bounding box of all dark pixels as one code.

    Blobs narrower than ``min_size`` are ignored, which mimics a real reader
    missing codes that are printed too small.
    """

    def __init__(self, content: str = "https://example.com/blob", min_size: int = 0) -> None:
        self.content = content
        self.min_size = min_size
        self.shapes: list[tuple[int, ...]] = []

    def read(self, gray: np.ndarray, mode: InversionMode) -> list[RawCode]:
        self.shapes.append(gray.shape)
        ys, xs = np.where(gray < 128)
        if len(xs) == 0:
            return []
        x0, x1 = int(xs.min()), int(xs.max()) + 1
        y0, y1 = int(ys.min()), int(ys.max()) + 1
        if x1 - x0 < self.min_size:
            return []
        return [RawCode(self.content, ((x0, y0), (x1, y0), (x1, y1), (x0, y1)), True)]


def page_buffer(page_number: int) -> PixelBuffer:
    """Tiny buffer whose width carries the page number, for FakeDecoder."""
    return PixelBuffer(width=page_number, height=1, data=bytes(page_number * 4))


class FakeDecoder:
    """Stands in for DecodeEngine: returns scripted detections per page.

    ``pages`` maps page number to either a list of Detections or an exception
    instance to raise. Pages not listed decode to nothing.
    """

    def __init__(self, pages: dict[int, Any] | None = None, supported: bool = True) -> None:
        self.pages = pages or {}
        self.supported = supported
        self.decoded: list[int] = []
        self._lock = threading.Lock()

    def support_info(self) -> SupportInfo:
        return SupportInfo(self.supported, None if self.supported else "no detector")

    def decode(self, buffer: PixelBuffer) -> list[Detection]:
        page = buffer.width
        with self._lock:
            self.decoded.append(page)
        entry = self.pages.get(page, [])
        if isinstance(entry, BaseException):
            raise entry
        return list(entry)


class RecordingProvider:
    """Image provider that records every request and can block or fail per page."""

    def __init__(
        self,
        *,
        fail: dict[int, int] | None = None,
        block: set[int] | None = None,
    ) -> None:
        # page -> how many initial calls raise
        self.fail = dict(fail or {})
        self.block = set(block or ())
        self.release = threading.Event()
        self.requested = threading.Event()
        self.requests: list[int] = []
        self.times: list[float] = []
        self._lock = threading.Lock()

    def __call__(self, page_number: int) -> PixelBuffer:
        with self._lock:
            self.requests.append(page_number)
            self.times.append(time.monotonic())
            remaining = self.fail.get(page_number, 0)
            if remaining:
                self.fail[page_number] = remaining - 1
        self.requested.set()
        if remaining:
            raise OSError(f"render failed for page {page_number}")
        if page_number in self.block:
            self.release.wait(10)
        return page_buffer(page_number)


def detection(content: str = "https://example.com", x: float = 10, y: float = 10, size: float = 20) -> Detection:
    return Detection(content=content, bounding_box=BoundingBox(x, y, size, size), confidence=1.0)


def fast_config(**overrides: Any) -> ScanConfig:
    """ScanConfig with every wait set to zero."""
    base = dict(
        page_timeout_ms=2000,
        inter_page_delay_ms=0,
        backoff_base_ms=0,
        backoff_max_ms=0,
    )
    base.update(overrides)
    return ScanConfig(**base)


@pytest.fixture
def no_memory_growth() -> MemoryMonitor:
    return MemoryMonitor(sampler=lambda: 0)
