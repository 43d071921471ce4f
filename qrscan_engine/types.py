from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .errors import ErrorKind, PartialFailureVerdict


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned box in XYWH format (pixel space of the buffer it came from)."""
    x: float
    y: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    def to_list(self) -> list[float]:
        return [self.x, self.y, self.width, self.height]

    @classmethod
    def from_points(cls, points: Any) -> "BoundingBox":
        """Smallest box enclosing a sequence of (x, y) corner points."""
        xs = [float(p[0]) for p in points]
        ys = [float(p[1]) for p in points]
        x0, y0 = min(xs), min(ys)
        return cls(x0, y0, max(xs) - x0, max(ys) - y0)

    def is_within(self, width: float, height: float) -> bool:
        return (
            self.width > 0
            and self.height > 0
            and self.x >= 0
            and self.y >= 0
            and self.right <= width
            and self.bottom <= height
        )

    def clipped_to(self, other: "BoundingBox") -> "BoundingBox":
        x0 = max(self.x, other.x)
        y0 = max(self.y, other.y)
        x1 = min(self.right, other.right)
        y1 = min(self.bottom, other.bottom)
        return BoundingBox(x0, y0, max(0.0, x1 - x0), max(0.0, y1 - y0))


@dataclass(frozen=True)
class Detection:
    content: str
    bounding_box: BoundingBox
    confidence: float  # [0, 1]


@dataclass(frozen=True)
class ScanError:
    kind: ErrorKind
    page_number: int  # 0 for session-level entries
    message: str
    retry_count: int = 0


@dataclass(frozen=True)
class PageScanOutcome:
    page_number: int
    detections: tuple[Detection, ...] = ()
    error: ScanError | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class ScanPhase(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    PAUSED = "paused"
    COMPLETED = "completed"
    ABORTED = "aborted"

    @property
    def is_active(self) -> bool:
        return self in (ScanPhase.SCANNING, ScanPhase.PAUSED)


# Why a session ended early (None for a full pass over the document).
STOP_CANCELLED = "cancelled"
STOP_FATAL = "fatal-error"
STOP_CONSECUTIVE_FAILURES = "consecutive-failures"


@dataclass(frozen=True)
class ScanMetrics:
    average_page_scan_time_ms: float = 0.0
    memory_usage_mb: float = 0.0
    timeout_count: int = 0
    retry_count: int = 0


@dataclass(frozen=True)
class ScanState:
    """Immutable snapshot of one scan session.

    The orchestrator is the only writer; it swaps in a new snapshot on every
    mutation, so observers can hold on to the objects they receive.
    """
    phase: ScanPhase = ScanPhase.IDLE
    current_page: int = 0
    total_pages: int = 0
    found_count: int = 0
    generated_count: int = 0
    errors: tuple[ScanError, ...] = ()
    started_at: datetime | None = None
    completed_at: datetime | None = None
    metrics: ScanMetrics = field(default_factory=ScanMetrics)
    summary: ScanError | None = None
    verdict: PartialFailureVerdict | None = None
    stop_reason: str | None = None
    dropped_errors: int = 0

    @property
    def is_paused(self) -> bool:
        return self.phase is ScanPhase.PAUSED


@dataclass(frozen=True)
class ScanProgress:
    total_pages: int
    scanned_pages: int
    outcomes: tuple[PageScanOutcome, ...]
    results: tuple[Any, ...]
    errors: tuple[ScanError, ...]
    started_at: datetime
    completed_at: datetime | None = None
    metrics: ScanMetrics = field(default_factory=ScanMetrics)

    @property
    def detections(self) -> list[tuple[int, Detection]]:
        return [(o.page_number, d) for o in self.outcomes for d in o.detections]
