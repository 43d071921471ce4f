from __future__ import annotations

import logging
import threading
from typing import Callable

import psutil

from .types import ScanMetrics

logger = logging.getLogger(__name__)

MB = 1024 * 1024


class MemoryMonitor:
    """Process memory growth since ``reset_baseline()``, in MB.

    The absolute RSS of a Python process with numpy/OpenCV loaded already
    sits near the default threshold, so the budget applies to growth.
    ``sampler`` returns the current RSS in bytes and can be swapped in tests.
    """

    def __init__(self, sampler: Callable[[], int] | None = None) -> None:
        self._sampler = sampler or self._rss_bytes
        self._baseline = 0

    @staticmethod
    def _rss_bytes() -> int:
        return int(psutil.Process().memory_info().rss)

    def reset_baseline(self) -> None:
        try:
            self._baseline = int(self._sampler())
        except (psutil.Error, OSError) as e:
            logger.warning("could not read process memory: %s", e)
            self._baseline = 0

    def usage_mb(self) -> float:
        try:
            current = int(self._sampler())
        except (psutil.Error, OSError) as e:
            logger.warning("could not read process memory: %s", e)
            return 0.0
        return max(0, current - self._baseline) / MB


class MetricsAggregator:
    """Collects per-page scan durations and counters for ScanMetrics."""

    def __init__(self, *, max_samples: int = 100, keep_samples: int = 50) -> None:
        self._lock = threading.Lock()
        self._max_samples = max_samples
        self._keep_samples = keep_samples
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._durations_ms: list[float] = []
            self._total_ms = 0.0
            self._pages = 0
            self.timeout_count = 0
            self.retry_count = 0
            self.memory_usage_mb = 0.0

    def record_page(self, duration_ms: float) -> None:
        with self._lock:
            self._durations_ms.append(float(duration_ms))
            self._total_ms += float(duration_ms)
            self._pages += 1

    def record_timeout(self) -> None:
        with self._lock:
            self.timeout_count += 1

    def record_retry(self) -> None:
        with self._lock:
            self.retry_count += 1

    def record_memory(self, usage_mb: float) -> None:
        with self._lock:
            self.memory_usage_mb = float(usage_mb)

    def trim(self) -> int:
        """Drop old duration samples; the running average is unaffected."""
        with self._lock:
            if len(self._durations_ms) <= self._max_samples:
                return 0
            dropped = len(self._durations_ms) - self._keep_samples
            self._durations_ms = self._durations_ms[-self._keep_samples :]
            return dropped

    @property
    def sample_count(self) -> int:
        with self._lock:
            return len(self._durations_ms)

    def snapshot(self) -> ScanMetrics:
        with self._lock:
            avg = self._total_ms / self._pages if self._pages else 0.0
            return ScanMetrics(
                average_page_scan_time_ms=avg,
                memory_usage_mb=self.memory_usage_mb,
                timeout_count=self.timeout_count,
                retry_count=self.retry_count,
            )
