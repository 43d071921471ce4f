from __future__ import annotations

import threading
import time
from typing import Callable, Generic, TypeVar

V = TypeVar("V")


class TTLCache(Generic[V]):
    """Small thread-safe key/value cache whose entries expire after ``ttl_ms``."""

    def __init__(self, ttl_ms: int, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_s = max(0, int(ttl_ms)) / 1000.0
        self._clock = clock
        self._lock = threading.Lock()
        self._items: dict[object, tuple[float, V]] = {}

    def get(self, key: object) -> V | None:
        with self._lock:
            entry = self._items.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if self._clock() - stored_at >= self.ttl_s:
                del self._items[key]
                return None
            return value

    def put(self, key: object, value: V) -> None:
        if self.ttl_s <= 0:
            return
        with self._lock:
            self._items[key] = (self._clock(), value)

    def discard(self, key: object) -> None:
        with self._lock:
            self._items.pop(key, None)

    def expire(self) -> int:
        """Remove expired entries; returns how many were dropped."""
        now = self._clock()
        with self._lock:
            stale = [k for k, (t, _) in self._items.items() if now - t >= self.ttl_s]
            for k in stale:
                del self._items[k]
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
