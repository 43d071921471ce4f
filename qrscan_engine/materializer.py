from __future__ import annotations

import threading
from dataclasses import dataclass, field
from urllib.parse import quote, urlparse

from .config import MaterializerConfig
from .types import BoundingBox, Detection
from .utils import stable_item_id
from .validator import content_kind, is_url


@dataclass(frozen=True)
class ActionItem:
    """Clickable page region generated from one detection."""
    item_id: str
    page_number: int
    label: str
    title: str
    url: str
    content: str
    bounding_box: BoundingBox
    confidence: float
    context_hint: str | None = None
    auto_generated: bool = True


def inset_box(box: BoundingBox, ratio: float) -> BoundingBox:
    """Shrink ``box`` by ``ratio`` of its shorter side on every edge (integer pixels)."""
    pad = min(box.width, box.height) * ratio
    return BoundingBox(
        x=float(max(0, int(box.x + pad))),
        y=float(max(0, int(box.y + pad))),
        width=float(max(1, int(box.width - 2 * pad))),
        height=float(max(1, int(box.height - 2 * pad))),
    )


def _title_for(content: str, context_hint: str | None) -> str:
    if context_hint:
        return context_hint.strip()[:80]
    s = content.strip()
    if is_url(s):
        host = urlparse(s).hostname or s
        return host[4:] if host.startswith("www.") else host
    kind = content_kind(s)
    if kind == "email":
        return f"Email {s}"
    if kind == "phone":
        return f"Call {s}"
    return s if len(s) <= 40 else s[:37] + "..."


@dataclass
class ActionBuilder:
    """Default result materializer: ``(detection, page_number, context_hint) -> ActionItem``.

    Labels are ``P<page>-<n>`` where ``n`` counts items built for that page.
    """
    config: MaterializerConfig = field(default_factory=MaterializerConfig)

    def __post_init__(self) -> None:
        self._lock = threading.Lock()
        self._per_page: dict[int, int] = {}

    def reset(self) -> None:
        with self._lock:
            self._per_page.clear()

    def url_for(self, content: str) -> str:
        s = content.strip()
        if is_url(s):
            return s
        kind = content_kind(s)
        if kind == "email":
            return f"mailto:{s}"
        if kind == "phone":
            return "tel:" + "".join(ch for ch in s if ch.isdigit() or ch == "+")
        return self.config.base_url + quote(s, safe="")

    def __call__(self, detection: Detection, page_number: int, context_hint: str | None = None) -> ActionItem:
        with self._lock:
            n = self._per_page.get(page_number, 0) + 1
            self._per_page[page_number] = n

        box = inset_box(detection.bounding_box, self.config.padding_ratio)
        b = detection.bounding_box
        return ActionItem(
            item_id=stable_item_id(page_number, detection.content, (b.x, b.y, b.width, b.height)),
            page_number=page_number,
            label=f"P{page_number}-{n}",
            title=_title_for(detection.content, context_hint),
            url=self.url_for(detection.content),
            content=detection.content,
            bounding_box=box,
            confidence=detection.confidence,
            context_hint=context_hint,
        )
