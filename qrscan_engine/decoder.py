"""Multi-strategy QR decode for one rasterized page.

Pass order:
1. native resolution, every inversion strategy
2. if (1) kept any code: one 1.5x letterboxed pass for codes the native pass missed
3. if (1) kept nothing: targeted regions, each upscaled 2x and 3x

All hits are mapped back to native buffer pixels, then filtered (bounds and
payload) before the branch is chosen and before deduplication. A strategy
that crashes is recorded and skipped; only a structurally invalid or oversize
buffer raises.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

import numpy as np

from .config import DecodeConfig
from .errors import InvalidContentError
from .imaging import candidate_regions, letterbox, letterbox_side, upscale_region
from .pixels import to_gray, validate_buffer
from .readers import CodeReader, InversionMode, OpenCVQRReader, RawCode, opencv_available
from .types import BoundingBox, Detection
from .validator import ensure_valid_content, is_url

logger = logging.getLogger(__name__)

STRATEGIES = (InversionMode.DEFAULT, InversionMode.DONT_INVERT, InversionMode.ATTEMPT_BOTH)


@dataclass(frozen=True)
class StrategyOutcome:
    """Tagged result of one reader invocation: codes, or the error it raised."""
    strategy: str
    codes: tuple[RawCode, ...] = ()
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class SupportInfo:
    supported: bool
    reason: str | None = None


@dataclass(frozen=True)
class _Candidate:
    content: str
    box: BoundingBox
    anchors_found: bool
    source: str


def confidence_for(content: str, anchors_found: bool) -> float:
    c = 0.5
    if anchors_found:
        c += 0.3
    if content:
        c += 0.1
        if is_url(content):
            c += 0.1
    return min(c, 1.0)


def is_duplicate(a: BoundingBox, b: BoundingBox, threshold: float) -> bool:
    return abs(a.x - b.x) < threshold and abs(a.y - b.y) < threshold


def dedupe(detections: list[Detection], threshold: float = 10.0) -> list[Detection]:
    """First occurrence wins; same content with top-left corners closer than ``threshold``."""
    kept: list[Detection] = []
    for d in detections:
        if any(k.content == d.content and is_duplicate(k.bounding_box, d.bounding_box, threshold) for k in kept):
            continue
        kept.append(d)
    return kept


class DecodeEngine:
    def __init__(self, config: DecodeConfig | None = None, reader: CodeReader | None = None) -> None:
        self.config = config or DecodeConfig()
        self.reader: CodeReader = reader or OpenCVQRReader()
        self._custom_reader = reader is not None

    # ─────────────────────────────────────────────────────────────────────────
    # Environment
    # ─────────────────────────────────────────────────────────────────────────

    def support_info(self) -> SupportInfo:
        if self._custom_reader:
            return SupportInfo(True)
        ok, reason = opencv_available()
        return SupportInfo(ok, reason)

    def is_supported(self) -> bool:
        return self.support_info().supported

    # ─────────────────────────────────────────────────────────────────────────
    # Decode
    # ─────────────────────────────────────────────────────────────────────────

    def decode(self, buffer: Any) -> list[Detection]:
        """Detect every QR code in ``buffer``; coordinates are native buffer pixels.

        Raises:
            InvalidInputError: buffer missing, bad dimensions or wrong byte length
            BufferTooLargeError: buffer above ``config.max_buffer_bytes``
        """
        buf = validate_buffer(buffer, self.config.max_buffer_bytes)
        gray = to_gray(buf)

        # only hits that survive filtering decide which fallback runs
        detections = self._accept(self._native_pass(gray), buf.width, buf.height)
        if detections:
            detections += self._accept(self._supplemental_pass(gray), buf.width, buf.height)
        else:
            detections = self._accept(self._region_pass(gray), buf.width, buf.height)
        return dedupe(detections, self.config.dedup_threshold_px)

    def _accept(self, candidates: list[_Candidate], width: int, height: int) -> list[Detection]:
        detections: list[Detection] = []
        for c in candidates:
            if not c.box.is_within(width, height):
                logger.debug("dropping out-of-bounds hit from %s: %s", c.source, c.box)
                continue
            try:
                ensure_valid_content(c.content, max_length=self.config.max_content_length)
            except InvalidContentError as e:
                logger.debug("dropping hit from %s: %s", c.source, e)
                continue
            detections.append(
                Detection(
                    content=c.content,
                    bounding_box=c.box,
                    confidence=confidence_for(c.content, c.anchors_found),
                )
            )
        return detections

    def run_strategies(self, gray: np.ndarray, *, label: str = "native") -> list[StrategyOutcome]:
        outcomes: list[StrategyOutcome] = []
        for mode in STRATEGIES:
            tag = f"{label}:{mode.value}"
            try:
                codes = tuple(self.reader.read(gray, mode))
            except Exception as e:
                logger.debug("strategy %s failed: %s", tag, e)
                outcomes.append(StrategyOutcome(strategy=tag, error=f"{type(e).__name__}: {e}"))
                continue
            outcomes.append(StrategyOutcome(strategy=tag, codes=codes))

        if outcomes and not any(o.ok for o in outcomes):
            logger.debug("all %d strategies failed on %s", len(outcomes), label)
        return outcomes

    def _collect(
        self,
        outcomes: list[StrategyOutcome],
        to_native: Callable[[BoundingBox], BoundingBox] | None = None,
    ) -> list[_Candidate]:
        out: list[_Candidate] = []
        for o in outcomes:
            for code in o.codes:
                if not code.points:
                    continue
                box = BoundingBox.from_points(code.points)
                if to_native is not None:
                    box = to_native(box)
                out.append(_Candidate(code.content, box, code.anchors_found, o.strategy))
        return out

    def _native_pass(self, gray: np.ndarray) -> list[_Candidate]:
        return self._collect(self.run_strategies(gray, label="native"))

    def _supplemental_pass(self, gray: np.ndarray) -> list[_Candidate]:
        h, w = gray.shape[:2]
        scale = self.config.supplemental_scale
        side = letterbox_side(w, h, scale)
        if side * side * 4 > self.config.max_buffer_bytes:
            logger.debug("skipping %.1fx pass: %dx%d canvas over the buffer ceiling", scale, side, side)
            return []
        lb = letterbox(gray, scale)
        return self._collect(self.run_strategies(lb.canvas, label=f"upscale-{scale}x"), lb.to_native)

    def _region_pass(self, gray: np.ndarray) -> list[_Candidate]:
        h, w = gray.shape[:2]
        out: list[_Candidate] = []
        for name, region in candidate_regions(w, h):
            for factor in self.config.region_scale_factors:
                patch = upscale_region(
                    gray,
                    name,
                    region,
                    factor,
                    max_side=self.config.max_region_side_px,
                    pad=self.config.region_padding_px,
                )
                found = self._collect(
                    self.run_strategies(patch.image, label=f"{name}@{factor:g}x"), patch.to_native
                )
                if found:
                    logger.debug("region %s at %gx: %d hit(s)", name, factor, len(found))
                out.extend(found)
        return out
