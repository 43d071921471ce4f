from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from PIL import Image

from .types import BoundingBox

WHITE = 255


@dataclass(frozen=True)
class Letterbox:
    """Buffer scaled by ``scale`` and centred on a white square canvas."""
    canvas: np.ndarray
    scale: float
    offset_x: float
    offset_y: float

    def to_native(self, box: BoundingBox) -> BoundingBox:
        return BoundingBox(
            x=(box.x - self.offset_x) / self.scale,
            y=(box.y - self.offset_y) / self.scale,
            width=box.width / self.scale,
            height=box.height / self.scale,
        )


@dataclass(frozen=True)
class RegionPatch:
    """One candidate region, upscaled and framed by a white quiet zone."""
    name: str
    region: BoundingBox
    image: np.ndarray
    upscaled_width: int
    upscaled_height: int
    pad: int

    def to_native(self, box: BoundingBox) -> BoundingBox:
        sx = self.region.width / self.upscaled_width
        sy = self.region.height / self.upscaled_height
        native = BoundingBox(
            x=self.region.x + (box.x - self.pad) * sx,
            y=self.region.y + (box.y - self.pad) * sy,
            width=box.width * sx,
            height=box.height * sy,
        )
        return native.clipped_to(self.region)


def _resize_nearest(gray: np.ndarray, width: int, height: int) -> np.ndarray:
    # nearest neighbour keeps module edges crisp
    img = Image.fromarray(gray)
    return np.asarray(img.resize((width, height), Image.Resampling.NEAREST))


def letterbox_side(width: int, height: int, scale: float) -> int:
    return int(round(max(width, height) * scale))


def letterbox(gray: np.ndarray, scale: float) -> Letterbox:
    h, w = gray.shape[:2]
    side = letterbox_side(w, h, scale)
    eff_scale = side / max(w, h)
    sw = max(1, int(round(w * eff_scale)))
    sh = max(1, int(round(h * eff_scale)))
    scaled = _resize_nearest(gray, sw, sh)

    canvas = np.full((side, side), WHITE, dtype=np.uint8)
    ox = (side - sw) // 2
    oy = (side - sh) // 2
    canvas[oy : oy + sh, ox : ox + sw] = scaled
    return Letterbox(canvas=canvas, scale=eff_scale, offset_x=float(ox), offset_y=float(oy))


def candidate_regions(width: int, height: int) -> list[tuple[str, BoundingBox]]:
    """Document-relative rectangles where printed codes usually sit.

    Rectangles are clipped to the page; empty or repeated ones are dropped.
    """
    specs = [
        ("top-left", 0, 0, 400, 400),
        ("upper-area", int(width * 0.1), int(height * 0.15), 350, 350),
        ("middle-area", int(width * 0.1), int(height * 0.35), 350, 350),
        ("lower-area", int(width * 0.1), int(height * 0.55), 350, 350),
        ("large-left-area", int(width * 0.05), int(height * 0.1), 500, 600),
        ("top-right", width - 400, 0, 400, 400),
        ("bottom-left", 0, height - 400, 400, 400),
        ("bottom-right", width - 400, height - 400, 400, 400),
    ]
    page = BoundingBox(0, 0, width, height)
    out: list[tuple[str, BoundingBox]] = []
    seen: set[tuple[int, int, int, int]] = set()
    for name, x, y, w, h in specs:
        r = BoundingBox(float(x), float(y), float(w), float(h)).clipped_to(page)
        key = (int(r.x), int(r.y), int(r.width), int(r.height))
        if key[2] < 1 or key[3] < 1 or key in seen:
            continue
        seen.add(key)
        out.append((name, BoundingBox(*map(float, key))))
    return out


def upscale_region(
    gray: np.ndarray,
    name: str,
    region: BoundingBox,
    factor: float,
    *,
    max_side: int,
    pad: int,
) -> RegionPatch:
    x, y = int(region.x), int(region.y)
    rw, rh = int(region.width), int(region.height)
    crop = gray[y : y + rh, x : x + rw]

    # one uniform scale so the aspect ratio survives the size cap
    scale = min(float(factor), max_side / max(rw, rh))
    uw = max(1, int(rw * scale))
    uh = max(1, int(rh * scale))
    up = _resize_nearest(np.ascontiguousarray(crop), uw, uh)

    framed = np.full((uh + 2 * pad, uw + 2 * pad), WHITE, dtype=np.uint8)
    framed[pad : pad + uh, pad : pad + uw] = up
    return RegionPatch(
        name=name,
        region=region,
        image=framed,
        upscaled_width=uw,
        upscaled_height=uh,
        pad=pad,
    )
