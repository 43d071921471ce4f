from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from io import BytesIO
from pathlib import Path
from typing import Any

from PIL import Image

from .errors import ImageExtractionError, InvalidInputError
from .pixels import PixelBuffer
from .utils import ensure_dir

logger = logging.getLogger(__name__)

IMAGE_EXTS = {".png", ".jpg", ".jpeg", ".webp", ".bmp", ".tif", ".tiff"}


@dataclass
class PageProvider:
    """Random-access page images: ``provider(page_number) -> PixelBuffer``.

    ``page_number`` is 1-based. PDFs are rendered with PyMuPDF at ``dpi``; an
    image folder yields its files in name order. When ``pages_dir`` is set,
    every rendered page is also saved there as ``page_NNN.png``.
    """
    input_path: str
    input_type: str  # pdf|images
    dpi: int = 150
    pages_dir: Path | None = None
    _doc: Any = field(default=None, init=False, repr=False)
    _files: list[Path] = field(default_factory=list, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.input_type == "pdf":
            self._open_pdf()
        elif self.input_type == "images":
            self._list_images()
        else:
            raise ValueError(f"Unknown input_type: {self.input_type}")

    def _open_pdf(self) -> None:
        try:
            import fitz  # PyMuPDF
        except ImportError as e:  # pragma: no cover
            raise RuntimeError("PyMuPDF is required for --type pdf. Install pymupdf.") from e

        pdf_path = Path(self.input_path)
        if not pdf_path.is_file():
            raise InvalidInputError(f"PDF not found: {pdf_path}")
        self._doc = fitz.open(pdf_path)

    def _list_images(self) -> None:
        folder = Path(self.input_path)
        if not folder.exists() or not folder.is_dir():
            raise ValueError(f"--type images expects a folder: {folder}")
        self._files = sorted([p for p in folder.iterdir() if p.suffix.lower() in IMAGE_EXTS])

    @property
    def page_count(self) -> int:
        if self._doc is not None:
            return int(self._doc.page_count)
        return len(self._files)

    def __call__(self, page_number: int) -> PixelBuffer:
        if not 1 <= page_number <= self.page_count:
            raise ImageExtractionError(page_number, f"page out of range 1..{self.page_count}")
        img = self._render_pdf_page(page_number) if self._doc is not None else self._load_image(page_number)
        if self.pages_dir is not None:
            ensure_dir(self.pages_dir)
            img.save(Path(self.pages_dir) / f"page_{page_number:03d}.png", format="PNG")
        return PixelBuffer.from_image(img)

    def _render_pdf_page(self, page_number: int) -> Image.Image:
        import fitz

        zoom = self.dpi / 72.0
        # PyMuPDF documents must not be used from two threads at once
        with self._lock:
            page = self._doc.load_page(page_number - 1)
            pix = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
            img_bytes = pix.tobytes("png")
        logger.debug("rendered page %d at %d dpi: %dx%d", page_number, self.dpi, pix.width, pix.height)
        return Image.open(BytesIO(img_bytes)).convert("RGBA")

    def _load_image(self, page_number: int) -> Image.Image:
        path = self._files[page_number - 1]
        with Image.open(path) as img:
            return img.convert("RGBA")

    def close(self) -> None:
        if self._doc is not None:
            self._doc.close()
            self._doc = None
