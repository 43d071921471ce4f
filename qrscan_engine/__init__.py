"""QR code page-scanning engine.

This package focuses on:
- decoding QR codes out of one rasterized page (multi-strategy, remapped, deduplicated)
- driving that decode across a whole document with timeouts, retries, pause/resume

PDF rendering, annotation storage and any UI are external collaborators.
"""

from __future__ import annotations

from .config import EngineConfig, load_config
from .decoder import DecodeEngine
from .errors import ErrorKind, ScanEngineError
from .materializer import ActionBuilder, ActionItem
from .orchestrator import ScanOrchestrator
from .pixels import PixelBuffer
from .types import BoundingBox, Detection, ScanPhase, ScanState

__all__ = [
    "__version__",
    "ActionBuilder",
    "ActionItem",
    "BoundingBox",
    "DecodeEngine",
    "Detection",
    "EngineConfig",
    "ErrorKind",
    "load_config",
    "PixelBuffer",
    "ScanEngineError",
    "ScanOrchestrator",
    "ScanPhase",
    "ScanState",
]

__version__ = "0.1.0"
