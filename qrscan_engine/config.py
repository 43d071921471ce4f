from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .utils import clamp_int, load_json

MIB = 1024 * 1024


@dataclass(frozen=True)
class DecodeConfig:
    max_buffer_bytes: int = 50 * MIB
    dedup_threshold_px: float = 10.0
    supplemental_scale: float = 1.5
    region_scale_factors: tuple[float, ...] = (2.0, 3.0)
    max_region_side_px: int = 1600
    region_padding_px: int = 16
    max_content_length: int = 4000

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DecodeConfig":
        d = cls()
        factors = data.get("region_scale_factors", d.region_scale_factors)
        return cls(
            max_buffer_bytes=int(data.get("max_buffer_bytes", d.max_buffer_bytes)),
            dedup_threshold_px=float(data.get("dedup_threshold_px", d.dedup_threshold_px)),
            supplemental_scale=float(data.get("supplemental_scale", d.supplemental_scale)),
            region_scale_factors=tuple(float(f) for f in factors if float(f) > 0),
            max_region_side_px=int(data.get("max_region_side_px", d.max_region_side_px)),
            region_padding_px=max(0, int(data.get("region_padding_px", d.region_padding_px))),
            max_content_length=int(data.get("max_content_length", d.max_content_length)),
        )


@dataclass(frozen=True)
class ScanConfig:
    page_timeout_ms: int = 5000
    max_retries: int = 2
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 10000
    inter_page_delay_ms: int = 500
    memory_threshold_mb: float = 150.0
    max_detections_per_document: int = 100
    # Pages are always scanned one at a time; kept for config compatibility.
    max_concurrent_pages: int = 1
    cleanup_every_pages: int = 5
    consecutive_failure_limit: int = 3
    max_stored_errors: int = 50
    cache_ttl_ms: int = 30000
    performance_monitoring: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScanConfig":
        d = cls()
        return cls(
            page_timeout_ms=clamp_int(data.get("page_timeout_ms", d.page_timeout_ms), 1000, 30000),
            max_retries=max(0, int(data.get("max_retries", d.max_retries))),
            backoff_base_ms=max(0, int(data.get("backoff_base_ms", d.backoff_base_ms))),
            backoff_max_ms=max(0, int(data.get("backoff_max_ms", d.backoff_max_ms))),
            inter_page_delay_ms=max(0, int(data.get("inter_page_delay_ms", d.inter_page_delay_ms))),
            memory_threshold_mb=float(data.get("memory_threshold_mb", d.memory_threshold_mb)),
            max_detections_per_document=clamp_int(
                data.get("max_detections_per_document", d.max_detections_per_document), 1, 1000
            ),
            max_concurrent_pages=1,
            cleanup_every_pages=max(1, int(data.get("cleanup_every_pages", d.cleanup_every_pages))),
            consecutive_failure_limit=max(
                1, int(data.get("consecutive_failure_limit", d.consecutive_failure_limit))
            ),
            max_stored_errors=max(1, int(data.get("max_stored_errors", d.max_stored_errors))),
            cache_ttl_ms=max(0, int(data.get("cache_ttl_ms", d.cache_ttl_ms))),
            performance_monitoring=bool(data.get("performance_monitoring", d.performance_monitoring)),
        )

    def backoff_ms(self, retry: int) -> int:
        """Delay before retry number ``retry`` (0-based): exponential, capped."""
        return int(min(2**retry * self.backoff_base_ms, self.backoff_max_ms))


def normalize_base_url(url: str) -> str:
    url = (url or "").strip()
    if not url:
        return MaterializerConfig.base_url
    return url.rstrip("/") + "/"


@dataclass(frozen=True)
class MaterializerConfig:
    base_url: str = "http://test.com/"
    padding_ratio: float = 0.1

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MaterializerConfig":
        d = cls()
        ratio = float(data.get("padding_ratio", d.padding_ratio))
        return cls(
            base_url=normalize_base_url(str(data.get("base_url", d.base_url))),
            padding_ratio=max(0.0, min(0.45, ratio)),
        )


@dataclass(frozen=True)
class EngineConfig:
    decode: DecodeConfig = field(default_factory=DecodeConfig)
    scan: ScanConfig = field(default_factory=ScanConfig)
    materializer: MaterializerConfig = field(default_factory=MaterializerConfig)


def config_from_dict(data: dict[str, Any]) -> EngineConfig:
    return EngineConfig(
        decode=DecodeConfig.from_dict(data.get("decode", {}) or {}),
        scan=ScanConfig.from_dict(data.get("scan", {}) or {}),
        materializer=MaterializerConfig.from_dict(data.get("materializer", {}) or {}),
    )


def load_config(config_path: str | Path | None) -> EngineConfig:
    """Load the engine config from JSON; a missing path yields the defaults."""
    if config_path is None or not Path(config_path).exists():
        return EngineConfig()
    data = load_json(config_path)
    if not isinstance(data, dict):
        raise ValueError(f"config root must be an object: {config_path}")
    return config_from_dict(data)
