"""
qrscan_engine - Error taxonomy

Every failure the engine can report maps onto one closed ErrorKind. The
exception classes below carry that kind so the orchestrator can classify a
page failure without string matching.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    UNSUPPORTED_ENVIRONMENT = "unsupported-environment"
    INVALID_INPUT = "invalid-input"
    BUFFER_TOO_LARGE = "buffer-too-large"
    IMAGE_EXTRACTION_FAILED = "image-extraction-failed"
    TIMEOUT = "timeout"
    MEMORY_PRESSURE = "memory-pressure"
    PROCESSING_FAILED = "processing-failed"
    INVALID_CONTENT = "invalid-content"
    PARTIAL_FAILURE = "partial-failure"
    DOCUMENT_LIMIT_EXCEEDED = "document-limit-exceeded"


_RETRYABLE = frozenset({ErrorKind.IMAGE_EXTRACTION_FAILED, ErrorKind.PROCESSING_FAILED})
_FATAL = frozenset({ErrorKind.UNSUPPORTED_ENVIRONMENT})


class ScanEngineError(Exception):
    """Base exception for all qrscan_engine errors.

    Subclasses pin ``kind``; catching ScanEngineError catches any error the
    engine raises on purpose.
    """

    kind: ErrorKind = ErrorKind.PROCESSING_FAILED

    def __init__(self, message: str, details: str | None = None) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error message
            details: Optional technical details for debugging
        """
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} ({self.details})"
        return self.message


class UnsupportedEnvironmentError(ScanEngineError):
    """Raised when QR detection cannot run in the current environment."""

    kind = ErrorKind.UNSUPPORTED_ENVIRONMENT

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason
        msg = "QR code detection is not supported"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class InvalidInputError(ScanEngineError):
    """Raised when a pixel buffer (or another input) is structurally invalid."""

    kind = ErrorKind.INVALID_INPUT

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Invalid input: {reason}")


class BufferTooLargeError(ScanEngineError):
    """Raised when a pixel buffer exceeds the configured byte ceiling."""

    kind = ErrorKind.BUFFER_TOO_LARGE

    def __init__(self, size_bytes: int, limit_bytes: int) -> None:
        """Initialize the exception.

        Args:
            size_bytes: Byte size of the rejected buffer
            limit_bytes: Configured ceiling
        """
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes
        size_mb = size_bytes / (1024 * 1024)
        limit_mb = limit_bytes / (1024 * 1024)
        super().__init__(
            f"Buffer too large for QR scanning: {size_mb:.1f}MB",
            details=f"limit={limit_mb:.1f}MB",
        )


class ImageExtractionError(ScanEngineError):
    """Raised when the image provider fails to produce a page buffer."""

    kind = ErrorKind.IMAGE_EXTRACTION_FAILED

    def __init__(self, page_number: int, reason: str | None = None) -> None:
        self.page_number = page_number
        self.reason = reason
        msg = f"Could not extract image data for page {page_number}"
        if reason:
            msg += f" - {reason}"
        super().__init__(msg)


class PageTimeoutError(ScanEngineError):
    """Raised when one page attempt exceeds the per-page timeout."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, page_number: int, timeout_ms: int) -> None:
        self.page_number = page_number
        self.timeout_ms = timeout_ms
        super().__init__(f"Page {page_number} scan timed out after {timeout_ms}ms")


class MemoryPressureError(ScanEngineError):
    """Raised when memory usage stays above the threshold after a cleanup pass."""

    kind = ErrorKind.MEMORY_PRESSURE

    def __init__(self, usage_mb: float, limit_mb: float) -> None:
        self.usage_mb = usage_mb
        self.limit_mb = limit_mb
        super().__init__(
            f"Memory usage too high: {usage_mb:.1f}MB",
            details=f"limit={limit_mb:.1f}MB",
        )


class ProcessingError(ScanEngineError):
    """Raised when decoding or materializing fails for a non-structural reason."""

    kind = ErrorKind.PROCESSING_FAILED

    def __init__(self, reason: str, page_number: int | None = None) -> None:
        self.reason = reason
        self.page_number = page_number
        msg = f"QR processing failed: {reason}"
        if page_number is not None:
            msg = f"Page {page_number}: {msg}"
        super().__init__(msg)


class InvalidContentError(ScanEngineError):
    """Raised when a decoded payload fails content validation."""

    kind = ErrorKind.INVALID_CONTENT

    def __init__(self, content: str) -> None:
        self.content = content
        preview = content[:50] + ("..." if len(content) > 50 else "")
        super().__init__(f"Invalid QR code data: {preview!r}")


class DocumentLimitError(ScanEngineError):
    """Raised when the per-document detection cap has been reached."""

    kind = ErrorKind.DOCUMENT_LIMIT_EXCEEDED

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"Maximum QR codes per document reached: {limit}")


class ScanInProgressError(ScanEngineError):
    """Raised when a session is started while another one is active."""

    kind = ErrorKind.PROCESSING_FAILED

    def __init__(self) -> None:
        super().__init__("Scanning is already in progress")


# Exception hierarchy summary:
# ScanEngineError (base)
# ├── UnsupportedEnvironmentError
# ├── InvalidInputError
# ├── BufferTooLargeError
# ├── ImageExtractionError
# ├── PageTimeoutError
# ├── MemoryPressureError
# ├── ProcessingError
# ├── InvalidContentError
# ├── DocumentLimitError
# └── ScanInProgressError


def classify_error(exc: BaseException) -> ErrorKind:
    """Map any exception raised during a page attempt onto an ErrorKind."""
    if isinstance(exc, ScanEngineError):
        return exc.kind
    if isinstance(exc, TimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(exc, MemoryError):
        return ErrorKind.MEMORY_PRESSURE
    return ErrorKind.PROCESSING_FAILED


def is_retryable(kind: ErrorKind) -> bool:
    return kind in _RETRYABLE


def is_fatal(kind: ErrorKind) -> bool:
    return kind in _FATAL


def user_message(kind: ErrorKind, page_number: int | None = None) -> str:
    """Human-readable explanation for an error kind."""
    page_info = f" on page {page_number}" if page_number else ""
    messages = {
        ErrorKind.UNSUPPORTED_ENVIRONMENT: (
            "QR code detection is not supported in this environment. "
            "All other document features remain available."
        ),
        ErrorKind.INVALID_INPUT: (
            f"Unable to process page content{page_info} for QR scanning. "
            "The page may be corrupted or in an unsupported format."
        ),
        ErrorKind.BUFFER_TOO_LARGE: (
            f"Page{page_info} is too large for QR scanning. "
            "Consider a lower rendering resolution."
        ),
        ErrorKind.IMAGE_EXTRACTION_FAILED: (
            f"Could not extract image data{page_info}. The page may have rendering issues."
        ),
        ErrorKind.TIMEOUT: (
            f"QR scanning timed out{page_info}. The page may be complex or the system is busy."
        ),
        ErrorKind.MEMORY_PRESSURE: (
            "QR scanning is using too much memory. Try scanning a smaller document."
        ),
        ErrorKind.PROCESSING_FAILED: (
            f"QR code processing failed{page_info}. The code may be damaged or unsupported."
        ),
        ErrorKind.INVALID_CONTENT: (
            f"Found a QR code{page_info} but could not read its content."
        ),
        ErrorKind.PARTIAL_FAILURE: (
            "Some pages could not be scanned for QR codes. Successful scans are still available."
        ),
        ErrorKind.DOCUMENT_LIMIT_EXCEEDED: (
            "This document has too many QR codes. Only the first ones were processed."
        ),
    }
    return messages[kind]


# ═══════════════════════════════════════════════════════════════════════════════
# PARTIAL FAILURE VERDICT
# ═══════════════════════════════════════════════════════════════════════════════

STRATEGY_STOP = "stop"
STRATEGY_RETRY = "retry"
STRATEGY_SKIP = "skip"


@dataclass(frozen=True)
class PartialFailureVerdict:
    should_continue: bool
    strategy: str  # stop|retry|skip
    message: str
    failure_rate: float
    failed_pages: tuple[int, ...] = ()
    retry_pages: tuple[int, ...] = ()


def partial_failure_verdict(
    failed_pages: list[int] | tuple[int, ...],
    total_pages: int,
    success_count: int,
    *,
    max_retry_pages: int = 5,
) -> PartialFailureVerdict:
    """Describe how bad a session's page failures were.

    The verdict is informational; it never changes what the scan loop did.
    """
    failed = tuple(failed_pages)
    rate = len(failed) / total_pages if total_pages > 0 else 0.0

    if rate > 0.5:
        return PartialFailureVerdict(
            should_continue=False,
            strategy=STRATEGY_STOP,
            message=(
                f"QR scanning failed on {len(failed)} of {total_pages} pages "
                f"({round(rate * 100)}% failure rate). This may indicate a problem "
                "with the document or the rendering environment."
            ),
            failure_rate=rate,
            failed_pages=failed,
        )
    if rate > 0.2:
        return PartialFailureVerdict(
            should_continue=True,
            strategy=STRATEGY_RETRY,
            message=(
                f"QR scanning encountered issues on {len(failed)} pages. You can retry "
                f"the failed pages or continue with the {success_count} successful scans."
            ),
            failure_rate=rate,
            failed_pages=failed,
            retry_pages=failed[:max_retry_pages],
        )
    return PartialFailureVerdict(
        should_continue=True,
        strategy=STRATEGY_SKIP,
        message=(
            f"QR scanning completed with {success_count} successful scans. "
            f"{len(failed)} pages were skipped due to scanning issues."
        ),
        failure_rate=rate,
        failed_pages=failed,
    )
