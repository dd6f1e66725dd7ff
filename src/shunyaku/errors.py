"""Error taxonomy shared by every pipeline phase.

Each component classifies its failures at its own boundary into an
ErrorAnalysis before anything reaches the orchestrator. The raw cause is
kept for logs; only ``user_message`` and ``alternatives`` are meant for
the end user.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field


SEVERITY_INFO = "info"
SEVERITY_WARNING = "warning"
SEVERITY_ERROR = "error"


# ---------------------------------------------------------------------------
# Error kinds
# ---------------------------------------------------------------------------

# Capture Resource Manager
KIND_ENUMERATION = "enumeration"
KIND_CAPTURE = "capture"
KIND_SOURCE_NOT_FOUND = "source_not_found"
KIND_NOT_IMPLEMENTED = "not_implemented"
KIND_FILE_SYSTEM = "file_system"

# Preprocessor / OCR adapter
KIND_FILE_NOT_FOUND = "file_not_found"
KIND_UNSUPPORTED_FORMAT = "unsupported_format"
KIND_FILE_TOO_LARGE = "file_too_large"
KIND_MEMORY_ERROR = "memory_error"
KIND_TIMEOUT = "timeout"
KIND_UNSUPPORTED_LANGUAGE = "unsupported_language"
KIND_WORKER_CRASHED = "worker_crashed"

# Translation client
KIND_RATE_LIMIT = "rate_limit"
KIND_QUOTA_EXCEEDED = "quota_exceeded"
KIND_AUTH = "auth"
KIND_NETWORK = "network"
KIND_SERVICE_UNAVAILABLE = "service_unavailable"
KIND_VALIDATION = "validation"

# Shared
KIND_UNKNOWN = "unknown"
KIND_CANCELLED = "cancelled"


@dataclass
class ErrorAnalysis:
    """Classified failure: what went wrong and what the user can do about it."""

    kind: str
    severity: str
    retryable: bool
    user_message: str
    alternatives: list[str] = field(default_factory=list)
    processing_time_ms: int = 0
    cause: str = ""
    phase: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def elapsed_ms(started_at: float | None) -> int:
    """Milliseconds since a ``time.monotonic()`` stamp (0 when unknown)."""
    if started_at is None:
        return 0
    return max(0, int((time.monotonic() - started_at) * 1000))


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ShunyakuError(Exception):
    """Base exception for the capture/OCR/translation core."""

    default_kind = KIND_UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        kind: str | None = None,
        cause: BaseException | None = None,
        analysis: ErrorAnalysis | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind or (analysis.kind if analysis else self.default_kind)
        self.cause = cause
        self.analysis = analysis


class CaptureError(ShunyakuError):
    """Screen enumeration or capture failed."""

    default_kind = KIND_CAPTURE


class PreprocessError(ShunyakuError):
    """Image preprocessing failed."""


class OCRError(ShunyakuError):
    """OCR worker or validation failure.

    ``code`` is the structured code reported across the worker boundary,
    when there is one.
    """

    def __init__(self, message: str, *, code: str | None = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.code = code


class TranslationError(ShunyakuError):
    """Translation request failed after classification (and retries, if any)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        attempts: int = 1,
        retry_after: float | None = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.attempts = attempts
        self.retry_after = retry_after


class PipelineCancelled(ShunyakuError):
    """Raised internally when a run is cancelled between phases."""

    default_kind = KIND_CANCELLED
