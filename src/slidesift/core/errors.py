from __future__ import annotations

from enum import Enum


class SlidesiftError(Exception):
    """Base error for all user-facing slidesift exceptions."""


class ConfigurationError(SlidesiftError):
    """Raised when configuration is invalid or incomplete."""


class ValidationError(SlidesiftError):
    """Raised when model invariants fail."""


class DocumentError(SlidesiftError):
    """Raised when a document cannot be opened or a page cannot be rendered."""


class FailureKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    POLICY_BLOCKED = "policy_blocked"
    OTHER = "other"

    @property
    def is_retriable(self) -> bool:
        return self in (FailureKind.RATE_LIMITED, FailureKind.TRANSIENT)


class UpstreamError(SlidesiftError):
    """Raised by analysis clients; ``kind`` is set where the failure is observed."""

    def __init__(
        self,
        message: str,
        *,
        kind: FailureKind = FailureKind.OTHER,
        status: int | None = None,
        retry_after_seconds: float | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status
        self.retry_after_seconds = retry_after_seconds


class AnalysisFailedError(SlidesiftError):
    """Raised when a document produced no usable analysis."""


class ResultMergeError(AnalysisFailedError):
    """Raised when chunk results cannot be merged."""


class PolicyBlockedError(AnalysisFailedError):
    """Raised when the upstream rejects the request on policy grounds."""


class BatchError(SlidesiftError):
    """Raised when batch item operations fail."""


class OperationCancelledError(SlidesiftError):
    """Raised when a cancellation token is triggered at a suspension point."""
