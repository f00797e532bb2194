"""Error definitions and policy helpers for the rethread pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .translator import TranslationSummary


class ErrorCategory(Enum):
    """Stable classification tags carried by every pipeline error."""

    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    AUTH = "auth"
    QUOTA = "quota"
    MALFORMED_RESPONSE = "malformed_response"
    NETWORK = "network"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    HOST_INVALIDATED = "host_invalidated"
    ADMISSION = "admission"
    REINSERTION = "reinsertion"
    FILE_IO = "file_io"
    OTHER = "other"

    @property
    def is_cancellation(self) -> bool:
        return self in (ErrorCategory.CANCELLED, ErrorCategory.HOST_INVALIDATED)


class RethreadError(Exception):
    """Base exception for all custom errors."""

    default_category = ErrorCategory.OTHER

    def __init__(self, message: str = "", *, category: Optional[ErrorCategory] = None) -> None:
        super().__init__(message)
        self.category = category or self.default_category
        self.already_handled = False


class ValidationError(RethreadError):
    """Raised for malformed input before any network activity."""

    default_category = ErrorCategory.VALIDATION


class TranslationProviderConfigurationError(RethreadError):
    """Raised when the translation provider is misconfigured."""

    default_category = ErrorCategory.CONFIGURATION


class BackendError(RethreadError):
    """Raised when a backend adapter rejects or garbles a request."""

    default_category = ErrorCategory.NETWORK


class TranslationTimeoutError(RethreadError):
    """Raised when a batch or item does not answer in time."""

    default_category = ErrorCategory.TIMEOUT


class UserCancelled(RethreadError):
    """Classification of a job stopped at the caller's request."""

    default_category = ErrorCategory.CANCELLED


class HostInvalidated(RethreadError):
    """Classification of a job stopped because its host went away."""

    default_category = ErrorCategory.HOST_INVALIDATED


class JobAdmissionError(RethreadError):
    """Raised when a surface already has a job in flight."""

    default_category = ErrorCategory.ADMISSION


class OverwriteRefusedError(RethreadError):
    """Raised when attempting to overwrite an output without consent."""

    default_category = ErrorCategory.FILE_IO


class TranslationJobError(RethreadError):
    """Raised once for a job that ended in the error state."""

    def __init__(
        self,
        message: str,
        *,
        cause: Optional[RethreadError] = None,
        summary: Optional[TranslationSummary] = None,
    ) -> None:
        super().__init__(
            message,
            category=cause.category if cause is not None else ErrorCategory.OTHER,
        )
        self.cause = cause
        self.summary = summary


@dataclass
class ErrorRecord:
    """Stores context for a handled error."""

    category: ErrorCategory
    message: str
    details: Optional[str] = None


class ErrorTracker:
    """Tracks consecutive and aggregate errors to satisfy policy rules."""

    CONSECUTIVE_LIMIT = 3
    TOTAL_LIMIT = 10

    def __init__(self) -> None:
        self.last_category: Optional[ErrorCategory] = None
        self.consecutive: int = 0
        self.total: int = 0

    def register(self, category: ErrorCategory) -> tuple[int, int, bool]:
        """Register a new error and return counters."""

        if self.last_category == category:
            self.consecutive += 1
        else:
            self.last_category = category
            self.consecutive = 1

        self.total += 1

        threshold_reached = (
            self.consecutive >= self.CONSECUTIVE_LIMIT
            or self.total >= self.TOTAL_LIMIT
        )

        return self.consecutive, self.total, threshold_reached

    def reset_consecutive(self) -> None:
        """Reset the consecutive counter after successful work."""

        self.consecutive = 0
        self.last_category = None
