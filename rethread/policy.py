"""Failure handling policy for segment-level errors."""

from __future__ import annotations

import logging
from typing import List, Optional

from .errors import ErrorCategory, ErrorRecord, ErrorTracker, RethreadError

logger = logging.getLogger(__name__)


class FailurePolicy:
    """Decides whether an unrecoverable segment failure aborts the job.

    With ``fail_fast`` every such failure aborts. Otherwise the segment is
    skipped, unless the tracker reports repeated or excessive failures.
    """

    def __init__(self, *, fail_fast: bool = True) -> None:
        self.fail_fast = fail_fast
        self.records: List[ErrorRecord] = []
        self.tracker = ErrorTracker()

    def record_success(self) -> None:
        """Reset consecutive counters after successful work."""

        self.tracker.reset_consecutive()

    def handle_failure(
        self,
        category: ErrorCategory,
        message: str,
        details: Optional[str] = None,
    ) -> str:
        """Record a failure and return ``"abort"`` or ``"skip"``."""

        self.records.append(ErrorRecord(category=category, message=message, details=details))
        consecutive, total, threshold = self.tracker.register(category)

        if self.fail_fast:
            return "abort"

        if threshold:
            logger.warning(
                "Failure threshold reached (%d consecutive, %d total); aborting job.",
                consecutive,
                total,
            )
            return "abort"

        logger.warning("%s Skipping this segment.", message)
        return "skip"

    def report(self, error: RethreadError) -> bool:
        """Log a job-level failure once; return False if it was already reported."""

        if error.already_handled:
            return False
        error.already_handled = True
        if error.category.is_cancellation:
            logger.info("Translation stopped: %s", error)
        else:
            logger.error("Translation failed [%s]: %s", error.category.value, error)
        return True

    @property
    def messages(self) -> List[str]:
        return [record.message for record in self.records]
