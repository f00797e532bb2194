"""In-memory job bookkeeping and the job state machine."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Set

from .errors import JobAdmissionError, RethreadError
from .structures import Batch, ExpandedSegment, JobState, OriginalUnit

logger = logging.getLogger(__name__)

StateListener = Callable[[str, JobState, JobState], None]

ALLOWED_TRANSITIONS: Dict[JobState, Set[JobState]] = {
    JobState.PENDING: {JobState.STREAMING, JobState.CANCELLED},
    JobState.STREAMING: {
        JobState.COMPLETED,
        JobState.ERROR,
        JobState.CANCELLED,
        JobState.TIMEOUT,
    },
    JobState.TIMEOUT: {JobState.COMPLETED, JobState.ERROR, JobState.CANCELLED},
    JobState.COMPLETED: set(),
    JobState.CANCELLED: set(),
    JobState.ERROR: set(),
}

ACCEPTS_RESULTS = frozenset({JobState.STREAMING, JobState.TIMEOUT})


@dataclass
class TranslationJob:
    """A single translation request and everything derived from it."""

    id: str
    units: List[OriginalUnit]
    segments: List[ExpandedSegment]
    batches: List[Batch]
    surface: Optional[str] = None
    state: JobState = JobState.PENDING
    translated_segments: Dict[int, str] = field(default_factory=dict)
    failed_segments: Set[int] = field(default_factory=set)
    has_errors: bool = False
    error: Optional[RethreadError] = None
    created_at: datetime = field(default_factory=datetime.now)
    last_progress_at: float = field(default_factory=time.monotonic)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def texts_to_translate(self) -> List[str]:
        return [unit.raw_text for unit in self.units]

    @property
    def origin_map(self) -> List[tuple[int, int, bool]]:
        """(original_index, line_index, is_empty_line) per segment."""

        return [
            (segment.original_index, segment.line_index, segment.is_empty_line)
            for segment in self.segments
        ]

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_event.is_set()


class JobRegistry:
    """Owns translation jobs and mediates every state change.

    Transitions follow ``ALLOWED_TRANSITIONS``; anything else is a logged
    no-op. Only one job may be active per surface at a time.
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, TranslationJob] = {}
        self.state_listeners: List[StateListener] = []

    def create_job(
        self,
        units: Sequence[OriginalUnit],
        segments: Sequence[ExpandedSegment],
        batches: Sequence[Batch],
        *,
        surface: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> TranslationJob:
        if surface is not None and self.in_progress(surface):
            raise JobAdmissionError(
                f"A translation is already in progress for surface '{surface}'."
            )
        job = TranslationJob(
            id=job_id or uuid.uuid4().hex,
            units=list(units),
            segments=list(segments),
            batches=list(batches),
            surface=surface,
        )
        if job.id in self._jobs:
            raise JobAdmissionError(f"Job id '{job.id}' is already registered.")
        self._jobs[job.id] = job
        logger.debug(
            "Created job %s (%d units, %d segments, %d batches).",
            job.id,
            len(job.units),
            len(job.segments),
            len(job.batches),
        )
        return job

    def get(self, job_id: str) -> Optional[TranslationJob]:
        return self._jobs.get(job_id)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)

    def active_jobs(self, surface: Optional[str] = None) -> List[TranslationJob]:
        return [
            job
            for job in self._jobs.values()
            if job.state.is_active and (surface is None or job.surface == surface)
        ]

    def in_progress(self, surface: Optional[str] = None) -> bool:
        """Advisory "translation in progress" indicator."""

        return bool(self.active_jobs(surface))

    def transition(self, job_id: str, new_state: JobState) -> bool:
        job = self._jobs.get(job_id)
        if job is None:
            logger.debug("Ignoring transition to %s for unknown job %s.", new_state.value, job_id)
            return False
        old_state = job.state
        if new_state not in ALLOWED_TRANSITIONS[old_state]:
            logger.debug(
                "Ignoring transition %s -> %s for job %s.",
                old_state.value,
                new_state.value,
                job_id,
            )
            return False
        job.state = new_state
        logger.debug("Job %s: %s -> %s.", job_id, old_state.value, new_state.value)
        self._notify(job_id, old_state, new_state)
        return True

    def cancel(self, job_id: str) -> bool:
        """Raise the job's cancellation flag and move it to cancelled."""

        job = self._jobs.get(job_id)
        if job is None:
            return False
        job.cancel_event.set()
        return self.transition(job_id, JobState.CANCELLED)

    def cancel_all(self, surface: Optional[str] = None) -> List[str]:
        cancelled = []
        for job in self.active_jobs(surface):
            if self.cancel(job.id):
                cancelled.append(job.id)
        return cancelled

    def fail(self, job_id: str, error: RethreadError) -> bool:
        job = self._jobs.get(job_id)
        if job is None:
            return False
        if not self.transition(job_id, JobState.ERROR):
            return False
        job.has_errors = True
        job.error = error
        return True

    def record_segments(self, job_id: str, translations: Mapping[int, str]) -> bool:
        """Store segment results; dropped unless the job still accepts results."""

        job = self._jobs.get(job_id)
        if job is None:
            logger.debug("Dropping results for unknown job %s.", job_id)
            return False
        if job.state not in ACCEPTS_RESULTS or job.is_cancelled:
            logger.debug("Dropping late results for %s job %s.", job.state.value, job_id)
            return False
        job.translated_segments.update(translations)
        job.last_progress_at = time.monotonic()
        return True

    def mark_failed_segments(self, job_id: str, indices: Sequence[int]) -> None:
        job = self._jobs.get(job_id)
        if job is None:
            return
        job.failed_segments.update(indices)
        job.has_errors = True

    def evict(self, job_id: str) -> Optional[TranslationJob]:
        """Remove a job once it has reached a final state."""

        job = self._jobs.get(job_id)
        if job is None:
            return None
        if not job.state.is_final:
            logger.debug("Refusing to evict %s job %s.", job.state.value, job_id)
            return None
        return self._jobs.pop(job_id)

    def _notify(self, job_id: str, old_state: JobState, new_state: JobState) -> None:
        for listener in list(self.state_listeners):
            try:
                listener(job_id, old_state, new_state)
            except Exception:
                logger.exception("Job state listener failed for job %s.", job_id)
