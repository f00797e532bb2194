"""Sequential batch dispatch with streaming updates, fallback and cancellation."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Union

from .errors import (
    BackendError,
    ErrorCategory,
    HostInvalidated,
    RethreadError,
    TranslationTimeoutError,
    UserCancelled,
)
from .policy import FailurePolicy
from .providers import TranslationProvider
from .reassembler import Reassembler
from .registry import JobRegistry, TranslationJob
from .structures import (
    Batch,
    CancellationSource,
    ExpandedSegment,
    JobState,
    ReassembledTranslation,
    StreamUpdate,
)

logger = logging.getLogger(__name__)

StreamListener = Callable[[StreamUpdate], Union[None, Awaitable[None]]]


def align_results(raw: Any, originals: Sequence[str]) -> List[str]:
    """Line a backend response up with the texts that were submitted.

    Items may be plain strings or ``{"id": ..., "text": ...}`` objects. When
    every item carries an id the list is ordered by id. A count mismatch is
    recovered positionally: extras are dropped, missing entries fall back to
    the original text.
    """

    if not isinstance(raw, list) or not raw:
        raise BackendError(
            "Backend response empty or not a list.",
            category=ErrorCategory.MALFORMED_RESPONSE,
        )

    items: List[tuple[Optional[int], str]] = []
    for item in raw:
        if isinstance(item, str):
            items.append((None, item))
            continue
        if not isinstance(item, dict):
            raise BackendError(
                "Backend response malformed: expected strings or objects.",
                category=ErrorCategory.MALFORMED_RESPONSE,
            )
        text = item.get("text", item.get("translated"))
        if not isinstance(text, str):
            raise BackendError(
                "Backend response malformed: item without text.",
                category=ErrorCategory.MALFORMED_RESPONSE,
            )
        try:
            item_id: Optional[int] = int(item["id"])
        except (KeyError, TypeError, ValueError):
            item_id = None
        items.append((item_id, text))

    if all(item_id is not None for item_id, _ in items):
        items.sort(key=lambda pair: pair[0])

    texts = [text for _, text in items]
    if len(texts) != len(originals):
        logger.warning(
            "Backend returned %d items for %d texts; recovering by position.",
            len(texts),
            len(originals),
        )
        texts = texts[: len(originals)]
        texts.extend(originals[len(texts):])
    # An empty answer for a non-empty text keeps the source text.
    return [text or original for text, original in zip(texts, originals)]


def _discard_result(task: "asyncio.Future[Any]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Discarded failure of an abandoned backend call: %s", exc)
    else:
        logger.debug("Discarded result of an abandoned backend call.")


@dataclass
class JobOutcome:
    """What a coordinated job ended with."""

    job_id: str
    state: JobState
    translations: ReassembledTranslation
    updates: List[StreamUpdate] = field(default_factory=list)
    failed_segments: List[int] = field(default_factory=list)
    error: Optional[RethreadError] = None
    cancellation: Optional[RethreadError] = None


class StreamingCoordinator:
    """Drives one job's batches against a backend, strictly in order.

    Every completed batch (or fallback item) is recorded in the registry and
    announced to the stream listeners. Waiting on the backend is a polling loop
    that watches the cancellation flags, the host probe, the per-call deadline
    and the job's no-progress window.
    """

    def __init__(
        self,
        registry: JobRegistry,
        provider: TranslationProvider,
        *,
        target_language: str,
        source_language: Optional[str] = None,
        mode: str = "standard",
        batch_timeout_base: float = 20.0,
        batch_timeout_per_segment: float = 2.0,
        batch_timeout_max: float = 120.0,
        fallback_delay: float = 3.0,
        fallback_timeout: float = 8.0,
        no_progress_timeout: Optional[float] = 60.0,
        poll_interval: float = 0.05,
        policy: Optional[FailurePolicy] = None,
        cancellation: Optional[CancellationSource] = None,
        listeners: Sequence[StreamListener] = (),
    ) -> None:
        self.registry = registry
        self.provider = provider
        self.target_language = target_language
        self.source_language = source_language
        self.mode = mode
        self.batch_timeout_base = batch_timeout_base
        self.batch_timeout_per_segment = batch_timeout_per_segment
        self.batch_timeout_max = batch_timeout_max
        self.fallback_delay = fallback_delay
        self.fallback_timeout = fallback_timeout
        self.no_progress_timeout = no_progress_timeout
        self.poll_interval = poll_interval
        self.policy = policy or FailurePolicy()
        self.cancellation = cancellation or CancellationSource()
        self.listeners: List[StreamListener] = list(listeners)

    def batch_timeout(self, size: int) -> float:
        return min(
            self.batch_timeout_base + self.batch_timeout_per_segment * size,
            self.batch_timeout_max,
        )

    async def run(self, job: TranslationJob) -> JobOutcome:
        updates: List[StreamUpdate] = []
        reassembler = Reassembler(job.units, job.segments)

        reason = self._cancellation_reason(job)
        if reason is not None:
            return self._cancelled(job, reason, reassembler, updates)
        if not self.registry.transition(job.id, JobState.STREAMING):
            return self._cancelled(
                job, UserCancelled("Translation cancelled before it started."), reassembler, updates
            )
        job.last_progress_at = time.monotonic()

        try:
            for batch in job.batches:
                reason = self._cancellation_reason(job)
                if reason is not None:
                    raise reason
                await self._process_batch(job, batch, updates)
        except (UserCancelled, HostInvalidated) as exc:
            return self._cancelled(job, exc, reassembler, updates)
        except RethreadError as exc:
            self.registry.fail(job.id, exc)
            self.policy.report(exc)
            return JobOutcome(
                job_id=job.id,
                state=job.state,
                translations=reassembler.reassemble(job.translated_segments),
                updates=updates,
                failed_segments=sorted(job.failed_segments),
                error=exc,
            )
        except Exception as exc:
            # Only final jobs can be evicted.
            self.registry.fail(job.id, RethreadError(f"Unexpected failure: {exc}"))
            logger.exception("Job %s stopped by an unexpected error.", job.id)
            raise

        if not self.registry.transition(job.id, JobState.COMPLETED):
            return self._cancelled(
                job, UserCancelled("Translation cancelled."), reassembler, updates
            )
        logger.info(
            "Job %s completed: %d segments in %d batches.",
            job.id,
            len(job.segments),
            len(job.batches),
        )
        return JobOutcome(
            job_id=job.id,
            state=job.state,
            translations=reassembler.reassemble(job.translated_segments),
            updates=updates,
            failed_segments=sorted(job.failed_segments),
        )

    async def _process_batch(
        self,
        job: TranslationJob,
        batch: Batch,
        updates: List[StreamUpdate],
    ) -> None:
        segments = batch.translatable
        if not segments:
            await self._commit(job, batch, [], [], updates)
            return

        texts = [segment.text for segment in segments]
        try:
            raw = await self._await_with_cancellation(
                job,
                self.provider.translate_batch(
                    texts,
                    source_language=self.source_language,
                    target_language=self.target_language,
                    mode=self.mode,
                ),
                timeout=self.batch_timeout(len(texts)),
                label=f"Batch {batch.batch_index}",
            )
            translated = align_results(raw, texts)
        except (UserCancelled, HostInvalidated):
            raise
        except Exception as exc:
            error = exc if isinstance(exc, RethreadError) else BackendError(str(exc))
            if len(segments) < 2:
                await self._unrecoverable(job, batch, segments, error, updates)
                return
            logger.warning(
                "Batch %d of job %s failed (%s); translating its %d segments one by one.",
                batch.batch_index,
                job.id,
                error,
                len(segments),
            )
            await self._fallback(job, batch, segments, updates)
            return

        await self._commit(job, batch, segments, translated, updates)

    async def _fallback(
        self,
        job: TranslationJob,
        batch: Batch,
        segments: Sequence[ExpandedSegment],
        updates: List[StreamUpdate],
    ) -> None:
        for position, segment in enumerate(segments):
            if position > 0:
                await self._sleep_with_cancellation(job, self.fallback_delay)
            else:
                reason = self._cancellation_reason(job)
                if reason is not None:
                    raise reason
            try:
                raw = await self._await_with_cancellation(
                    job,
                    self.provider.translate_batch(
                        [segment.text],
                        source_language=self.source_language,
                        target_language=self.target_language,
                        mode=self.mode,
                    ),
                    timeout=self.fallback_timeout,
                    label=f"Fallback item {position} of batch {batch.batch_index}",
                )
                translated = align_results(raw, [segment.text])
            except (UserCancelled, HostInvalidated):
                raise
            except Exception as exc:
                error = exc if isinstance(exc, RethreadError) else BackendError(str(exc))
                await self._unrecoverable(job, batch, [segment], error, updates, item_index=position)
                continue
            await self._commit(job, batch, [segment], translated, updates, item_index=position)

    async def _commit(
        self,
        job: TranslationJob,
        batch: Batch,
        segments: Sequence[ExpandedSegment],
        translated: Sequence[str],
        updates: List[StreamUpdate],
        item_index: Optional[int] = None,
    ) -> None:
        mapping = {segment.index: text for segment, text in zip(segments, translated)}
        if not self.registry.record_segments(job.id, mapping):
            reason = self._cancellation_reason(job)
            raise reason or UserCancelled("Translation cancelled.")
        self.policy.record_success()
        await self._emit(
            job,
            StreamUpdate(
                job_id=job.id,
                batch_index=batch.batch_index,
                success=True,
                translated_texts=list(translated),
                original_texts=[segment.text for segment in segments],
                segment_indices=[segment.index for segment in segments],
                item_index=item_index,
            ),
            updates,
        )

    async def _unrecoverable(
        self,
        job: TranslationJob,
        batch: Batch,
        segments: Sequence[ExpandedSegment],
        error: RethreadError,
        updates: List[StreamUpdate],
        item_index: Optional[int] = None,
    ) -> None:
        where = f"batch {batch.batch_index}"
        if item_index is not None:
            where = f"item {item_index} of {where}"
        action = self.policy.handle_failure(
            error.category,
            f"Could not translate {where}: {error}",
        )
        indices = [segment.index for segment in segments]
        await self._emit(
            job,
            StreamUpdate(
                job_id=job.id,
                batch_index=batch.batch_index,
                success=False,
                original_texts=[segment.text for segment in segments],
                segment_indices=indices,
                error=error,
                item_index=item_index,
            ),
            updates,
        )
        self.registry.mark_failed_segments(job.id, indices)
        if action == "abort":
            raise error

    async def _emit(
        self,
        job: TranslationJob,
        update: StreamUpdate,
        updates: List[StreamUpdate],
    ) -> None:
        updates.append(update)
        job.last_progress_at = time.monotonic()
        for listener in list(self.listeners):
            try:
                result = listener(update)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Stream listener failed for job %s.", job.id)

    async def _await_with_cancellation(
        self,
        job: TranslationJob,
        call: Awaitable[Any],
        *,
        timeout: float,
        label: str,
    ) -> Any:
        loop = asyncio.get_running_loop()
        task = asyncio.ensure_future(call)
        deadline = loop.time() + timeout
        try:
            while True:
                done, _ = await asyncio.wait({task}, timeout=self.poll_interval)
                if task in done:
                    return task.result()
                reason = self._cancellation_reason(job)
                if reason is not None:
                    # In-flight calls are left to finish; their results are dropped.
                    task.add_done_callback(_discard_result)
                    raise reason
                self._check_progress(job)
                if loop.time() >= deadline:
                    task.cancel()
                    raise TranslationTimeoutError(
                        f"{label} did not answer within {timeout:g} seconds."
                    )
        except asyncio.CancelledError:
            task.cancel()
            raise

    async def _sleep_with_cancellation(self, job: TranslationJob, delay: float) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        while True:
            reason = self._cancellation_reason(job)
            if reason is not None:
                raise reason
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            await asyncio.sleep(min(self.poll_interval, remaining))

    def _cancellation_reason(self, job: TranslationJob) -> Optional[RethreadError]:
        try:
            host_gone = self.cancellation.host_invalidated()
            requested = self.cancellation.cancel_requested()
        except Exception as exc:
            # A caller probe that cannot answer means the host is unusable.
            logger.warning("Cancellation check for job %s failed: %s", job.id, exc)
            return HostInvalidated(f"The cancellation check failed: {exc}")
        if host_gone:
            return HostInvalidated("The hosting environment is no longer available.")
        if requested or job.is_cancelled or job.state is JobState.CANCELLED:
            return UserCancelled("Translation cancelled.")
        return None

    def _check_progress(self, job: TranslationJob) -> None:
        if self.no_progress_timeout is None or job.state is not JobState.STREAMING:
            return
        idle = time.monotonic() - job.last_progress_at
        if idle > self.no_progress_timeout:
            logger.warning(
                "Job %s made no progress for %.1f seconds; marking it timed out.",
                job.id,
                idle,
            )
            self.registry.transition(job.id, JobState.TIMEOUT)

    def _cancelled(
        self,
        job: TranslationJob,
        reason: RethreadError,
        reassembler: Reassembler,
        updates: List[StreamUpdate],
    ) -> JobOutcome:
        job.cancel_event.set()
        self.registry.transition(job.id, JobState.CANCELLED)
        self.policy.report(reason)
        return JobOutcome(
            job_id=job.id,
            state=job.state,
            translations=reassembler.reassemble(job.translated_segments),
            updates=updates,
            failed_segments=sorted(job.failed_segments),
            cancellation=reason,
        )
