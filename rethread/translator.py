"""High-level orchestration of one translation request."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .configuration import RethreadConfig, get_settings
from .coordinator import StreamingCoordinator, StreamListener
from .errors import TranslationJobError
from .matching import MatchAndApplyEngine
from .policy import FailurePolicy
from .providers import TranslationProvider
from .reassembler import Reassembler
from .registry import JobRegistry
from .segmenter import BatchPlanner, BatchStrategy, Segmenter, units_from_texts
from .structures import BufferHolder, CancellationSource, JobState, StreamUpdate, TextHolder

logger = logging.getLogger(__name__)

SELECT_ELEMENT_MODE = "select_element"


@dataclass
class TranslationSummary:
    """Report returned after a translation request finishes."""

    job_id: str
    state: JobState
    total_units: int
    total_segments: int
    total_batches: int
    translated_segments: int
    failed_segments: int
    applied_holders: int
    unmatched_holders: List[int]
    stream_updates: int
    strategy: str
    provider_name: str
    target_language: str
    source_language: Optional[str]
    elapsed_seconds: float
    translations: Dict[int, str] = field(default_factory=dict)
    error_messages: List[str] = field(default_factory=list)
    cancellation: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.state is JobState.COMPLETED


class TranslationRunner:
    """Composes segmentation, batching, dispatch, reassembly and reinsertion.

    Streaming updates are reassembled as they arrive and applied to the holders
    as non-final results; the completed job is applied once more as final.
    """

    def __init__(
        self,
        *,
        provider: TranslationProvider,
        target_language: str,
        source_language: Optional[str] = None,
        settings: Optional[RethreadConfig] = None,
        registry: Optional[JobRegistry] = None,
        strategy: Optional[str] = None,
        char_budget: Optional[int] = None,
        fail_fast: Optional[bool] = None,
        mode: str = "standard",
        cancellation: Optional[CancellationSource] = None,
    ) -> None:
        self.provider = provider
        self.target_language = target_language
        self.source_language = source_language
        self.settings = settings if settings is not None else get_settings()
        self.registry = registry if registry is not None else JobRegistry()
        self.strategy = strategy
        self.char_budget = char_budget or self.settings.RETHREAD_CHAR_BUDGET
        self.fail_fast = self.settings.RETHREAD_FAIL_FAST if fail_fast is None else fail_fast
        self.mode = mode
        self.cancellation = cancellation

    def resolve_strategy(self) -> BatchStrategy:
        if self.mode == SELECT_ELEMENT_MODE and self.char_budget:
            return BatchStrategy.CHARACTER_BUDGET
        configured = self.strategy or self.settings.RETHREAD_BATCH_STRATEGY
        return BatchStrategy.parse(configured or self.provider.preferred_strategy)

    def build_planner(self) -> BatchPlanner:
        settings = self.settings
        # Explicit settings win over the provider's own batch sizing.
        explicit = settings.model_fields_set
        optimal_size = (
            settings.RETHREAD_OPTIMAL_BATCH_SIZE
            if "RETHREAD_OPTIMAL_BATCH_SIZE" in explicit
            else self.provider.optimal_batch_size
        )
        max_complexity = (
            settings.RETHREAD_MAX_COMPLEXITY
            if "RETHREAD_MAX_COMPLEXITY" in explicit
            else self.provider.max_complexity
        )
        return BatchPlanner(
            self.resolve_strategy(),
            optimal_size=optimal_size,
            max_complexity=max_complexity,
            char_budget=self.char_budget,
            balanced=settings.RETHREAD_BALANCED_BATCHING,
        )

    def build_coordinator(
        self,
        policy: FailurePolicy,
        listeners: Sequence[StreamListener] = (),
    ) -> StreamingCoordinator:
        settings = self.settings
        return StreamingCoordinator(
            self.registry,
            self.provider,
            target_language=self.target_language,
            source_language=self.source_language,
            mode=self.mode,
            batch_timeout_base=settings.RETHREAD_BATCH_TIMEOUT_BASE,
            batch_timeout_per_segment=settings.RETHREAD_BATCH_TIMEOUT_PER_SEGMENT,
            batch_timeout_max=settings.RETHREAD_BATCH_TIMEOUT_MAX,
            fallback_delay=settings.RETHREAD_FALLBACK_DELAY,
            fallback_timeout=settings.RETHREAD_FALLBACK_TIMEOUT,
            no_progress_timeout=settings.RETHREAD_NO_PROGRESS_TIMEOUT,
            poll_interval=settings.RETHREAD_POLL_INTERVAL,
            policy=policy,
            cancellation=self.cancellation,
            listeners=listeners,
        )

    async def run(
        self,
        holders: Sequence[TextHolder],
        *,
        surface: Optional[str] = None,
        job_id: Optional[str] = None,
        listeners: Sequence[StreamListener] = (),
    ) -> TranslationSummary:
        start_time = time.time()

        units = units_from_texts(holder.current_text() for holder in holders)
        segments = Segmenter(self.settings.RETHREAD_MAX_SEGMENT_CHARS).expand(units)
        planner = self.build_planner()
        batches = planner.plan(segments)
        logger.info(
            "Prepared %d text units, %d segments, %d batches (%s).",
            len(units),
            len(segments),
            len(batches),
            planner.strategy.value,
        )

        job = self.registry.create_job(
            units, segments, batches, surface=surface, job_id=job_id
        )
        engine = MatchAndApplyEngine(
            holders, fuzzy_threshold=self.settings.RETHREAD_FUZZY_THRESHOLD
        )
        reassembler = Reassembler(units, segments)

        def apply_partial(update: StreamUpdate) -> None:
            if not update.success or not update.segment_indices:
                return
            engine.apply(
                reassembler.by_source_text(job.translated_segments, touched_only=True),
                final=False,
            )

        policy = FailurePolicy(fail_fast=self.fail_fast)
        coordinator = self.build_coordinator(policy, [apply_partial, *listeners])
        try:
            outcome = await coordinator.run(job)
        except asyncio.CancelledError:
            self.registry.cancel(job.id)
            raise
        finally:
            self.registry.evict(job.id)

        unmatched: List[int] = []
        error_messages = policy.messages
        if outcome.state is JobState.COMPLETED:
            report = engine.apply(
                reassembler.by_source_text(job.translated_segments), final=True
            )
            unmatched = report.unmatched
            error_messages.extend(
                f"Could not write the translation into holder {index}."
                for index in report.failed
            )

        summary = TranslationSummary(
            job_id=job.id,
            state=outcome.state,
            total_units=len(units),
            total_segments=len(segments),
            total_batches=len(batches),
            translated_segments=len(job.translated_segments),
            failed_segments=len(outcome.failed_segments),
            applied_holders=len(engine.applied),
            unmatched_holders=unmatched,
            stream_updates=len(outcome.updates),
            strategy=planner.strategy.value,
            provider_name=self.provider.name,
            target_language=self.target_language,
            source_language=self.source_language,
            elapsed_seconds=time.time() - start_time,
            translations=dict(outcome.translations),
            error_messages=error_messages,
            cancellation=str(outcome.cancellation) if outcome.cancellation else None,
        )

        if outcome.state is JobState.ERROR:
            error = TranslationJobError(
                f"Translation failed: {outcome.error}",
                cause=outcome.error,
                summary=summary,
            )
            error.already_handled = True
            raise error
        return summary

    async def translate_texts(self, texts: Sequence[str], **kwargs) -> TranslationSummary:
        """Translate plain strings; the summary carries the per-unit results."""

        holders = [BufferHolder(text, location=f"text {index}") for index, text in enumerate(texts)]
        return await self.run(holders, **kwargs)

    def cancel(self, job_id: str) -> bool:
        return self.registry.cancel(job_id)
