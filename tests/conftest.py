"""Shared fixtures and fakes for the rethread test-suite."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, List, Optional, Sequence

import pytest

from rethread.configuration import RethreadConfig
from rethread.providers import TranslationProvider
from rethread.registry import JobRegistry
from rethread.segmenter import BatchPlanner, Segmenter, units_from_texts


def upper_items(texts: Sequence[str], call: int) -> List[Any]:
    return [{"id": index, "text": text.upper()} for index, text in enumerate(texts)]


class ScriptedProvider(TranslationProvider):
    """Backend fake driven by a handler ``(texts, call_number) -> items``.

    The handler may raise to simulate backend failures. ``delay`` (a number or
    a callable of the texts) makes the call slow.
    """

    name = "scripted"

    def __init__(
        self,
        handler: Callable[[Sequence[str], int], Any] = upper_items,
        *,
        delay: float | Callable[[Sequence[str]], float] = 0.0,
        preferred_strategy: str = "smart",
    ) -> None:
        self.handler = handler
        self.delay = delay
        self.preferred_strategy = preferred_strategy
        self.calls: List[List[str]] = []
        self.modes: List[str] = []

    async def translate_batch(
        self,
        texts: Sequence[str],
        *,
        source_language: Optional[str],
        target_language: str,
        mode: str = "standard",
    ) -> List[Any]:
        call = len(self.calls)
        self.calls.append(list(texts))
        self.modes.append(mode)
        delay = self.delay(texts) if callable(self.delay) else self.delay
        if delay:
            await asyncio.sleep(delay)
        return self.handler(list(texts), call)


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def fast_settings() -> RethreadConfig:
    """Settings with timings shrunk for tests."""

    return RethreadConfig(
        RETHREAD_POLL_INTERVAL=0.005,
        RETHREAD_FALLBACK_DELAY=0,
        RETHREAD_FALLBACK_TIMEOUT=1.0,
        RETHREAD_BATCH_TIMEOUT_BASE=2.0,
        RETHREAD_BATCH_TIMEOUT_PER_SEGMENT=0,
        RETHREAD_NO_PROGRESS_TIMEOUT=5.0,
    )


@pytest.fixture
def registry() -> JobRegistry:
    return JobRegistry()


@pytest.fixture
def make_job(registry: JobRegistry):
    """Build a registered job from raw texts and a batch planner."""

    def factory(texts: Sequence[str], planner: Optional[BatchPlanner] = None, **kwargs):
        units = units_from_texts(texts)
        segments = Segmenter().expand(units)
        batches = (planner or BatchPlanner("fixed", optimal_size=1)).plan(segments)
        return registry.create_job(units, segments, batches, **kwargs)

    return factory
