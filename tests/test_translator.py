import pytest

from rethread.configuration import RethreadConfig
from rethread.errors import BackendError, JobAdmissionError, TranslationJobError
from rethread.providers import EchoTranslationProvider
from rethread.registry import JobRegistry
from rethread.segmenter import BatchStrategy, Segmenter, units_from_texts
from rethread.structures import BufferHolder, CancellationSource, JobState
from rethread.translator import TranslationRunner

from .conftest import ScriptedProvider


def fixed_settings(fast_settings, **overrides):
    values = fast_settings.model_dump(exclude_unset=True)
    values.update(
        RETHREAD_BATCH_STRATEGY="fixed",
        RETHREAD_OPTIMAL_BATCH_SIZE=1,
    )
    values.update(overrides)
    return RethreadConfig(**values)


@pytest.mark.asyncio
async def test_echo_round_trip_preserves_structure(fast_settings):
    texts = ["Hello\n\nWorld", "plain", "  padded  ", "A\n\n\n\nB"]
    holders = [BufferHolder(text) for text in texts]
    runner = TranslationRunner(
        provider=EchoTranslationProvider(), target_language="de", settings=fast_settings
    )

    summary = await runner.run(holders)

    assert summary.state is JobState.COMPLETED
    assert [holder.text for holder in holders] == ["Hello\n\nWorld", "plain", "  padded  ", "A\n\nB"]
    assert summary.translations == {0: "Hello\n\nWorld", 1: "plain", 2: "  padded  ", 3: "A\n\nB"}
    assert summary.total_units == 4
    assert summary.unmatched_holders == []
    assert summary.provider_name == "echo"


@pytest.mark.asyncio
async def test_holders_are_updated_while_streaming(fast_settings):
    holders = [BufferHolder("one"), BufferHolder("two")]
    snapshots = []
    runner = TranslationRunner(
        provider=ScriptedProvider(),
        target_language="de",
        settings=fixed_settings(fast_settings),
    )

    summary = await runner.run(
        holders, listeners=[lambda update: snapshots.append([h.text for h in holders])]
    )

    assert snapshots == [["ONE", "two"], ["ONE", "TWO"]]
    assert summary.stream_updates == 2
    assert summary.applied_holders == 2


@pytest.mark.asyncio
async def test_multiline_units_are_finalised_on_completion(fast_settings):
    holders = [BufferHolder("first line\nsecond line")]
    snapshots = []
    runner = TranslationRunner(
        provider=ScriptedProvider(),
        target_language="de",
        settings=fixed_settings(fast_settings),
    )

    await runner.run(holders, listeners=[lambda update: snapshots.append(holders[0].text)])

    # The second streaming pass is no richer than the first, so it waits for the final one.
    assert snapshots == ["FIRST LINE\nsecond line", "FIRST LINE\nsecond line"]
    assert holders[0].text == "FIRST LINE\nSECOND LINE"


@pytest.mark.asyncio
async def test_failed_job_raises_once_with_summary(fast_settings):
    def handler(texts, call):
        raise BackendError("service down")

    holders = [BufferHolder("a"), BufferHolder("b")]
    registry = JobRegistry()
    runner = TranslationRunner(
        provider=ScriptedProvider(handler),
        target_language="de",
        settings=fixed_settings(fast_settings),
        registry=registry,
    )

    with pytest.raises(TranslationJobError) as excinfo:
        await runner.run(holders)

    error = excinfo.value
    assert error.already_handled
    assert isinstance(error.cause, BackendError)
    assert error.summary.state is JobState.ERROR
    assert error.summary.error_messages
    assert [holder.text for holder in holders] == ["a", "b"]
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_skip_mode_completes_and_leaves_failed_units(fast_settings):
    def handler(texts, call):
        if texts == ["b"]:
            raise BackendError("rejected")
        return [text.upper() for text in texts]

    holders = [BufferHolder("a"), BufferHolder("b"), BufferHolder("c")]
    runner = TranslationRunner(
        provider=ScriptedProvider(handler),
        target_language="de",
        settings=fixed_settings(fast_settings),
        fail_fast=False,
    )

    summary = await runner.run(holders)

    assert summary.state is JobState.COMPLETED
    assert summary.failed_segments == 1
    assert [holder.text for holder in holders] == ["A", "b", "C"]


@pytest.mark.asyncio
async def test_cancelled_job_returns_summary_without_raising(fast_settings):
    holders = [BufferHolder("one"), BufferHolder("two"), BufferHolder("three")]
    runner = TranslationRunner(
        provider=ScriptedProvider(),
        target_language="de",
        settings=fixed_settings(fast_settings),
    )

    summary = await runner.run(
        holders, listeners=[lambda update: runner.cancel(update.job_id)]
    )

    assert summary.state is JobState.CANCELLED
    assert summary.cancellation == "Translation cancelled."
    assert [holder.text for holder in holders] == ["ONE", "two", "three"]


@pytest.mark.asyncio
async def test_surface_admission_is_enforced(fast_settings):
    registry = JobRegistry()
    units = units_from_texts(["busy"])
    registry.create_job(units, Segmenter().expand(units), [], surface="page")
    runner = TranslationRunner(
        provider=EchoTranslationProvider(),
        target_language="de",
        settings=fast_settings,
        registry=registry,
    )

    with pytest.raises(JobAdmissionError):
        await runner.run([BufferHolder("x")], surface="page")

    summary = await runner.run([BufferHolder("x")], surface="other")
    assert summary.completed


@pytest.mark.asyncio
async def test_translate_texts_returns_unit_translations(fast_settings):
    runner = TranslationRunner(
        provider=ScriptedProvider(), target_language="de", settings=fast_settings
    )

    summary = await runner.translate_texts(["x\ny", "z"])

    assert summary.translations == {0: "X\nY", 1: "Z"}


@pytest.mark.asyncio
async def test_mode_is_passed_to_the_provider(fast_settings):
    provider = ScriptedProvider()
    runner = TranslationRunner(
        provider=provider, target_language="de", settings=fast_settings, mode="select_element"
    )

    await runner.translate_texts(["x"])

    assert provider.modes == ["select_element"]


def test_strategy_resolution(fast_settings):
    provider = ScriptedProvider(preferred_strategy="single")

    def resolve(**kwargs):
        return TranslationRunner(
            provider=provider, target_language="de", settings=fast_settings, **kwargs
        ).resolve_strategy()

    assert resolve() is BatchStrategy.SINGLE
    assert resolve(strategy="fixed") is BatchStrategy.FIXED
    assert resolve(mode="select_element", char_budget=500) is BatchStrategy.CHARACTER_BUDGET
    assert resolve(mode="select_element") is BatchStrategy.SINGLE


def test_batch_sizing_prefers_explicit_settings(fast_settings):
    provider = ScriptedProvider()
    provider.optimal_batch_size = 7

    implicit = TranslationRunner(provider=provider, target_language="de", settings=fast_settings)
    explicit = TranslationRunner(
        provider=provider,
        target_language="de",
        settings=fixed_settings(fast_settings, RETHREAD_OPTIMAL_BATCH_SIZE=5),
    )

    assert implicit.build_planner().optimal_size == 7
    assert explicit.build_planner().optimal_size == 5


@pytest.mark.asyncio
async def test_broken_cancellation_check_does_not_block_the_surface(fast_settings):
    checks = []

    def probe():
        checks.append(True)
        if len(checks) > 1:
            raise RuntimeError("probe failed")
        return False

    registry = JobRegistry()
    runner = TranslationRunner(
        provider=ScriptedProvider(),
        target_language="de",
        settings=fast_settings,
        registry=registry,
        cancellation=CancellationSource(probe=probe),
    )

    summary = await runner.run([BufferHolder("x")], surface="s")

    assert summary.state is JobState.CANCELLED
    assert len(registry) == 0

    retry = TranslationRunner(
        provider=ScriptedProvider(), target_language="de", settings=fast_settings, registry=registry
    )
    assert (await retry.run([BufferHolder("x")], surface="s")).completed
