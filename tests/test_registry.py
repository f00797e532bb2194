import pytest

from rethread.errors import BackendError, JobAdmissionError
from rethread.structures import JobState


def test_new_jobs_start_pending(make_job):
    job = make_job(["a", "b"])

    assert job.state is JobState.PENDING
    assert job.texts_to_translate == ["a", "b"]
    assert job.origin_map == [(0, 0, False), (1, 0, False)]


def test_legal_transitions_follow_the_state_machine(registry, make_job):
    job = make_job(["a"])

    assert registry.transition(job.id, JobState.STREAMING)
    assert registry.transition(job.id, JobState.TIMEOUT)
    assert registry.transition(job.id, JobState.COMPLETED)
    assert job.state is JobState.COMPLETED


@pytest.mark.parametrize(
    "path",
    [
        [JobState.COMPLETED],
        [JobState.TIMEOUT],
        [JobState.STREAMING, JobState.PENDING],
        [JobState.STREAMING, JobState.STREAMING],
        [JobState.CANCELLED, JobState.STREAMING],
        [JobState.STREAMING, JobState.ERROR, JobState.COMPLETED],
    ],
)
def test_illegal_transitions_are_no_ops(registry, make_job, path):
    job = make_job(["a"])
    for state in path[:-1]:
        assert registry.transition(job.id, state)
    before = job.state

    assert registry.transition(job.id, path[-1]) is False
    assert job.state is before


def test_unknown_job_transition_is_ignored(registry):
    assert registry.transition("missing", JobState.STREAMING) is False


def test_cancel_sets_flag_and_final_state(registry, make_job):
    job = make_job(["a"])
    registry.transition(job.id, JobState.STREAMING)

    assert registry.cancel(job.id)
    assert job.is_cancelled
    assert job.state is JobState.CANCELLED
    assert registry.cancel(job.id) is False


def test_results_after_a_final_state_are_dropped(registry, make_job):
    job = make_job(["a"])
    registry.transition(job.id, JobState.STREAMING)
    assert registry.record_segments(job.id, {0: "A"})

    registry.cancel(job.id)

    assert registry.record_segments(job.id, {0: "late"}) is False
    assert job.translated_segments == {0: "A"}


def test_pending_jobs_do_not_accept_results(registry, make_job):
    job = make_job(["a"])

    assert registry.record_segments(job.id, {0: "A"}) is False


def test_timed_out_jobs_still_accept_results(registry, make_job):
    job = make_job(["a"])
    registry.transition(job.id, JobState.STREAMING)
    registry.transition(job.id, JobState.TIMEOUT)

    assert registry.record_segments(job.id, {0: "A"})


def test_fail_records_the_error(registry, make_job):
    job = make_job(["a"])
    registry.transition(job.id, JobState.STREAMING)
    error = BackendError("down")

    assert registry.fail(job.id, error)
    assert job.state is JobState.ERROR
    assert job.has_errors
    assert job.error is error


def test_one_active_job_per_surface(registry, make_job):
    first = make_job(["a"], surface="doc-1")

    with pytest.raises(JobAdmissionError):
        make_job(["b"], surface="doc-1")

    other = make_job(["c"], surface="doc-2")
    assert registry.in_progress("doc-1")
    assert registry.in_progress("doc-2")

    registry.cancel(first.id)
    assert not registry.in_progress("doc-1")
    make_job(["d"], surface="doc-1")
    assert other.state is JobState.PENDING


def test_duplicate_job_ids_are_rejected(make_job):
    make_job(["a"], job_id="fixed")

    with pytest.raises(JobAdmissionError):
        make_job(["b"], job_id="fixed")


def test_state_listeners_are_notified_and_isolated(registry, make_job, caplog):
    seen = []

    def broken(job_id, old, new):
        raise RuntimeError("listener bug")

    registry.state_listeners.extend([broken, lambda *args: seen.append(args)])
    job = make_job(["a"])

    assert registry.transition(job.id, JobState.STREAMING)
    assert seen == [(job.id, JobState.PENDING, JobState.STREAMING)]
    assert "Job state listener failed" in caplog.text


def test_only_final_jobs_are_evicted(registry, make_job):
    job = make_job(["a"])

    assert registry.evict(job.id) is None
    assert job.id in registry

    registry.cancel(job.id)
    assert registry.evict(job.id) is job
    assert job.id not in registry
    assert len(registry) == 0


def test_cancel_all_is_scoped_to_a_surface(registry, make_job):
    first = make_job(["a"], surface="doc-1")
    second = make_job(["b"], surface="doc-2")
    registry.transition(second.id, JobState.STREAMING)

    assert registry.cancel_all("doc-1") == [first.id]
    assert first.state is JobState.CANCELLED
    assert second.state is JobState.STREAMING

    assert registry.cancel_all() == [second.id]
    assert not registry.in_progress()
