import threading

import pytest

from neverending.errors import InvalidTransitionError, TransientProviderError, WorkNotFoundError
from neverending.models import Chapter, Checkpoint, FeatureFlags, Lifecycle, Step
from neverending.state_machine import WorkStateMachine

TIMEOUT = 10


class StubPipeline:
    """Records batches instead of generating; can hold a batch open until released."""

    def __init__(self, error: Exception = None):
        self.calls = []
        self.release = threading.Event()
        self.release.set()
        self.error = error
        self._lock = threading.Lock()

    def run_batch(self, work_id, start, end, correction_text, flags, preference_text="", progress=None):
        with self._lock:
            self.calls.append(
                {"work_id": work_id, "start": start, "end": end, "corrections": correction_text, "flags": flags}
            )
        progress(work_id, start)
        self.release.wait(TIMEOUT)
        if self.error:
            raise self.error


@pytest.fixture
def stub():
    return StubPipeline()


@pytest.fixture
def stub_machine(store, stub):
    return WorkStateMachine(store, stub)


def _move_to(store, work_id, step):
    current = store.get_work(work_id).progress
    store.compare_and_set_progress(work_id, current.version, current.model_copy(update={"step": step}))


def test_full_lifecycle(machine, store, make_work, backend):
    make_work("w1")

    status = machine.trigger_initial("w1")
    assert status.step in (Step.GENERATING_1_3, Step.AWAITING_CHAPTER_2)
    assert machine.wait("w1", TIMEOUT)

    status = machine.get_status("w1")
    assert status.step is Step.AWAITING_CHAPTER_2
    assert status.checkpoint is Checkpoint.CHAPTER_2
    assert status.chapters_generated == 3

    for checkpoint in ("chapter_2", "chapter_5", "chapter_8"):
        machine.submit_feedback("w1", checkpoint, "slow", "right", "love")
        assert machine.wait("w1", TIMEOUT)

    status = machine.get_status("w1")
    assert status.step is Step.COMPLETE
    assert status.lifecycle is Lifecycle.COMPLETE
    assert status.chapters_generated == 12
    assert store.chapter_numbers("w1") == list(range(1, 13))
    assert len(store.list_feedback("w1")) == 3

    # Chapter 4 onward is written under the reader's corrections
    fourth = [c.prompt for c in backend.calls_for("write") if "Write chapter 4 in full" in c.prompt][0]
    assert "## Reader Course Corrections" in fourth
    assert "PACING (slow)" in fourth


def test_repeated_initial_trigger_starts_one_batch(machine, make_work, backend):
    make_work("w1")
    machine.trigger_initial("w1")
    machine.trigger_initial("w1")
    assert machine.wait("w1", TIMEOUT)
    machine.trigger_initial("w1")

    assert machine.get_status("w1").step is Step.AWAITING_CHAPTER_2
    assert len(backend.calls_for("write")) == 3


def test_retried_feedback_starts_exactly_one_batch(machine, make_work, backend):
    make_work("w1")
    machine.trigger_initial("w1")
    machine.wait("w1", TIMEOUT)

    for _ in range(3):
        machine.submit_feedback("w1", Checkpoint.CHAPTER_2, "hooked", "right", "love")
    assert machine.wait("w1", TIMEOUT)

    assert machine.get_status("w1").step is Step.AWAITING_CHAPTER_5
    assert len(backend.calls_for("write")) == 6


def test_concurrent_feedback_has_one_winner(stub_machine, stub, store, make_work):
    make_work("w1")
    _move_to(store, "w1", Step.AWAITING_CHAPTER_2)
    stub.release.clear()
    barrier = threading.Barrier(6)
    errors = []

    def submit():
        barrier.wait()
        try:
            stub_machine.submit_feedback("w1", "chapter_2", "fast", "light", "warming")
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=submit) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    stub.release.set()
    assert stub_machine.wait("w1", TIMEOUT)

    assert errors == []
    assert [(c["start"], c["end"]) for c in stub.calls] == [(4, 6)]
    assert store.get_work("w1").progress.step is Step.AWAITING_CHAPTER_5


def test_losing_feedback_does_not_overwrite_the_winner(stub_machine, stub, store, make_work):
    make_work("w1")
    _move_to(store, "w1", Step.AWAITING_CHAPTER_2)
    stub.release.clear()
    barrier = threading.Barrier(6)

    def submit(i):
        barrier.wait()
        stub_machine.submit_feedback("w1", "chapter_2", "slow", "right", "love", notes=f"note {i}")

    threads = [threading.Thread(target=submit, args=(i,)) for i in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    stub.release.set()
    assert stub_machine.wait("w1", TIMEOUT)

    (batch,) = stub.calls
    stored = store.get_feedback("w1", Checkpoint.CHAPTER_2)
    assert f'reader note: "{stored.notes}"' in batch["corrections"]
    assert len(store.list_feedback("w1")) == 1


def test_feedback_for_unreached_checkpoint_is_rejected(stub_machine, make_work):
    make_work("w1")
    with pytest.raises(InvalidTransitionError):
        stub_machine.submit_feedback("w1", "chapter_2", "slow", "right", "love")
    stub_machine.trigger_initial("w1")
    stub_machine.wait("w1", TIMEOUT)
    with pytest.raises(InvalidTransitionError):
        stub_machine.submit_feedback("w1", "chapter_5", "slow", "right", "love")


def test_invalid_feedback_values_rejected(stub_machine, make_work):
    make_work("w1")
    with pytest.raises(ValueError):
        stub_machine.submit_feedback("w1", "chapter_2", "glacial", "right", "love")


def test_status_reports_progress_inside_batch(stub_machine, stub, make_work):
    make_work("w1")
    stub.release.clear()
    stub_machine.trigger_initial("w1")

    # The stub reports chapter 1 and then holds the batch open
    for _ in range(100):
        if stub_machine.get_status("w1").chapters_generated:
            break
        threading.Event().wait(0.01)
    status = stub_machine.get_status("w1")
    assert status.step is Step.GENERATING_1_3
    assert (status.batch_start, status.batch_end) == (1, 3)
    assert status.chapters_completed_in_batch == 1
    assert status.lifecycle is Lifecycle.ACTIVE

    stub.release.set()
    assert stub_machine.wait("w1", TIMEOUT)


def test_corrections_compiled_once_per_batch_from_flags(store, make_work):
    stub = StubPipeline()
    machine = WorkStateMachine(store, stub)
    make_work("on")
    make_work("off", config=FeatureFlags(course_corrections=False))
    for work_id in ("on", "off"):
        _move_to(store, work_id, Step.AWAITING_CHAPTER_2)
        machine.submit_feedback(work_id, "chapter_2", "slow", "right", "love")
        machine.wait(work_id, TIMEOUT)

    by_work = {c["work_id"]: c for c in stub.calls}
    assert "PACING (slow)" in by_work["on"]["corrections"]
    assert by_work["off"]["corrections"] == ""
    assert by_work["off"]["flags"].course_corrections is False


def test_exhausted_retries_fail_the_work(machine, store, make_work, backend):
    make_work("w1")
    backend.queue("write", *[TransientProviderError("rate limited")] * 3)

    machine.trigger_initial("w1")
    assert machine.wait("w1", TIMEOUT)

    status = machine.get_status("w1")
    assert status.step is Step.FAILED
    assert status.lifecycle is Lifecycle.FAILED
    assert "retries exhausted" in status.failure_reason
    assert store.chapter_numbers("w1") == []
    # Late feedback on a failed work is answered with its status
    assert machine.submit_feedback("w1", "chapter_2", "slow", "right", "love").step is Step.FAILED


def test_unexpected_error_fails_the_work(store, make_work):
    machine = WorkStateMachine(store, StubPipeline(error=KeyError("boom")))
    make_work("w1")
    machine.trigger_initial("w1")
    machine.wait("w1", TIMEOUT)

    status = machine.get_status("w1")
    assert status.step is Step.FAILED
    assert status.failure_reason.startswith("KeyError")


def test_resume_interrupted_continues_at_next_missing_chapter(machine, store, make_work, backend):
    make_work("w1")
    make_work("idle")
    _move_to(store, "w1", Step.GENERATING_1_3)
    store.insert_chapter(Chapter(work_id="w1", number=1, content="Survived the restart."))

    assert machine.resume_interrupted() == ["w1"]
    assert machine.wait("w1", TIMEOUT)

    assert machine.get_status("w1").step is Step.AWAITING_CHAPTER_2
    assert store.chapter_numbers("w1") == [1, 2, 3]
    assert store.get_chapter("w1", 1).content == "Survived the restart."
    assert len(backend.calls_for("write")) == 2
    assert store.get_work("idle").progress.step is Step.OUTLINE_PENDING


def test_create_work_and_missing_work(stub_machine):
    work = stub_machine.create_work("A lighthouse keeper finds a letter.", title="Letters")
    status = stub_machine.get_status(work.id)
    assert status.step is Step.OUTLINE_PENDING
    assert status.batch_start is None
    with pytest.raises(WorkNotFoundError):
        stub_machine.get_status("missing")
    with pytest.raises(WorkNotFoundError):
        stub_machine.trigger_initial("missing")
