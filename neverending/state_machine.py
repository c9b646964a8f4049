"""
Work state machine: guarded step transitions and background batch launching.

Every step change is a compare-and-set on the work's progress version, so two
concurrent triggers for the same transition resolve to exactly one winner and
exactly one batch. The loser gets the current status back.
"""

import threading
import uuid
from typing import Callable, Optional

from loguru import logger

from .config import Config
from .corrections import compile_course_corrections
from .errors import FatalBatchError, InvalidTransitionError
from .generation import GenerationBackend, GenerationClient
from .models import (
    BatchPlan,
    CharacterConnection,
    CharacterProfile,
    Checkpoint,
    FeatureFlags,
    FeedbackCheckpoint,
    OutlineEntry,
    Pacing,
    Step,
    Tone,
    Work,
    WorkProgress,
    WorkStatus,
)
from .models.progress import (
    AWAITING_STEPS,
    batch_after,
    batch_for_step,
    checkpoint_for_step,
    has_passed,
    utcnow,
)
from .pipeline import BatchPipeline
from .preferences import preference_text
from .store import WorkStore

PROGRESS_WRITE_ATTEMPTS = 10


class WorkStateMachine:
    def __init__(self, store: WorkStore, pipeline: BatchPipeline):
        self.store = store
        self.pipeline = pipeline
        self._threads: dict[str, threading.Thread] = {}
        self._threads_lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: Config,
        backends: Optional[dict[str, GenerationBackend]] = None,
        limiter: Optional[threading.BoundedSemaphore] = None,
        store: Optional[WorkStore] = None,
    ) -> "WorkStateMachine":
        store = store or WorkStore(config.store.path)
        client = GenerationClient(config.generation, backends=backends, limiter=limiter)
        return cls(store, BatchPipeline(config, client, store))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def create_work(
        self,
        premise: str,
        title: str = "",
        reader_id: Optional[str] = None,
        outline: Optional[list[OutlineEntry]] = None,
        characters: Optional[list[CharacterProfile]] = None,
        flags: Optional[FeatureFlags] = None,
        work_id: Optional[str] = None,
    ) -> Work:
        work = Work(
            id=work_id or uuid.uuid4().hex[:12],
            title=title,
            premise=premise,
            reader_id=reader_id,
            outline=outline or [],
            characters=characters or [],
            config=flags or FeatureFlags(),
        )
        self.store.create_work(work)
        logger.bind(work_id=work.id).info(f"Created work '{title or premise[:40]}'")
        return work

    def trigger_initial(self, work_id: str) -> WorkStatus:
        """Start chapters 1-3. A repeated trigger is a no-op that returns the status."""
        work = self.store.get_work(work_id)
        if work.progress.step is not Step.OUTLINE_PENDING:
            logger.bind(work_id=work_id).info(
                f"Initial trigger ignored; work is already at {work.progress.step.value}"
            )
            return self.get_status(work_id)
        self._start_next_batch(work)
        return self.get_status(work_id)

    def submit_feedback(
        self,
        work_id: str,
        checkpoint: Checkpoint | str,
        pacing: Pacing | str,
        tone: Tone | str,
        character: CharacterConnection | str,
        notes: Optional[str] = None,
    ) -> WorkStatus:
        """Record checkpoint feedback and start the next batch.

        Feedback for a checkpoint the work has already moved past is treated as
        a retry: nothing is written and the current status comes back. Feedback
        for a checkpoint the work has not reached yet is an invalid transition.
        """
        feedback = FeedbackCheckpoint(
            work_id=work_id,
            checkpoint=checkpoint,
            pacing=pacing,
            tone=tone,
            character=character,
            notes=notes,
        )
        log = logger.bind(work_id=work_id)
        work = self.store.get_work(work_id)
        awaiting = AWAITING_STEPS[feedback.checkpoint]
        step = work.progress.step

        if step is not awaiting:
            if step is Step.FAILED or has_passed(step, awaiting):
                log.info(
                    f"Feedback for {feedback.checkpoint.value} arrived at {step.value}; "
                    "treating it as a retry"
                )
                return self.get_status(work_id)
            raise InvalidTransitionError(work_id, step.value, f"feedback:{feedback.checkpoint.value}")

        if self._start_next_batch(work, before_launch=lambda: self.store.upsert_feedback(feedback)):
            log.info(
                f"Feedback at {feedback.checkpoint.value}: pacing={feedback.pacing.value}, "
                f"tone={feedback.tone.value}, character={feedback.character.value}"
            )
        return self.get_status(work_id)

    def get_status(self, work_id: str) -> WorkStatus:
        work = self.store.get_work(work_id)
        p = work.progress
        status = WorkStatus(
            work_id=work_id,
            lifecycle=work.lifecycle,
            step=p.step,
            checkpoint=checkpoint_for_step(p.step),
            chapters_generated=p.chapters_generated,
            failure_reason=p.failure_reason,
            updated_at=p.updated_at,
        )
        plan = batch_for_step(p.step)
        if plan:
            status.batch_start = plan.start
            status.batch_end = plan.end
            status.chapters_completed_in_batch = max(
                0, min(plan.end, p.chapters_generated) - (plan.start - 1)
            )
        return status

    def resume_interrupted(self) -> list[str]:
        """Relaunch batches for works left in a generating step by a restart."""
        resumed = []
        for work in self.store.list_works(steps=[s for s in Step if s.is_generating]):
            if self.is_running(work.id):
                continue
            plan = batch_for_step(work.progress.step)
            logger.bind(work_id=work.id).info(
                f"Resuming interrupted batch {plan.start}-{plan.end}"
            )
            self._launch(work.id, plan)
            resumed.append(work.id)
        return resumed

    def is_running(self, work_id: str) -> bool:
        with self._threads_lock:
            thread = self._threads.get(work_id)
        return thread is not None and thread.is_alive()

    def wait(self, work_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the work's in-flight batch ends. True if none is running afterwards."""
        with self._threads_lock:
            thread = self._threads.get(work_id)
        if thread is not None:
            thread.join(timeout)
        return not self.is_running(work_id)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def _start_next_batch(
        self, work: Work, before_launch: Optional[Callable[[], object]] = None
    ) -> bool:
        """Claim the next batch with a compare-and-set and launch it. False if another request won."""
        plan = batch_after(work.progress.step)
        new = work.progress.advance(work.id, plan.step)
        written = self.store.compare_and_set_progress(work.id, work.progress.version, new)
        log = logger.bind(work_id=work.id)
        if written is None:
            log.info(f"Transition to {plan.step.value} already taken by another request")
            return False
        log.info(f"{work.progress.step.value} -> {plan.step.value}")
        work.progress = written
        if before_launch is not None:
            before_launch()
        self._launch(work.id, plan)
        return True

    def _update_progress(
        self, work_id: str, mutate: Callable[[WorkProgress], Optional[WorkProgress]]
    ) -> Optional[WorkProgress]:
        """Re-read, mutate and compare-and-set until the write lands."""
        for _ in range(PROGRESS_WRITE_ATTEMPTS):
            current = self.store.get_work(work_id).progress
            new = mutate(current)
            if new is None:
                return None
            written = self.store.compare_and_set_progress(work_id, current.version, new)
            if written is not None:
                return written
        raise FatalBatchError(f"Progress for {work_id} kept changing underneath the writer")

    def _record_chapter(self, work_id: str, chapter_number: int) -> None:
        def bump(p: WorkProgress) -> Optional[WorkProgress]:
            if p.chapters_generated >= chapter_number:
                return None
            return p.model_copy(update={"chapters_generated": chapter_number, "updated_at": utcnow()})

        self._update_progress(work_id, bump)

    def _finish_batch(self, work_id: str, plan: BatchPlan) -> None:
        written = self._update_progress(work_id, lambda p: p.advance(work_id, plan.next_step))
        logger.bind(work_id=work_id).success(f"{plan.step.value} -> {written.step.value}")

    def _fail(self, work_id: str, reason: str) -> None:
        def to_failed(p: WorkProgress) -> Optional[WorkProgress]:
            if p.step is Step.FAILED:
                return None
            return p.advance(work_id, Step.FAILED, reason)

        self._update_progress(work_id, to_failed)

    # ------------------------------------------------------------------
    # Background batches
    # ------------------------------------------------------------------
    def _launch(self, work_id: str, plan: BatchPlan) -> None:
        with self._threads_lock:
            running = self._threads.get(work_id)
            if running is not None and running.is_alive():
                logger.bind(work_id=work_id).warning(
                    f"Batch already running for this work; not launching {plan.start}-{plan.end}"
                )
                return
            thread = threading.Thread(
                target=self._run_batch,
                args=(work_id, plan),
                name=f"batch-{work_id}-{plan.start}-{plan.end}",
                daemon=True,
            )
            self._threads[work_id] = thread
            thread.start()

    def _run_batch(self, work_id: str, plan: BatchPlan) -> None:
        with logger.contextualize(work_id=work_id):
            try:
                work = self.store.get_work(work_id)
                # Flags are read once; a batch never sees a change made mid-run
                flags = work.config.model_copy()
                correction_text = (
                    compile_course_corrections(self.store.list_feedback(work_id))
                    if flags.course_corrections
                    else ""
                )
                preferences = preference_text(self.store, work) if flags.adaptive_preferences else ""

                logger.info(f"Batch {plan.start}-{plan.end} started")
                self.pipeline.run_batch(
                    work_id,
                    plan.start,
                    plan.end,
                    correction_text,
                    flags,
                    preference_text=preferences,
                    progress=self._record_chapter,
                )
                self._finish_batch(work_id, plan)
            except FatalBatchError as e:
                logger.error(f"Batch {plan.start}-{plan.end} failed: {e}")
                self._fail(work_id, str(e))
            except Exception as e:
                logger.exception(f"Batch {plan.start}-{plan.end} crashed")
                self._fail(work_id, f"{type(e).__name__}: {e}")
