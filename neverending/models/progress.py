"""Work progress: the enumerated generation steps and the transition table between them."""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from ..errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Step(str, Enum):
    OUTLINE_PENDING = "outline_pending"
    GENERATING_1_3 = "generating_1_3"
    AWAITING_CHAPTER_2 = "awaiting_chapter_2_feedback"
    GENERATING_4_6 = "generating_4_6"
    AWAITING_CHAPTER_5 = "awaiting_chapter_5_feedback"
    GENERATING_7_9 = "generating_7_9"
    AWAITING_CHAPTER_8 = "awaiting_chapter_8_feedback"
    GENERATING_10_12 = "generating_10_12"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_generating(self) -> bool:
        return self.value.startswith("generating_")

    @property
    def is_awaiting(self) -> bool:
        return self.value.startswith("awaiting_")


class Checkpoint(str, Enum):
    CHAPTER_2 = "chapter_2"
    CHAPTER_5 = "chapter_5"
    CHAPTER_8 = "chapter_8"

    @property
    def chapter_number(self) -> int:
        return int(self.value.split("_")[1])


@dataclass(frozen=True)
class BatchPlan:
    step: Step
    start: int
    end: int
    next_step: Step


BATCHES = (
    BatchPlan(Step.GENERATING_1_3, 1, 3, Step.AWAITING_CHAPTER_2),
    BatchPlan(Step.GENERATING_4_6, 4, 6, Step.AWAITING_CHAPTER_5),
    BatchPlan(Step.GENERATING_7_9, 7, 9, Step.AWAITING_CHAPTER_8),
    BatchPlan(Step.GENERATING_10_12, 10, 12, Step.COMPLETE),
)

TOTAL_CHAPTERS = BATCHES[-1].end

AWAITING_STEPS = {
    Checkpoint.CHAPTER_2: Step.AWAITING_CHAPTER_2,
    Checkpoint.CHAPTER_5: Step.AWAITING_CHAPTER_5,
    Checkpoint.CHAPTER_8: Step.AWAITING_CHAPTER_8,
}

TRANSITIONS: dict[Step, frozenset[Step]] = {
    Step.OUTLINE_PENDING: frozenset({Step.GENERATING_1_3}),
    Step.GENERATING_1_3: frozenset({Step.AWAITING_CHAPTER_2}),
    Step.AWAITING_CHAPTER_2: frozenset({Step.GENERATING_4_6}),
    Step.GENERATING_4_6: frozenset({Step.AWAITING_CHAPTER_5}),
    Step.AWAITING_CHAPTER_5: frozenset({Step.GENERATING_7_9}),
    Step.GENERATING_7_9: frozenset({Step.AWAITING_CHAPTER_8}),
    Step.AWAITING_CHAPTER_8: frozenset({Step.GENERATING_10_12}),
    Step.GENERATING_10_12: frozenset({Step.COMPLETE}),
    Step.COMPLETE: frozenset(),
    Step.FAILED: frozenset(),
}

# Forward order of the happy path, used to tell "already past" from "not yet reached"
_ORDER = [s for s in Step if s is not Step.FAILED]


def can_transition(current: Step, target: Step) -> bool:
    if target is Step.FAILED:
        return current is not Step.FAILED
    return target in TRANSITIONS[current]


def has_passed(current: Step, step: Step) -> bool:
    """True when `current` lies strictly after `step` on the happy path."""
    if current is Step.FAILED or step is Step.FAILED:
        return False
    return _ORDER.index(current) > _ORDER.index(step)


def batch_for_step(step: Step) -> Optional[BatchPlan]:
    for plan in BATCHES:
        if plan.step is step:
            return plan
    return None


def batch_after(step: Step) -> Optional[BatchPlan]:
    """The batch that a trigger from `step` starts (outline_pending or an awaiting step)."""
    for target in TRANSITIONS.get(step, ()):
        plan = batch_for_step(target)
        if plan:
            return plan
    return None


def checkpoint_for_step(step: Step) -> Optional[Checkpoint]:
    for checkpoint, awaiting in AWAITING_STEPS.items():
        if awaiting is step:
            return checkpoint
    return None


class WorkProgress(BaseModel):
    """The persisted state-machine position of a work.

    `version` is bumped by the store on every successful write and is what the
    optimistic guard compares against.
    """

    step: Step = Step.OUTLINE_PENDING
    version: int = 0
    chapters_generated: int = Field(default=0, ge=0)
    failure_reason: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)

    def advance(self, work_id: str, target: Step, reason: Optional[str] = None) -> "WorkProgress":
        if not can_transition(self.step, target):
            raise InvalidTransitionError(work_id, self.step.value, target.value)
        return self.model_copy(
            update={
                "step": target,
                "failure_reason": reason if target is Step.FAILED else None,
                "updated_at": utcnow(),
            }
        )
