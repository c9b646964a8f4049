"""Data models for works, chapters, reviews and reader feedback."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from .progress import Checkpoint, Step, WorkProgress, utcnow


class FeatureFlags(BaseModel):
    character_ledger: bool = True
    voice_review: bool = True
    adaptive_preferences: bool = True
    course_corrections: bool = True


class Lifecycle(str, Enum):
    ACTIVE = "active"
    COMPLETE = "complete"
    FAILED = "failed"


class OutlineEntry(BaseModel):
    chapter_number: int = Field(ge=1)
    title: str = ""
    summary: str = ""
    key_events: list[str] = Field(default_factory=list)


class CharacterProfile(BaseModel):
    name: str
    role: str = ""
    description: str = ""


class Work(BaseModel):
    id: str
    title: str = ""
    premise: str = ""
    reader_id: Optional[str] = None
    progress: WorkProgress = Field(default_factory=WorkProgress)
    config: FeatureFlags = Field(default_factory=FeatureFlags)
    outline: list[OutlineEntry] = Field(default_factory=list)
    characters: list[CharacterProfile] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def lifecycle(self) -> Lifecycle:
        if self.progress.step is Step.COMPLETE:
            return Lifecycle.COMPLETE
        if self.progress.step is Step.FAILED:
            return Lifecycle.FAILED
        return Lifecycle.ACTIVE

    def outline_for(self, chapter_number: int) -> Optional[OutlineEntry]:
        for entry in self.outline:
            if entry.chapter_number == chapter_number:
                return entry
        return None

    @property
    def roster(self) -> list[str]:
        return [c.name for c in self.characters]


class DimensionScore(BaseModel):
    score: float = Field(ge=0, le=10)
    evidence: str = ""


class QualityReview(BaseModel):
    scores: dict[str, DimensionScore] = Field(default_factory=dict)
    weighted_score: float = 0.0
    deficiencies: list[str] = Field(default_factory=list)
    attempt: int = 1


class Chapter(BaseModel):
    work_id: str
    number: int = Field(ge=1)
    title: str = ""
    content: str
    quality_review: Optional[QualityReview] = None
    regeneration_count: int = Field(default=0, ge=0)
    repair_applied: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def word_count(self) -> int:
        return len(self.content.split())


class Pacing(str, Enum):
    HOOKED = "hooked"
    SLOW = "slow"
    FAST = "fast"


class Tone(str, Enum):
    RIGHT = "right"
    SERIOUS = "serious"
    LIGHT = "light"


class CharacterConnection(str, Enum):
    LOVE = "love"
    WARMING = "warming"
    NOT_CLICKING = "not_clicking"


class FeedbackCheckpoint(BaseModel):
    work_id: str
    checkpoint: Checkpoint
    pacing: Pacing
    tone: Tone
    character: CharacterConnection
    notes: Optional[str] = None
    submitted_at: datetime = Field(default_factory=utcnow)


class VoiceFlag(BaseModel):
    character: str
    line: str = ""
    issue: str = ""
    suggestion: str = ""


class MissedCallback(BaseModel):
    source_chapter: int
    moment: str
    suggestion: str = ""


class VoiceReview(BaseModel):
    work_id: str
    chapter_number: int = Field(ge=1)
    scores: dict[str, float] = Field(default_factory=dict)
    flags: list[VoiceFlag] = Field(default_factory=list)
    missed_callbacks: list[MissedCallback] = Field(default_factory=list)
    repair_applied: bool = False

    @field_validator("scores")
    @classmethod
    def _clamp_scores(cls, v: dict[str, float]) -> dict[str, float]:
        return {name: min(1.0, max(0.0, float(score))) for name, score in v.items()}


class WorkStatus(BaseModel):
    """What the status query returns to callers."""

    work_id: str
    lifecycle: Lifecycle
    step: Step
    checkpoint: Optional[Checkpoint] = None
    batch_start: Optional[int] = None
    batch_end: Optional[int] = None
    chapters_completed_in_batch: Optional[int] = None
    chapters_generated: int = 0
    failure_reason: Optional[str] = None
    updated_at: datetime
