from .progress import (
    BATCHES,
    BatchPlan,
    Checkpoint,
    Step,
    WorkProgress,
)
from .work import (
    Chapter,
    CharacterConnection,
    CharacterProfile,
    DimensionScore,
    FeatureFlags,
    FeedbackCheckpoint,
    Lifecycle,
    MissedCallback,
    OutlineEntry,
    Pacing,
    QualityReview,
    Tone,
    VoiceFlag,
    VoiceReview,
    Work,
    WorkStatus,
)
from .ledger import (
    CallbackEntry,
    CallbackStatus,
    CharacterState,
    LedgerEntry,
)

__all__ = [
    "BATCHES",
    "BatchPlan",
    "Checkpoint",
    "Step",
    "WorkProgress",
    "Chapter",
    "CharacterConnection",
    "CharacterProfile",
    "DimensionScore",
    "FeatureFlags",
    "FeedbackCheckpoint",
    "Lifecycle",
    "MissedCallback",
    "OutlineEntry",
    "Pacing",
    "QualityReview",
    "Tone",
    "VoiceFlag",
    "VoiceReview",
    "Work",
    "WorkStatus",
    "CallbackEntry",
    "CallbackStatus",
    "CharacterState",
    "LedgerEntry",
]
