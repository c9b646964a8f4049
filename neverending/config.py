import os
from pathlib import Path
from typing import Dict, Literal, Optional

from pydantic import BaseModel, Field, model_validator
import yaml

DEFAULT_RUBRIC_WEIGHTS = {
    "show_vs_tell": 0.20,
    "dialogue": 0.15,
    "pacing": 0.15,
    "audience_appropriateness": 0.15,
    "character_consistency": 0.20,
    "prose_quality": 0.15,
}


class TierConfig(BaseModel):
    provider: Literal["gemini", "openai"] = "gemini"
    model: str = "gemini-2.5-pro"
    api_key_env: str = "GEMINI_API_KEY"
    base_url: Optional[str] = None
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=8192, gt=0)
    timeout_seconds: float = Field(default=180.0, gt=0)

    def resolve_api_key(self) -> str:
        return os.environ.get(self.api_key_env, "")


def _review_tier() -> TierConfig:
    return TierConfig(model="gemini-2.5-flash", temperature=0.3, max_tokens=4096)


def _fast_tier() -> TierConfig:
    return TierConfig(
        model="gemini-2.5-flash-lite", temperature=0.2, max_tokens=4096, timeout_seconds=60.0
    )


class GenerationConfig(BaseModel):
    capable: TierConfig = Field(default_factory=TierConfig)
    review: TierConfig = Field(default_factory=_review_tier)
    fast: TierConfig = Field(default_factory=_fast_tier)
    max_concurrency: int = Field(default=4, gt=0)
    retry_attempts: int = Field(default=3, gt=0)
    retry_backoff_seconds: float = Field(default=2.0, ge=0)
    retry_backoff_max_seconds: float = Field(default=30.0, ge=0)


class QualityConfig(BaseModel):
    threshold: float = Field(default=7.5, ge=0, le=10)
    max_attempts: int = Field(default=3, gt=0)
    weights: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_RUBRIC_WEIGHTS))

    @model_validator(mode="after")
    def _check_weights(self):
        if not self.weights or sum(self.weights.values()) <= 0:
            raise ValueError("quality.weights must contain at least one positive weight")
        return self


class LedgerConfig(BaseModel):
    full_window: int = Field(default=3, ge=1)
    degraded_window: int = Field(default=2, ge=0)
    token_ceiling: int = Field(default=5000, gt=0)
    callback_prune_distance: int = Field(default=3, ge=0)

    @model_validator(mode="after")
    def _check_windows(self):
        if self.degraded_window >= self.full_window:
            raise ValueError("ledger.degraded_window must be smaller than ledger.full_window")
        return self


class VoiceConfig(BaseModel):
    authenticity_threshold: float = Field(default=0.8, ge=0, le=1)
    max_edit_ratio: float = Field(default=0.35, gt=0, le=1)


class BatchConfig(BaseModel):
    recent_chapters: int = Field(default=2, ge=0)
    recent_chapter_chars: int = Field(default=3000, gt=0)
    chapter_max_tokens: int = Field(default=8192, gt=0)


class StoreConfig(BaseModel):
    path: Path = Field(default=Path("data/neverending.db"))


class Config(BaseModel):
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    quality: QualityConfig = Field(default_factory=QualityConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    voice: VoiceConfig = Field(default_factory=VoiceConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    log_level: str = Field(default="INFO")
    log_file: Optional[Path] = None

    @classmethod
    def from_yaml(cls, path: Path) -> "Config":
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    def to_yaml(self, path: Path):
        with open(path, "w") as f:
            yaml.dump(self.model_dump(mode="json"), f, default_flow_style=False)
