"""Character ledger models for tracking narrative memory across chapters."""

import re
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class CallbackStatus(str, Enum):
    RIPE = "ripe"
    USED = "used"
    EXPIRED = "expired"


def _normalize_moment(moment: str) -> str:
    return re.sub(r"\s+", " ", moment).strip().casefold()


class CallbackEntry(BaseModel):
    source_chapter: int = Field(ge=1)
    moment: str
    status: CallbackStatus = CallbackStatus.RIPE
    characters: list[str] = Field(default_factory=list)
    note: str = ""

    @property
    def key(self) -> tuple[int, str]:
        return (self.source_chapter, _normalize_moment(self.moment))


class CharacterState(BaseModel):
    emotional_state: str = ""
    chapter_experience: str = ""
    new_knowledge: list[str] = Field(default_factory=list)
    private_thoughts: str = ""
    relationship_deltas: dict[str, str] = Field(default_factory=dict)


class LedgerEntry(BaseModel):
    work_id: str
    chapter_number: int = Field(ge=1)
    characters: dict[str, CharacterState] = Field(default_factory=dict)
    compressed_summary: Optional[str] = None
    callback_bank: list[CallbackEntry] = Field(default_factory=list)
    token_estimate: int = 0

    def render_full(self) -> str:
        """Serialize the structured character state for a generation prompt."""
        parts = [f"### Chapter {self.chapter_number}"]
        for name, state in self.characters.items():
            line = f"- {name}"
            if state.emotional_state:
                line += f" [feeling: {state.emotional_state}]"
            parts.append(line)
            if state.chapter_experience:
                parts.append(f"  experienced: {state.chapter_experience}")
            if state.new_knowledge:
                parts.append(f"  now knows: {'; '.join(state.new_knowledge)}")
            if state.private_thoughts:
                parts.append(f"  privately: {state.private_thoughts}")
            for other, delta in state.relationship_deltas.items():
                parts.append(f"  with {other}: {delta}")
        return "\n".join(parts)

    def render_summary(self, summary: Optional[str] = None) -> str:
        return f"### Chapter {self.chapter_number} (summary)\n{summary or self.compressed_summary or ''}"


def render_callback_bank(bank: list[CallbackEntry]) -> str:
    if not bank:
        return ""
    lines = ["## Callback Bank"]
    for cb in sorted(bank, key=lambda c: (c.source_chapter, c.moment)):
        who = f" ({', '.join(cb.characters)})" if cb.characters else ""
        lines.append(f"- [{cb.status.value}] ch{cb.source_chapter}: {cb.moment}{who}")
    return "\n".join(lines)
