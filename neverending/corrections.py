"""Compile checkpoint feedback into directive text for the next batch's prompts."""

from dataclasses import dataclass, field
from enum import Enum

from .models import CharacterConnection, FeedbackCheckpoint, Pacing, Tone

DIMENSIONS = ("pacing", "tone", "character")

NEUTRAL = {
    "pacing": Pacing.HOOKED.value,
    "tone": Tone.RIGHT.value,
    "character": CharacterConnection.LOVE.value,
}

# Distance from the neutral value; equal distances with different values are opposites
DISTANCE = {
    "pacing": {"hooked": 0, "slow": 1, "fast": 1},
    "tone": {"right": 0, "serious": 1, "light": 1},
    "character": {"love": 0, "warming": 1, "not_clicking": 2},
}

MAINTAIN = {
    "pacing": "The reader is hooked. Keep the current rhythm of scenes and chapter endings.",
    "tone": "The tone is landing. Keep the current balance of weight and lightness.",
    "character": "The reader loves these characters. Keep their voices and dynamics as they are.",
}

DIRECTIVES = {
    "pacing": {
        "slow": [
            "Use shorter paragraphs, especially in tense or active beats.",
            "Enter every scene later: skip arrivals, greetings and setup.",
            "Exit every scene earlier, as soon as its turn lands.",
            "End the chapter on a stronger hook: an open question, a reversal or a threat.",
        ],
        "fast": [
            "Let key emotional moments breathe with a paragraph of interiority before moving on.",
            "Ground each new location with two or three concrete sensory details.",
            "Make time and place jumps explicit with clear transitions.",
            "Give quieter scenes room between major plot beats.",
        ],
    },
    "tone": {
        "serious": [
            "Add moments of levity: banter, wry observations, small absurdities.",
            "Let characters find humor even inside hard situations.",
            "Follow each heavy scene with a lighter beat.",
        ],
        "light": [
            "Give consequences real weight; let losses hurt.",
            "Let characters sit with difficult emotions instead of deflecting with jokes.",
            "Raise the stakes so danger feels genuine.",
        ],
    },
    "character": {
        "warming": [
            "Deepen interiority: show what the main characters want and what they fear.",
            "Give the protagonist a small, specific vulnerability the reader can root for.",
        ],
        "not_clicking": [
            "Make the protagonist drive events: they choose, act and pay for it.",
            "Sharpen each voice so characters are recognizable without dialogue tags.",
            "Show warmth between characters through small concrete gestures.",
            "Reveal one private hope or wound for each main character.",
        ],
    },
}

ESCALATIONS = {
    "pacing": {
        "slow": [
            "Cut any scene that does not change a relationship or raise the stakes.",
            "Open each chapter mid-action or mid-conversation.",
            "Keep chapters at the short end of the length range.",
        ],
        "fast": [
            "Slow the plot clock: no more than one major event per chapter.",
            "Spend at least one full scene per chapter on reflection or relationship.",
        ],
    },
    "tone": {
        "serious": [
            "Give at least one character a consistently funny voice and use it every chapter.",
            "Include one warm, lighthearted scene per chapter.",
        ],
        "light": [
            "Let a plan fail with lasting consequences in this batch.",
            "Cut quips from moments of danger or grief entirely.",
        ],
    },
    "character": {
        "warming": [
            "Put the protagonist's vulnerability on the page in a scene where it costs them.",
        ],
        "not_clicking": [
            "Rebuild scenes around what the protagonist wants in that moment.",
            "Give every main character one line of dialogue per scene that only they would say.",
        ],
    },
}


class Trend(str, Enum):
    MAINTAIN = "maintain"
    NEW = "new"
    WORKED = "worked"
    IMPROVING = "improving"
    OVERCORRECTED = "overcorrected"
    ESCALATE = "escalate"


@dataclass
class DimensionDirective:
    dimension: str
    current: str
    previous: str | None
    trend: Trend
    directives: list[str] = field(default_factory=list)

    def render(self) -> str:
        label = self.dimension.upper()
        values = f"{self.previous} -> {self.current}" if self.previous else self.current
        head = f"{label} ({values})"
        if self.trend is Trend.MAINTAIN:
            return f"{head}: maintain. {MAINTAIN[self.dimension]}"
        if self.trend is Trend.WORKED:
            return f"{head}: correction worked, maintain. {MAINTAIN[self.dimension]}"
        notes = {
            Trend.NEW: "adjust",
            Trend.IMPROVING: "improving, continue these corrections",
            Trend.OVERCORRECTED: "overcorrected, ease back the other way",
            Trend.ESCALATE: "the previous correction did not land, escalate",
        }
        lines = [f"{head}: {notes[self.trend]}."]
        lines.extend(f"  - {d}" for d in self.directives)
        return "\n".join(lines)


def _value(checkpoint: FeedbackCheckpoint, dimension: str) -> str:
    return getattr(checkpoint, dimension).value


def assess_dimension(dimension: str, values: list[str]) -> DimensionDirective:
    """Decide the directive for one dimension from its values across checkpoints, oldest first."""
    current = values[-1]
    previous = values[-2] if len(values) > 1 else None
    neutral = NEUTRAL[dimension]
    dist = DISTANCE[dimension]

    if current == neutral:
        trend = Trend.WORKED if previous is not None and previous != neutral else Trend.MAINTAIN
        return DimensionDirective(dimension, current, previous, trend)

    base = list(DIRECTIVES[dimension][current])
    if previous is None or previous == neutral:
        return DimensionDirective(dimension, current, previous, Trend.NEW, base)
    if current == previous or dist[current] > dist[previous]:
        return DimensionDirective(
            dimension, current, previous, Trend.ESCALATE, base + ESCALATIONS[dimension][current]
        )
    if dist[current] < dist[previous]:
        return DimensionDirective(dimension, current, previous, Trend.IMPROVING, base)
    return DimensionDirective(dimension, current, previous, Trend.OVERCORRECTED, base)


def assess(history: list[FeedbackCheckpoint]) -> list[DimensionDirective]:
    if not history:
        return []
    return [assess_dimension(d, [_value(c, d) for c in history]) for d in DIMENSIONS]


def compile_course_corrections(history: list[FeedbackCheckpoint]) -> str:
    """Render the per-checkpoint history and the accumulated directives as one prompt block."""
    if not history:
        return ""
    lines = ["## Reader Course Corrections", "Checkpoint history:"]
    for c in history:
        lines.append(
            f"- {c.checkpoint.value}: pacing={c.pacing.value}, tone={c.tone.value}, "
            f"character={c.character.value}"
        )
        if c.notes:
            lines.append(f'  reader note: "{c.notes.strip()}"')
    lines.append("")
    lines.append("Current directives:")
    lines.extend(d.render() for d in assess(history))
    return "\n".join(lines)
