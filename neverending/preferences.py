"""Learn standing reader preferences from feedback left on their other works."""

from collections import Counter

from .corrections import DIMENSIONS, DIRECTIVES, NEUTRAL
from .models import FeedbackCheckpoint, Work
from .store import WorkStore

MIN_OBSERVATIONS = 2

DESCRIPTIONS = {
    "pacing": {"slow": "finds stories drag", "fast": "feels rushed by fast plots"},
    "tone": {"serious": "wants more lightness", "light": "wants more weight"},
    "character": {
        "warming": "takes a while to bond with characters",
        "not_clicking": "often fails to connect with characters",
    },
}


def learn_preferences(history: list[FeedbackCheckpoint]) -> dict[str, str]:
    """Dimension -> value the reader reports in a majority of at least two checkpoints."""
    learned = {}
    for dim in DIMENSIONS:
        counts = Counter(getattr(c, dim).value for c in history)
        total = sum(counts.values())
        if total < MIN_OBSERVATIONS:
            continue
        value, n = counts.most_common(1)[0]
        if value != NEUTRAL[dim] and n >= MIN_OBSERVATIONS and n * 2 > total:
            learned[dim] = value
    return learned


def render_preferences(learned: dict[str, str]) -> str:
    if not learned:
        return ""
    lines = ["## Standing Reader Preferences", "Across earlier books this reader:"]
    for dim, value in learned.items():
        lines.append(f"- {DESCRIPTIONS[dim][value]} ({dim}={value}). From the start: {DIRECTIVES[dim][value][0]}")
    return "\n".join(lines)


def preference_text(store: WorkStore, work: Work) -> str:
    """Preference block for a work, from its reader's other works. Empty without a reader."""
    if not work.reader_id:
        return ""
    history = []
    for other in store.list_works(reader_id=work.reader_id):
        if other.id != work.id:
            history.extend(store.list_feedback(other.id))
    return render_preferences(learn_preferences(history))
