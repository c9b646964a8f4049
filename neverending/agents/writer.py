"""Writer agent: assemble the chapter prompt and generate prose."""

from .base import BaseAgent
from ..generation import GenerationClient
from ..models import Chapter, OutlineEntry, Work
from ..utils import truncate_text

SYSTEM = """You are a talented fiction writer producing one chapter of a serialized novel. Your writing features:
- Rich sensory details and atmospheric descriptions
- Natural, distinctive character dialogue
- Varied sentence structure and pacing
- Show-don't-tell storytelling
- Emotional depth and psychological realism

Write the chapter as continuous prose. Do not include chapter headers, author notes, or meta-commentary. Just write the story."""


class Writer(BaseAgent):
    def __init__(self, client: GenerationClient, max_tokens: int = 8192):
        super().__init__("Writer", client)
        self.max_tokens = max_tokens

    def compose_prompt(
        self,
        work: Work,
        chapter_number: int,
        recent_chapters: list[Chapter],
        continuity_block: str = "",
        correction_text: str = "",
        preference_text: str = "",
        recent_chapter_chars: int = 3000,
    ) -> str:
        """Build the generation prompt for one chapter from everything the batch knows."""
        entry = work.outline_for(chapter_number) or OutlineEntry(chapter_number=chapter_number)

        prompt = f"## Story\nTitle: {work.title or 'Untitled'}\nPremise: {work.premise}\n"
        if work.characters:
            prompt += "\n## Characters\n" + "\n".join(
                f"- {c.name} ({c.role}): {c.description}" if c.role else f"- {c.name}: {c.description}"
                for c in work.characters
            ) + "\n"

        prompt += f"\n## Chapter {chapter_number} Plan\nTitle: {entry.title}\n"
        if entry.summary:
            prompt += f"Summary: {entry.summary}\n"
        if entry.key_events:
            prompt += "Key events:\n" + "\n".join(f"  - {e}" for e in entry.key_events) + "\n"

        if continuity_block:
            prompt += f"\n## Character Continuity\n{continuity_block}\n"

        for prev in recent_chapters:
            tail = truncate_text(prev.content, recent_chapter_chars, from_end=True)
            prompt += f"\n## End of Chapter {prev.number}\n{tail}\n"

        if correction_text:
            prompt += f"\n{correction_text}\n"
        if preference_text:
            prompt += f"\n{preference_text}\n"

        prompt += f"\nWrite chapter {chapter_number} in full, roughly 2500-3500 words."
        return prompt

    def write_chapter(self, prompt: str, revision_notes: list[str] | None = None) -> str:
        """Write a chapter. With revision notes, regenerate addressing those deficiencies."""
        if revision_notes:
            prompt += (
                "\n\n## Fix These Problems From The Previous Draft\n"
                + "\n".join(f"- {note}" for note in revision_notes)
                + "\nWrite the chapter again from scratch with these problems fixed."
            )
        return self.call(SYSTEM, prompt, max_tokens=self.max_tokens, action="write_chapter").strip()
