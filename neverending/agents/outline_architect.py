"""Outline Architect agent: turn a premise into a chapter outline and character roster."""

from .base import BaseAgent
from ..generation import GenerationClient
from ..models import CharacterProfile, OutlineEntry
from ..models.progress import TOTAL_CHAPTERS

SYSTEM = """You are a master story architect. You design compelling, well-structured outlines for serialized novels with clear narrative arcs, character development, and thematic depth.

Each chapter entry must give:
- Chapter number and title
- A short summary of what happens
- Key events and plot points

Plant moments early that later chapters can call back to, and make sure every major character has somewhere to grow."""


class OutlineArchitect(BaseAgent):
    def __init__(self, client: GenerationClient):
        super().__init__("OutlineArchitect", client)

    def generate_outline(
        self, premise: str, title: str = "", num_chapters: int = TOTAL_CHAPTERS
    ) -> tuple[list[OutlineEntry], list[CharacterProfile]]:
        """Generate a structured outline and character roster from a premise."""
        system = SYSTEM + (
            "\n\nReturn JSON with: chapters (array of {chapter_number, title, summary, "
            "key_events (array of strings)}), characters (array of {name, role, description})."
        )
        prompt = (
            f"Design a {num_chapters}-chapter outline for this story.\n\n"
            + (f"Title: {title}\n" if title else "")
            + f"Premise: {premise}\n\n"
            f"Requirements:\n"
            f"- Exactly {num_chapters} chapters, numbered 1 to {num_chapters}\n"
            f"- Rising action through the middle, a climax near chapter {num_chapters - 1}, "
            f"and a resolution in chapter {num_chapters}\n"
            f"- Three to six named characters in the roster"
        )
        data = self.call_json(system, prompt, action="generate_outline")
        if isinstance(data, list):
            data = {"chapters": data}

        outline = []
        for i, ch in enumerate(data.get("chapters", []), 1):
            outline.append(
                OutlineEntry(
                    chapter_number=ch.get("chapter_number", i),
                    title=ch.get("title", ""),
                    summary=ch.get("summary", ""),
                    key_events=ch.get("key_events", []),
                )
            )
        characters = [
            CharacterProfile(
                name=c.get("name", ""),
                role=c.get("role", ""),
                description=c.get("description", ""),
            )
            for c in data.get("characters", [])
            if c.get("name")
        ]
        if len(outline) < num_chapters:
            raise ValueError(
                f"Outline has {len(outline)} chapters, expected {num_chapters}"
            )
        return outline[:num_chapters], characters
