"""
Voice Editor agent: check each character's behavior against the ledger and
apply surgical repairs.

A repair never rewrites the chapter. The model may only propose exact-line
replacements and anchored insertions; anything that does not match the text
verbatim is discarded, and an edit set that would touch more than
`max_edit_ratio` of the chapter is rejected outright.
"""

from loguru import logger

from .base import BaseAgent
from ..config import VoiceConfig
from ..errors import EnrichmentFailure
from ..generation import REVIEW, GenerationClient
from ..models import CallbackStatus, MissedCallback, VoiceFlag, VoiceReview, Work
from ..models.ledger import CallbackEntry, render_callback_bank
from ..store import WorkStore
from ..utils import as_list, as_text

REVIEW_SYSTEM = """You are a character-voice editor for a serialized novel. You receive the ledger of what every character has lived through so far and a new chapter. For each character who appears, score from 0.0 to 1.0 how authentically their behavior and dialogue follow from their tracked emotional state and relationships. Flag the specific lines that ring false. Also list ripe callbacks from the bank that this chapter had a natural opening to pay off but missed."""

REPAIR_SYSTEM = """You are a line editor making the smallest possible fixes to a chapter. You may ONLY:
- replace a flagged line with a corrected version of that line
- insert a short passage (one to three sentences) immediately after an existing sentence

Never rewrite, reorder or summarize the chapter. Quote original lines and anchor sentences exactly as they appear."""


def _flag_from(name: str, raw) -> VoiceFlag | None:
    if isinstance(raw, str):
        return VoiceFlag(character=name, issue=raw)
    if not isinstance(raw, dict):
        return None
    return VoiceFlag(
        character=name,
        line=as_text(raw.get("line")),
        issue=as_text(raw.get("issue")),
        suggestion=as_text(raw.get("suggestion")),
    )


def apply_edits(content: str, edits: list[dict], insertions: list[dict]) -> tuple[str, int, int]:
    """Apply exact-match edits. Returns (new content, edits applied, characters touched)."""
    applied, touched = 0, 0
    for edit in edits:
        if not isinstance(edit, dict):
            continue
        original = as_text(edit.get("original"))
        replacement = as_text(edit.get("replacement"))
        if not original or original == replacement or original not in content:
            continue
        content = content.replace(original, replacement, 1)
        applied += 1
        touched += max(len(original), len(replacement))
    for ins in insertions:
        if not isinstance(ins, dict):
            continue
        anchor = as_text(ins.get("after"))
        text = as_text(ins.get("text")).strip()
        if not anchor or not text or anchor not in content:
            continue
        idx = content.index(anchor) + len(anchor)
        content = content[:idx] + " " + text + content[idx:]
        applied += 1
        touched += len(text) + 1
    return content, applied, touched


class VoiceEditor(BaseAgent):
    tier = REVIEW

    def __init__(self, client: GenerationClient, store: WorkStore, config: VoiceConfig):
        super().__init__("VoiceEditor", client)
        self.store = store
        self.config = config

    def _ripe_bank(self, work_id: str, chapter_number: int) -> list[CallbackEntry]:
        entries = [
            e for e in self.store.list_ledger_entries(work_id) if e.chapter_number <= chapter_number
        ]
        if not entries:
            return []
        return [cb for cb in entries[-1].callback_bank if cb.status is CallbackStatus.RIPE]

    def review(self, work: Work, chapter_number: int, content: str) -> VoiceReview:
        history = [
            e for e in self.store.list_ledger_entries(work.id) if e.chapter_number < chapter_number
        ]
        ripe = self._ripe_bank(work.id, chapter_number)

        system = REVIEW_SYSTEM + (
            "\n\nReturn JSON with: characters (array of {name, score (0.0-1.0), flags (array of "
            "{line (exact quote), issue, suggestion})}), missed_callbacks (array of "
            "{source_chapter, moment, suggestion (where and how to pay it off)})."
        )
        prompt = "## Ledger History\n"
        prompt += "\n\n".join(e.render_full() for e in history) or "(no earlier chapters)"
        prompt += f"\n\n{render_callback_bank(ripe) or '## Callback Bank'}\n\n"
        prompt += f"## Chapter {chapter_number}\n{content}\n\nReview the character voices."

        try:
            data = self.call_json(system, prompt, action="review")
        except ValueError as e:
            raise EnrichmentFailure(f"Voice review for chapter {chapter_number}: {e}") from e
        if not isinstance(data, dict):
            raise EnrichmentFailure(f"Voice review for chapter {chapter_number}: not an object")

        scores, flags = {}, []
        for c in as_list(data.get("characters")):
            if not isinstance(c, dict) or not c.get("name"):
                continue
            name = str(c["name"])
            try:
                scores[name] = float(c.get("score", 1.0))
            except (TypeError, ValueError):
                continue
            parsed = (_flag_from(name, f) for f in as_list(c.get("flags")))
            flags.extend(f for f in parsed if f is not None)

        missed = []
        for m in as_list(data.get("missed_callbacks")):
            if not isinstance(m, dict):
                continue
            try:
                missed.append(
                    MissedCallback(
                        source_chapter=int(m.get("source_chapter")),
                        moment=as_text(m.get("moment")),
                        suggestion=as_text(m.get("suggestion")),
                    )
                )
            except (TypeError, ValueError):
                continue

        return VoiceReview(
            work_id=work.id,
            chapter_number=chapter_number,
            scores=scores,
            flags=flags,
            missed_callbacks=missed,
        )

    def actionable(self, review: VoiceReview) -> tuple[list[VoiceFlag], list[MissedCallback]]:
        """Flags for characters under the threshold, and missed callbacks that are really ripe."""
        low = {n for n, s in review.scores.items() if s < self.config.authenticity_threshold}
        flags = [f for f in review.flags if f.character in low and f.line]
        ripe_keys = {
            cb.key for cb in self._ripe_bank(review.work_id, review.chapter_number)
        }
        missed = [
            m
            for m in review.missed_callbacks
            if m.suggestion
            and CallbackEntry(source_chapter=max(m.source_chapter, 1), moment=m.moment).key in ripe_keys
        ]
        return flags, missed

    def repair(self, content: str, flags: list[VoiceFlag], missed: list[MissedCallback]) -> str | None:
        """Surgical edit pass. Returns the repaired chapter, or None when nothing safe applied."""
        if not flags and not missed:
            return None

        system = REPAIR_SYSTEM + (
            "\n\nReturn JSON with: edits (array of {original (exact line from the chapter), "
            "replacement}), insertions (array of {after (exact sentence from the chapter), text})."
        )
        prompt = ""
        if flags:
            prompt += "## Lines To Fix\n" + "\n".join(
                f"- {f.character}: \"{f.line}\" -> {f.issue}"
                + (f" (suggestion: {f.suggestion})" if f.suggestion else "")
                for f in flags
            ) + "\n\n"
        if missed:
            prompt += "## Callbacks To Weave In\n" + "\n".join(
                f"- ch{m.source_chapter} '{m.moment}': {m.suggestion}" for m in missed
            ) + "\n\n"
        prompt += f"## Chapter\n{content}"

        try:
            data = self.call_json(system, prompt, action="repair")
        except ValueError as e:
            raise EnrichmentFailure(f"Voice repair reply unusable: {e}") from e
        if not isinstance(data, dict):
            return None

        repaired, applied, touched = apply_edits(
            content, as_list(data.get("edits")), as_list(data.get("insertions"))
        )
        if applied == 0:
            logger.info("Voice repair proposed no edits that match the chapter; skipping")
            return None
        if touched > self.config.max_edit_ratio * len(content):
            logger.warning(
                f"Voice repair would touch {touched}/{len(content)} characters; rejected as a rewrite"
            )
            return None
        return repaired

    def review_and_repair(self, work: Work, chapter_number: int, content: str) -> VoiceReview:
        """Review a persisted chapter, repair it if needed, and store the review."""
        log = logger.bind(work_id=work.id)
        review = self.review(work, chapter_number, content)
        flags, missed = self.actionable(review)
        if flags or missed:
            repaired = self.repair(content, flags, missed)
            if repaired is not None:
                self.store.replace_chapter_content(work.id, chapter_number, repaired)
                review.repair_applied = True
                log.info(
                    f"Chapter {chapter_number} repaired ({len(flags)} lines, {len(missed)} callbacks)"
                )
        else:
            log.debug(f"Chapter {chapter_number} voice review found nothing actionable")
        self.store.upsert_voice_review(review)
        return review
