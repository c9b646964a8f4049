"""Memory agent: the per-chapter character ledger and its budgeted continuity block."""

from loguru import logger

from .base import BaseAgent
from ..config import LedgerConfig
from ..errors import EnrichmentFailure
from ..generation import FAST, GenerationClient
from ..models import CallbackEntry, CallbackStatus, CharacterState, LedgerEntry, Work
from ..models.ledger import render_callback_bank
from ..store import WorkStore
from ..utils import as_dict, as_list, as_text, estimate_tokens, truncate_text

EXTRACT_SYSTEM = (
    "You are a story continuity tracker. Given a chapter, the cast, and the bank of "
    "planted callback moments, record what each character went through in this chapter "
    "and update the callback bank. A callback is a specific moment (a joke, a promise, "
    "an object, a wound) worth paying off later. Mark a bank entry 'used' if this chapter "
    "paid it off, 'expired' if it can no longer land, and add new 'ripe' entries for "
    "moments planted in this chapter."
)

COMPRESS_SYSTEM = (
    "You compress a character ledger entry into a 100-150 word narrative summary. "
    "Preserve where every relationship stands and every unresolved tension. "
    "Drop verbatim dialogue and dialogue suggestions. Write plain prose, no lists."
)

_PRUNABLE = (CallbackStatus.USED, CallbackStatus.EXPIRED)


def merge_callback_banks(
    existing: list[CallbackEntry],
    incoming: list[CallbackEntry],
    current_chapter: int,
    prune_distance: int = 3,
) -> list[CallbackEntry]:
    """Overlay `incoming` on `existing` by (source chapter, moment); the later write wins.

    Spent callbacks (used/expired) planted more than `prune_distance` chapters
    before `current_chapter` are dropped.
    """
    merged: dict[tuple[int, str], CallbackEntry] = {}
    for cb in existing:
        merged[cb.key] = cb
    for cb in incoming:
        merged[cb.key] = cb
    return [
        cb
        for cb in merged.values()
        if not (cb.status in _PRUNABLE and current_chapter - cb.source_chapter > prune_distance)
    ]


def _parse_characters(raw) -> dict[str, CharacterState]:
    if isinstance(raw, list):
        raw = {as_text(c.get("name")): c for c in raw if isinstance(c, dict)}
    characters = {}
    for name, data in as_dict(raw).items():
        if not name or not isinstance(data, dict):
            continue
        characters[name] = CharacterState(
            emotional_state=as_text(data.get("emotional_state")),
            chapter_experience=as_text(data.get("chapter_experience")),
            new_knowledge=[as_text(k) for k in as_list(data.get("new_knowledge")) if k is not None],
            private_thoughts=as_text(data.get("private_thoughts")),
            relationship_deltas={
                str(k): as_text(v) for k, v in as_dict(data.get("relationship_deltas")).items()
            },
        )
    return characters


def _parse_callbacks(raw, chapter_number: int) -> list[CallbackEntry]:
    callbacks = []
    for cb in as_list(raw):
        if not isinstance(cb, dict) or not cb.get("moment"):
            continue
        try:
            status = CallbackStatus(str(cb.get("status") or "ripe").lower())
        except ValueError:
            status = CallbackStatus.RIPE
        try:
            source = int(cb.get("source_chapter", chapter_number))
        except (TypeError, ValueError):
            source = chapter_number
        callbacks.append(
            CallbackEntry(
                source_chapter=min(max(source, 1), chapter_number),
                moment=str(cb["moment"]),
                status=status,
                characters=[as_text(c) for c in as_list(cb.get("characters")) if c],
                note=as_text(cb.get("note")),
            )
        )
    return callbacks


class CharacterLedger(BaseAgent):
    tier = FAST

    def __init__(self, client: GenerationClient, store: WorkStore, config: LedgerConfig):
        super().__init__("CharacterLedger", client)
        self.store = store
        self.config = config

    def extract(self, work: Work, chapter_number: int, content: str) -> LedgerEntry:
        """Extract and persist the ledger entry for a freshly written chapter."""
        prior = [
            e for e in self.store.list_ledger_entries(work.id) if e.chapter_number < chapter_number
        ]
        bank = prior[-1].callback_bank if prior else []

        system = EXTRACT_SYSTEM + (
            "\n\nReturn JSON with: characters (object mapping character name to "
            "{emotional_state, chapter_experience, new_knowledge (array), private_thoughts, "
            "relationship_deltas (object mapping other character to how things changed)}), "
            "callbacks (array of {source_chapter, moment, status (ripe|used|expired), "
            "characters (array), note}). Repeat bank entries whose status changed, "
            "using their exact source_chapter and moment."
        )
        bank_text = render_callback_bank(bank) or "## Callback Bank\n(empty)"
        prompt = (
            f"## Cast\n{', '.join(work.roster) or 'Infer the cast from the chapter.'}\n\n"
            f"{bank_text}\n\n"
            f"## Chapter {chapter_number}\n{content}\n\n"
            f"Record the ledger for chapter {chapter_number}."
        )
        try:
            data = self.call_json(system, prompt, action="extract")
        except ValueError as e:
            raise EnrichmentFailure(f"Ledger extraction for chapter {chapter_number}: {e}") from e
        if not isinstance(data, dict):
            raise EnrichmentFailure(f"Ledger extraction for chapter {chapter_number}: not an object")

        entry = LedgerEntry(
            work_id=work.id,
            chapter_number=chapter_number,
            characters=_parse_characters(data.get("characters")),
            callback_bank=merge_callback_banks(
                bank,
                _parse_callbacks(data.get("callbacks"), chapter_number),
                chapter_number,
                self.config.callback_prune_distance,
            ),
        )
        entry.token_estimate = estimate_tokens(entry.render_full())
        self.store.upsert_ledger_entry(entry)
        logger.bind(work_id=work.id).info(
            f"Ledger for chapter {chapter_number}: {len(entry.characters)} characters, "
            f"{len(entry.callback_bank)} callbacks"
        )
        return entry

    def compress(self, entry: LedgerEntry) -> str:
        """Reduce a full entry to a ~100-150 word narrative summary."""
        prompt = f"{entry.render_full()}\n\nSummarize this ledger entry."
        return self.call(COMPRESS_SYSTEM, prompt, max_tokens=400, action="compress").strip()

    def _summary_for(self, entry: LedgerEntry) -> str:
        if entry.compressed_summary:
            return entry.compressed_summary
        try:
            summary = self.compress(entry)
        except Exception as e:
            logger.bind(work_id=entry.work_id).warning(
                f"Compression of chapter {entry.chapter_number} ledger failed ({e}); using a local cut"
            )
            return truncate_text(entry.render_full(), 900)
        entry.compressed_summary = summary
        self.store.set_ledger_summary(entry.work_id, entry.chapter_number, summary)
        return summary

    def _assemble(self, entries: list[LedgerEntry], window: int, skip_oldest: int = 0) -> str:
        recent = entries[-window:] if window else []
        older = entries[: len(entries) - len(recent)][skip_oldest:]

        parts = []
        if recent:
            parts.append("## Recent Chapters")
            parts.extend(e.render_full() for e in reversed(recent))
        if older:
            parts.append("## Earlier Chapters")
            parts.extend(e.render_summary(self._summary_for(e)) for e in reversed(older))
        bank = render_callback_bank(entries[-1].callback_bank)
        if bank:
            parts.append(bank)
        return "\n\n".join(parts)

    def _windows(self) -> list[int]:
        return [self.config.full_window] + list(range(self.config.degraded_window, -1, -1))

    def build_continuity_block(self, work_id: str, target_chapter: int) -> str:
        """Render ledger history before `target_chapter` within the token ceiling."""
        entries = [
            e for e in self.store.list_ledger_entries(work_id) if e.chapter_number < target_chapter
        ]
        if not entries:
            return ""

        ceiling = self.config.token_ceiling
        log = logger.bind(work_id=work_id)
        for window in self._windows():
            block = self._assemble(entries, window)
            if estimate_tokens(block) <= ceiling:
                return block
            log.info(
                f"Continuity block for chapter {target_chapter} is {estimate_tokens(block)} tokens "
                f"with {window} full entries (ceiling {ceiling}); degrading"
            )

        for skip in range(1, len(entries)):
            block = self._assemble(entries, 0, skip_oldest=skip)
            if estimate_tokens(block) <= ceiling:
                return block

        log.warning(f"Continuity block for chapter {target_chapter} truncated to the ceiling")
        return truncate_text(block, ceiling * 4 - 3)
