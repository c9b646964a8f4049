"""Batch pipeline: generate a contiguous range of chapters, one at a time."""

import sqlite3
from dataclasses import dataclass, field
from typing import Callable

from loguru import logger

from .agents.judge import QualityJudge
from .agents.memory import CharacterLedger
from .agents.outline_architect import OutlineArchitect
from .agents.voice_editor import VoiceEditor
from .agents.writer import Writer
from .config import Config
from .errors import FatalBatchError, TransientProviderError
from .generation import GenerationClient
from .models import Chapter, FeatureFlags, Work
from .quality import QualityReviewLoop
from .store import WorkStore

ProgressCallback = Callable[[str, int], None]


def _noop_progress(work_id: str, chapter_number: int) -> None:
    pass


@dataclass
class BatchResult:
    work_id: str
    start: int
    end: int
    written: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)


class BatchPipeline:
    """Composes continuity memory, corrections and the quality loop for each chapter."""

    def __init__(self, config: Config, client: GenerationClient, store: WorkStore):
        self.config = config
        self.client = client
        self.store = store

        self.outline_architect = OutlineArchitect(client)
        self.writer = Writer(client, max_tokens=config.batch.chapter_max_tokens)
        self.judge = QualityJudge(client, config.quality.weights, config.quality.threshold)
        self.review_loop = QualityReviewLoop(self.writer, self.judge)
        self.ledger = CharacterLedger(client, store, config.ledger)
        self.voice_editor = VoiceEditor(client, store, config.voice)

    @property
    def all_agents(self) -> list:
        return [
            self.outline_architect,
            self.writer,
            self.judge,
            self.ledger,
            self.voice_editor,
        ]

    @property
    def all_logs(self) -> list:
        logs = []
        for agent in self.all_agents:
            logs.extend(agent.logs)
        return logs

    def ensure_outline(self, work: Work) -> Work:
        """Generate and persist the outline and roster if the work was created without one."""
        if work.outline:
            return work
        logger.bind(work_id=work.id).info("No outline yet; generating one")
        try:
            outline, characters = self.outline_architect.generate_outline(work.premise, work.title)
        except (TransientProviderError, ValueError) as e:
            raise FatalBatchError(f"Outline generation failed: {e}") from e
        work.outline = outline
        if not work.characters:
            work.characters = characters
        self.store.update_work_details(work)
        return work

    def run_batch(
        self,
        work_id: str,
        start_chapter: int,
        end_chapter: int,
        correction_text: str,
        flags: FeatureFlags,
        preference_text: str = "",
        progress: ProgressCallback = _noop_progress,
    ) -> BatchResult:
        """Generate chapters start..end in order.

        Chapters that already exist are skipped, so a batch interrupted by a
        restart resumes at the first missing chapter. Raises FatalBatchError
        when a chapter cannot be produced or persisted.
        """
        work = self.ensure_outline(self.store.get_work(work_id))
        result = BatchResult(work_id=work_id, start=start_chapter, end=end_chapter)
        log = logger.bind(work_id=work_id)

        for number in range(start_chapter, end_chapter + 1):
            if self.store.get_chapter(work_id, number) is not None:
                log.info(f"Chapter {number} already persisted; skipping")
                result.skipped.append(number)
                progress(work_id, number)
                continue

            chapter = self.generate_chapter(work, number, correction_text, preference_text, flags)
            result.written.append(number)
            progress(work_id, number)
            self.enrich(work, chapter, flags)

        log.success(
            f"Batch {start_chapter}-{end_chapter} done: wrote {result.written}, skipped {result.skipped}"
        )
        return result

    def generate_chapter(
        self,
        work: Work,
        number: int,
        correction_text: str,
        preference_text: str,
        flags: FeatureFlags,
    ) -> Chapter:
        log = logger.bind(work_id=work.id)
        if number > 1 and self.store.get_chapter(work.id, number - 1) is None:
            raise FatalBatchError(f"Chapter {number} requested but chapter {number - 1} is missing")

        window = self.config.batch.recent_chapters
        recent = [
            c
            for c in (self.store.get_chapter(work.id, k) for k in range(max(1, number - window), number))
            if c is not None
        ]

        continuity = ""
        if flags.character_ledger:
            try:
                continuity = self.ledger.build_continuity_block(work.id, number)
            except Exception as e:
                log.warning(f"Continuity block for chapter {number} unavailable: {e}")

        prompt = self.writer.compose_prompt(
            work,
            number,
            recent,
            continuity_block=continuity,
            correction_text=correction_text if flags.course_corrections else "",
            preference_text=preference_text if flags.adaptive_preferences else "",
            recent_chapter_chars=self.config.batch.recent_chapter_chars,
        )
        entry = work.outline_for(number)
        plan = f"{entry.title}\n{entry.summary}" if entry else ""

        log.info(f"Writing chapter {number}")
        try:
            outcome = self.review_loop.generate_with_review(
                prompt,
                threshold=self.config.quality.threshold,
                max_attempts=self.config.quality.max_attempts,
                chapter_plan=plan,
            )
        except TransientProviderError as e:
            raise FatalBatchError(f"Chapter {number}: generation retries exhausted ({e})") from e

        chapter = Chapter(
            work_id=work.id,
            number=number,
            title=entry.title if entry else "",
            content=outcome.content,
            quality_review=outcome.review,
            regeneration_count=outcome.regeneration_count,
        )
        try:
            self.store.insert_chapter(chapter)
        except (sqlite3.Error, ValueError) as e:
            raise FatalBatchError(f"Chapter {number}: could not be persisted ({e})") from e

        log.info(
            f"Chapter {number} persisted: score {outcome.review.weighted_score:.2f}, "
            f"{chapter.regeneration_count} regenerations, {chapter.word_count} words"
        )
        return chapter

    def enrich(self, work: Work, chapter: Chapter, flags: FeatureFlags) -> None:
        """Voice review, then ledger extraction. Failures are logged and never propagate.

        The ledger reads the stored chapter so its entry describes any repaired text.
        """
        log = logger.bind(work_id=work.id)
        if flags.voice_review:
            try:
                self.voice_editor.review_and_repair(work, chapter.number, chapter.content)
            except Exception as e:
                log.warning(f"Voice review for chapter {chapter.number} skipped: {e}")
        if flags.character_ledger:
            try:
                stored = self.store.get_chapter(work.id, chapter.number) or chapter
                self.ledger.extract(work, chapter.number, stored.content)
            except Exception as e:
                log.warning(f"Ledger extraction for chapter {chapter.number} skipped: {e}")
