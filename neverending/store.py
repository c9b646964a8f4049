"""
SQLite-backed record store for works, chapters, ledger entries, voice reviews
and checkpoint feedback.

Every record is kept as a pydantic JSON document keyed the way the orchestrator
looks it up. The progress field of a work carries its own version column so
state transitions can be written with an optimistic compare-and-set.
"""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Iterable, Optional

from loguru import logger

from .errors import WorkNotFoundError
from .models import (
    Chapter,
    Checkpoint,
    FeedbackCheckpoint,
    LedgerEntry,
    Step,
    VoiceReview,
    Work,
    WorkProgress,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS works (
    id          TEXT PRIMARY KEY,
    reader_id   TEXT,
    step        TEXT NOT NULL,
    version     INTEGER NOT NULL DEFAULT 0,
    progress    TEXT NOT NULL,
    data        TEXT NOT NULL,
    created_at  TEXT
);
CREATE TABLE IF NOT EXISTS chapters (
    work_id     TEXT NOT NULL REFERENCES works(id),
    number      INTEGER NOT NULL,
    data        TEXT NOT NULL,
    PRIMARY KEY (work_id, number)
);
CREATE TABLE IF NOT EXISTS ledger_entries (
    work_id         TEXT NOT NULL REFERENCES works(id),
    chapter_number  INTEGER NOT NULL,
    data            TEXT NOT NULL,
    PRIMARY KEY (work_id, chapter_number)
);
CREATE TABLE IF NOT EXISTS voice_reviews (
    work_id         TEXT NOT NULL REFERENCES works(id),
    chapter_number  INTEGER NOT NULL,
    data            TEXT NOT NULL,
    PRIMARY KEY (work_id, chapter_number)
);
CREATE TABLE IF NOT EXISTS feedback_checkpoints (
    work_id         TEXT NOT NULL REFERENCES works(id),
    checkpoint      TEXT NOT NULL,
    chapter_number  INTEGER NOT NULL,
    data            TEXT NOT NULL,
    PRIMARY KEY (work_id, checkpoint)
);
"""


class WorkStore:
    """Thread-safe record store. One connection, serialized by a lock."""

    def __init__(self, db_path: Path | str = Path("data/neverending.db")):
        if str(db_path) != ":memory:":
            db_path = Path(db_path)
            db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.RLock()
        self._init_schema()

    def _init_schema(self):
        with self._lock:
            self.conn.executescript(_SCHEMA)
            self.conn.commit()

    def close(self):
        with self._lock:
            self.conn.close()

    # ------------------------------------------------------------------
    # Works
    # ------------------------------------------------------------------
    def create_work(self, work: Work) -> Work:
        with self._lock, self.conn:
            self.conn.execute(
                "INSERT INTO works (id, reader_id, step, version, progress, data, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    work.id,
                    work.reader_id,
                    work.progress.step.value,
                    work.progress.version,
                    work.progress.model_dump_json(),
                    work.model_dump_json(exclude={"progress"}),
                    work.created_at.isoformat(),
                ),
            )
        return work

    def get_work(self, work_id: str) -> Work:
        with self._lock:
            row = self.conn.execute(
                "SELECT data, progress, version FROM works WHERE id = ?", (work_id,)
            ).fetchone()
        if row is None:
            raise WorkNotFoundError(work_id)
        return self._row_to_work(row)

    def list_works(
        self,
        reader_id: Optional[str] = None,
        steps: Optional[Iterable[Step]] = None,
    ) -> list[Work]:
        query = "SELECT data, progress, version FROM works"
        clauses, params = [], []
        if reader_id is not None:
            clauses.append("reader_id = ?")
            params.append(reader_id)
        if steps is not None:
            steps = list(steps)
            clauses.append(f"step IN ({', '.join('?' for _ in steps)})")
            params.extend(s.value for s in steps)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at, rowid"
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_work(r) for r in rows]

    def update_work_details(self, work: Work) -> None:
        """Persist outline, roster and descriptive fields. Never touches progress."""
        with self._lock, self.conn:
            cur = self.conn.execute(
                "UPDATE works SET data = ?, reader_id = ? WHERE id = ?",
                (work.model_dump_json(exclude={"progress"}), work.reader_id, work.id),
            )
        if cur.rowcount == 0:
            raise WorkNotFoundError(work.id)

    def compare_and_set_progress(
        self, work_id: str, expected_version: int, progress: WorkProgress
    ) -> Optional[WorkProgress]:
        """Write `progress` only if the stored version still equals `expected_version`.

        Returns the stored progress (with its new version) on success, None when
        another writer got there first.
        """
        written = progress.model_copy(update={"version": expected_version + 1})
        with self._lock, self.conn:
            cur = self.conn.execute(
                "UPDATE works SET step = ?, version = ?, progress = ? "
                "WHERE id = ? AND version = ?",
                (
                    written.step.value,
                    written.version,
                    written.model_dump_json(),
                    work_id,
                    expected_version,
                ),
            )
        if cur.rowcount != 1:
            logger.debug(f"Progress write for {work_id} lost the race at version {expected_version}")
            return None
        return written

    @staticmethod
    def _row_to_work(row) -> Work:
        data, progress, version = row
        work = Work.model_validate_json(data)
        work.progress = WorkProgress.model_validate_json(progress).model_copy(
            update={"version": version}
        )
        return work

    # ------------------------------------------------------------------
    # Chapters
    # ------------------------------------------------------------------
    def insert_chapter(self, chapter: Chapter) -> Chapter:
        """Append the next chapter. Refuses gaps and duplicates."""
        with self._lock, self.conn:
            (last,) = self.conn.execute(
                "SELECT COALESCE(MAX(number), 0) FROM chapters WHERE work_id = ?",
                (chapter.work_id,),
            ).fetchone()
            if chapter.number != last + 1:
                raise ValueError(
                    f"Chapter {chapter.number} of work {chapter.work_id} would not follow "
                    f"chapter {last}"
                )
            self.conn.execute(
                "INSERT INTO chapters (work_id, number, data) VALUES (?, ?, ?)",
                (chapter.work_id, chapter.number, chapter.model_dump_json()),
            )
        return chapter

    def get_chapter(self, work_id: str, number: int) -> Optional[Chapter]:
        with self._lock:
            row = self.conn.execute(
                "SELECT data FROM chapters WHERE work_id = ? AND number = ?",
                (work_id, number),
            ).fetchone()
        return Chapter.model_validate_json(row[0]) if row else None

    def list_chapters(self, work_id: str) -> list[Chapter]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT data FROM chapters WHERE work_id = ? ORDER BY number", (work_id,)
            ).fetchall()
        return [Chapter.model_validate_json(r[0]) for r in rows]

    def chapter_numbers(self, work_id: str) -> list[int]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT number FROM chapters WHERE work_id = ? ORDER BY number", (work_id,)
            ).fetchall()
        return [r[0] for r in rows]

    def replace_chapter_content(self, work_id: str, number: int, content: str) -> Chapter:
        """The only mutation a persisted chapter ever sees: a voice repair."""
        with self._lock, self.conn:
            row = self.conn.execute(
                "SELECT data FROM chapters WHERE work_id = ? AND number = ?",
                (work_id, number),
            ).fetchone()
            if row is None:
                raise ValueError(f"Chapter {number} of work {work_id} does not exist")
            chapter = Chapter.model_validate_json(row[0])
            chapter.content = content
            chapter.repair_applied = True
            self.conn.execute(
                "UPDATE chapters SET data = ? WHERE work_id = ? AND number = ?",
                (chapter.model_dump_json(), work_id, number),
            )
        return chapter

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------
    def upsert_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        with self._lock, self.conn:
            self.conn.execute(
                "INSERT INTO ledger_entries (work_id, chapter_number, data) VALUES (?, ?, ?) "
                "ON CONFLICT(work_id, chapter_number) DO UPDATE SET data = excluded.data",
                (entry.work_id, entry.chapter_number, entry.model_dump_json()),
            )
        return entry

    def list_ledger_entries(self, work_id: str) -> list[LedgerEntry]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT data FROM ledger_entries WHERE work_id = ? ORDER BY chapter_number",
                (work_id,),
            ).fetchall()
        return [LedgerEntry.model_validate_json(r[0]) for r in rows]

    def set_ledger_summary(self, work_id: str, chapter_number: int, summary: str) -> None:
        with self._lock, self.conn:
            row = self.conn.execute(
                "SELECT data FROM ledger_entries WHERE work_id = ? AND chapter_number = ?",
                (work_id, chapter_number),
            ).fetchone()
            if row is None:
                return
            entry = LedgerEntry.model_validate_json(row[0])
            entry.compressed_summary = summary
            self.conn.execute(
                "UPDATE ledger_entries SET data = ? WHERE work_id = ? AND chapter_number = ?",
                (entry.model_dump_json(), work_id, chapter_number),
            )

    # ------------------------------------------------------------------
    # Voice reviews
    # ------------------------------------------------------------------
    def upsert_voice_review(self, review: VoiceReview) -> VoiceReview:
        with self._lock, self.conn:
            self.conn.execute(
                "INSERT INTO voice_reviews (work_id, chapter_number, data) VALUES (?, ?, ?) "
                "ON CONFLICT(work_id, chapter_number) DO UPDATE SET data = excluded.data",
                (review.work_id, review.chapter_number, review.model_dump_json()),
            )
        return review

    def get_voice_review(self, work_id: str, chapter_number: int) -> Optional[VoiceReview]:
        with self._lock:
            row = self.conn.execute(
                "SELECT data FROM voice_reviews WHERE work_id = ? AND chapter_number = ?",
                (work_id, chapter_number),
            ).fetchone()
        return VoiceReview.model_validate_json(row[0]) if row else None

    def count_voice_reviews(self, work_id: str) -> int:
        with self._lock:
            (n,) = self.conn.execute(
                "SELECT COUNT(*) FROM voice_reviews WHERE work_id = ?", (work_id,)
            ).fetchone()
        return n

    # ------------------------------------------------------------------
    # Feedback checkpoints
    # ------------------------------------------------------------------
    def upsert_feedback(self, feedback: FeedbackCheckpoint) -> FeedbackCheckpoint:
        with self._lock, self.conn:
            self.conn.execute(
                "INSERT INTO feedback_checkpoints (work_id, checkpoint, chapter_number, data) "
                "VALUES (?, ?, ?, ?) "
                "ON CONFLICT(work_id, checkpoint) DO UPDATE SET data = excluded.data",
                (
                    feedback.work_id,
                    feedback.checkpoint.value,
                    feedback.checkpoint.chapter_number,
                    feedback.model_dump_json(),
                ),
            )
        return feedback

    def list_feedback(self, work_id: str) -> list[FeedbackCheckpoint]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT data FROM feedback_checkpoints WHERE work_id = ? ORDER BY chapter_number",
                (work_id,),
            ).fetchall()
        return [FeedbackCheckpoint.model_validate_json(r[0]) for r in rows]

    def get_feedback(self, work_id: str, checkpoint: Checkpoint) -> Optional[FeedbackCheckpoint]:
        with self._lock:
            row = self.conn.execute(
                "SELECT data FROM feedback_checkpoints WHERE work_id = ? AND checkpoint = ?",
                (work_id, checkpoint.value),
            ).fetchone()
        return FeedbackCheckpoint.model_validate_json(row[0]) if row else None
