"""Generate-score-regenerate loop that enforces a minimum rubric score per chapter."""

from dataclasses import dataclass

from loguru import logger

from .agents.judge import QualityJudge
from .agents.writer import Writer
from .errors import ReviewParseError
from .models import QualityReview


@dataclass
class ReviewOutcome:
    content: str
    review: QualityReview
    attempts: int
    accepted: bool

    @property
    def regeneration_count(self) -> int:
        return self.attempts - 1


class QualityReviewLoop:
    """Runs at most `max_attempts` generation calls and keeps the best-scoring draft."""

    def __init__(self, writer: Writer, judge: QualityJudge):
        self.writer = writer
        self.judge = judge

    def generate_with_review(
        self,
        prompt: str,
        threshold: float,
        max_attempts: int,
        chapter_plan: str = "",
    ) -> ReviewOutcome:
        best_content, best_review = None, None
        revision_notes: list[str] | None = None

        for attempt in range(1, max_attempts + 1):
            content = self.writer.write_chapter(prompt, revision_notes)
            try:
                review = self.judge.review(content, chapter_plan, attempt=attempt)
            except ReviewParseError as e:
                logger.warning(f"Attempt {attempt}: review unusable ({e}); scoring as 0")
                review = QualityReview(
                    weighted_score=0.0,
                    deficiencies=["The previous draft could not be assessed; write a tighter, cleaner chapter."],
                    attempt=attempt,
                )

            if best_review is None or review.weighted_score > best_review.weighted_score:
                best_content, best_review = content, review

            if review.weighted_score >= threshold:
                logger.info(f"Attempt {attempt} accepted with score {review.weighted_score:.2f}")
                return ReviewOutcome(content, review, attempt, accepted=True)

            logger.info(
                f"Attempt {attempt} scored {review.weighted_score:.2f} (< {threshold}); "
                f"{'regenerating' if attempt < max_attempts else 'attempt cap reached'}"
            )
            revision_notes = review.deficiencies

        logger.warning(
            f"No draft cleared {threshold} in {max_attempts} attempts; "
            f"keeping attempt {best_review.attempt} ({best_review.weighted_score:.2f})"
        )
        return ReviewOutcome(best_content, best_review, max_attempts, accepted=False)
