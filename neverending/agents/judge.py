"""Judge agent: score a chapter against the weighted quality rubric."""

from .base import BaseAgent
from ..errors import ReviewParseError
from ..generation import GenerationClient
from ..models import DimensionScore, QualityReview

SYSTEM = """You are a senior fiction editor scoring one chapter of a serialized novel. Score each rubric dimension from 0 to 10 and back every score with evidence quoted or paraphrased from the chapter.

Rubric dimensions:
- show_vs_tell: emotions and stakes dramatized through action and detail rather than stated
- dialogue: natural, distinctive voices; dialogue that does work
- pacing: scenes enter late and leave early; momentum toward the chapter-end hook
- audience_appropriateness: content suits the intended readership
- character_consistency: characters act and speak in line with who they have been
- prose_quality: varied sentences, precise word choice, no cliches or repetition

Be strict. A 7 is solid professional work; reserve 9-10 for exceptional chapters."""

DIMENSION_HINTS = {
    "show_vs_tell": "show emotions through action instead of naming them",
    "dialogue": "sharpen dialogue so each voice is distinct",
    "pacing": "tighten scene entries and exits",
    "audience_appropriateness": "adjust content for the intended readership",
    "character_consistency": "keep characters in line with their established behavior",
    "prose_quality": "vary sentence structure and cut cliches",
}


def weighted_score(scores: dict[str, DimensionScore], weights: dict[str, float]) -> float:
    """Weighted mean over the rubric. Unscored dimensions count as zero."""
    total_weight = sum(weights.values())
    if total_weight <= 0:
        return 0.0
    total = sum(w * scores[d].score for d, w in weights.items() if d in scores)
    return round(total / total_weight, 2)


class QualityJudge(BaseAgent):
    def __init__(self, client: GenerationClient, weights: dict[str, float], threshold: float):
        super().__init__("QualityJudge", client)
        self.weights = weights
        self.threshold = threshold

    def review(self, chapter_text: str, chapter_plan: str = "", attempt: int = 1) -> QualityReview:
        """Score a chapter. Raises ReviewParseError when the reply has no usable scores."""
        system = SYSTEM + (
            "\n\nReturn JSON with: scores (object mapping each dimension to "
            "{score (0-10), evidence (string)}), deficiencies (array of specific, "
            "actionable problems to fix)."
        )
        prompt = ""
        if chapter_plan:
            prompt += f"## Chapter Plan\n{chapter_plan}\n\n"
        prompt += f"## Chapter Text\n{chapter_text}\n\nScore this chapter on every rubric dimension."

        try:
            data = self.call_json(system, prompt, action="review")
        except ValueError as e:
            raise ReviewParseError(str(e)) from e
        if not isinstance(data, dict) or not isinstance(data.get("scores"), dict):
            raise ReviewParseError("Review reply has no scores object")

        try:
            scores = self._parse_scores(data["scores"])
        except (TypeError, ValueError) as e:
            raise ReviewParseError(f"Malformed scores: {e}") from e

        raw_deficiencies = data.get("deficiencies") or []
        if not isinstance(raw_deficiencies, list):
            raw_deficiencies = [raw_deficiencies]
        deficiencies = [str(d) for d in raw_deficiencies if d]
        for dim, s in scores.items():
            if s.score < self.threshold:
                hint = DIMENSION_HINTS.get(dim, "improve this dimension")
                note = f"{dim} scored {s.score:g}/10: {hint}"
                if s.evidence:
                    note += f" ({s.evidence})"
                deficiencies.append(note)

        return QualityReview(
            scores=scores,
            weighted_score=weighted_score(scores, self.weights),
            deficiencies=deficiencies,
            attempt=attempt,
        )

    def _parse_scores(self, raw_scores: dict) -> dict[str, DimensionScore]:
        scores = {}
        for dim in self.weights:
            raw = raw_scores.get(dim)
            if isinstance(raw, dict):
                value, evidence = raw.get("score", 0), str(raw.get("evidence") or "")
            else:
                value, evidence = raw, ""
            try:
                value = float(value)
            except (TypeError, ValueError):
                value = 0.0
            scores[dim] = DimensionScore(score=min(10.0, max(0.0, value)), evidence=evidence)
        return scores
