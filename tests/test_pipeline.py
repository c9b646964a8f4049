import pytest

from neverending.errors import FatalBatchError, TransientProviderError
from neverending.models import Chapter, FeatureFlags

from conftest import judge_reply


def test_batch_writes_chapters_in_order(pipeline, store, make_work, backend):
    make_work("w1")
    seen = []

    result = pipeline.run_batch("w1", 1, 3, "", FeatureFlags(), progress=lambda w, n: seen.append(n))

    assert result.written == [1, 2, 3]
    assert seen == [1, 2, 3]
    assert store.chapter_numbers("w1") == [1, 2, 3]
    assert [e.chapter_number for e in store.list_ledger_entries("w1")] == [1, 2, 3]
    assert store.count_voice_reviews("w1") == 3
    chapter = store.get_chapter("w1", 2)
    assert chapter.title == "Part 2"
    assert chapter.quality_review.weighted_score == 8.0
    assert chapter.regeneration_count == 0


def test_regenerated_chapter_keeps_second_attempt(pipeline, store, make_work, backend):
    make_work("w1")
    backend.queue("write", "First attempt prose.", "Second attempt prose.")
    backend.queue("judge", judge_reply(6.5), judge_reply(8.0))

    pipeline.run_batch("w1", 1, 1, "", FeatureFlags())

    chapter = store.get_chapter("w1", 1)
    assert chapter.content == "Second attempt prose."
    assert chapter.regeneration_count == 1


def test_prompt_carries_continuity_and_corrections(pipeline, make_work, backend):
    make_work("w1")
    pipeline.run_batch("w1", 1, 2, "## Reader Course Corrections\nPACING (slow)", FeatureFlags(),
                       preference_text="## Standing Reader Preferences\nlikes it quick")

    second = backend.calls_for("write")[1].prompt
    assert "## Character Continuity" in second
    assert "wary in chapter 1" in second
    assert "## End of Chapter 1" in second
    assert "## Reader Course Corrections" in second
    assert "## Standing Reader Preferences" in second


def test_disabled_flags_skip_enrichment_and_prompt_blocks(pipeline, store, make_work, backend):
    make_work("w1")
    flags = FeatureFlags(
        character_ledger=False, voice_review=False, adaptive_preferences=False, course_corrections=False
    )

    pipeline.run_batch("w1", 1, 2, "## Reader Course Corrections", flags, preference_text="## Standing")

    assert backend.calls_for("extract") == []
    assert backend.calls_for("voice") == []
    assert store.list_ledger_entries("w1") == []
    prompt = backend.calls_for("write")[1].prompt
    assert "Character Continuity" not in prompt
    assert "Course Corrections" not in prompt
    assert "## Standing" not in prompt


def test_enrichment_failures_do_not_block_chapters(pipeline, store, make_work, backend):
    make_work("w1")
    backend.queue("extract", "garbage")
    backend.queue("voice", RuntimeError("review tier down"))

    result = pipeline.run_batch("w1", 1, 2, "", FeatureFlags())

    assert result.written == [1, 2]
    assert [e.chapter_number for e in store.list_ledger_entries("w1")] == [2]
    assert store.count_voice_reviews("w1") == 1


def test_existing_chapters_are_skipped(pipeline, store, make_work, backend):
    make_work("w1")
    store.insert_chapter(Chapter(work_id="w1", number=1, content="Already here."))

    result = pipeline.run_batch("w1", 1, 3, "", FeatureFlags())

    assert result.skipped == [1]
    assert result.written == [2, 3]
    assert store.get_chapter("w1", 1).content == "Already here."
    assert len(backend.calls_for("write")) == 2


def test_missing_predecessor_is_fatal(pipeline, make_work):
    make_work("w1")
    with pytest.raises(FatalBatchError):
        pipeline.run_batch("w1", 4, 6, "", FeatureFlags())


def test_exhausted_retries_are_fatal(pipeline, store, make_work, backend):
    make_work("w1")
    backend.queue("write", *[TransientProviderError("timeout")] * 3)

    with pytest.raises(FatalBatchError, match="retries exhausted"):
        pipeline.run_batch("w1", 1, 3, "", FeatureFlags())
    assert store.chapter_numbers("w1") == []


def test_outline_generated_when_missing(pipeline, store, make_work, backend):
    make_work("w1", outline=[])

    pipeline.run_batch("w1", 1, 1, "", FeatureFlags())

    work = store.get_work("w1")
    assert len(work.outline) == 12
    assert len(backend.calls_for("outline")) == 1
    assert store.get_chapter("w1", 1).title == "Part 1"


def test_bad_outline_is_fatal(pipeline, make_work, backend):
    make_work("w1", outline=[])
    backend.queue("outline", {"chapters": [{"title": "Only one"}], "characters": []})
    with pytest.raises(FatalBatchError, match="Outline"):
        pipeline.run_batch("w1", 1, 3, "", FeatureFlags())


def test_null_deficiencies_in_a_passing_review_keep_the_chapter(pipeline, store, make_work, backend):
    make_work("w1")
    reply = judge_reply(8.0)
    reply["deficiencies"] = None
    backend.queue("judge", reply)

    result = pipeline.run_batch("w1", 1, 1, "", FeatureFlags())

    assert result.written == [1]
    chapter = store.get_chapter("w1", 1)
    assert chapter.regeneration_count == 0
    assert chapter.quality_review.weighted_score == 8.0


def test_ledger_describes_the_repaired_chapter(pipeline, store, make_work, backend):
    make_work("w1")
    line = "Tobin said nothing for a long while."
    backend.queue(
        "voice",
        {
            "characters": [{"name": "Tobin", "score": 0.3, "flags": [{"line": line, "issue": "he is chatty"}]}],
            "missed_callbacks": [],
        },
    )
    backend.queue("repair", {"edits": [{"original": line, "replacement": "Tobin hummed an old shanty."}]})

    pipeline.run_batch("w1", 1, 1, "", FeatureFlags())

    assert store.get_chapter("w1", 1).repair_applied
    assert "Tobin hummed an old shanty." in backend.calls_for("extract")[0].prompt
    assert backend.calls.index(backend.calls_for("voice")[0]) < backend.calls.index(backend.calls_for("extract")[0])
