import asyncio
import json
import re
from unittest.mock import AsyncMock

import pytest

from book_author.errors import BackendError, GenerationCancelled, PipelineStepError
from book_author.evaluation import QualityEvaluator
from book_author.generation import CancelToken, ChapterPipeline, ContextBuilder
from book_author.generation.pipeline import PipelineState
from book_author.models import ChapterStatus, SceneBlueprint

from conftest import CHAPTER_TEXT, GOOD_SCORE, ScriptedBackend, make_blueprint

WEAK_SCORE = json.dumps({"score": 30, "weaknesses": ["flat prose"], "explanation": "weak"})
WEAK_NO_NOTES = json.dumps({"score": 30, "weaknesses": [], "explanation": "weak"})
SCENE_NUMBER = re.compile(r"Write Scene (\d+)")


def _context(blueprint, chapter_number=1):
    return asyncio.run(ContextBuilder().build(chapter_number, blueprint, []))


def _with_scenes(blueprint, count):
    scenes = [
        SceneBlueprint(order=n, title=f"Scene title {n}", location="Harbor", characters=["Ava Stone"])
        for n in range(count, 0, -1)
    ]
    first = blueprint.chapters[0].model_copy(update={"scenes": scenes})
    return blueprint.model_copy(update={"chapters": [first, *blueprint.chapters[1:]]})


def _scene_reply(prompt):
    return f"Body of scene {SCENE_NUMBER.search(prompt).group(1)}."


def test_step_order():
    pipeline = ChapterPipeline(ScriptedBackend())
    assert [(s.name, s.order, s.required) for s in pipeline.steps] == [
        ("BuildContext", 1, True),
        ("GenerateOutline", 2, True),
        ("GenerateScenes", 3, True),
        ("AssembleChapter", 4, True),
        ("ContinuityCheck", 5, False),
        ("StyleConsistencyCheck", 6, False),
        ("QualityEvaluation", 7, False),
        ("Revision", 8, False),
        ("Finalize", 9, True),
    ]


def test_state_apply_bumps_version(blueprint):
    state = PipelineState(context=_context(blueprint))
    patched = state.apply({"outline": "1. Arrival"})
    assert patched.version == 1
    assert patched.outline == "1. Arrival"
    assert state.outline is None
    assert state.apply({}) is state


def test_single_shot_chapter(blueprint):
    backend = ScriptedBackend()
    chapter = asyncio.run(ChapterPipeline(backend).run(_context(blueprint)))

    assert chapter.content == CHAPTER_TEXT
    assert chapter.word_count == 12
    assert chapter.title == "Arrival"
    assert chapter.status == ChapterStatus.APPROVED
    assert chapter.quality_report.overall_score == 85
    assert chapter.continuity_report.passes_continuity_check
    assert chapter.revision_count == 0
    assert backend.count("Write the complete chapter") == 1
    chapter_call = backend.prompts.index(next(p for p in backend.prompts if "Write the complete chapter" in p))
    assert backend.options[chapter_call].max_tokens == 2000


def test_progress_events(blueprint):
    events = []
    asyncio.run(ChapterPipeline(ScriptedBackend()).run(_context(blueprint), progress=events.append))

    assert len(events) == 9
    assert [e.name for e in events][:3] == ["BuildContext", "GenerateOutline", "GenerateScenes"]
    assert all(e.stage == "step" and e.total == 9 for e in events)
    assert events[0].percentage == 0
    assert events[-1].name == "Finalize"
    assert events[-1].percentage == pytest.approx(8 / 9 * 100)
    assert events[-1].words_generated == 12


def test_scenes_use_rolling_window():
    blueprint = _with_scenes(make_blueprint(), 4)
    backend = ScriptedBackend(rules=[("Write Scene", _scene_reply)])

    chapter = asyncio.run(ChapterPipeline(backend).run(_context(blueprint)))

    scene_prompts = [p for p in backend.prompts if "Write Scene" in p]
    assert [SCENE_NUMBER.search(p).group(1) for p in scene_prompts] == ["1", "2", "3", "4"]
    assert "Previous scenes written:" not in scene_prompts[0]
    assert "This is the first chapter of the book." in scene_prompts[0]
    assert "Body of scene 1." not in scene_prompts[3]
    assert "Body of scene 2.\n---\nBody of scene 3." in scene_prompts[3]
    assert chapter.content == "Body of scene 1.\n\nBody of scene 2.\n\nBody of scene 3.\n\nBody of scene 4."


def test_failed_scene_is_skipped():
    blueprint = _with_scenes(make_blueprint(), 3)
    backend = ScriptedBackend(rules=[("Write Scene 2", BackendError("timeout")), ("Write Scene", _scene_reply)])

    chapter = asyncio.run(ChapterPipeline(backend).run(_context(blueprint)))

    assert chapter.content == "Body of scene 1.\n\nBody of scene 3."


@pytest.mark.parametrize("rules,step", [
    ([("Create a detailed outline", BackendError("down"))], "GenerateOutline"),
    ([("Write the complete chapter", BackendError("down"))], "GenerateScenes"),
    ([("Write the complete chapter", "   ")], "Finalize"),
])
def test_required_step_failure(blueprint, rules, step):
    with pytest.raises(PipelineStepError) as exc_info:
        asyncio.run(ChapterPipeline(ScriptedBackend(rules=rules)).run(_context(blueprint)))
    assert exc_info.value.step_name == step


def test_no_scenes_to_assemble():
    blueprint = _with_scenes(make_blueprint(), 2)
    backend = ScriptedBackend(rules=[("Write Scene", RuntimeError("boom"))])

    with pytest.raises(PipelineStepError) as exc_info:
        asyncio.run(ChapterPipeline(backend).run(_context(blueprint)))
    assert exc_info.value.step_name == "AssembleChapter"


def test_optional_step_failure_continues(blueprint):
    backend = ScriptedBackend()
    evaluator = QualityEvaluator(backend)
    evaluator.evaluate = AsyncMock(side_effect=RuntimeError("evaluator crashed"))

    chapter = asyncio.run(ChapterPipeline(backend, evaluator=evaluator).run(_context(blueprint)))

    assert chapter.quality_report is None
    assert chapter.quality_score == 0
    assert chapter.status == ChapterStatus.NEEDS_REVIEW
    assert chapter.word_count == 12


def test_revision_is_bounded(blueprint):
    backend = ScriptedBackend(rules=[("Evaluate on these criteria", WEAK_SCORE)])

    chapter = asyncio.run(ChapterPipeline(backend).run(_context(blueprint)))

    assert backend.count("Revise this chapter based on") == 2
    assert chapter.revision_count == 2
    assert chapter.content == "Revised chapter text."
    assert chapter.status == ChapterStatus.NEEDS_REVIEW
    assert backend.count("Evaluate on these criteria") == 18
    revise_prompt = next(p for p in backend.prompts if "Revise this chapter based on" in p)
    assert "- Improve: flat prose" in revise_prompt


def test_revision_stops_once_score_recovers(blueprint):
    def score(prompt):
        return GOOD_SCORE if "Revised chapter text." in prompt else WEAK_SCORE

    backend = ScriptedBackend(rules=[("Evaluate on these criteria", score)])
    chapter = asyncio.run(ChapterPipeline(backend).run(_context(blueprint)))

    assert chapter.revision_count == 1
    assert chapter.quality_report.overall_score == 85
    assert chapter.status == ChapterStatus.APPROVED


def test_revision_skipped_without_instructions(blueprint):
    backend = ScriptedBackend(rules=[("Evaluate on these criteria", WEAK_NO_NOTES)])

    chapter = asyncio.run(ChapterPipeline(backend).run(_context(blueprint)))

    assert backend.count("Revise this chapter based on") == 0
    assert chapter.revision_count == 0
    assert chapter.content == CHAPTER_TEXT


def test_failed_first_revision_keeps_original(blueprint):
    backend = ScriptedBackend(rules=[
        ("Evaluate on these criteria", WEAK_SCORE),
        ("Revise this chapter based on", BackendError("down")),
    ])

    chapter = asyncio.run(ChapterPipeline(backend).run(_context(blueprint)))

    assert chapter.content == CHAPTER_TEXT
    assert chapter.revision_count == 0
    assert chapter.quality_report.overall_score == 30


def test_revision_respects_zero_limit():
    blueprint = make_blueprint(max_revisions=0)
    backend = ScriptedBackend(rules=[("Evaluate on these criteria", WEAK_SCORE)])

    asyncio.run(ChapterPipeline(backend).run(_context(blueprint)))

    assert backend.count("Revise this chapter based on") == 0


def test_cancelled_before_start(blueprint):
    token = CancelToken()
    token.cancel()
    backend = ScriptedBackend()

    with pytest.raises(GenerationCancelled):
        asyncio.run(ChapterPipeline(backend).run(_context(blueprint), token=token))
    assert backend.prompts == []


def test_cancelled_between_steps(blueprint):
    token = CancelToken()
    backend = ScriptedBackend()

    def progress(event):
        if event.name == "AssembleChapter":
            token.cancel()

    with pytest.raises(GenerationCancelled):
        asyncio.run(ChapterPipeline(backend).run(_context(blueprint), token=token, progress=progress))
    assert backend.count("Check for") == 0


def test_cancelled_between_scenes():
    blueprint = _with_scenes(make_blueprint(), 3)
    token = CancelToken()

    def scene(prompt):
        token.cancel()
        return _scene_reply(prompt)

    backend = ScriptedBackend(rules=[("Write Scene", scene)])
    with pytest.raises(GenerationCancelled):
        asyncio.run(ChapterPipeline(backend).run(_context(blueprint), token=token))
    assert backend.count("Write Scene") == 1
