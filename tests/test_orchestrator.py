import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from book_author.errors import BackendError, BlueprintError, SessionStateError
from book_author.generation import ChapterSummarizer, GenerationControl, SessionOrchestrator, calculate_metrics
from book_author.models import (
    BookBlueprint,
    ChapterStatus,
    ChapterSummaries,
    ComprehensiveQualityReport,
    DimensionScore,
    GeneratedChapter,
    RevisionInstruction,
    SessionStatus,
)
from book_author.store import JsonSessionStore

from conftest import CHAPTER_TEXT, ScriptedBackend, make_blueprint


def _run(orchestrator, session, blueprint, control=None, progress=None):
    return asyncio.run(orchestrator.run(session, blueprint, control, progress))


def _chapter_prompt(backend, chapter_number):
    return next(
        p for p in backend.prompts
        if "Write the complete chapter" in p and f"Chapter {chapter_number}: " in p
    )


def test_full_run(blueprint, backend):
    orchestrator = SessionOrchestrator(backend)
    session = orchestrator.create_session(blueprint)
    events = []

    result = _run(orchestrator, session, blueprint, progress=events.append)

    assert result is session
    assert session.status == SessionStatus.COMPLETED
    assert [c.chapter_number for c in session.chapters] == [1, 2, 3]
    assert session.completed_chapters == 3
    assert session.failed_chapters == []
    assert session.total_words == 36
    assert session.average_quality_score == 85
    assert session.completed_at is not None
    assert all(c.status == ChapterStatus.APPROVED for c in session.chapters)

    chapter_events = [e for e in events if e.stage == "chapter"]
    assert [e.current for e in chapter_events] == [1, 2, 3]
    assert [round(e.percentage, 1) for e in chapter_events] == [0, 33.3, 66.7]
    assert len(events) == 3 + 27


def test_chapters_are_enriched_and_carried_forward(blueprint, backend):
    orchestrator = SessionOrchestrator(backend)
    session = orchestrator.create_session(blueprint)
    _run(orchestrator, session, blueprint)

    first = session.chapter(1)
    assert first.summaries.brief == "Ava finds a map."
    assert first.key_events == ["Ava finds the map", "Milo lies about the storm"]
    assert first.character_states[0].character_id == "char-ava"

    prompt = _chapter_prompt(backend, 2)
    assert "Ava discovers a map hidden in the lighthouse." in prompt
    assert "- Ava Stone: determined at Harbor (arc 40%)" in prompt
    assert "- Milo lies about the storm" in prompt
    assert "This is the first chapter of the book." in _chapter_prompt(backend, 1)


def test_key_events_fall_back_to_summary(blueprint):
    backend = ScriptedBackend(rules=[("Extract key plot events", BackendError("down"))])
    orchestrator = SessionOrchestrator(backend)
    chapter = asyncio.run(orchestrator.generate_chapter(orchestrator.create_session(blueprint), blueprint, 1))
    assert chapter.key_events == ["Ava finds the map"]


def test_failed_chapter_does_not_stop_session(blueprint):
    backend = ScriptedBackend(rules=[("Chapter 2:", RuntimeError("model exploded"))])
    orchestrator = SessionOrchestrator(backend)
    session = orchestrator.create_session(blueprint)

    _run(orchestrator, session, blueprint)

    assert session.status == SessionStatus.COMPLETED_WITH_ERRORS
    assert session.completed_chapters == 2
    assert session.failed_chapters == [2]
    failed = session.chapter(2)
    assert failed.status == ChapterStatus.FAILED
    assert "GenerateOutline" in failed.failure_reason
    # chapter 3 only sees chapter 1 as prior context
    assert "Chapter 1 (Arrival):" in _chapter_prompt(backend, 3)
    assert calculate_metrics(session).failed_chapters == 1


def test_cancel_between_chapters(blueprint, backend):
    orchestrator = SessionOrchestrator(backend)
    session = orchestrator.create_session(blueprint)
    control = GenerationControl()

    def progress(event):
        if event.stage == "chapter" and event.current == 2:
            control.cancel()

    _run(orchestrator, session, blueprint, control, progress)

    assert session.status == SessionStatus.CANCELLED
    assert [c.chapter_number for c in session.chapters] == [1]
    assert session.failed_chapters == []
    assert backend.count("Write the complete chapter") == 1


def test_pause_and_resume():
    blueprint = make_blueprint(pause_poll_interval=0.01)
    backend = ScriptedBackend()
    orchestrator = SessionOrchestrator(backend)
    session = orchestrator.create_session(blueprint)
    control = GenerationControl()
    control.pause()

    async def main():
        asyncio.get_running_loop().call_later(0.05, control.resume)
        return await orchestrator.run(session, blueprint, control)

    asyncio.run(main())

    assert not control.is_paused
    assert session.status == SessionStatus.COMPLETED
    assert session.completed_chapters == 3


def test_cancel_while_paused():
    blueprint = make_blueprint(pause_poll_interval=0.01)
    backend = ScriptedBackend()
    orchestrator = SessionOrchestrator(backend)
    session = orchestrator.create_session(blueprint)
    control = GenerationControl()
    control.pause()

    async def main():
        asyncio.get_running_loop().call_later(0.05, control.cancel)
        return await orchestrator.run(session, blueprint, control)

    asyncio.run(main())

    assert session.status == SessionStatus.CANCELLED
    assert session.chapters == []
    assert backend.prompts == []


def test_finished_session_cannot_run_again(blueprint, backend):
    orchestrator = SessionOrchestrator(backend)
    session = orchestrator.create_session(blueprint)
    _run(orchestrator, session, blueprint)

    with pytest.raises(SessionStateError):
        _run(orchestrator, session, blueprint)


def test_session_must_match_blueprint(blueprint, backend):
    orchestrator = SessionOrchestrator(backend)
    session = orchestrator.create_session(blueprint)
    with pytest.raises(BlueprintError):
        _run(orchestrator, session, make_blueprint().model_copy(update={"id": "other"}))


def test_create_session_validation(blueprint, backend):
    orchestrator = SessionOrchestrator(backend)
    with pytest.raises(BlueprintError):
        orchestrator.create_session(BookBlueprint())
    with pytest.raises(BlueprintError):
        orchestrator.create_session(blueprint, start_chapter=3, end_chapter=1)


def test_chapter_range(blueprint, backend):
    orchestrator = SessionOrchestrator(backend)
    session = orchestrator.create_session(blueprint, start_chapter=2, end_chapter=3)
    assert session.total_chapters == 2

    _run(orchestrator, session, blueprint)

    assert [c.chapter_number for c in session.chapters] == [2, 3]
    assert session.status == SessionStatus.COMPLETED


def test_completed_chapters_are_skipped(blueprint, backend):
    orchestrator = SessionOrchestrator(backend)
    session = orchestrator.create_session(blueprint)
    session.chapters = [
        GeneratedChapter(
            chapter_number=1,
            title="Arrival",
            content="Earlier text.",
            word_count=2,
            status=ChapterStatus.APPROVED,
            summaries=ChapterSummaries(brief="Resumed summary", detailed="Resumed summary"),
        )
    ]
    session.recompute_totals()

    _run(orchestrator, session, blueprint)

    assert backend.count("Write the complete chapter") == 2
    assert session.chapter(1).content == "Earlier text."
    assert "Resumed summary" in _chapter_prompt(backend, 2)
    assert session.total_words == 2 + 24


def test_regenerate_with_feedback(blueprint, backend):
    orchestrator = SessionOrchestrator(backend)
    session = orchestrator.create_session(blueprint)
    _run(orchestrator, session, blueprint)
    old_id = session.chapter(2).id

    chapter = asyncio.run(orchestrator.regenerate_chapter(session, blueprint, 2, feedback="More storm"))

    assert chapter.id != old_id
    assert session.chapter(2).id == chapter.id
    assert len(session.chapters) == 3
    assert session.status == SessionStatus.COMPLETED
    prompts = [p for p in backend.prompts if "REVISION FEEDBACK:\nMore storm" in p]
    assert len(prompts) == 1


def test_regenerate_failed_chapter(blueprint):
    backend = ScriptedBackend(rules=[("Chapter 2:", RuntimeError("model exploded"))])
    orchestrator = SessionOrchestrator(backend)
    session = orchestrator.create_session(blueprint)
    _run(orchestrator, session, blueprint)
    backend.rules = backend.rules[1:]

    asyncio.run(orchestrator.regenerate_chapter(session, blueprint, 2))

    assert session.failed_chapters == []
    assert session.completed_chapters == 3
    assert session.status == SessionStatus.COMPLETED_WITH_ERRORS


def test_revise_chapter(backend):
    orchestrator = SessionOrchestrator(backend)
    report = ComprehensiveQualityReport(
        chapter_number=1,
        dimensions=[DimensionScore(name="Plot", score=45)],
        revision_instructions=[
            RevisionInstruction(type="Improvement", instruction="Raise the stakes", priority=1),
        ],
    )
    chapter = GeneratedChapter(
        chapter_number=1, content=CHAPTER_TEXT, word_count=12,
        status=ChapterStatus.NEEDS_REVIEW, quality_report=report,
    )

    revised = asyncio.run(orchestrator.revise_chapter(chapter))

    assert revised.content == "Manually revised chapter text."
    assert revised.word_count == 4
    assert revised.revision_count == 1
    assert revised.status == ChapterStatus.GENERATED
    assert chapter.content == CHAPTER_TEXT
    assert "- Raise the stakes" in backend.prompts[0]


def test_revise_without_instructions_is_noop(backend):
    orchestrator = SessionOrchestrator(backend)
    chapter = GeneratedChapter(chapter_number=1, content=CHAPTER_TEXT)
    assert asyncio.run(orchestrator.revise_chapter(chapter)) is chapter
    assert backend.prompts == []


def test_auto_fix_minor_issues():
    blueprint = make_blueprint(auto_fix_minor_issues=True)
    weak = json.dumps({
        "score": 65,
        "weaknesses": [{"description": "cliche", "excerpt": "walked along", "suggested_fix": "strolled"}],
    })
    backend = ScriptedBackend(rules=[("Evaluate the narrative quality", weak)])
    orchestrator = SessionOrchestrator(backend)

    chapter = asyncio.run(orchestrator.generate_chapter(orchestrator.create_session(blueprint), blueprint, 1))

    assert chapter.content == CHAPTER_TEXT.replace("walked along", "fixed text")
    assert backend.count("Fix this minor issue") == 1


def test_session_is_persisted(tmp_path, blueprint, backend):
    store = JsonSessionStore(tmp_path / "sessions")
    orchestrator = SessionOrchestrator(backend, store=store)
    session = orchestrator.create_session(blueprint)

    _run(orchestrator, session, blueprint)

    assert store.list_ids() == [session.id]
    loaded = store.load(session.id)
    assert loaded.status == SessionStatus.COMPLETED
    assert [c.chapter_number for c in loaded.chapters] == [1, 2, 3]
    assert loaded.chapters[0].quality_report.overall_score == 85


def test_metrics(blueprint, backend):
    orchestrator = SessionOrchestrator(backend)
    session = orchestrator.create_session(blueprint)
    _run(orchestrator, session, blueprint)

    metrics = calculate_metrics(session)

    assert metrics.total_chapters == 3
    assert metrics.completed_chapters == 3
    assert metrics.failed_chapters == 0
    assert metrics.total_words == 36
    assert metrics.average_words_per_chapter == 12
    assert metrics.average_quality_score == 85
    assert metrics.total_revisions == 0


def test_malformed_character_states_do_not_stop_session(tmp_path, blueprint):
    backend = ScriptedBackend(rules=[("Extract character states", '{"states": 3}')])
    store = JsonSessionStore(tmp_path)
    orchestrator = SessionOrchestrator(backend, store=store)
    session = orchestrator.create_session(blueprint)

    _run(orchestrator, session, blueprint)

    assert session.status == SessionStatus.COMPLETED
    assert session.completed_chapters == 3
    assert all(c.character_states == [] for c in session.chapters)
    assert store.load(session.id).status == SessionStatus.COMPLETED


def test_unexpected_error_marks_chapter_failed(tmp_path, blueprint, backend):
    summarizer = ChapterSummarizer(backend)
    summarizer.summarize = AsyncMock(side_effect=[
        ChapterSummaries(brief="One."),
        TypeError("unexpected summary shape"),
        ChapterSummaries(brief="Three."),
    ])
    store = JsonSessionStore(tmp_path)
    orchestrator = SessionOrchestrator(backend, summarizer=summarizer, store=store)
    session = orchestrator.create_session(blueprint)

    _run(orchestrator, session, blueprint)

    assert session.status == SessionStatus.COMPLETED_WITH_ERRORS
    assert session.failed_chapters == [2]
    assert session.chapter(2).failure_reason == "unexpected summary shape"
    assert session.chapter(3).status == ChapterStatus.APPROVED
    assert store.load(session.id).failed_chapters == [2]
