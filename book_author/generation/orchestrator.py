"""Session orchestrator: drives the chapter pipeline across a whole book."""

import asyncio
import time
from datetime import datetime, timezone
from typing import Optional

from loguru import logger

from ..backend import GenerationBackend, GenerationOptions, estimate_tokens
from ..config import GenerationConfig
from ..errors import BlueprintError, GenerationCancelled, SessionStateError
from ..evaluation.continuity import ContinuityVerifier
from ..evaluation.quality import QualityEvaluator
from ..models.blueprint import BookBlueprint, ChapterBlueprint
from ..models.chapter import ChapterStatus, GeneratedChapter
from ..models.quality import ComprehensiveQualityReport
from ..models.session import GenerationMetrics, GenerationProgress, GenerationSession, SessionStatus
from ..store import SessionStore
from ..utils.text import count_words
from .context import ContextBuilder
from .control import CancelToken, GenerationControl
from .pipeline import ChapterPipeline, ProgressCallback, top_instructions
from .summaries import ChapterSummarizer

MANUAL_REVISION_PROMPT = """Revise the following chapter according to these instructions:

REVISION INSTRUCTIONS:
{instructions}

CURRENT CHAPTER:
{content}

Provide the fully revised chapter. Maintain the same length and all working elements:"""


def calculate_metrics(session: GenerationSession) -> GenerationMetrics:
    done = session.successful_chapters()
    scored = [c.quality_report.overall_score for c in done if c.quality_report]
    total_seconds = sum(c.generation_seconds for c in done)
    return GenerationMetrics(
        total_chapters=session.total_chapters,
        completed_chapters=len(done),
        failed_chapters=len(session.failed_chapters),
        total_words=sum(c.word_count for c in done),
        average_words_per_chapter=int(sum(c.word_count for c in done) / len(done)) if done else 0,
        average_quality_score=sum(scored) / len(scored) if scored else None,
        total_generation_seconds=round(total_seconds, 2),
        average_generation_seconds=round(total_seconds / len(done), 2) if done else 0.0,
        total_revisions=sum(c.revision_count for c in done),
    )


class SessionOrchestrator:
    """Generate a book chapter by chapter, strictly in chapter-number order.

    The caller owns the ``GenerationSession``; ``run`` updates it in place and
    returns it. One chapter's failure is recorded and the run moves on; only
    cancellation stops it early.
    """

    def __init__(
        self,
        backend: GenerationBackend,
        config: Optional[GenerationConfig] = None,
        context_builder: Optional[ContextBuilder] = None,
        pipeline: Optional[ChapterPipeline] = None,
        evaluator: Optional[QualityEvaluator] = None,
        verifier: Optional[ContinuityVerifier] = None,
        summarizer: Optional[ChapterSummarizer] = None,
        store: Optional[SessionStore] = None,
    ):
        self.backend = backend
        self.config = config
        self.evaluator = evaluator or QualityEvaluator(backend)
        self.verifier = verifier or ContinuityVerifier(backend)
        self.context_builder = context_builder or ContextBuilder(backend)
        self.pipeline = pipeline or ChapterPipeline(backend, self.evaluator, self.verifier)
        self.summarizer = summarizer or ChapterSummarizer(backend)
        self.store = store

    def _config_for(self, blueprint: BookBlueprint) -> GenerationConfig:
        return self.config or blueprint.generation

    def create_session(
        self,
        blueprint: BookBlueprint,
        start_chapter: Optional[int] = None,
        end_chapter: Optional[int] = None,
    ) -> GenerationSession:
        if not blueprint.chapters:
            raise BlueprintError("Blueprint has no chapters")
        if start_chapter is not None and end_chapter is not None and start_chapter > end_chapter:
            raise BlueprintError(f"Start chapter {start_chapter} is after end chapter {end_chapter}")

        session = GenerationSession(
            blueprint_id=blueprint.id,
            blueprint_version=blueprint.version,
            title=blueprint.identity.title,
            start_chapter=start_chapter,
            end_chapter=end_chapter,
        )
        session.total_chapters = len(self._planned_chapters(session, blueprint))
        return session

    @staticmethod
    def _planned_chapters(session: GenerationSession, blueprint: BookBlueprint) -> list[ChapterBlueprint]:
        return [
            c for c in blueprint.chapters
            if (session.start_chapter is None or c.chapter_number >= session.start_chapter)
            and (session.end_chapter is None or c.chapter_number <= session.end_chapter)
        ]

    async def run(
        self,
        session: GenerationSession,
        blueprint: BookBlueprint,
        control: Optional[GenerationControl] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> GenerationSession:
        if session.status != SessionStatus.IN_PROGRESS:
            raise SessionStateError(f"Session {session.id} is {session.status.value}; cannot run it")
        if session.blueprint_id != blueprint.id:
            raise BlueprintError(f"Session {session.id} was created for blueprint {session.blueprint_id}")

        control = control or GenerationControl()
        config = self._config_for(blueprint)
        planned = self._planned_chapters(session, blueprint)
        session.total_chapters = len(planned)
        already_done = {c.chapter_number for c in session.successful_chapters()}
        started = time.monotonic()
        elapsed_before = session.elapsed_seconds
        cancelled = False

        logger.info(f"Starting session {session.id}: {len(planned)} chapters of '{session.title}'")

        for chapter_bp in planned:
            if chapter_bp.chapter_number in already_done:
                continue

            await self._wait_while_paused(control, config.pause_poll_interval)
            if control.is_cancelled:
                cancelled = True
                break

            if progress:
                progress(
                    GenerationProgress(
                        stage="chapter",
                        name=chapter_bp.display_title,
                        current=chapter_bp.chapter_number,
                        total=session.total_chapters,
                        percentage=session.completed_chapters / session.total_chapters * 100,
                        message=f"Generating chapter {chapter_bp.chapter_number}: {chapter_bp.display_title}",
                        elapsed_seconds=elapsed_before + time.monotonic() - started,
                        words_generated=session.total_words,
                    )
                )

            try:
                chapter = await self.generate_chapter(
                    session, blueprint, chapter_bp.chapter_number, token=control.token, progress=progress
                )
            except GenerationCancelled:
                logger.info(f"Session {session.id} cancelled during chapter {chapter_bp.chapter_number}")
                cancelled = True
                break
            except Exception as e:
                logger.error(f"Chapter {chapter_bp.chapter_number} failed: {e}")
                chapter = GeneratedChapter(
                    chapter_number=chapter_bp.chapter_number,
                    title=chapter_bp.display_title,
                    status=ChapterStatus.FAILED,
                    failure_reason=str(e) or type(e).__name__,
                )

            self._record(session, chapter)
            session.elapsed_seconds = round(elapsed_before + time.monotonic() - started, 2)
            if self.store:
                self.store.save(session)

        session.elapsed_seconds = round(elapsed_before + time.monotonic() - started, 2)
        if cancelled:
            session.transition(SessionStatus.CANCELLED)
        elif session.failed_chapters:
            session.transition(SessionStatus.COMPLETED_WITH_ERRORS)
        else:
            session.transition(SessionStatus.COMPLETED)
        session.completed_at = datetime.now(timezone.utc)
        if self.store:
            self.store.save(session)

        logger.info(
            f"Session {session.id} {session.status.value}: {session.completed_chapters}/"
            f"{session.total_chapters} chapters, {session.total_words} words"
        )
        return session

    async def _wait_while_paused(self, control: GenerationControl, interval: float) -> None:
        if control.is_paused:
            logger.info("Generation paused")
            while control.is_paused and not control.is_cancelled:
                await asyncio.sleep(interval)
            if not control.is_cancelled:
                logger.info("Generation resumed")

    @staticmethod
    def _record(session: GenerationSession, chapter: GeneratedChapter) -> None:
        session.chapters = sorted(
            [c for c in session.chapters if c.chapter_number != chapter.chapter_number] + [chapter],
            key=lambda c: c.chapter_number,
        )
        session.recompute_totals()

    async def generate_chapter(
        self,
        session: GenerationSession,
        blueprint: BookBlueprint,
        chapter_number: int,
        token: Optional[CancelToken] = None,
        progress: Optional[ProgressCallback] = None,
        feedback: Optional[str] = None,
    ) -> GeneratedChapter:
        """Build context, run the pipeline, then fix and enrich the result.

        Only chapters before ``chapter_number`` that succeeded are used as
        prior context.
        """
        config = self._config_for(blueprint)
        previous = [c for c in session.successful_chapters() if c.chapter_number < chapter_number]
        context = await self.context_builder.build(chapter_number, blueprint, previous, config, feedback=feedback)
        chapter = await self.pipeline.run(context, token=token, progress=progress)

        if config.auto_fix_minor_issues and chapter.quality_report:
            chapter = await self._auto_fix(chapter)
        return await self._enrich(chapter, blueprint)

    async def _auto_fix(self, chapter: GeneratedChapter) -> GeneratedChapter:
        result = await self.evaluator.auto_fix(chapter.content, chapter.quality_report.issues)
        if not result.fixes_applied:
            return chapter
        logger.info(f"Applied {len(result.fixes_applied)} automatic fixes to chapter {chapter.chapter_number}")
        return chapter.model_copy(
            update={"content": result.fixed_content, "word_count": count_words(result.fixed_content)}
        )

    async def _enrich(self, chapter: GeneratedChapter, blueprint: BookBlueprint) -> GeneratedChapter:
        summaries = await self.summarizer.summarize(chapter.content)
        states = await self.verifier.extract_character_states(chapter.content, blueprint)
        events = await self.verifier.extract_key_events(chapter.content) or summaries.key_events
        return chapter.model_copy(
            update={"summaries": summaries, "character_states": states, "key_events": events}
        )

    async def regenerate_chapter(
        self,
        session: GenerationSession,
        blueprint: BookBlueprint,
        chapter_number: int,
        feedback: Optional[str] = None,
        token: Optional[CancelToken] = None,
    ) -> GeneratedChapter:
        """Generate one chapter again and replace its session entry.

        Errors propagate and leave the session untouched.
        """
        logger.info(f"Regenerating chapter {chapter_number}")
        chapter = await self.generate_chapter(session, blueprint, chapter_number, token=token, feedback=feedback)
        self._record(session, chapter)
        if self.store:
            self.store.save(session)
        return chapter

    async def revise_chapter(
        self,
        chapter: GeneratedChapter,
        report: Optional[ComprehensiveQualityReport] = None,
    ) -> GeneratedChapter:
        report = report or chapter.quality_report
        instructions = top_instructions(report) if report else []
        if not instructions:
            logger.info(f"No revision instructions for chapter {chapter.chapter_number}, skipping revision")
            return chapter

        logger.info(f"Revising chapter {chapter.chapter_number}")
        prompt = MANUAL_REVISION_PROMPT.format(
            instructions="\n".join(f"- {i.instruction}" for i in instructions),
            content=chapter.content,
        )
        options = GenerationOptions(temperature=0.6, max_tokens=max(1, estimate_tokens(chapter.content) * 2))
        revised = await self.backend.generate(prompt, options)
        return chapter.model_copy(
            update={
                "content": revised,
                "word_count": count_words(revised),
                "revision_count": chapter.revision_count + 1,
                "status": ChapterStatus.GENERATED,
            }
        )
