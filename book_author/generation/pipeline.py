"""Chapter pipeline: nine ordered steps that turn a context into a scored chapter."""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from loguru import logger
from pydantic import BaseModel, Field

from ..backend import GenerationBackend, GenerationOptions, estimate_tokens
from ..errors import EmptyContent, GenerationCancelled, NoScenesToAssemble, PipelineStepError
from ..evaluation.continuity import ContinuityVerifier
from ..evaluation.quality import QualityEvaluator
from ..models.blueprint import SceneBlueprint
from ..models.chapter import ChapterGenerationContext, ChapterStatus, GeneratedChapter
from ..models.quality import ComprehensiveQualityReport, ContinuityReport, RevisionInstruction
from ..models.session import GenerationProgress
from ..utils.text import count_words
from .control import CancelToken

ProgressCallback = Callable[[GenerationProgress], None]

SCENE_WINDOW = 2
REVISION_INSTRUCTION_LIMIT = 5

OUTLINE_OPTIONS = GenerationOptions(temperature=0.6, max_tokens=1500)
SCENE_OPTIONS = GenerationOptions(temperature=0.8, max_tokens=2000)


class PipelineState(BaseModel):
    """Working state of one pipeline run.

    Steps never mutate it; each returns a patch that ``apply`` folds into a
    new state with the version bumped.
    """

    context: ChapterGenerationContext
    version: int = 0
    outline: Optional[str] = None
    scenes: list[str] = Field(default_factory=list)
    content: Optional[str] = None
    continuity_report: Optional[ContinuityReport] = None
    quality_report: Optional[ComprehensiveQualityReport] = None
    revision_count: int = 0
    word_count: int = 0
    started_at: float = Field(default_factory=time.monotonic)
    elapsed_seconds: float = 0.0

    def apply(self, patch: dict) -> "PipelineState":
        if not patch:
            return self
        return self.model_copy(update={**patch, "version": self.version + 1})


StepExecutor = Callable[[PipelineState, CancelToken], Awaitable[dict]]


@dataclass(frozen=True)
class PipelineStep:
    name: str
    order: int
    required: bool
    execute: StepExecutor


def revision_prompt(content: str, instructions: list[RevisionInstruction]) -> str:
    feedback = "\n".join(f"- {i.instruction}" for i in instructions)
    return (
        "Revise this chapter based on the following feedback:\n\n"
        f"{feedback}\n\n"
        f"Current chapter:\n{content}\n\n"
        "Provide the fully revised chapter:"
    )


def top_instructions(report: ComprehensiveQualityReport, limit: int = REVISION_INSTRUCTION_LIMIT) -> list[RevisionInstruction]:
    return sorted(report.revision_instructions, key=lambda i: i.priority)[:limit]


class ChapterPipeline:
    """Runs the fixed step list over one chapter context.

    A required step's failure aborts with ``PipelineStepError``; an optional
    step's failure is logged and its output left unset. Cancellation is
    checked before every step and always propagates.
    """

    def __init__(
        self,
        backend: GenerationBackend,
        evaluator: Optional[QualityEvaluator] = None,
        verifier: Optional[ContinuityVerifier] = None,
    ):
        self.backend = backend
        self.evaluator = evaluator or QualityEvaluator(backend)
        self.verifier = verifier or ContinuityVerifier(backend)
        self.steps = self.build_steps()

    def build_steps(self) -> list[PipelineStep]:
        specs = [
            ("BuildContext", True, self._build_context),
            ("GenerateOutline", True, self._generate_outline),
            ("GenerateScenes", True, self._generate_scenes),
            ("AssembleChapter", True, self._assemble_chapter),
            ("ContinuityCheck", False, self._continuity_check),
            ("StyleConsistencyCheck", False, self._style_consistency_check),
            ("QualityEvaluation", False, self._quality_evaluation),
            ("Revision", False, self._revision),
            ("Finalize", True, self._finalize),
        ]
        return [
            PipelineStep(name=name, order=i, required=required, execute=execute)
            for i, (name, required, execute) in enumerate(specs, 1)
        ]

    async def run(
        self,
        context: ChapterGenerationContext,
        token: Optional[CancelToken] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> GeneratedChapter:
        token = token or CancelToken()
        state = PipelineState(context=context)
        total = len(self.steps)
        logger.info(f"Generating chapter {context.chapter_number}: {context.chapter_blueprint.display_title}")

        for index, step in enumerate(sorted(self.steps, key=lambda s: s.order)):
            token.raise_if_cancelled()
            if progress:
                progress(
                    GenerationProgress(
                        stage="step",
                        name=step.name,
                        current=index,
                        total=total,
                        percentage=index / total * 100,
                        message=f"Chapter {context.chapter_number}: {step.name}",
                        elapsed_seconds=time.monotonic() - state.started_at,
                        words_generated=count_words(state.content or ""),
                    )
                )

            logger.debug(f"Chapter {context.chapter_number}: step {step.order} {step.name}")
            try:
                patch = await step.execute(state, token)
            except (GenerationCancelled, asyncio.CancelledError):
                raise
            except Exception as e:
                if step.required:
                    raise PipelineStepError(step.name, e) from e
                logger.warning(f"Optional step {step.name} failed for chapter {context.chapter_number}: {e}")
                continue
            state = state.apply(patch)

        return self._to_chapter(state)

    def _to_chapter(self, state: PipelineState) -> GeneratedChapter:
        config = state.context.config
        chapter = GeneratedChapter(
            chapter_number=state.context.chapter_number,
            title=state.context.chapter_blueprint.display_title,
            content=state.content or "",
            word_count=state.word_count,
            quality_report=state.quality_report,
            continuity_report=state.continuity_report,
            revision_count=state.revision_count,
            generation_seconds=state.elapsed_seconds,
        )
        status = ChapterStatus.APPROVED if chapter.quality_score >= config.approval_threshold else ChapterStatus.NEEDS_REVIEW
        logger.info(
            f"Chapter {chapter.chapter_number} finished: {chapter.word_count} words, "
            f"quality {chapter.quality_score:.1f}, {status.value}"
        )
        return chapter.model_copy(update={"status": status})

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _build_context(self, state: PipelineState, token: CancelToken) -> dict:
        ctx = state.context
        if ctx.chapter_blueprint.chapter_number != ctx.chapter_number:
            raise ValueError(
                f"Context for chapter {ctx.chapter_number} carries blueprint for "
                f"chapter {ctx.chapter_blueprint.chapter_number}"
            )
        return {}

    async def _generate_outline(self, state: PipelineState, token: CancelToken) -> dict:
        chapter = state.context.chapter_blueprint
        prompt = (
            "Create a detailed outline for this chapter.\n\n"
            f"Chapter {chapter.chapter_number}: {chapter.title}\n"
            f"Purpose: {chapter.purpose}\n\n"
            "Provide a scene-by-scene outline with key beats, character actions, and emotional moments."
        )
        return {"outline": await self.backend.generate(prompt, OUTLINE_OPTIONS)}

    async def _generate_scenes(self, state: PipelineState, token: CancelToken) -> dict:
        chapter = state.context.chapter_blueprint
        if not chapter.scenes:
            options = GenerationOptions(temperature=0.8, max_tokens=chapter.target_word_count * 2)
            return {"scenes": [await self.backend.generate(state.context.full_prompt(), options)]}

        scenes = []
        for scene in sorted(chapter.scenes, key=lambda s: s.order):
            token.raise_if_cancelled()
            prompt = self._scene_prompt(state.context, scene, scenes[-SCENE_WINDOW:])
            try:
                scenes.append(await self.backend.generate(prompt, SCENE_OPTIONS))
            except (GenerationCancelled, asyncio.CancelledError):
                raise
            except Exception as e:
                logger.warning(f"Scene {scene.order} of chapter {chapter.chapter_number} failed, skipping: {e}")
        return {"scenes": scenes}

    @staticmethod
    def _scene_prompt(context: ChapterGenerationContext, scene: SceneBlueprint, previous: list[str]) -> str:
        prompt = (
            f"{context.system_prompt}\n\n"
            f"{context.character_context}\n\n"
            f"Write Scene {scene.order}: {scene.title}\n\n"
            f"Location: {scene.location}\n"
            f"Characters: {', '.join(scene.characters)}\n"
            f"Purpose: {scene.purpose}\n\n"
        )
        if previous:
            prompt += "Previous scenes written:\n" + "\n---\n".join(previous) + "\n\n"
        else:
            prompt += f"{context.narrative_context}\n\n"
        prompt += f"Write this scene (~{scene.target_word_count} words):"
        return prompt

    async def _assemble_chapter(self, state: PipelineState, token: CancelToken) -> dict:
        if not state.scenes:
            raise NoScenesToAssemble()
        return {"content": "\n\n".join(s.strip() for s in state.scenes)}

    async def _continuity_check(self, state: PipelineState, token: CancelToken) -> dict:
        ctx = state.context
        report = await self.verifier.verify(
            ctx.chapter_number,
            state.content or "",
            ctx.blueprint,
            previous_events=ctx.previous_events,
            character_states=ctx.character_states,
        )
        return {"continuity_report": report}

    async def _style_consistency_check(self, state: PipelineState, token: CancelToken) -> dict:
        # Style is scored by the quality evaluator's Style dimension.
        return {}

    async def _quality_evaluation(self, state: PipelineState, token: CancelToken) -> dict:
        ctx = state.context
        report = await self.evaluator.evaluate(
            ctx.chapter_number, state.content or "", ctx.chapter_blueprint, ctx.blueprint
        )
        return {"quality_report": report}

    async def _revision(self, state: PipelineState, token: CancelToken) -> dict:
        """Revise and re-score while the score stays under the threshold.

        Bounded by ``max_revisions`` in total for the chapter. Stops early
        when the report carries no instructions.
        """
        config = state.context.config
        ctx = state.context
        content = state.content or ""
        report = state.quality_report
        count = state.revision_count
        revised = False

        while (
            report is not None
            and report.overall_score < config.revision_threshold
            and count < config.max_revisions
        ):
            instructions = top_instructions(report)
            if not instructions:
                logger.debug(f"Chapter {ctx.chapter_number}: no revision instructions, skipping revision")
                break
            token.raise_if_cancelled()
            logger.info(
                f"Revising chapter {ctx.chapter_number} (pass {count + 1}/{config.max_revisions}, "
                f"score {report.overall_score:.1f})"
            )
            try:
                content = await self.revise_content(content, instructions)
            except (GenerationCancelled, asyncio.CancelledError):
                raise
            except Exception as e:
                if not revised:
                    raise
                logger.warning(f"Further revision of chapter {ctx.chapter_number} failed: {e}")
                break
            count += 1
            revised = True
            report = await self.evaluator.evaluate(
                ctx.chapter_number, content, ctx.chapter_blueprint, ctx.blueprint
            )

        if not revised:
            return {}
        return {"content": content, "revision_count": count, "quality_report": report}

    async def revise_content(self, content: str, instructions: list[RevisionInstruction]) -> str:
        options = GenerationOptions(temperature=0.6, max_tokens=max(1, estimate_tokens(content) * 2))
        revised = await self.backend.generate(revision_prompt(content, instructions), options)
        if not revised.strip():
            raise EmptyContent()
        return revised

    async def _finalize(self, state: PipelineState, token: CancelToken) -> dict:
        if not state.content or not state.content.strip():
            raise EmptyContent()
        return {
            "word_count": count_words(state.content),
            "elapsed_seconds": round(time.monotonic() - state.started_at, 2),
        }
