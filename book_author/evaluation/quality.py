"""Quality evaluator: six weighted dimension scores, issues and revision instructions."""

from dataclasses import dataclass
from typing import Callable

from loguru import logger

from ..backend import GenerationBackend, GenerationOptions
from ..errors import BackendError, ResponseParseError
from ..models.blueprint import BookBlueprint, ChapterBlueprint
from ..models.quality import (
    AppliedFix,
    AutoFixResult,
    ComprehensiveQualityReport,
    DimensionScore,
    ImprovementSuggestion,
    Issue,
    RevisionInstruction,
    Severity,
    Verdict,
    verdict_for,
    weighted_overall,
)
from ..utils.text import head, list_field, parse_json_object, string_list

EVALUATION_CHAR_LIMIT = 8000
DEFAULT_DIMENSION_SCORE = 70.0
DEFAULT_EXPLANATION = "Default score assigned"
MAX_REVISION_INSTRUCTIONS = 10
FIX_IMPROVEMENT_POINTS = 2.0

EVALUATION_OPTIONS = GenerationOptions(temperature=0.3, max_tokens=1000, response_format="json")
FIX_OPTIONS = GenerationOptions(temperature=0.2, max_tokens=500)

RESPONSE_SHAPE = """Respond in JSON:
{
  "score": 0-100,
  "strengths": ["strength1"],
  "weaknesses": ["weakness1"],
  "explanation": "detailed explanation"
}"""

FIX_PROMPT = """Fix this minor issue in the text.

Original: {excerpt}
Issue: {description}
Suggested fix: {suggested_fix}

Provide only the corrected text, nothing else."""


@dataclass(frozen=True)
class Dimension:
    name: str
    weight: float
    heading: str
    criteria: tuple[str, ...]
    context: Callable[[BookBlueprint, ChapterBlueprint], str]


def _no_context(blueprint: BookBlueprint, chapter: ChapterBlueprint) -> str:
    return ""


def _character_context(blueprint: BookBlueprint, chapter: ChapterBlueprint) -> str:
    names = [c.full_name for c in blueprint.characters.main_characters]
    return f"Characters: {', '.join(names)}" if names else ""


def _plot_context(blueprint: BookBlueprint, chapter: ChapterBlueprint) -> str:
    lines = [f"Chapter purpose: {chapter.purpose}"]
    if chapter.plot_points:
        lines.append(f"Planned plot points: {'; '.join(chapter.plot_points)}")
    if chapter.must_include:
        lines.append(f"Must include: {'; '.join(chapter.must_include)}")
    return "\n".join(lines)


def _style_context(blueprint: BookBlueprint, chapter: ChapterBlueprint) -> str:
    voice = blueprint.style.voice
    return f"Voice: {voice.description if voice and voice.description else 'Not specified'}"


def _pacing_context(blueprint: BookBlueprint, chapter: ChapterBlueprint) -> str:
    return f"Expected pacing: {chapter.pacing.value}"


DIMENSIONS = (
    Dimension(
        "Narrative", 1.0, "the narrative quality of this chapter content",
        ("Prose quality and flow", "Show vs tell balance", "Sensory details",
         "Engagement and hook", "Scene construction"),
        _no_context,
    ),
    Dimension(
        "Character", 1.2, "character consistency in this chapter",
        ("Character voice consistency", "Behavior consistency with established traits",
         "Character development/arc progression", "Dialogue authenticity", "Relationship dynamics"),
        _character_context,
    ),
    Dimension(
        "Plot", 1.3, "plot adherence in this chapter",
        ("Chapter purpose fulfilled", "Planned plot points covered", "Logical cause and effect",
         "Stakes and tension", "Setup and payoff handling"),
        _plot_context,
    ),
    Dimension(
        "Style", 1.0, "style consistency in this chapter",
        ("Voice consistency", "Tone consistency", "POV consistency",
         "Tense consistency", "Style guide adherence"),
        _style_context,
    ),
    Dimension(
        "Pacing", 0.9, "pacing in this chapter",
        ("Scene pacing", "Tension management", "Action/reflection balance",
         "Chapter rhythm", "Hook and cliffhanger effectiveness"),
        _pacing_context,
    ),
    Dimension(
        "Dialogue", 0.8, "dialogue quality in this chapter",
        ("Natural dialogue flow", "Character voice distinction", "Subtext usage",
         "Dialogue tags effectiveness", "Purpose (advances plot/reveals character)"),
        _no_context,
    ),
)


def severity_for_score(score: float) -> Severity:
    if score < 50:
        return Severity.MAJOR
    if score < 70:
        return Severity.MINOR
    return Severity.SUGGESTION


def default_dimension(name: str, weight: float) -> DimensionScore:
    return DimensionScore(
        name=name,
        score=DEFAULT_DIMENSION_SCORE,
        weight=weight,
        explanation=DEFAULT_EXPLANATION,
        is_default=True,
    )


def parse_dimension(response: str, name: str, weight: float) -> tuple[DimensionScore, list[dict]]:
    """Parse one rubric response into a score plus weakness details.

    ``weaknesses`` entries may be plain strings or objects carrying
    ``description``/``excerpt``/``suggested_fix``/``location``.

    Raises:
        ResponseParseError: if the response is not a usable JSON object.
    """
    data = parse_json_object(response)

    raw_score = data.get("score", DEFAULT_DIMENSION_SCORE)
    if isinstance(raw_score, bool) or not isinstance(raw_score, (int, float)):
        raise ResponseParseError(f"{name}: score is not a number: {raw_score!r}")
    score = max(0.0, min(100.0, float(raw_score)))

    details = []
    for item in list_field(data, "weaknesses"):
        if isinstance(item, str):
            details.append({"description": item})
        elif isinstance(item, dict) and isinstance(item.get("description"), str):
            details.append(item)

    explanation = data.get("explanation")
    dimension = DimensionScore(
        name=name,
        score=score,
        weight=weight,
        strengths=string_list(data.get("strengths")),
        weaknesses=[d["description"] for d in details],
        explanation=explanation if isinstance(explanation, str) else "",
    )
    return dimension, details


def issues_from_dimension(dimension: DimensionScore, details: list[dict]) -> list[Issue]:
    severity = severity_for_score(dimension.score)
    issues = []
    for d in details:
        issues.append(
            Issue(
                severity=severity,
                category=dimension.name,
                description=d["description"],
                location=d.get("location") if isinstance(d.get("location"), str) else None,
                excerpt=d.get("excerpt") if isinstance(d.get("excerpt"), str) else None,
                suggested_fix=d.get("suggested_fix") if isinstance(d.get("suggested_fix"), str) else None,
                auto_fixable=severity == Severity.MINOR,
                score_impact=(100 - dimension.score) / 10,
            )
        )
    return issues


def improvement_suggestions(dimensions: list[DimensionScore]) -> list[ImprovementSuggestion]:
    """Up to three suggestions for the weakest dimensions scoring under 80."""
    lowest = sorted(dimensions, key=lambda d: d.score)[:3]
    suggestions = []
    for d in lowest:
        if d.score >= 80:
            continue
        suggestions.append(
            ImprovementSuggestion(
                category=d.name,
                suggestion=f"Focus on improving {d.name.lower()} quality",
                expected_impact=f"+{min(20, round(100 - d.score))} points potential",
                priority=10 if d.score < 60 else 7 if d.score < 70 else 5,
            )
        )
    return suggestions


def revision_instructions(issues: list[Issue], max_instructions: int = MAX_REVISION_INSTRUCTIONS) -> list[RevisionInstruction]:
    """Critical issues first (at most half the budget), then major ones."""
    instructions = []
    critical = [i for i in issues if i.severity == Severity.CRITICAL][: max_instructions // 2]
    for issue in critical:
        instructions.append(
            RevisionInstruction(
                type="Critical Fix",
                target_location=issue.location or "Unknown",
                current_text=issue.excerpt or "",
                instruction=issue.suggested_fix or f"Address: {issue.description}",
                priority=len(instructions) + 1,
                addresses_issues=[issue.id],
            )
        )

    major = [i for i in issues if i.severity == Severity.MAJOR][: max_instructions - len(instructions)]
    for issue in major:
        instructions.append(
            RevisionInstruction(
                type="Improvement",
                target_location=issue.location or "Unknown",
                current_text=issue.excerpt or "",
                instruction=issue.suggested_fix or f"Improve: {issue.description}",
                priority=len(instructions) + 1,
                addresses_issues=[issue.id],
            )
        )
    return instructions


class QualityEvaluator:
    def __init__(self, backend: GenerationBackend):
        self.backend = backend

    async def evaluate(
        self,
        chapter_number: int,
        content: str,
        chapter: ChapterBlueprint,
        blueprint: BookBlueprint,
    ) -> ComprehensiveQualityReport:
        """Score ``content`` on every dimension, one backend call each, in order.

        A dimension whose call or response fails gets the default score with
        its weight kept; the report itself is always produced.
        """
        logger.info(f"Evaluating quality for chapter {chapter_number}")
        excerpt = head(content, EVALUATION_CHAR_LIMIT)

        dimensions = []
        issues = []
        for dim in DIMENSIONS:
            dimension, details = await self._evaluate_dimension(dim, excerpt, chapter, blueprint)
            dimensions.append(dimension)
            issues.extend(issues_from_dimension(dimension, details))

        verdict = verdict_for(weighted_overall(dimensions))
        instructions = []
        if verdict in (Verdict.NEEDS_WORK, Verdict.REGENERATE):
            instructions = revision_instructions(issues)

        report = ComprehensiveQualityReport(
            chapter_number=chapter_number,
            dimensions=dimensions,
            issues=issues,
            revision_instructions=instructions,
            improvement_suggestions=improvement_suggestions(dimensions),
        )
        logger.info(
            f"Quality evaluation complete: score={report.overall_score:.1f}, verdict={report.verdict.value}"
        )
        return report

    async def _evaluate_dimension(
        self,
        dim: Dimension,
        excerpt: str,
        chapter: ChapterBlueprint,
        blueprint: BookBlueprint,
    ) -> tuple[DimensionScore, list[dict]]:
        context = dim.context(blueprint, chapter)
        criteria = "\n".join(f"{i}. {c}" for i, c in enumerate(dim.criteria, 1))
        prompt = f"Evaluate {dim.heading}.\n\n"
        if context:
            prompt += f"{context}\n\n"
        prompt += f"Content:\n{excerpt}\n\nEvaluate on these criteria (0-100):\n{criteria}\n\n{RESPONSE_SHAPE}"

        try:
            response = await self.backend.generate(prompt, EVALUATION_OPTIONS)
            return parse_dimension(response, dim.name, dim.weight)
        except (BackendError, ResponseParseError) as e:
            logger.warning(f"{dim.name} evaluation failed, using default score: {e}")
            return default_dimension(dim.name, dim.weight), []

    async def auto_fix(self, content: str, issues: list[Issue]) -> AutoFixResult:
        """Rewrite minor, auto-fixable issues one at a time by literal replacement."""
        fixed = content
        applied = []
        fixed_ids = set()

        for issue in issues:
            if issue.severity != Severity.MINOR or not issue.auto_fixable:
                continue
            if not issue.excerpt or not issue.suggested_fix or issue.excerpt not in fixed:
                continue

            prompt = FIX_PROMPT.format(
                excerpt=issue.excerpt,
                description=issue.description,
                suggested_fix=issue.suggested_fix,
            )
            try:
                response = await self.backend.generate(prompt, FIX_OPTIONS)
            except BackendError as e:
                logger.warning(f"Auto-fix skipped for issue {issue.id}: {e}")
                continue

            replacement = response.strip()
            if not replacement:
                continue
            fixed = fixed.replace(issue.excerpt, replacement)
            applied.append(
                AppliedFix(
                    issue_id=issue.id,
                    original_text=issue.excerpt,
                    fixed_text=replacement,
                    reason=issue.description,
                )
            )
            fixed_ids.add(issue.id)

        return AutoFixResult(
            fixed_content=fixed,
            fixes_applied=applied,
            unfixed_issues=[i for i in issues if i.id not in fixed_ids],
            estimated_improvement=len(applied) * FIX_IMPROVEMENT_POINTS,
        )
