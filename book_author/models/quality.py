"""Quality and continuity report models."""

from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field, computed_field


class Severity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"
    SUGGESTION = "suggestion"


class Verdict(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    ACCEPTABLE = "acceptable"
    NEEDS_WORK = "needs_work"
    REGENERATE = "regenerate"


def verdict_for(score: float) -> Verdict:
    """Map an overall score onto a verdict (inclusive lower bounds)."""
    if score >= 90:
        return Verdict.EXCELLENT
    if score >= 75:
        return Verdict.GOOD
    if score >= 60:
        return Verdict.ACCEPTABLE
    if score >= 40:
        return Verdict.NEEDS_WORK
    return Verdict.REGENERATE


def weighted_overall(dimensions: list["DimensionScore"]) -> float:
    """Weighted mean of dimension scores; 70 when there is nothing to average."""
    total_weight = sum(d.weight for d in dimensions)
    if not dimensions or total_weight <= 0:
        return 70.0
    overall = sum(d.score * d.weight for d in dimensions) / total_weight
    return max(0.0, min(100.0, overall))


class DimensionScore(BaseModel):
    name: str
    score: float = Field(ge=0, le=100)
    weight: float = Field(default=1.0, gt=0)
    strengths: list[str] = Field(default_factory=list)
    weaknesses: list[str] = Field(default_factory=list)
    explanation: str = ""
    is_default: bool = False


class Issue(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    severity: Severity
    category: str
    description: str
    location: Optional[str] = None
    excerpt: Optional[str] = None
    suggested_fix: Optional[str] = None
    auto_fixable: bool = False
    score_impact: float = 0.0


class RevisionInstruction(BaseModel):
    type: str
    target_location: str = "Unknown"
    current_text: str = ""
    instruction: str
    priority: int
    addresses_issues: list[str] = Field(default_factory=list)


class ImprovementSuggestion(BaseModel):
    category: str
    suggestion: str
    expected_impact: str
    priority: int


class ComprehensiveQualityReport(BaseModel):
    chapter_number: int
    dimensions: list[DimensionScore]
    issues: list[Issue] = Field(default_factory=list)
    revision_instructions: list[RevisionInstruction] = Field(default_factory=list)
    improvement_suggestions: list[ImprovementSuggestion] = Field(default_factory=list)

    @computed_field
    @property
    def overall_score(self) -> float:
        return weighted_overall(self.dimensions)

    @computed_field
    @property
    def verdict(self) -> Verdict:
        return verdict_for(self.overall_score)

    @computed_field
    @property
    def auto_revision_recommended(self) -> bool:
        return self.verdict in (Verdict.NEEDS_WORK, Verdict.REGENERATE)

    def dimension(self, name: str) -> Optional[DimensionScore]:
        for d in self.dimensions:
            if d.name == name:
                return d
        return None

    def count(self, severity: Severity) -> int:
        return sum(1 for i in self.issues if i.severity == severity)


class AppliedFix(BaseModel):
    issue_id: str
    original_text: str
    fixed_text: str
    reason: str = ""


class AutoFixResult(BaseModel):
    fixed_content: str
    fixes_applied: list[AppliedFix] = Field(default_factory=list)
    unfixed_issues: list[Issue] = Field(default_factory=list)
    estimated_improvement: float = 0.0


# ---------------------------------------------------------------------------
# Continuity
# ---------------------------------------------------------------------------


class ContinuityCategory(str, Enum):
    CHARACTER = "character"
    PLOT = "plot"
    TIMELINE = "timeline"
    SETTING = "setting"
    OBJECT = "object"


def compute_continuity_score(total: int, critical: int) -> int:
    score = 100 - 20 * critical - 5 * (total - critical)
    return max(0, min(100, score))


class ContinuityIssue(BaseModel):
    category: ContinuityCategory
    severity: Severity = Severity.MINOR
    issue_type: str = ""
    subject: str = ""
    description: str = ""
    expected: str = ""
    actual: str = ""
    suggested_fix: Optional[str] = None


class ContinuityReport(BaseModel):
    chapter_number: int
    character_issues: list[ContinuityIssue] = Field(default_factory=list)
    plot_issues: list[ContinuityIssue] = Field(default_factory=list)
    timeline_issues: list[ContinuityIssue] = Field(default_factory=list)
    setting_issues: list[ContinuityIssue] = Field(default_factory=list)
    object_issues: list[ContinuityIssue] = Field(default_factory=list)

    @property
    def all_issues(self) -> list[ContinuityIssue]:
        return (
            self.character_issues + self.plot_issues + self.timeline_issues
            + self.setting_issues + self.object_issues
        )

    @computed_field
    @property
    def total_issue_count(self) -> int:
        return len(self.all_issues)

    @computed_field
    @property
    def critical_issue_count(self) -> int:
        return sum(1 for i in self.all_issues if i.severity == Severity.CRITICAL)

    @computed_field
    @property
    def continuity_score(self) -> int:
        return compute_continuity_score(self.total_issue_count, self.critical_issue_count)

    @computed_field
    @property
    def passes_continuity_check(self) -> bool:
        return self.continuity_score >= 70 and self.critical_issue_count == 0
