"""Chapter-level models: generation context, token budget and generated output."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field, computed_field

from ..config import GenerationConfig
from .blueprint import BookBlueprint, ChapterBlueprint, SetupPayoff
from .quality import ComprehensiveQualityReport, ContinuityReport


class ChapterStatus(str, Enum):
    PENDING = "pending"
    GENERATED = "generated"
    APPROVED = "approved"
    NEEDS_REVIEW = "needs_review"
    FAILED = "failed"


class ChapterSummaries(BaseModel):
    brief: str = ""
    detailed: str = ""
    key_events: list[str] = Field(default_factory=list)


class CharacterStateSnapshot(BaseModel):
    character_id: Optional[str] = None
    character_name: str
    emotional_state: str = ""
    location: str = ""
    arc_progress: int = Field(default=0, ge=0, le=100)


# Shares of the context window given to each prompt fragment.
BUDGET_SHARES = {
    "system_prompt": 0.10,
    "narrative_context": 0.25,
    "character_context": 0.15,
    "world_context": 0.10,
    "plot_context": 0.10,
    "style_context": 0.05,
    "chapter_instructions": 0.15,
}


class TokenBudget(BaseModel):
    total_available: int
    system_prompt: int
    narrative_context: int
    character_context: int
    world_context: int
    plot_context: int
    style_context: int
    chapter_instructions: int
    reserved: int

    @classmethod
    def allocate(cls, total_available: int) -> "TokenBudget":
        """Split ``total_available`` by ``BUDGET_SHARES``.

        The reserved bucket (nominally 10%) takes whatever the truncated
        allocations leave over, so all buckets sum to ``total_available``.
        """
        buckets = {name: int(total_available * share) for name, share in BUDGET_SHARES.items()}
        reserved = total_available - sum(buckets.values())
        return cls(total_available=total_available, reserved=reserved, **buckets)

    def buckets(self) -> dict[str, int]:
        return {name: getattr(self, name) for name in (*BUDGET_SHARES, "reserved")}


class ChapterGenerationContext(BaseModel):
    chapter_number: int
    chapter_blueprint: ChapterBlueprint
    blueprint: BookBlueprint
    config: GenerationConfig

    system_prompt: str = ""
    narrative_context: str = ""
    character_context: str = ""
    world_context: str = ""
    plot_context: str = ""
    style_context: str = ""
    chapter_instructions: str = ""

    previous_summaries: list[str] = Field(default_factory=list)
    character_states: list[CharacterStateSnapshot] = Field(default_factory=list)
    previous_events: list[str] = Field(default_factory=list)
    active_setups: list[SetupPayoff] = Field(default_factory=list)
    due_payoffs: list[SetupPayoff] = Field(default_factory=list)
    token_budget: TokenBudget
    narrative_compressed: bool = False

    def fragments(self) -> dict[str, str]:
        return {
            "system_prompt": self.system_prompt,
            "narrative_context": self.narrative_context,
            "character_context": self.character_context,
            "world_context": self.world_context,
            "plot_context": self.plot_context,
            "style_context": self.style_context,
            "chapter_instructions": self.chapter_instructions,
        }

    def full_prompt(self) -> str:
        parts = [
            self.system_prompt,
            "---",
            self.narrative_context,
            self.character_context,
            self.world_context,
            self.plot_context,
            self.style_context,
            "---",
            self.chapter_instructions,
        ]
        body = "\n\n".join(p.strip() for p in parts if p.strip())
        return (
            f"{body}\n\n"
            f"Write the complete chapter (~{self.chapter_blueprint.target_word_count} words). Begin:"
        )


class GeneratedChapter(BaseModel):
    """A finished (or failed) chapter.

    Never patched in place: enrichment, revision and regeneration all
    produce a new value via ``model_copy``.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    chapter_number: int
    title: str = ""
    content: str = ""
    word_count: int = 0
    status: ChapterStatus = ChapterStatus.GENERATED
    quality_report: Optional[ComprehensiveQualityReport] = None
    continuity_report: Optional[ContinuityReport] = None
    summaries: Optional[ChapterSummaries] = None
    key_events: list[str] = Field(default_factory=list)
    character_states: list[CharacterStateSnapshot] = Field(default_factory=list)
    revision_count: int = 0
    generation_seconds: float = 0.0
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    failure_reason: Optional[str] = None

    @computed_field
    @property
    def quality_score(self) -> float:
        return self.quality_report.overall_score if self.quality_report else 0.0

    @property
    def succeeded(self) -> bool:
        return self.status != ChapterStatus.FAILED

    @property
    def summary_text(self) -> str:
        if self.summaries:
            return self.summaries.detailed or self.summaries.brief
        return ""
