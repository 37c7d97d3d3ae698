"""Book blueprint models: the approved plan a generation session works from."""

from enum import Enum
from pathlib import Path
from typing import Optional
from uuid import uuid4

import yaml
from pydantic import BaseModel, Field, field_validator

from ..config import GenerationConfig


def _new_id() -> str:
    return str(uuid4())


class PacingIntensity(str, Enum):
    SLOW = "slow"
    MODERATE = "moderate"
    FAST = "fast"
    BUILDING = "building"
    VARIABLE = "variable"


class BookIdentity(BaseModel):
    title: str = ""
    genre: str = ""
    premise: str = ""


# ---------------------------------------------------------------------------
# Character bible
# ---------------------------------------------------------------------------


class CharacterArc(BaseModel):
    type: str = ""
    current_phase: str = ""


class CharacterProfile(BaseModel):
    id: str = Field(default_factory=_new_id)
    full_name: str
    role: str = ""
    concept: str = ""
    core_traits: list[str] = Field(default_factory=list)
    speech_pattern: str = ""
    arc: Optional[CharacterArc] = None


class CharacterBible(BaseModel):
    main_characters: list[CharacterProfile] = Field(default_factory=list)
    supporting_characters: list[CharacterProfile] = Field(default_factory=list)

    @property
    def all_characters(self) -> list[CharacterProfile]:
        return self.main_characters + self.supporting_characters


# ---------------------------------------------------------------------------
# World bible
# ---------------------------------------------------------------------------


class LocationProfile(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    description: str = ""
    atmosphere: str = ""
    sensory_details: list[str] = Field(default_factory=list)


class MagicSystem(BaseModel):
    name: str = ""
    description: str = ""
    limitations: list[str] = Field(default_factory=list)


class TimelineEvent(BaseModel):
    when: str = ""
    description: str = ""

    def __str__(self) -> str:
        return f"{self.when}: {self.description}" if self.when else self.description


class WorldBible(BaseModel):
    locations: list[LocationProfile] = Field(default_factory=list)
    rules: list[str] = Field(default_factory=list)
    magic_system: Optional[MagicSystem] = None
    timeline: list[TimelineEvent] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Plot architecture
# ---------------------------------------------------------------------------


class MainPlot(BaseModel):
    central_conflict: str = ""
    stakes: str = ""


class Subplot(BaseModel):
    name: str
    description: str = ""
    status: str = "active"  # active, dormant, resolved


class SetupPayoff(BaseModel):
    description: str
    setup_chapter: int
    payoff_chapter: Optional[int] = None


class PlotArchitecture(BaseModel):
    main_plot: Optional[MainPlot] = None
    subplots: list[Subplot] = Field(default_factory=list)
    setup_payoffs: list[SetupPayoff] = Field(default_factory=list)

    def active_setups(self, chapter_number: int) -> list[SetupPayoff]:
        """Setups planted earlier whose payoff is still ahead (or unplanned)."""
        return [
            sp for sp in self.setup_payoffs
            if sp.setup_chapter < chapter_number
            and (sp.payoff_chapter is None or sp.payoff_chapter >= chapter_number)
        ]

    def due_payoffs(self, chapter_number: int) -> list[SetupPayoff]:
        return [sp for sp in self.setup_payoffs if sp.payoff_chapter == chapter_number]


# ---------------------------------------------------------------------------
# Style guide
# ---------------------------------------------------------------------------


class VoiceGuide(BaseModel):
    description: str = ""
    point_of_view: str = "third person limited"
    tense: str = "past"


class ProseGuide(BaseModel):
    sentence_style: str = ""
    vocabulary_level: str = ""
    paragraph_length: str = ""
    preferred_words: list[str] = Field(default_factory=list)
    avoid_words: list[str] = Field(default_factory=list)


class DialogueGuide(BaseModel):
    tag_style: str = ""
    dialogue_ratio: int = Field(default=30, ge=0, le=100)


class StyleGuide(BaseModel):
    voice: Optional[VoiceGuide] = None
    prose: Optional[ProseGuide] = None
    dialogue: Optional[DialogueGuide] = None


# ---------------------------------------------------------------------------
# Chapter plan
# ---------------------------------------------------------------------------


class SceneBlueprint(BaseModel):
    order: int
    title: str = ""
    purpose: str = ""
    location: str = ""
    characters: list[str] = Field(default_factory=list)
    target_word_count: int = Field(default=500, gt=0)


class EmotionalJourney(BaseModel):
    starting_emotion: str = ""
    ending_emotion: str = ""


class ChapterBlueprint(BaseModel):
    chapter_number: int = Field(gt=0)
    title: str = ""
    act_number: int = 1
    purpose: str = ""
    target_word_count: int = Field(default=3000, gt=0)
    scenes: list[SceneBlueprint] = Field(default_factory=list)
    must_include: list[str] = Field(default_factory=list)
    must_avoid: list[str] = Field(default_factory=list)
    opening_hook: str = ""
    closing_hook: str = ""
    emotional_arc: Optional[EmotionalJourney] = None
    pacing: PacingIntensity = PacingIntensity.MODERATE
    plot_points: list[str] = Field(default_factory=list)
    character_ids: list[str] = Field(default_factory=list)
    location_ids: list[str] = Field(default_factory=list)

    @property
    def min_word_count(self) -> int:
        return int(self.target_word_count * 0.9)

    @property
    def max_word_count(self) -> int:
        return int(self.target_word_count * 1.1)

    @property
    def display_title(self) -> str:
        return self.title or f"Chapter {self.chapter_number}"


class BookBlueprint(BaseModel):
    """The complete, approved plan for a book.

    Treated as immutable for the duration of a generation session; edits
    produce a new version.
    """

    id: str = Field(default_factory=_new_id)
    version: int = 1
    identity: BookIdentity = Field(default_factory=BookIdentity)
    chapters: list[ChapterBlueprint] = Field(default_factory=list)
    characters: CharacterBible = Field(default_factory=CharacterBible)
    world: WorldBible = Field(default_factory=WorldBible)
    plot: PlotArchitecture = Field(default_factory=PlotArchitecture)
    style: StyleGuide = Field(default_factory=StyleGuide)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)

    @field_validator("chapters")
    @classmethod
    def _unique_chapter_numbers(cls, chapters: list[ChapterBlueprint]) -> list[ChapterBlueprint]:
        numbers = [c.chapter_number for c in chapters]
        if len(numbers) != len(set(numbers)):
            raise ValueError("chapter numbers must be unique")
        return sorted(chapters, key=lambda c: c.chapter_number)

    def chapter(self, chapter_number: int) -> Optional[ChapterBlueprint]:
        for c in self.chapters:
            if c.chapter_number == chapter_number:
                return c
        return None

    def revised(self, **changes) -> "BookBlueprint":
        """Return an edited copy with the version bumped."""
        return self.model_copy(update={**changes, "version": self.version + 1})

    @classmethod
    def from_yaml(cls, path: Path) -> "BookBlueprint":
        """Load a blueprint from a YAML (or JSON) file."""
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)
