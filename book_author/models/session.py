"""Generation session and progress models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from ..errors import SessionStateError
from .chapter import ChapterStatus, GeneratedChapter


class SessionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {
    SessionStatus.COMPLETED,
    SessionStatus.COMPLETED_WITH_ERRORS,
    SessionStatus.CANCELLED,
}


class GenerationProgress(BaseModel):
    """One push to a progress sink; ``stage`` is "chapter" or "step"."""

    stage: str
    name: str
    current: int
    total: int
    percentage: float
    message: str = ""
    elapsed_seconds: float = 0.0
    words_generated: int = 0


class GenerationMetrics(BaseModel):
    total_chapters: int
    completed_chapters: int
    failed_chapters: int
    total_words: int
    average_words_per_chapter: int
    average_quality_score: Optional[float]
    total_generation_seconds: float
    average_generation_seconds: float
    total_revisions: int


class GenerationSession(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    blueprint_id: str
    blueprint_version: int = 1
    title: str = ""
    status: SessionStatus = SessionStatus.IN_PROGRESS
    start_chapter: Optional[int] = None
    end_chapter: Optional[int] = None
    total_chapters: int = 0
    chapters: list[GeneratedChapter] = Field(default_factory=list)
    completed_chapters: int = 0
    failed_chapters: list[int] = Field(default_factory=list)
    total_words: int = 0
    average_quality_score: Optional[float] = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    elapsed_seconds: float = 0.0

    @property
    def is_finished(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, status: SessionStatus) -> None:
        """Move to ``status``; finished sessions never change again."""
        if status == self.status:
            return
        if self.is_finished:
            raise SessionStateError(
                f"Session {self.id} is {self.status.value}; cannot move to {status.value}"
            )
        self.status = status

    def successful_chapters(self) -> list[GeneratedChapter]:
        return sorted(
            (c for c in self.chapters if c.status != ChapterStatus.FAILED),
            key=lambda c: c.chapter_number,
        )

    def chapter(self, chapter_number: int) -> Optional[GeneratedChapter]:
        for c in self.chapters:
            if c.chapter_number == chapter_number:
                return c
        return None

    def recompute_totals(self) -> None:
        done = self.successful_chapters()
        self.completed_chapters = len(done)
        self.failed_chapters = sorted(
            c.chapter_number for c in self.chapters if c.status == ChapterStatus.FAILED
        )
        self.total_words = sum(c.word_count for c in done)
        scored = [c.quality_report.overall_score for c in done if c.quality_report]
        self.average_quality_score = sum(scored) / len(scored) if scored else None
