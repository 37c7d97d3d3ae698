from .blueprint import (
    PacingIntensity,
    BookIdentity,
    CharacterArc,
    CharacterProfile,
    CharacterBible,
    LocationProfile,
    MagicSystem,
    TimelineEvent,
    WorldBible,
    MainPlot,
    Subplot,
    SetupPayoff,
    PlotArchitecture,
    VoiceGuide,
    ProseGuide,
    DialogueGuide,
    StyleGuide,
    SceneBlueprint,
    EmotionalJourney,
    ChapterBlueprint,
    BookBlueprint,
)
from .quality import (
    Severity,
    Verdict,
    verdict_for,
    weighted_overall,
    DimensionScore,
    Issue,
    RevisionInstruction,
    ImprovementSuggestion,
    ComprehensiveQualityReport,
    AppliedFix,
    AutoFixResult,
    ContinuityCategory,
    compute_continuity_score,
    ContinuityIssue,
    ContinuityReport,
)
from .chapter import (
    ChapterStatus,
    ChapterSummaries,
    CharacterStateSnapshot,
    TokenBudget,
    ChapterGenerationContext,
    GeneratedChapter,
)
from .session import (
    SessionStatus,
    GenerationProgress,
    GenerationMetrics,
    GenerationSession,
)

__all__ = [
    "PacingIntensity",
    "BookIdentity",
    "CharacterArc",
    "CharacterProfile",
    "CharacterBible",
    "LocationProfile",
    "MagicSystem",
    "TimelineEvent",
    "WorldBible",
    "MainPlot",
    "Subplot",
    "SetupPayoff",
    "PlotArchitecture",
    "VoiceGuide",
    "ProseGuide",
    "DialogueGuide",
    "StyleGuide",
    "SceneBlueprint",
    "EmotionalJourney",
    "ChapterBlueprint",
    "BookBlueprint",
    "Severity",
    "Verdict",
    "verdict_for",
    "weighted_overall",
    "DimensionScore",
    "Issue",
    "RevisionInstruction",
    "ImprovementSuggestion",
    "ComprehensiveQualityReport",
    "AppliedFix",
    "AutoFixResult",
    "ContinuityCategory",
    "compute_continuity_score",
    "ContinuityIssue",
    "ContinuityReport",
    "ChapterStatus",
    "ChapterSummaries",
    "CharacterStateSnapshot",
    "TokenBudget",
    "ChapterGenerationContext",
    "GeneratedChapter",
    "SessionStatus",
    "GenerationProgress",
    "GenerationMetrics",
    "GenerationSession",
]
