from .control import CancelToken, GenerationControl
from .context import ContextBuilder
from .pipeline import ChapterPipeline, PipelineState, PipelineStep
from .summaries import ChapterSummarizer
from .orchestrator import SessionOrchestrator, calculate_metrics

__all__ = [
    "CancelToken",
    "GenerationControl",
    "ContextBuilder",
    "ChapterPipeline",
    "PipelineState",
    "PipelineStep",
    "ChapterSummarizer",
    "SessionOrchestrator",
    "calculate_metrics",
]
