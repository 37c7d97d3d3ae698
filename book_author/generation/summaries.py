"""Chapter summaries used as narrative context for later chapters."""

from loguru import logger

from ..backend import GenerationBackend, GenerationOptions
from ..errors import BackendError
from ..models.chapter import ChapterSummaries
from ..utils.text import head

DEFAULT_BRIEF = "Chapter events occurred."
DEFAULT_DETAILED = "Events unfolded in this chapter."
SUMMARY_CHAR_LIMIT = 6000

SUMMARY_PROMPT = """Summarize this chapter:

{content}

Provide:
1. A brief 1-2 sentence summary
2. A detailed paragraph summary
3. List of 3-5 key events

Format:
BRIEF: [summary]
DETAILED: [summary]
EVENTS:
- [event 1]
- [event 2]
..."""


def parse_summary(response: str) -> ChapterSummaries:
    brief = ""
    detailed = ""
    events = []
    for line in response.splitlines():
        stripped = line.strip()
        upper = stripped.upper()
        if upper.startswith("BRIEF:"):
            brief = stripped[len("BRIEF:"):].strip()
        elif upper.startswith("DETAILED:"):
            detailed = stripped[len("DETAILED:"):].strip()
        elif stripped.startswith("- "):
            events.append(stripped[2:].strip())

    brief = brief or DEFAULT_BRIEF
    return ChapterSummaries(brief=brief, detailed=detailed or brief, key_events=events)


class ChapterSummarizer:
    def __init__(self, backend: GenerationBackend):
        self.backend = backend

    async def summarize(self, content: str) -> ChapterSummaries:
        """Brief and detailed summaries plus bullet events; a neutral default on failure."""
        prompt = SUMMARY_PROMPT.format(content=head(content, SUMMARY_CHAR_LIMIT))
        try:
            response = await self.backend.generate(prompt, GenerationOptions(temperature=0.3, max_tokens=800))
        except BackendError as e:
            logger.warning(f"Error generating chapter summary: {e}")
            return ChapterSummaries(brief=DEFAULT_BRIEF, detailed=DEFAULT_DETAILED)
        return parse_summary(response)
