"""Exception hierarchy for chapter and session generation."""


class BookAuthorError(Exception):
    """Base class for all errors raised by book_author."""


class BlueprintError(BookAuthorError):
    """A blueprint or chapter reference is missing or inconsistent."""


class NoBlueprintForChapter(BlueprintError):
    def __init__(self, chapter_number: int):
        self.chapter_number = chapter_number
        super().__init__(f"No blueprint found for chapter {chapter_number}")


class BackendError(BookAuthorError):
    """A single generation call failed or timed out."""


class ResponseParseError(BookAuthorError, ValueError):
    """The backend returned malformed or incomplete JSON."""


class GenerationCancelled(BookAuthorError):
    """Cooperative cancellation was requested."""


class PipelineStepError(BookAuthorError):
    """A required pipeline step failed."""

    def __init__(self, step_name: str, cause: BaseException):
        self.step_name = step_name
        self.cause = cause
        super().__init__(f"Pipeline failed at step '{step_name}': {cause}")


class NoScenesToAssemble(BookAuthorError):
    def __init__(self):
        super().__init__("No scenes to assemble")


class EmptyContent(BookAuthorError):
    def __init__(self):
        super().__init__("No content generated")


class SessionStateError(BookAuthorError):
    """An illegal generation-session status transition was attempted."""
