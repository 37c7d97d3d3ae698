"""Cooperative pause and cancellation flags shared with a running session."""

from ..errors import GenerationCancelled


class CancelToken:
    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise GenerationCancelled("Generation cancelled")


class GenerationControl:
    """Pause/resume/cancel handle for one orchestrator run.

    Flags are only observed between chapters (pause, cancel) and at the
    pipeline and scene loop heads (cancel).
    """

    def __init__(self, token: CancelToken | None = None):
        self.token = token or CancelToken()
        self._paused = False

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    def cancel(self) -> None:
        self.token.cancel()

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_cancelled(self) -> bool:
        return self.token.is_cancelled
