from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn, TimeElapsedColumn
from typing import Optional

from ..models.session import GenerationProgress


def create_progress() -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        TextColumn("{task.fields[words]} words"),
        TimeElapsedColumn(),
    )


class RichProgressSink:
    """Progress callback that drives a rich bar: one tick per chapter, steps as the description."""

    def __init__(self, total_chapters: int, description: str = "Generating..."):
        self.total_chapters = total_chapters
        self.description = description
        self.progress = create_progress()
        self._task_id: Optional[int] = None
        self._chapter = ""

    def __enter__(self) -> "RichProgressSink":
        self.progress.start()
        self._task_id = self.progress.add_task(self.description, total=self.total_chapters, words=0)
        return self

    def __exit__(self, *exc) -> None:
        self.progress.stop()

    def __call__(self, event: GenerationProgress) -> None:
        if self._task_id is None:
            return

        if event.stage == "chapter":
            self._chapter = f"Chapter {event.current}: {event.name}"
            completed = event.percentage / 100 * self.total_chapters
            self.progress.update(
                self._task_id,
                completed=completed,
                description=self._chapter,
                words=event.words_generated,
            )
        else:
            self.progress.update(self._task_id, description=f"{self._chapter} [dim]{event.name}[/dim]")

    def finish(self, words: int) -> None:
        if self._task_id is not None:
            self.progress.update(self._task_id, completed=self.total_chapters, description="Done", words=words)
