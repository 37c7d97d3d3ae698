"""Session persistence."""

from pathlib import Path
from typing import Protocol

from loguru import logger

from .models.session import GenerationSession


class SessionStore(Protocol):
    def save(self, session: GenerationSession) -> None: ...

    def load(self, session_id: str) -> GenerationSession: ...

    def list_ids(self) -> list[str]: ...


class JsonSessionStore:
    """One ``<session id>.json`` file per session in ``directory``."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, session_id: str) -> Path:
        return self.directory / f"{session_id}.json"

    def save(self, session: GenerationSession) -> None:
        path = self._path(session.id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(session.model_dump_json(indent=2), encoding="utf-8")
        tmp.replace(path)
        logger.debug(f"Saved session {session.id} to {path}")

    def load(self, session_id: str) -> GenerationSession:
        path = self._path(session_id)
        if not path.exists():
            raise KeyError(f"No stored session {session_id}")
        return GenerationSession.model_validate_json(path.read_text(encoding="utf-8"))

    def list_ids(self) -> list[str]:
        return sorted(p.stem for p in self.directory.glob("*.json"))
