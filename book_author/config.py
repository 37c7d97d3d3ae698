import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, model_validator


class ContentSettings(BaseModel):
    content_rating: str = Field(default="PG-13")
    avoid_topics: list[str] = Field(default_factory=list)


class GenerationConfig(BaseModel):
    context_window_size: int = Field(default=128000, gt=0)
    revision_threshold: float = Field(default=70, ge=0, le=100)
    max_revisions: int = Field(default=2, ge=0)
    approval_threshold: float = Field(default=60, ge=0, le=100)
    narrative_chapter_window: int = Field(default=5, gt=0)
    compress_with_backend: bool = Field(default=True)
    pause_poll_interval: float = Field(default=0.5, gt=0)
    auto_fix_minor_issues: bool = Field(default=False)
    content: ContentSettings = Field(default_factory=ContentSettings)


class BackendConfig(BaseModel):
    model: str = Field(default="gpt-4o-mini")
    base_url: Optional[str] = Field(default=None)
    api_key: str = Field(default="")
    temperature: float = Field(default=0.7, ge=0, le=2)
    top_p: float = Field(default=0.95, gt=0, le=1)
    max_tokens: int = Field(default=4096, gt=0)
    timeout_seconds: float = Field(default=120, gt=0)

    @model_validator(mode="after")
    def _api_key_from_env(self) -> "BackendConfig":
        if not self.api_key:
            self.api_key = os.environ.get("OPENAI_API_KEY", "")
        return self


class Config(BaseModel):
    backend: BackendConfig = Field(default_factory=BackendConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    log_level: str = Field(default="INFO")

    @classmethod
    def from_yaml(cls, path: Path) -> "Config":
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    def to_yaml(self, path: Path):
        with open(path, "w") as f:
            yaml.dump(self.model_dump(), f, default_flow_style=False)
