"""Generation backend with an OpenAI-compatible adapter."""

import asyncio
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Protocol

from loguru import logger
from pydantic import BaseModel, Field

from .config import BackendConfig
from .errors import BackendError, GenerationCancelled


class GenerationOptions(BaseModel):
    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: int = Field(default=2000, gt=0)
    top_p: Optional[float] = None
    response_format: Optional[str] = None  # "json" asks for a JSON object


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


class GenerationBackend(Protocol):
    async def generate(self, prompt: str, options: GenerationOptions) -> str: ...

    def estimate_tokens(self, text: str) -> int: ...


@dataclass
class BackendCall:
    backend_name: str = ""
    prompt_preview: str = ""
    response_preview: str = ""
    elapsed_seconds: float = 0.0
    succeeded: bool = True


class BaseBackend(ABC):
    """Single-attempt generation with a call log.

    Subclasses implement ``_generate``; any failure other than cancellation
    comes back out of ``generate`` as a ``BackendError``.
    """

    def __init__(self, name: str):
        self.name = name
        self.calls: list[BackendCall] = []

    async def generate(self, prompt: str, options: GenerationOptions) -> str:
        start = time.time()
        try:
            result = await self._generate(prompt, options)
        except (GenerationCancelled, asyncio.CancelledError):
            raise
        except BackendError:
            self._log(prompt, "", time.time() - start, succeeded=False)
            raise
        except Exception as e:
            self._log(prompt, "", time.time() - start, succeeded=False)
            raise BackendError(f"{self.name} call failed: {e}") from e

        self._log(prompt, result, time.time() - start)
        return result

    def estimate_tokens(self, text: str) -> int:
        return estimate_tokens(text)

    @abstractmethod
    async def _generate(self, prompt: str, options: GenerationOptions) -> str:
        ...

    def _log(self, prompt: str, response: str, elapsed: float, succeeded: bool = True) -> None:
        self.calls.append(
            BackendCall(
                backend_name=self.name,
                prompt_preview=prompt[:200],
                response_preview=response[:200] if response else "",
                elapsed_seconds=round(elapsed, 2),
                succeeded=succeeded,
            )
        )
        logger.debug(f"{self.name}: {len(prompt)} chars in, {len(response or '')} out ({elapsed:.2f}s)")


class OpenAICompatibleBackend(BaseBackend):
    """Chat-completions backend for OpenAI and compatible endpoints."""

    def __init__(self, config: BackendConfig):
        super().__init__(name=config.model)
        self.config = config
        self._client = None

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(
                api_key=self.config.api_key or None,
                base_url=self.config.base_url,
                timeout=self.config.timeout_seconds,
                max_retries=0,
            )
        return self._client

    async def _generate(self, prompt: str, options: GenerationOptions) -> str:
        kwargs = {
            "model": self.config.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
            "top_p": options.top_p if options.top_p is not None else self.config.top_p,
        }
        if options.response_format == "json":
            kwargs["response_format"] = {"type": "json_object"}

        response = await self._get_client().chat.completions.create(**kwargs)
        content = response.choices[0].message.content
        if content is None:
            raise BackendError(f"{self.name} returned no content")
        return content
