"""Compose provider boundary.

Compose and summarization are stateless request/response calls to an LLM.
The core keeps no state for them; the Ollama implementation posts to
``/api/generate`` with streaming disabled.
"""

from __future__ import annotations

import asyncio
import json
import urllib.error
import urllib.request
from typing import Protocol, runtime_checkable

import structlog
from pydantic import BaseModel, Field

from mailmirror.config import Settings
from mailmirror.exceptions import ComposeError, ConfigurationError

logger = structlog.get_logger()


class ComposeRequest(BaseModel):
    prompt: str
    context: str = Field(default="", description="Optional thread or email text to ground the reply")


class ComposeResponse(BaseModel):
    text: str
    model: str


@runtime_checkable
class ComposeProvider(Protocol):
    async def compose(self, request: ComposeRequest) -> ComposeResponse:
        """Generate text; raises ``ComposeError`` on failure."""


def build_prompt(request: ComposeRequest) -> str:
    if not request.context.strip():
        return request.prompt
    return f"{request.context.strip()}\n\n---\n\n{request.prompt}"


class OllamaComposeProvider:
    """Compose provider backed by a local Ollama server."""

    def __init__(self, host: str, *, model: str, timeout_seconds: float = 120.0) -> None:
        self.host = host.rstrip("/")
        self.model = model
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "OllamaComposeProvider":
        if not settings.ollama_host:
            raise ConfigurationError("Compose requires MAILMIRROR_OLLAMA_HOST")
        return cls(
            settings.ollama_host,
            model=settings.compose_model,
            timeout_seconds=settings.compose_timeout_seconds,
        )

    async def compose(self, request: ComposeRequest) -> ComposeResponse:
        prompt = build_prompt(request)
        logger.info("compose_requested", model=self.model, prompt_length=len(prompt))
        try:
            text = await asyncio.to_thread(self._generate_sync, prompt)
        except (urllib.error.URLError, OSError, ValueError) as exc:
            logger.warning("compose_failed", model=self.model, error=str(exc))
            raise ComposeError(f"Ollama generate request failed: {exc}") from exc
        return ComposeResponse(text=text, model=self.model)

    def _generate_sync(self, prompt: str) -> str:
        payload = json.dumps({"model": self.model, "prompt": prompt, "stream": False}).encode("utf-8")
        req = urllib.request.Request(
            url=f"{self.host}/api/generate",
            data=payload,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:  # noqa: S310
            data = json.loads(resp.read().decode("utf-8"))
        return (data.get("response") or "").strip()
