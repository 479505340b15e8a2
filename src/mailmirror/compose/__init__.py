"""LLM compose boundary."""

from mailmirror.compose.client import (
    ComposeProvider,
    ComposeRequest,
    ComposeResponse,
    OllamaComposeProvider,
    build_prompt,
)

__all__ = [
    "ComposeProvider",
    "ComposeRequest",
    "ComposeResponse",
    "OllamaComposeProvider",
    "build_prompt",
]
