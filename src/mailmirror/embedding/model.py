"""Embedding models.

We prefer real embeddings via Ollama's embeddings API. A hashed
bag-of-words model is kept as an explicit opt-in for development and tests:
it is deterministic and gives lexical (not semantic) similarity.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import math
import re
import urllib.error
import urllib.request
from typing import Protocol, runtime_checkable

import structlog

from mailmirror.config import Settings
from mailmirror.exceptions import ConfigurationError, EmbeddingError

logger = structlog.get_logger()

_WORD_RE = re.compile(r"\w+", re.UNICODE)


@runtime_checkable
class EmbeddingModel(Protocol):
    """Plain text in, fixed-dimension float vectors out."""

    name: str
    dimension: int

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed ``texts``; raises ``EmbeddingError`` on failure."""


def normalize(vec: list[float]) -> list[float]:
    norm = math.sqrt(sum(v * v for v in vec))
    if norm == 0.0:
        return vec
    return [v / norm for v in vec]


class HashedBagOfWordsModel:
    """Deterministic feature-hashing embedding.

    Each lower-cased word is hashed to a bucket and a sign; the resulting
    counts are L2-normalized. Texts without words map to a fixed unit vector so
    cosine similarity stays defined.
    """

    def __init__(self, dimension: int = 384) -> None:
        if dimension <= 0:
            raise ConfigurationError("Embedding dimension must be positive")
        self.dimension = dimension
        self.name = f"hashed-bow-{dimension}"

    def embed_one(self, text: str) -> list[float]:
        vec = [0.0] * self.dimension
        for word in _WORD_RE.findall(text.lower()):
            digest = hashlib.sha256(word.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "big") % self.dimension
            vec[bucket] += 1.0 if digest[4] & 1 else -1.0
        if not any(vec):
            vec[0] = 1.0
        return normalize(vec)

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return [self.embed_one(t) for t in texts]


class OllamaEmbeddingModel:
    """Embeddings from a local Ollama server."""

    def __init__(self, host: str, *, model: str, dimension: int, timeout_seconds: float) -> None:
        self.host = host.rstrip("/")
        self.name = f"ollama:{model}"
        self.model = model
        self.dimension = dimension
        self.timeout_seconds = timeout_seconds
        logger.info("ollama_embedding_model_initialized", host=self.host, model=model)

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            vectors = await asyncio.to_thread(self._embed_sync, texts)
        except EmbeddingError:
            raise
        except (urllib.error.URLError, OSError, ValueError) as exc:
            logger.warning("ollama_embedding_failed", model=self.model, error=str(exc))
            raise EmbeddingError(f"Ollama embedding request failed: {exc}") from exc

        for vec in vectors:
            if len(vec) != self.dimension:
                raise EmbeddingError(
                    f"Embedding size mismatch: got {len(vec)}, expected {self.dimension}. "
                    f"Use an embedding model with {self.dimension} dims (default: all-minilm)."
                )
        return [normalize(v) for v in vectors]

    def _post(self, path: str, payload: dict[str, object]) -> dict[str, object]:
        req = urllib.request.Request(
            url=f"{self.host}{path}",
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:  # noqa: S310
            return json.loads(resp.read().decode("utf-8"))

    def _embed_sync(self, texts: list[str]) -> list[list[float]]:
        # Newer Ollama API: /api/embed with {model, input} accepts a batch.
        try:
            data = self._post("/api/embed", {"model": self.model, "input": texts})
        except urllib.error.HTTPError as e:
            if e.code != 404:
                raise
        else:
            embs = data.get("embeddings")
            if isinstance(embs, list) and len(embs) == len(texts):
                return [[float(x) for x in emb] for emb in embs]
            raise EmbeddingError("Ollama embed response missing 'embeddings'")

        # Older Ollama API: /api/embeddings with {model, prompt}, one text per call.
        vectors: list[list[float]] = []
        for text in texts:
            data = self._post("/api/embeddings", {"model": self.model, "prompt": text})
            emb = data.get("embedding")
            if not isinstance(emb, list) or not emb:
                raise EmbeddingError("Ollama embeddings response missing 'embedding'")
            vectors.append([float(x) for x in emb])
        return vectors


def build_embedding_model(settings: Settings) -> EmbeddingModel:
    """Select the embedding backend from settings.

    Raises:
        ConfigurationError: If neither Ollama nor deterministic vectors are enabled.
    """

    if settings.ollama_host:
        return OllamaEmbeddingModel(
            settings.ollama_host,
            model=settings.embedding_model,
            dimension=settings.embedding_dimension,
            timeout_seconds=settings.embedding_timeout_seconds,
        )
    if settings.allow_deterministic_vectors:
        return HashedBagOfWordsModel(settings.embedding_dimension)
    raise ConfigurationError(
        "Embeddings are not configured. Set MAILMIRROR_OLLAMA_HOST and ensure an embedding model "
        "is available (e.g. `ollama pull all-minilm`). To allow non-semantic fallback vectors, set "
        "MAILMIRROR_ALLOW_DETERMINISTIC_VECTORS=true."
    )
