"""Embeddings: models, the similarity index and the indexer feeding it."""

from mailmirror.embedding.indexer import EmbeddingIndexer, IndexReport
from mailmirror.embedding.model import (
    EmbeddingModel,
    HashedBagOfWordsModel,
    OllamaEmbeddingModel,
    build_embedding_model,
)
from mailmirror.embedding.similarity import SimilarityHit, SimilarityIndex, point_id_for
from mailmirror.embedding.text import build_embedding_text, email_embedding_text

__all__ = [
    "EmbeddingIndexer",
    "EmbeddingModel",
    "HashedBagOfWordsModel",
    "IndexReport",
    "OllamaEmbeddingModel",
    "SimilarityHit",
    "SimilarityIndex",
    "build_embedding_model",
    "build_embedding_text",
    "email_embedding_text",
    "point_id_for",
]
