"""Nearest-neighbor index over email vectors, backed by Qdrant.

Point ids are deterministic (UUIDv5 of the EmailId) so upserts are
idempotent. Writes are serialized with a lock; queries run concurrently.
The index is derived state: it can always be rebuilt from the store's
``embeddings`` table.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog
from qdrant_client import QdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    FilterSelector,
    MatchAny,
    MatchValue,
    PointIdsList,
    PointStruct,
    VectorParams,
)

from mailmirror.config import Settings
from mailmirror.exceptions import ConfigurationError
from mailmirror.models import EmbeddingVector

if TYPE_CHECKING:
    from mailmirror.store import LocalStore

logger = structlog.get_logger()

_POINT_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "mailmirror:embeddings")
_UPSERT_CHUNK = 256


@dataclass(frozen=True)
class SimilarityHit:
    email_id: str
    score: float


def point_id_for(email_id: str) -> str:
    """Return the deterministic Qdrant point id for an email."""

    return str(uuid.uuid5(_POINT_NAMESPACE, email_id))


class SimilarityIndex:
    """Cosine-similarity index of email vectors."""

    def __init__(self, client: QdrantClient, *, collection: str, dimension: int) -> None:
        self._client = client
        self._collection = collection
        self._dimension = dimension
        self._write_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "SimilarityIndex":
        if settings.qdrant_location:
            client = QdrantClient(location=settings.qdrant_location)
        else:
            client = QdrantClient(host=settings.qdrant_host, port=settings.qdrant_port)
        index = cls(
            client,
            collection=settings.qdrant_collection,
            dimension=settings.embedding_dimension,
        )
        index.ensure_collection()
        return index

    @property
    def dimension(self) -> int:
        return self._dimension

    def ensure_collection(self) -> None:
        names = [c.name for c in self._client.get_collections().collections]
        if self._collection not in names:
            self._client.create_collection(
                collection_name=self._collection,
                vectors_config=VectorParams(size=self._dimension, distance=Distance.COSINE),
            )
            logger.info("similarity_collection_created", collection=self._collection, dimension=self._dimension)
            return

        # Validate vector dimension so we don't silently write/query incompatible vectors.
        info = self._client.get_collection(self._collection)
        size = None
        try:
            size = info.config.params.vectors.size  # type: ignore[union-attr]
        except AttributeError:
            size = None

        if size is not None and int(size) != int(self._dimension):
            raise ConfigurationError(
                f"Qdrant collection '{self._collection}' has vector size {size}, but the "
                f"embedding model produces {self._dimension}. Rebuild the index or use a "
                "model with matching dimensions."
            )

    def upsert(self, vectors: Iterable[EmbeddingVector]) -> int:
        points = []
        for v in vectors:
            if v.dimension != self._dimension:
                raise ValueError(
                    f"Vector for {v.email_id} has dimension {v.dimension}, expected {self._dimension}"
                )
            points.append(
                PointStruct(
                    id=point_id_for(v.email_id),
                    vector=v.vector,
                    payload={
                        "email_id": v.email_id,
                        "account_id": v.account_id,
                        "content_hash": v.content_hash,
                        "model": v.model,
                    },
                )
            )
        if not points:
            return 0
        with self._write_lock:
            for start in range(0, len(points), _UPSERT_CHUNK):
                self._client.upsert(
                    collection_name=self._collection,
                    points=points[start : start + _UPSERT_CHUNK],
                )
        return len(points)

    def delete(self, email_ids: Iterable[str]) -> None:
        ids = [point_id_for(e) for e in email_ids]
        if not ids:
            return
        with self._write_lock:
            self._client.delete(
                collection_name=self._collection,
                points_selector=PointIdsList(points=ids),
            )

    def delete_account(self, account_id: str) -> None:
        with self._write_lock:
            self._client.delete(
                collection_name=self._collection,
                points_selector=FilterSelector(
                    filter=Filter(
                        must=[FieldCondition(key="account_id", match=MatchValue(value=account_id))]
                    )
                ),
            )
        logger.info("similarity_account_deleted", account_id=account_id)

    def content_hash_of(self, email_id: str) -> str | None:
        records = self._client.retrieve(
            collection_name=self._collection,
            ids=[point_id_for(email_id)],
            with_payload=True,
            with_vectors=False,
        )
        if not records:
            return None
        return (records[0].payload or {}).get("content_hash")

    def count(self) -> int:
        return int(self._client.count(collection_name=self._collection, exact=True).count)

    def query(
        self,
        vector: list[float],
        *,
        limit: int,
        account_ids: Iterable[str] | None = None,
    ) -> list[SimilarityHit]:
        """Nearest neighbours ordered by (score desc, email id)."""

        accounts = sorted(set(account_ids or ()))
        query_filter = None
        if accounts:
            query_filter = Filter(
                must=[FieldCondition(key="account_id", match=MatchAny(any=accounts))]
            )

        response = self._client.query_points(
            collection_name=self._collection,
            query=vector,
            query_filter=query_filter,
            limit=limit,
            with_payload=True,
        )
        hits = [
            SimilarityHit(email_id=str((p.payload or {}).get("email_id")), score=float(p.score))
            for p in response.points
            if (p.payload or {}).get("email_id")
        ]
        hits.sort(key=lambda h: (-h.score, h.email_id))
        return hits

    def rebuild_from_store(self, store: "LocalStore") -> int:
        """Recreate the collection from the stored vectors."""

        vectors = [v for v in store.iter_embeddings() if v.dimension == self._dimension]
        with self._write_lock:
            if self._client.collection_exists(self._collection):
                self._client.delete_collection(self._collection)
            self._client.create_collection(
                collection_name=self._collection,
                vectors_config=VectorParams(size=self._dimension, distance=Distance.COSINE),
            )
        written = self.upsert(vectors)
        logger.info("similarity_index_rebuilt", collection=self._collection, points=written)
        return written
