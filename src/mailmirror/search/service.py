"""Hybrid search over the local mirror.

Keyword results come from the store's FTS5 index (bm25, ties by email id),
semantic results from the similarity index. The two ranked lists are fused
with reciprocal-rank fusion::

    score(e) = sum over lists containing e of 1 / (k + rank)

Final ordering is (score desc, email id asc), so results are deterministic for
a fixed corpus and query.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

import structlog

from mailmirror.config import Settings
from mailmirror.embedding import EmbeddingModel, SimilarityIndex
from mailmirror.exceptions import EmbeddingError
from mailmirror.models import Email
from mailmirror.store import EmailFilter, Folder, KeywordHit, LocalStore

logger = structlog.get_logger()

_RECENT_QUERY_LIMIT = 100


class SearchMode(str, Enum):
    FULL_TEXT = "full_text"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"


class SearchSource(str, Enum):
    FULL_TEXT = "full_text"
    SEMANTIC = "semantic"
    BOTH = "both"


@dataclass(frozen=True)
class SearchQuery:
    text: str
    mode: SearchMode = SearchMode.HYBRID
    filter: EmailFilter = field(default_factory=EmailFilter)
    limit: int = 50
    offset: int = 0


@dataclass(frozen=True)
class SearchHit:
    email_id: str
    score: float
    source: SearchSource
    snippet: str = ""
    email: Email | None = None


@dataclass(frozen=True)
class SearchResults:
    hits: list[SearchHit]
    total: int
    took_ms: float
    used_semantic: bool


def reciprocal_rank_fusion(
    ranked_lists: list[list[str]], *, k: int
) -> list[tuple[str, float]]:
    """Fuse ranked lists of email ids; returns (email_id, score) best first."""

    scores: dict[str, float] = {}
    for ranking in ranked_lists:
        for rank, email_id in enumerate(ranking, start=1):
            scores[email_id] = scores.get(email_id, 0.0) + 1.0 / (k + rank)
    return sorted(scores.items(), key=lambda item: (-item[1], item[0]))


def build_filter(
    *,
    accounts: list[str] | None = None,
    folder: str | None = None,
    after: datetime | None = None,
    before: datetime | None = None,
    sender: str | None = None,
    recipient: str | None = None,
    unread: bool | None = None,
    starred: bool | None = None,
) -> EmailFilter:
    """Build an :class:`EmailFilter`; a folder that is not a virtual folder names a label."""

    label = None
    virtual = Folder.ALL
    if folder:
        try:
            virtual = Folder(folder.lower())
        except ValueError:
            label = folder
    return EmailFilter(
        account_ids=tuple(accounts or ()),
        folder=virtual,
        label=label,
        sent_after=after,
        sent_before=before,
        sender=sender,
        recipient=recipient,
        is_unread=unread,
        is_starred=starred,
    )


class SearchService:
    """Answers keyword, semantic and hybrid queries."""

    def __init__(
        self,
        store: LocalStore,
        settings: Settings,
        *,
        model: EmbeddingModel | None = None,
        index: SimilarityIndex | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._model = model
        self._index = index
        self._recent: OrderedDict[str, None] = OrderedDict()

    @property
    def semantic_available(self) -> bool:
        return self._model is not None and self._index is not None

    async def search(self, query: SearchQuery) -> SearchResults:
        started = time.perf_counter()
        text = query.text.strip()
        self._remember(text)

        candidates = self._settings.search_candidate_limit
        keyword: list[KeywordHit] = []
        if query.mode in (SearchMode.FULL_TEXT, SearchMode.HYBRID) or not self.semantic_available:
            keyword = await asyncio.to_thread(
                self._store.keyword_search, text, query.filter, candidates
            )

        semantic: list[str] = []
        used_semantic = False
        if query.mode in (SearchMode.SEMANTIC, SearchMode.HYBRID) and self.semantic_available and text:
            try:
                semantic = await self._semantic_ids(text, query.filter, candidates)
                used_semantic = True
            except (EmbeddingError, asyncio.TimeoutError) as exc:
                logger.warning("semantic_search_unavailable", error=str(exc) or type(exc).__name__)
                if query.mode == SearchMode.SEMANTIC:
                    keyword = await asyncio.to_thread(
                        self._store.keyword_search, text, query.filter, candidates
                    )

        keyword_ids = [h.email_id for h in keyword]
        fused = reciprocal_rank_fusion(
            [ranking for ranking in (keyword_ids, semantic) if ranking],
            k=self._settings.search_rrf_k,
        )

        offset = max(0, query.offset)
        limit = max(0, query.limit)
        page = fused[offset : offset + limit]

        snippets = {h.email_id: h.snippet for h in keyword}
        keyword_set = set(keyword_ids)
        semantic_set = set(semantic)
        emails = await asyncio.to_thread(self._store.get_emails, [email_id for email_id, _ in page])

        hits = []
        for email_id, score in page:
            if email_id in keyword_set and email_id in semantic_set:
                source = SearchSource.BOTH
            elif email_id in keyword_set:
                source = SearchSource.FULL_TEXT
            else:
                source = SearchSource.SEMANTIC
            email = emails.get(email_id)
            snippet = snippets.get(email_id) or _preview(email)
            hits.append(
                SearchHit(email_id=email_id, score=score, source=source, snippet=snippet, email=email)
            )

        took_ms = (time.perf_counter() - started) * 1000.0
        logger.info(
            "search_completed",
            mode=query.mode.value,
            keyword_hits=len(keyword_ids),
            semantic_hits=len(semantic),
            total=len(fused),
            took_ms=round(took_ms, 2),
        )
        return SearchResults(hits=hits, total=len(fused), took_ms=took_ms, used_semantic=used_semantic)

    async def _semantic_ids(self, text: str, email_filter: EmailFilter, limit: int) -> list[str]:
        if self._model is None or self._index is None:
            raise EmbeddingError("Semantic search needs an embedding model and a similarity index")
        vectors = await asyncio.wait_for(
            self._model.embed([text]), timeout=self._settings.embedding_timeout_seconds
        )
        if not vectors:
            raise EmbeddingError("Model returned no vector for the query")
        hits = await asyncio.to_thread(
            self._index.query,
            vectors[0],
            limit=limit,
            account_ids=email_filter.account_ids or None,
        )
        ids = [h.email_id for h in hits]
        # The index only knows accounts; the store applies the remaining facets.
        allowed = await asyncio.to_thread(self._store.filter_email_ids, ids, email_filter)
        return [email_id for email_id in ids if email_id in allowed]

    def _remember(self, text: str) -> None:
        if not text:
            return
        self._recent.pop(text, None)
        self._recent[text] = None
        while len(self._recent) > _RECENT_QUERY_LIMIT:
            self._recent.popitem(last=False)

    def recent_queries(self) -> list[str]:
        """Most recent first."""

        return list(reversed(self._recent))

    def suggest(self, prefix: str, limit: int = 10) -> list[str]:
        prefix = prefix.strip().lower()
        if not prefix:
            return []
        return [q for q in self.recent_queries() if q.lower().startswith(prefix)][:limit]


def _preview(email: Email | None, length: int = 160) -> str:
    if email is None:
        return ""
    body = " ".join(email.content.body.split())
    return body[:length]
