"""Hybrid keyword + semantic search."""

from mailmirror.search.service import (
    SearchHit,
    SearchMode,
    SearchQuery,
    SearchResults,
    SearchService,
    SearchSource,
    build_filter,
    reciprocal_rank_fusion,
)

__all__ = [
    "SearchHit",
    "SearchMode",
    "SearchQuery",
    "SearchResults",
    "SearchService",
    "SearchSource",
    "build_filter",
    "reciprocal_rank_fusion",
]
