"""Local store: the SQLite mirror, its transactions and the change feed."""

from mailmirror.store.feed import ChangeFeed
from mailmirror.store.filters import EmailFilter, Folder
from mailmirror.store.local_store import KeywordHit, LocalStore, build_fts_query
from mailmirror.store.transaction import StoreTransaction

__all__ = [
    "ChangeFeed",
    "EmailFilter",
    "Folder",
    "KeywordHit",
    "LocalStore",
    "StoreTransaction",
    "build_fts_query",
]
