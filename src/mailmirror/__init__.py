"""mailmirror - local-first email mirror with hybrid search.

This package mirrors remote mailboxes into a local SQLite store, reconciles
concurrent local and remote edits, and keeps a vector index of the mirrored
content for hybrid keyword + semantic search.
"""

__version__ = "0.1.0"
__author__ = "Trickl"

from mailmirror.config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__", "__author__"]
