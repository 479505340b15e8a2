"""Configuration management for mailmirror.

This module handles application configuration using Pydantic settings.
Configuration can be loaded from environment variables or .env files.
Settings are passed explicitly into the sync engine, providers, indexer and
search service; the core never reads them as ambient state.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with
    the MAILMIRROR_ prefix (e.g., MAILMIRROR_SEARCH_RRF_K).
    """

    model_config = SettingsConfigDict(
        env_prefix="MAILMIRROR_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Local store
    db_path: Path = Field(
        default=Path("mailmirror.sqlite3"),
        description="Path to the local SQLite mirror database",
    )
    sqlite_busy_timeout_seconds: float = Field(
        default=30.0,
        description="How long a writer waits on the SQLite write lock",
    )

    # Sync engine
    sync_interval_seconds: float = Field(
        default=60.0,
        description="Delay between scheduler passes over all accounts",
    )
    sync_workers: int = Field(
        default=4,
        description="Maximum number of account sync cycles running concurrently",
    )
    sync_network_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout applied to every provider fetch/push/authenticate call",
    )
    push_backoff_base_seconds: float = Field(
        default=1.0,
        description="Base delay for exponential backoff of transient push failures",
    )
    push_backoff_cap_seconds: float = Field(
        default=60.0,
        description="Upper bound for push backoff delays",
    )
    storage_error_threshold: int = Field(
        default=3,
        description=(
            "Consecutive storage failures after which an account is marked as "
            "needing a rebuild from remote"
        ),
    )
    fetch_page_size: int = Field(
        default=100,
        description="Maximum number of remote changes fetched per page",
    )
    default_mailbox: str = Field(
        default="INBOX",
        description="Mailbox name used for the per-account sync cursor",
    )
    undo_window_seconds: float = Field(
        default=30.0,
        description="How long after a local edit it can still be undone",
    )
    undo_history_size: int = Field(
        default=100,
        description="Maximum number of local edits kept for undo",
    )

    # Gmail provider
    gmail_credentials_path: Path = Field(
        default=Path("credentials.json"),
        description="Path to Gmail API OAuth client secrets",
    )
    gmail_scope: str = Field(
        default="https://www.googleapis.com/auth/gmail.modify",
        description="OAuth scope; pushing flag changes requires gmail.modify",
    )
    gmail_user_id: str = Field(default="me", description="Gmail API user id")
    gmail_allow_interactive: bool = Field(
        default=True,
        description="Allow the interactive OAuth flow when the token is missing",
    )

    # IMAP provider
    imap_port: int = Field(default=993, description="IMAP port")
    imap_ssl: bool = Field(default=True, description="Use TLS for IMAP")
    imap_archive_keyword: str = Field(
        default="$Archived",
        description="IMAP keyword used to represent the archived flag",
    )

    # Embeddings
    ollama_host: str | None = Field(
        default=None,
        description="Ollama API host URL used for embeddings and compose",
    )
    embedding_model: str = Field(
        default="all-minilm",
        description="Embedding model name",
    )
    embedding_dimension: int = Field(
        default=384,
        description="Fixed dimension of every embedding vector",
    )
    embedding_timeout_seconds: float = Field(
        default=60.0,
        description="Upper bound for one embedding batch",
    )
    embedding_batch_size: int = Field(
        default=16,
        description="Maximum number of emails embedded per model invocation",
    )
    embedding_max_chars: int = Field(
        default=2000,
        description="Maximum body characters included in the embedding text",
    )
    embedding_debounce_seconds: float = Field(
        default=0.25,
        description="Quiet period before a changed email is re-embedded",
    )
    embedding_retry_base_seconds: float = Field(
        default=2.0,
        description="Base delay for embedding retry backoff",
    )
    embedding_retry_cap_seconds: float = Field(
        default=300.0,
        description="Upper bound for embedding retry backoff",
    )
    allow_deterministic_vectors: bool = Field(
        default=False,
        description=(
            "Allow the non-neural hashed bag-of-words embedding when Ollama is "
            "not configured. Useful for development and tests."
        ),
    )
    change_feed_capacity: int = Field(
        default=256,
        description="Capacity of the bounded queue between the change log and the indexer",
    )

    # Similarity index (Qdrant)
    qdrant_location: str | None = Field(
        default=":memory:",
        description="Qdrant local mode location (':memory:' or a path); unset to use host/port",
    )
    qdrant_host: str = Field(default="localhost", description="Qdrant server host")
    qdrant_port: int = Field(default=6333, description="Qdrant server port")
    qdrant_collection: str = Field(
        default="mailmirror_emails",
        description="Qdrant collection holding email vectors",
    )

    # Search
    search_rrf_k: int = Field(
        default=60,
        description="Reciprocal-rank fusion constant",
    )
    search_candidate_limit: int = Field(
        default=200,
        description="Number of candidates taken from each ranked list before fusion",
    )
    search_default_limit: int = Field(
        default=50,
        description="Default page size for search results",
    )

    # Compose provider
    compose_model: str = Field(
        default="llama3.1:8b",
        description="Ollama model used by the compose provider",
    )
    compose_timeout_seconds: float = Field(
        default=120.0,
        description="Timeout for compose requests",
    )

    # API
    api_host: str = Field(default="127.0.0.1", description="HTTP API bind host")
    api_port: int = Field(default=8765, description="HTTP API bind port")

    # Application Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings: Application settings instance.
    """
    return Settings()
