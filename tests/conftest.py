"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import base64
from datetime import datetime, timedelta, timezone

import pytest

from mailmirror.config import Settings
from mailmirror.embedding import SimilarityIndex
from mailmirror.models import Account, ProviderKind
from mailmirror.store import LocalStore


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


class FakeClock:
    """Manually advanced wall clock for the store."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current = self.current + timedelta(seconds=seconds)


@pytest.fixture
def mock_settings(tmp_path) -> Settings:
    """Provide settings isolated from the environment for testing."""
    return Settings(
        db_path=tmp_path / "mirror.sqlite3",
        ollama_host=None,
        allow_deterministic_vectors=True,
        embedding_dimension=64,
        embedding_debounce_seconds=0.0,
        embedding_batch_size=4,
        qdrant_location=":memory:",
        qdrant_collection="test_emails",
        sync_network_timeout_seconds=5.0,
        log_level="DEBUG",
        debug=True,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(mock_settings: Settings, clock: FakeClock) -> LocalStore:
    """An initialized store on a temporary database."""
    s = LocalStore(mock_settings.db_path, clock=clock)
    s.initialize()
    return s


@pytest.fixture
def account(store: LocalStore, mock_settings: Settings) -> Account:
    """A registered Gmail account."""
    acct = Account(
        id="acct-a",
        email_address="me@example.com",
        provider=ProviderKind.GMAIL,
        auth_ref="token-a.json",
    )
    return store.add_account(acct, mailbox=mock_settings.default_mailbox)


@pytest.fixture
def sample_email_data() -> dict:
    """Provide a Gmail API message (format=full) for testing."""
    return {
        "id": "msg123456",
        "threadId": "thread789",
        "labelIds": ["INBOX", "UNREAD", "Label_7"],
        "snippet": "Weekly Newsletter - Python Tips",
        "internalDate": "1735732800000",
        "payload": {
            "mimeType": "multipart/alternative",
            "headers": [
                {"name": "Subject", "value": "Weekly Newsletter - Python Tips"},
                {"name": "From", "value": "Python Weekly <newsletter@python.org>"},
                {"name": "To", "value": "user@example.com"},
                {"name": "Cc", "value": "Team <team@example.com>"},
            ],
            "parts": [
                {
                    "mimeType": "text/plain",
                    "body": {"data": _b64("Welcome to this week's Python tips!")},
                },
                {"mimeType": "text/html", "body": {"data": _b64("<b>hi</b>")}},
            ],
        },
    }


@pytest.fixture
def similarity_index(mock_settings: Settings) -> SimilarityIndex:
    """An in-memory Qdrant collection sized for the test embedding dimension."""
    return SimilarityIndex.from_settings(mock_settings)
