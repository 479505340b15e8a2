"""In-memory stand-ins for remote providers and embedding models."""

from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime, timedelta, timezone

from mailmirror.embedding import HashedBagOfWordsModel
from mailmirror.exceptions import AuthError, CursorExpired, EmbeddingError
from mailmirror.models import (
    ARCHIVED,
    DELETED,
    DELIVERED,
    READ,
    STARRED,
    Ack,
    ChangeBatch,
    ChangeKind,
    Email,
    EmailContent,
    FieldState,
    LocalMutation,
    PushResult,
    RemoteChange,
    label_field,
)
from mailmirror.utils import email_id_for, thread_id_for

BASE_TIME = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)


def content(
    n: int,
    *,
    subject: str | None = None,
    body: str | None = None,
    thread_key: str = "thread-1",
    sender: str = "alice@example.com",
) -> EmailContent:
    return EmailContent(
        subject=subject if subject is not None else f"Message {n}",
        body=body if body is not None else f"Body of message {n}",
        sender=sender,
        recipients=["me@example.com"],
        sent_at=BASE_TIME + timedelta(minutes=n),
        thread_key=thread_key,
    )


def flag_snapshot(**overrides: bool) -> dict[str, bool]:
    flags = {READ: False, STARRED: False, ARCHIVED: False, DELETED: False, DELIVERED: True}
    flags.update(overrides)
    return flags


def new_change(
    provider_id: str,
    n: int,
    *,
    labels: list[str] | None = None,
    kind: ChangeKind = ChangeKind.NEW,
    **kwargs,
) -> RemoteChange:
    body = content(n, **kwargs)
    return RemoteChange(
        kind=kind,
        provider_id=provider_id,
        timestamp=body.sent_at,
        content=body,
        flags=flag_snapshot(),
        labels=labels or [],
    )


def flag_change(provider_id: str, minute: int, **flags: bool) -> RemoteChange:
    return RemoteChange(
        kind=ChangeKind.FLAG_CHANGED,
        provider_id=provider_id,
        timestamp=BASE_TIME + timedelta(minutes=minute),
        flags=flags,
    )


def delete_change(provider_id: str, minute: int) -> RemoteChange:
    return RemoteChange(
        kind=ChangeKind.DELETED,
        provider_id=provider_id,
        timestamp=BASE_TIME + timedelta(minutes=minute),
    )


class FakeProvider:
    """Remote mailbox modeled as an append-only change log.

    The cursor is the index of the next change to deliver, so fetching from an
    old cursor replays the same changes.
    """

    def __init__(self, changes: list[RemoteChange] | None = None, *, page_size: int = 100) -> None:
        self.changes: list[RemoteChange] = list(changes or [])
        self.page_size = page_size
        self.push_results: deque[PushResult] = deque()
        self.pushed: list[LocalMutation] = []
        self.applied: list[LocalMutation] = []
        self.fetch_cursors: list[str | None] = []
        self.auth_calls = 0
        self.auth_error: str | None = None
        self.fetch_error: Exception | None = None
        self.expired_cursors: set[str] = set()
        self.fetch_gate: asyncio.Event | None = None

    def add(self, *changes: RemoteChange) -> None:
        self.changes.extend(changes)

    async def authenticate(self) -> None:
        self.auth_calls += 1
        if self.auth_error:
            raise AuthError(self.auth_error)

    async def fetch_changes(self, cursor: str | None) -> ChangeBatch:
        self.fetch_cursors.append(cursor)
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        if self.fetch_error is not None:
            raise self.fetch_error
        if cursor is not None and cursor in self.expired_cursors:
            raise CursorExpired(f"cursor {cursor} expired")
        start = int(cursor) if cursor is not None else 0
        end = min(start + self.page_size, len(self.changes))
        return ChangeBatch(
            changes=self.changes[start:end],
            next_cursor=str(end),
            has_more=end < len(self.changes),
        )

    async def push_mutation(self, mutation: LocalMutation) -> PushResult:
        self.pushed.append(mutation)
        result = self.push_results.popleft() if self.push_results else Ack()
        if isinstance(result, Ack):
            self.applied.append(mutation)
        return result


class FailingModel:
    """Embedding model that fails a configurable number of times, then works."""

    def __init__(self, dimension: int, *, failures: int = 1) -> None:
        self._inner = HashedBagOfWordsModel(dimension)
        self.name = self._inner.name
        self.dimension = dimension
        self.failures = failures
        self.calls = 0

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise EmbeddingError("model unavailable")
        return await self._inner.embed(texts)


class RecordingModel:
    """Deterministic model that records every batch it embeds."""

    def __init__(self, dimension: int) -> None:
        self._inner = HashedBagOfWordsModel(dimension)
        self.name = self._inner.name
        self.dimension = dimension
        self.batches: list[list[str]] = []

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.batches.append(list(texts))
        return await self._inner.embed(texts)


class SlowModel:
    """Model that never answers within any reasonable timeout."""

    name = "slow"

    def __init__(self, dimension: int) -> None:
        self.dimension = dimension

    async def embed(self, texts: list[str]) -> list[list[float]]:
        await asyncio.sleep(3600)
        return []


class FlakyIndex:
    """Similarity index whose writes fail a configurable number of times."""

    def __init__(self, inner, *, failures: int = 1) -> None:
        self._inner = inner
        self.failures = failures

    def __getattr__(self, name: str):
        return getattr(self._inner, name)

    def upsert(self, vectors) -> int:
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("qdrant unavailable")
        return self._inner.upsert(vectors)


def make_email(
    account_id: str,
    provider_id: str,
    n: int,
    *,
    labels: tuple[str, ...] = (),
    subject: str | None = None,
    body: str | None = None,
    thread_key: str = "thread-1",
    sender: str = "alice@example.com",
    **flags: bool,
) -> Email:
    """A synced email as the engine would have written it."""

    body_content = content(n, subject=subject, body=body, thread_key=thread_key, sender=sender)
    observed = flag_snapshot(**flags)
    observed.update({label_field(name): True for name in labels})
    return Email(
        id=email_id_for(account_id, provider_id),
        account_id=account_id,
        thread_id=thread_id_for(account_id, thread_key),
        provider_id=provider_id,
        content=body_content,
        field_states={
            name: FieldState(value=value, version=1, synced_version=1, remote_value=value)
            for name, value in observed.items()
        },
        content_hash=body_content.content_hash,
    )


def seed(store, *emails: Email) -> None:
    """Write emails straight into the store, one transaction per account."""

    by_account: dict[str, list[Email]] = {}
    for email in emails:
        by_account.setdefault(email.account_id, []).append(email)
    for account_id, batch in by_account.items():
        with store.transaction(account_id) as tx:
            for email in batch:
                tx.write_email(email, created=True)
