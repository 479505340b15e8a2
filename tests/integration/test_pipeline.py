"""End-to-end test of sync, indexing and search over a scripted provider."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from mailmirror.config import Settings
from mailmirror.models import (
    READ,
    STARRED,
    Account,
    Ack,
    ChangeBatch,
    ChangeKind,
    EmailContent,
    LocalMutation,
    PushResult,
    RemoteChange,
)
from mailmirror.runtime import MailMirror
from mailmirror.search import SearchMode, SearchQuery, build_filter
from mailmirror.store import LocalStore
from mailmirror.utils import email_id_for

START = datetime(2025, 2, 1, 8, 0, tzinfo=timezone.utc)


def _new(provider_id: str, minute: int, subject: str, body: str) -> RemoteChange:
    sent_at = START + timedelta(minutes=minute)
    return RemoteChange(
        kind=ChangeKind.NEW,
        provider_id=provider_id,
        timestamp=sent_at,
        content=EmailContent(
            subject=subject,
            body=body,
            sender="billing@example.com",
            recipients=["me@example.com"],
            sent_at=sent_at,
            thread_key=provider_id,
        ),
        flags={READ: False, STARRED: False},
        labels=[],
    )


class ScriptedProvider:
    """Remote mailbox replaying a fixed change log; the cursor is a log offset."""

    def __init__(self, *changes: RemoteChange) -> None:
        self.changes = list(changes)
        self.pushed: list[LocalMutation] = []

    async def authenticate(self) -> None:
        return None

    async def fetch_changes(self, cursor: str | None) -> ChangeBatch:
        start = int(cursor or 0)
        return ChangeBatch(changes=self.changes[start:], next_cursor=str(len(self.changes)))

    async def push_mutation(self, mutation: LocalMutation) -> PushResult:
        self.pushed.append(mutation)
        return Ack(remote_ref=mutation.provider_id)


@pytest.fixture
def remote() -> ScriptedProvider:
    return ScriptedProvider(
        _new("m1", 1, "February invoice", "Your invoice for February is attached"),
        _new("m2", 2, "Team offsite", "Agenda for the offsite in Porto"),
        _new("m3", 3, "Receipt", "Payment received for invoice 2291"),
    )


@pytest.fixture
def mirror(
    store: LocalStore, account: Account, mock_settings: Settings, remote: ScriptedProvider
) -> MailMirror:
    return MailMirror(mock_settings, store=store, provider_factory=lambda acct: remote)


async def test_sync_index_search_and_push(
    mirror: MailMirror, store: LocalStore, account: Account, remote: ScriptedProvider
) -> None:
    reports = await mirror.sync_once()

    assert [r.ok for r in reports] == [True]
    assert store.count_emails(account.id) == 3
    assert mirror.index.count() == 3
    assert store.pending_change_count() == 0

    results = await mirror.search.search(SearchQuery("invoice"))
    invoice_id = email_id_for(account.id, "m1")
    assert results.used_semantic
    assert {h.email_id for h in results.hits[:2]} == {invoice_id, email_id_for(account.id, "m3")}

    mirror.engine.queue_mutation(account.id, invoice_id, STARRED, True)
    await mirror.sync_once()

    assert [(m.provider_id, m.field, m.value) for m in remote.pushed] == [("m1", STARRED, True)]
    assert store.get_email(invoice_id).is_starred
    assert store.pending_mutations(account.id) == []

    starred = await mirror.search.search(
        SearchQuery("invoice", mode=SearchMode.FULL_TEXT, filter=build_filter(starred=True))
    )
    assert [h.email_id for h in starred.hits] == [invoice_id]


async def test_remote_delete_leaves_search(
    mirror: MailMirror, store: LocalStore, account: Account, remote: ScriptedProvider
) -> None:
    await mirror.sync_once()
    remote.changes.append(
        RemoteChange(
            kind=ChangeKind.DELETED, provider_id="m2", timestamp=START + timedelta(hours=1)
        )
    )

    await mirror.sync_once()

    results = await mirror.search.search(SearchQuery("offsite Porto"))
    assert store.count_emails(account.id) == 2
    assert mirror.index.count() == 2
    assert email_id_for(account.id, "m2") not in {h.email_id for h in results.hits}


async def test_rebuild_refetches_everything(
    mirror: MailMirror, store: LocalStore, account: Account
) -> None:
    await mirror.sync_once()

    removed = await mirror.rebuild_account(account.id)
    assert removed == 3
    assert mirror.index.count() == 0

    await mirror.sync_once()

    assert store.count_emails(account.id) == 3
    assert mirror.index.count() == 3


async def test_sync_without_embeddings_does_not_grow_the_change_log(
    store: LocalStore, account: Account, mock_settings: Settings, remote: ScriptedProvider
) -> None:
    settings = mock_settings.model_copy(update={"allow_deterministic_vectors": False})
    mirror = MailMirror(settings, store=store, provider_factory=lambda acct: remote)
    assert mirror.indexer is None

    await mirror.sync_once()
    remote.changes.append(_new("m4", 4, "Reminder", "Invoice due tomorrow"))
    await mirror.sync_once()

    assert store.count_emails(account.id) == 4
    assert store.pending_change_count() == 0
    results = await mirror.search.search(SearchQuery("invoice"))
    assert not results.used_semantic
    assert results.hits


async def test_undo_after_push_sends_the_inverse_edit(
    mirror: MailMirror, store: LocalStore, account: Account, remote: ScriptedProvider
) -> None:
    await mirror.sync_once()
    invoice_id = email_id_for(account.id, "m1")
    mirror.set_flag(invoice_id, READ, True)
    await mirror.sync_once()

    undone = mirror.undo()
    await mirror.sync_once()

    assert undone is not None and undone.previous is False
    assert [(m.field, m.value) for m in remote.pushed] == [(READ, True), (READ, False)]
    assert store.get_email(invoice_id).is_read is False
    assert mirror.undo() is None
