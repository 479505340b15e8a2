"""Row <-> model conversion helpers for the SQLite store."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone

from mailmirror.models import (
    Account,
    AccountStatus,
    Contact,
    Email,
    EmailContent,
    EmbeddingVector,
    FieldState,
    LocalMutation,
    MutationStatus,
    ProviderKind,
    SyncState,
    Thread,
)


def to_iso(dt: datetime | None) -> str | None:
    """Serialize a datetime as a fixed-width UTC ISO string (sortable as text)."""

    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(raw: str | None) -> datetime | None:
    if not raw:
        return None
    return datetime.fromisoformat(raw)


def dump_field_states(states: dict[str, FieldState]) -> str:
    return json.dumps(
        {name: state.model_dump() for name, state in sorted(states.items())},
        sort_keys=True,
    )


def load_field_states(raw: str) -> dict[str, FieldState]:
    return {name: FieldState(**data) for name, data in json.loads(raw).items()}


def row_to_account(row: sqlite3.Row) -> Account:
    return Account(
        id=row["id"],
        email_address=row["email_address"],
        provider=ProviderKind(row["provider"]),
        auth_ref=row["auth_ref"],
        display_name=row["display_name"],
        status=AccountStatus(row["status"]),
        status_detail=row["status_detail"],
        created_at=from_iso(row["created_at_iso"]),
    )


def row_to_sync_state(row: sqlite3.Row) -> SyncState:
    return SyncState(
        account_id=row["account_id"],
        mailbox=row["mailbox"],
        cursor=row["cursor"],
        cursor_seq=int(row["cursor_seq"]),
        last_synced_at=from_iso(row["last_synced_at_iso"]),
    )


def row_to_email(row: sqlite3.Row) -> Email:
    content = EmailContent(
        subject=row["subject"],
        body=row["body"],
        sender=row["sender"],
        sender_name=row["sender_name"],
        recipients=json.loads(row["recipients_json"]),
        sent_at=from_iso(row["sent_at_iso"]),
        thread_key=row["thread_key"],
    )
    return Email(
        id=row["id"],
        account_id=row["account_id"],
        thread_id=row["thread_id"],
        provider_id=row["provider_id"],
        content=content,
        field_states=load_field_states(row["field_state_json"]),
        content_hash=row["content_hash"],
        updated_at=from_iso(row["updated_at_iso"]),
    )


def row_to_thread(row: sqlite3.Row) -> Thread:
    return Thread(
        id=row["id"],
        account_id=row["account_id"],
        thread_key=row["thread_key"],
        subject=row["subject"],
        last_message_at=from_iso(row["last_message_at_iso"]),
        message_count=int(row["message_count"]),
    )


def row_to_contact(row: sqlite3.Row) -> Contact:
    return Contact(
        account_id=row["account_id"],
        address=row["address"],
        display_name=row["display_name"],
        message_count=int(row["message_count"]),
        last_seen_at=from_iso(row["last_seen_at_iso"]),
    )


def row_to_mutation(row: sqlite3.Row) -> LocalMutation:
    return LocalMutation(
        id=row["id"],
        account_id=row["account_id"],
        email_id=row["email_id"],
        provider_id=row["provider_id"],
        field=row["field"],
        value=bool(row["value"]),
        version=int(row["version"]),
        status=MutationStatus(row["status"]),
        attempts=int(row["attempts"]),
        next_attempt_at=from_iso(row["next_attempt_at_iso"]),
        last_error=row["last_error"],
        created_at=from_iso(row["created_at_iso"]),
    )


def row_to_embedding(row: sqlite3.Row) -> EmbeddingVector:
    return EmbeddingVector(
        email_id=row["email_id"],
        account_id=row["account_id"],
        vector=json.loads(row["vector_json"]),
        content_hash=row["content_hash"],
        model=row["model"],
        updated_at=from_iso(row["updated_at_iso"]),
    )
