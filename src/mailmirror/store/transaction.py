"""Write-side view of one account-scoped store transaction.

A :class:`StoreTransaction` is only ever used inside
:meth:`mailmirror.store.LocalStore.transaction`, which owns BEGIN/COMMIT and
rollback. Affected emails are tracked while the transaction runs and written
to the change log (one row per email, in first-touch order) right before
commit.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime

from mailmirror.models import (
    ARCHIVED,
    DELETED,
    DELIVERED,
    READ,
    STARRED,
    Email,
    FieldState,
    LocalMutation,
    MutationStatus,
    NotificationKind,
    is_label_field,
    label_name,
)
from mailmirror.store.rows import (
    dump_field_states,
    from_iso,
    row_to_email,
    row_to_mutation,
    to_iso,
)
from mailmirror.utils import thread_id_for


class StoreTransaction:
    """Mutations applied within a single account-scoped transaction."""

    def __init__(self, conn: sqlite3.Connection, account_id: str, now: datetime) -> None:
        self._conn = conn
        self.account_id = account_id
        self.now = now
        self._changes: dict[str, NotificationKind] = {}
        self._dirty_threads: set[str] = set()

    @property
    def touched(self) -> bool:
        return bool(self._changes)

    # Reads

    def get_email(self, email_id: str) -> Email | None:
        row = self._conn.execute("SELECT * FROM emails WHERE id = ?", (email_id,)).fetchone()
        return None if row is None else row_to_email(row)

    def get_email_by_provider_id(self, provider_id: str) -> Email | None:
        row = self._conn.execute(
            "SELECT * FROM emails WHERE account_id = ? AND provider_id = ?",
            (self.account_id, provider_id),
        ).fetchone()
        return None if row is None else row_to_email(row)

    def pending_mutations(self, email_id: str) -> list[LocalMutation]:
        rows = self._conn.execute(
            """
            SELECT * FROM local_mutations
            WHERE email_id = ? AND status = 'pending'
            ORDER BY created_at_iso, id
            """,
            (email_id,),
        ).fetchall()
        return [row_to_mutation(r) for r in rows]

    def get_mutation(self, mutation_id: str) -> LocalMutation | None:
        row = self._conn.execute(
            "SELECT * FROM local_mutations WHERE id = ?", (mutation_id,)
        ).fetchone()
        return None if row is None else row_to_mutation(row)

    def tombstone_at(self, provider_id: str) -> datetime | None:
        row = self._conn.execute(
            "SELECT deleted_at_iso FROM tombstones WHERE account_id = ? AND provider_id = ?",
            (self.account_id, provider_id),
        ).fetchone()
        return None if row is None else from_iso(row[0])

    # Email writes

    def write_email(self, email: Email, *, created: bool) -> None:
        """Insert or replace an email row, keeping thread, labels and contacts in step."""

        content = email.content
        thread_id = thread_id_for(self.account_id, content.thread_key)
        self._conn.execute(
            """
            INSERT INTO threads (id, account_id, thread_key, subject)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO NOTHING
            """,
            (thread_id, self.account_id, content.thread_key, content.subject),
        )

        previous = self._conn.execute(
            "SELECT thread_id FROM emails WHERE id = ?", (email.id,)
        ).fetchone()
        if previous is not None and previous[0] != thread_id:
            self._dirty_threads.add(previous[0])

        states = email.field_states
        self._conn.execute(
            """
            INSERT INTO emails (
                id, account_id, thread_id, provider_id,
                subject, body, sender, sender_name,
                recipients_json, recipients_text, sent_at_iso, thread_key, content_hash,
                is_read, is_starred, is_archived, is_deleted, is_delivered,
                field_state_json, updated_at_iso
            )
            VALUES (
                :id, :account_id, :thread_id, :provider_id,
                :subject, :body, :sender, :sender_name,
                :recipients_json, :recipients_text, :sent_at_iso, :thread_key, :content_hash,
                :is_read, :is_starred, :is_archived, :is_deleted, :is_delivered,
                :field_state_json, :updated_at_iso
            )
            ON CONFLICT(id) DO UPDATE SET
                thread_id=excluded.thread_id,
                subject=excluded.subject,
                body=excluded.body,
                sender=excluded.sender,
                sender_name=excluded.sender_name,
                recipients_json=excluded.recipients_json,
                recipients_text=excluded.recipients_text,
                sent_at_iso=excluded.sent_at_iso,
                thread_key=excluded.thread_key,
                content_hash=excluded.content_hash,
                is_read=excluded.is_read,
                is_starred=excluded.is_starred,
                is_archived=excluded.is_archived,
                is_deleted=excluded.is_deleted,
                is_delivered=excluded.is_delivered,
                field_state_json=excluded.field_state_json,
                updated_at_iso=excluded.updated_at_iso
            """,
            {
                "id": email.id,
                "account_id": self.account_id,
                "thread_id": thread_id,
                "provider_id": email.provider_id,
                "subject": content.subject,
                "body": content.body,
                "sender": content.sender,
                "sender_name": content.sender_name,
                "recipients_json": json.dumps(content.recipients),
                "recipients_text": " ".join(content.recipients),
                "sent_at_iso": to_iso(content.sent_at),
                "thread_key": content.thread_key,
                "content_hash": content.content_hash,
                **_flag_columns(states),
                "field_state_json": dump_field_states(states),
                "updated_at_iso": to_iso(self.now),
            },
        )
        self._sync_labels(email.id, states)
        if created:
            self.observe_contacts(email)

        self._dirty_threads.add(thread_id)
        self._record(email.id, NotificationKind.UPSERTED)

    def write_field_states(self, email_id: str, states: dict[str, FieldState]) -> None:
        """Persist new flag/label states for an existing email."""

        cursor = self._conn.execute(
            """
            UPDATE emails SET
                is_read=:is_read,
                is_starred=:is_starred,
                is_archived=:is_archived,
                is_deleted=:is_deleted,
                is_delivered=:is_delivered,
                field_state_json=:field_state_json,
                updated_at_iso=:updated_at_iso
            WHERE id = :id
            """,
            {
                "id": email_id,
                **_flag_columns(states),
                "field_state_json": dump_field_states(states),
                "updated_at_iso": to_iso(self.now),
            },
        )
        if cursor.rowcount == 0:
            raise sqlite3.IntegrityError(f"email {email_id} does not exist")
        self._sync_labels(email_id, states)
        self._record(email_id, NotificationKind.UPSERTED)

    def delete_email(self, email: Email, *, deleted_at: datetime | None = None) -> None:
        """Hard-delete an email.

        With ``deleted_at`` a tombstone is left so fetches that predate a
        pushed local delete cannot resurrect the email. Deletions observed on
        the remote need none: the remote stays authoritative for a restore.
        """

        self._conn.execute("DELETE FROM emails WHERE id = ?", (email.id,))
        if deleted_at is not None:
            self._conn.execute(
                """
                INSERT INTO tombstones (account_id, provider_id, deleted_at_iso)
                VALUES (?, ?, ?)
                ON CONFLICT(account_id, provider_id) DO UPDATE SET
                    deleted_at_iso = MAX(tombstones.deleted_at_iso, excluded.deleted_at_iso)
                """,
                (self.account_id, email.provider_id, to_iso(deleted_at)),
            )
        self._dirty_threads.add(email.thread_id)
        self._record(email.id, NotificationKind.DELETED)

    def clear_tombstone(self, provider_id: str) -> None:
        self._conn.execute(
            "DELETE FROM tombstones WHERE account_id = ? AND provider_id = ?",
            (self.account_id, provider_id),
        )

    def purge_account(self) -> int:
        """Remove every mirrored email and derived row of the account."""

        rows = self._conn.execute(
            "SELECT id, thread_id FROM emails WHERE account_id = ?", (self.account_id,)
        ).fetchall()
        self._conn.execute("DELETE FROM emails WHERE account_id = ?", (self.account_id,))
        for row in rows:
            self._dirty_threads.add(row["thread_id"])
            self._record(row["id"], NotificationKind.DELETED)
        for table in ("local_mutations", "tombstones", "contacts", "labels", "embeddings"):
            self._conn.execute(f"DELETE FROM {table} WHERE account_id = ?", (self.account_id,))
        return len(rows)

    def reset_cursors(self) -> None:
        self._conn.execute(
            """
            UPDATE sync_state SET cursor = NULL, cursor_seq = cursor_seq + 1
            WHERE account_id = ?
            """,
            (self.account_id,),
        )

    # Mutation outbox writes

    def upsert_pending_mutation(self, mutation: LocalMutation) -> LocalMutation:
        """Insert a pending mutation, coalescing into an existing one for the same field."""

        existing = self._conn.execute(
            """
            SELECT * FROM local_mutations
            WHERE email_id = ? AND field = ? AND status = 'pending'
            """,
            (mutation.email_id, mutation.field),
        ).fetchone()
        if existing is not None:
            self._conn.execute(
                """
                UPDATE local_mutations SET
                    value = ?, version = ?, attempts = 0, next_attempt_at_iso = ?, last_error = NULL
                WHERE id = ?
                """,
                (
                    1 if mutation.value else 0,
                    mutation.version,
                    to_iso(mutation.next_attempt_at),
                    existing["id"],
                ),
            )
            return mutation.model_copy(
                update={"id": existing["id"], "created_at": from_iso(existing["created_at_iso"])}
            )

        self._conn.execute(
            """
            INSERT INTO local_mutations (
                id, account_id, email_id, provider_id, field, value, version,
                status, attempts, next_attempt_at_iso, last_error, created_at_iso
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                mutation.id,
                mutation.account_id,
                mutation.email_id,
                mutation.provider_id,
                mutation.field,
                1 if mutation.value else 0,
                mutation.version,
                MutationStatus.PENDING.value,
                mutation.attempts,
                to_iso(mutation.next_attempt_at),
                mutation.last_error,
                to_iso(mutation.created_at),
            ),
        )
        return mutation

    def remove_mutations(self, mutation_ids: list[str]) -> None:
        self._conn.executemany(
            "DELETE FROM local_mutations WHERE id = ?", [(m,) for m in mutation_ids]
        )

    def fail_mutation(self, mutation_id: str, reason: str) -> None:
        self._conn.execute(
            """
            UPDATE local_mutations SET status = 'failed', last_error = ?, attempts = attempts + 1
            WHERE id = ?
            """,
            (reason, mutation_id),
        )

    def reschedule_mutation(self, mutation_id: str, next_attempt_at: datetime, error: str) -> None:
        self._conn.execute(
            """
            UPDATE local_mutations SET
                attempts = attempts + 1, next_attempt_at_iso = ?, last_error = ?
            WHERE id = ?
            """,
            (to_iso(next_attempt_at), error, mutation_id),
        )

    # Commit support

    def flush(self) -> None:
        """Refresh touched threads and append change-log rows. Called before COMMIT."""

        for thread_id in sorted(self._dirty_threads):
            self._refresh_thread(thread_id)
        self._dirty_threads.clear()

        created = to_iso(self.now)
        self._conn.executemany(
            """
            INSERT INTO change_log (account_id, email_id, kind, created_at_iso)
            VALUES (?, ?, ?, ?)
            """,
            [
                (self.account_id, email_id, kind.value, created)
                for email_id, kind in self._changes.items()
            ],
        )

    def _record(self, email_id: str, kind: NotificationKind) -> None:
        # Keep first-touch order; the latest kind wins.
        self._changes[email_id] = kind

    def _refresh_thread(self, thread_id: str) -> None:
        count, last_iso = self._conn.execute(
            "SELECT COUNT(*), MAX(sent_at_iso) FROM emails WHERE thread_id = ?",
            (thread_id,),
        ).fetchone()
        if not count:
            self._conn.execute("DELETE FROM threads WHERE id = ?", (thread_id,))
            return

        (subject,) = self._conn.execute(
            """
            SELECT subject FROM emails WHERE thread_id = ?
            ORDER BY sent_at_iso ASC, id ASC LIMIT 1
            """,
            (thread_id,),
        ).fetchone()
        self._conn.execute(
            """
            UPDATE threads SET message_count = ?, last_message_at_iso = ?, subject = ?
            WHERE id = ?
            """,
            (int(count), last_iso, subject, thread_id),
        )

    def _sync_labels(self, email_id: str, states: dict[str, FieldState]) -> None:
        present = sorted(label_name(f) for f, s in states.items() if is_label_field(f) and s.value)
        self._conn.execute("DELETE FROM email_labels WHERE email_id = ?", (email_id,))
        for name in present:
            self._conn.execute(
                "INSERT INTO labels (account_id, name) VALUES (?, ?) ON CONFLICT DO NOTHING",
                (self.account_id, name),
            )
            self._conn.execute(
                """
                INSERT INTO email_labels (email_id, label_id)
                SELECT ?, id FROM labels WHERE account_id = ? AND name = ?
                """,
                (email_id, self.account_id, name),
            )

    def observe_contacts(self, email: Email) -> None:
        content = email.content
        observed: list[tuple[str, str | None]] = []
        if content.sender:
            observed.append((content.sender.lower(), content.sender_name))
        observed.extend((addr.lower(), None) for addr in content.recipients if addr)

        seen_iso = to_iso(content.sent_at)
        for address, name in dict(observed).items():
            self._conn.execute(
                """
                INSERT INTO contacts (account_id, address, display_name, message_count, last_seen_at_iso)
                VALUES (?, ?, ?, 1, ?)
                ON CONFLICT(account_id, address) DO UPDATE SET
                    display_name = COALESCE(excluded.display_name, contacts.display_name),
                    message_count = contacts.message_count + 1,
                    last_seen_at_iso = MAX(COALESCE(contacts.last_seen_at_iso, ''), excluded.last_seen_at_iso)
                """,
                (self.account_id, address, name, seen_iso),
            )


def _flag_columns(states: dict[str, FieldState]) -> dict[str, int]:
    def flag(name: str, default: bool = False) -> int:
        state = states.get(name)
        return int(state.value if state is not None else default)

    return {
        "is_read": flag(READ),
        "is_starred": flag(STARRED),
        "is_archived": flag(ARCHIVED),
        "is_deleted": flag(DELETED),
        "is_delivered": flag(DELIVERED, default=True),
    }
