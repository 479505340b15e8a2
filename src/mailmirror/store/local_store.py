"""SQLite-backed local mirror of remote mailboxes.

The store is the single source of truth for everything the client shows. It
holds accounts, threads, emails, labels, contacts, sync cursors, embeddings,
the local mutation outbox, tombstones and the change log that drives the
embedding indexer.

Connections are short-lived (one per operation) and run in autocommit mode so
transactions are explicit. Write transactions take ``BEGIN IMMEDIATE`` under a
per-account lock; reads run in a deferred read transaction so every
multi-statement read sees a single snapshot while writers continue under WAL.
"""

from __future__ import annotations

import json
import re
import sqlite3
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import structlog

from mailmirror.exceptions import StorageError
from mailmirror.models import (
    Account,
    AccountStatus,
    ChangeNotification,
    Contact,
    Email,
    EmbeddingVector,
    Label,
    LocalMutation,
    NotificationKind,
    SyncState,
    Thread,
)
from mailmirror.store.filters import EmailFilter
from mailmirror.store.rows import (
    row_to_account,
    row_to_contact,
    row_to_email,
    row_to_embedding,
    row_to_mutation,
    row_to_sync_state,
    row_to_thread,
    to_iso,
)
from mailmirror.store.schema import (
    SCHEMA_VERSION,
    create_schema_v1,
    get_schema_version,
    set_schema_version,
)
from mailmirror.store.transaction import StoreTransaction

logger = structlog.get_logger()

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)

CommitListener = Callable[[str], None]


@dataclass(frozen=True)
class KeywordHit:
    """One full-text match; ``rank`` is 1-based."""

    email_id: str
    rank: int
    snippet: str


def build_fts_query(text: str) -> str | None:
    """Turn free text into an FTS5 query of quoted terms (implicit AND)."""

    tokens = _TOKEN_RE.findall(text)
    if not tokens:
        return None
    return " ".join(f'"{token}"' for token in tokens)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LocalStore:
    """Repository for the local mirror."""

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_seconds: float = 30.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Create a store.

        Args:
            db_path: Path to the SQLite database file.
            busy_timeout_seconds: How long a writer waits for the write lock.
            clock: Source of "now"; injectable for tests.
        """

        self._db_path = db_path
        self._busy_timeout = busy_timeout_seconds
        self._clock = clock
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._listeners: list[CommitListener] = []

    @property
    def db_path(self) -> Path:
        return self._db_path

    def now(self) -> datetime:
        return self._clock()

    def initialize(self) -> None:
        """Create or upgrade the store schema."""

        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS _schema_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );
                """
            )

            current_version = get_schema_version(conn)
            if current_version is None:
                create_schema_v1(conn)
                set_schema_version(conn, SCHEMA_VERSION)
                logger.info("local_store_schema_created", version=SCHEMA_VERSION)
                return

            if current_version != SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported schema version {current_version}; expected {SCHEMA_VERSION}"
                )

    def add_commit_listener(self, listener: CommitListener) -> None:
        """Register a callback invoked with the account id after each email-changing commit."""

        self._listeners.append(listener)

    # Transactions

    @contextmanager
    def transaction(self, account_id: str) -> Iterator[StoreTransaction]:
        """Open an account-scoped write transaction.

        On success the change log rows are appended and the transaction
        committed; listeners are then notified outside the lock. Any SQLite
        failure rolls back and surfaces as :class:`StorageError`.
        """

        with self._write(account_id) as conn:
            tx = StoreTransaction(conn, account_id, self.now())
            yield tx
            tx.flush()
            touched = tx.touched

        if touched:
            self._notify(account_id)

    @contextmanager
    def _write(self, account_id: str) -> Iterator[sqlite3.Connection]:
        with self._account_lock(account_id), self._connect() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                _rollback(conn)
                logger.warning(
                    "store_transaction_rolled_back", account_id=account_id, error=str(exc)
                )
                raise StorageError(f"Transaction for account {account_id} failed: {exc}") from exc
            except BaseException:
                _rollback(conn)
                raise

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as conn:
            try:
                conn.execute("BEGIN")
                yield conn
            except sqlite3.Error as exc:
                raise StorageError(f"Read failed: {exc}") from exc
            finally:
                _rollback(conn)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(
            self._db_path, timeout=self._busy_timeout, isolation_level=None
        )
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys=ON;")
            yield conn
        finally:
            conn.close()

    def _account_lock(self, account_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[account_id] = lock
            return lock

    def _notify(self, account_id: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(account_id)
            except Exception as exc:  # noqa: BLE001 - a listener must not fail a committed write
                logger.warning("commit_listener_failed", account_id=account_id, error=str(exc))

    # Accounts

    def add_account(self, account: Account, *, mailbox: str) -> Account:
        """Register an account and its initial (empty) sync cursor."""

        with self._write(account.id) as conn:
            conn.execute(
                """
                INSERT INTO accounts (
                    id, email_address, provider, auth_ref, display_name,
                    status, status_detail, created_at_iso
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    account.id,
                    account.email_address,
                    account.provider.value,
                    account.auth_ref,
                    account.display_name,
                    account.status.value,
                    account.status_detail,
                    to_iso(account.created_at),
                ),
            )
            conn.execute(
                "INSERT INTO sync_state (account_id, mailbox) VALUES (?, ?)",
                (account.id, mailbox),
            )
        logger.info("account_added", account_id=account.id, provider=account.provider.value)
        return account

    def remove_account(self, account_id: str) -> bool:
        """Delete an account; everything it owns cascades."""

        with self._write(account_id) as conn:
            cursor = conn.execute("DELETE FROM accounts WHERE id = ?", (account_id,))
            removed = cursor.rowcount > 0
        if removed:
            logger.info("account_removed", account_id=account_id)
        return removed

    def get_account(self, account_id: str) -> Account | None:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
        return None if row is None else row_to_account(row)

    def list_accounts(self) -> list[Account]:
        with self._read() as conn:
            rows = conn.execute("SELECT * FROM accounts ORDER BY created_at_iso, id").fetchall()
        return [row_to_account(r) for r in rows]

    def set_account_status(
        self, account_id: str, status: AccountStatus, detail: str | None = None
    ) -> None:
        with self._write(account_id) as conn:
            conn.execute(
                "UPDATE accounts SET status = ?, status_detail = ? WHERE id = ?",
                (status.value, detail, account_id),
            )

    # Sync state

    def get_sync_state(self, account_id: str, mailbox: str) -> SyncState:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM sync_state WHERE account_id = ? AND mailbox = ?",
                (account_id, mailbox),
            ).fetchone()
        if row is None:
            return SyncState(account_id=account_id, mailbox=mailbox)
        return row_to_sync_state(row)

    def advance_cursor(
        self,
        account_id: str,
        mailbox: str,
        cursor: str,
        *,
        expected_seq: int,
    ) -> SyncState:
        """Compare-and-set the cursor; the generation moves strictly forward.

        Raises:
            StorageError: If the stored generation is no longer ``expected_seq``.
        """

        now = self.now()
        with self._write(account_id) as conn:
            updated = conn.execute(
                """
                UPDATE sync_state
                SET cursor = ?, cursor_seq = cursor_seq + 1, last_synced_at_iso = ?
                WHERE account_id = ? AND mailbox = ? AND cursor_seq = ?
                """,
                (cursor, to_iso(now), account_id, mailbox, expected_seq),
            ).rowcount
            if updated == 0:
                raise StorageError(
                    f"Cursor generation for {account_id}/{mailbox} moved past {expected_seq}"
                )
        return SyncState(
            account_id=account_id,
            mailbox=mailbox,
            cursor=cursor,
            cursor_seq=expected_seq + 1,
            last_synced_at=now,
        )

    def mark_synced(self, account_id: str, mailbox: str) -> None:
        with self._write(account_id) as conn:
            conn.execute(
                "UPDATE sync_state SET last_synced_at_iso = ? WHERE account_id = ? AND mailbox = ?",
                (to_iso(self.now()), account_id, mailbox),
            )

    def reset_account_mirror(self, account_id: str) -> int:
        """Drop every mirrored email of an account and restart its cursors.

        The cursor generation is bumped rather than reset so any cycle still
        holding the old generation cannot write its cursor back.
        """

        with self.transaction(account_id) as tx:
            removed = tx.purge_account()
            tx.reset_cursors()
        logger.info("account_mirror_reset", account_id=account_id, emails=removed)
        return removed

    # Emails and threads

    def get_email(self, email_id: str) -> Email | None:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM emails WHERE id = ?", (email_id,)).fetchone()
        return None if row is None else row_to_email(row)

    def get_email_by_provider_id(self, account_id: str, provider_id: str) -> Email | None:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM emails WHERE account_id = ? AND provider_id = ?",
                (account_id, provider_id),
            ).fetchone()
        return None if row is None else row_to_email(row)

    def get_emails(self, email_ids: Iterable[str]) -> dict[str, Email]:
        ids = list(dict.fromkeys(email_ids))
        if not ids:
            return {}
        with self._read() as conn:
            rows = []
            for chunk_start in range(0, len(ids), 500):
                chunk = ids[chunk_start : chunk_start + 500]
                placeholders = ", ".join("?" for _ in chunk)
                rows.extend(
                    conn.execute(
                        f"SELECT * FROM emails WHERE id IN ({placeholders})", chunk
                    ).fetchall()
                )
        return {row["id"]: row_to_email(row) for row in rows}

    def count_emails(self, account_id: str | None = None) -> int:
        with self._read() as conn:
            if account_id is None:
                (count,) = conn.execute("SELECT COUNT(*) FROM emails").fetchone()
            else:
                (count,) = conn.execute(
                    "SELECT COUNT(*) FROM emails WHERE account_id = ?", (account_id,)
                ).fetchone()
        return int(count)

    def get_thread(self, thread_id: str) -> Thread | None:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM threads WHERE id = ?", (thread_id,)).fetchone()
        return None if row is None else row_to_thread(row)

    def list_threads(self, account_id: str, limit: int = 50, offset: int = 0) -> list[Thread]:
        """Threads ordered by most recent email, newest first."""

        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM threads
                WHERE account_id = ?
                ORDER BY last_message_at_iso DESC, id ASC
                LIMIT ? OFFSET ?
                """,
                (account_id, limit, offset),
            ).fetchall()
        return [row_to_thread(r) for r in rows]

    def thread_emails(self, thread_id: str) -> list[Email]:
        """Emails of a thread ordered by send time, oldest first."""

        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM emails WHERE thread_id = ?
                ORDER BY sent_at_iso ASC, id ASC
                """,
                (thread_id,),
            ).fetchall()
        return [row_to_email(r) for r in rows]

    def emails_by_label(self, account_id: str, label: str, limit: int = 100) -> list[Email]:
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT e.* FROM emails e
                JOIN email_labels el ON el.email_id = e.id
                JOIN labels l ON l.id = el.label_id
                WHERE e.account_id = ? AND l.name = ?
                ORDER BY e.sent_at_iso DESC, e.id ASC
                LIMIT ?
                """,
                (account_id, label, limit),
            ).fetchall()
        return [row_to_email(r) for r in rows]

    def emails_between(
        self, account_id: str, start: datetime, end: datetime, limit: int = 500
    ) -> list[Email]:
        """Emails sent in ``[start, end]``, oldest first."""

        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM emails
                WHERE account_id = ? AND sent_at_iso >= ? AND sent_at_iso <= ?
                ORDER BY sent_at_iso ASC, id ASC
                LIMIT ?
                """,
                (account_id, to_iso(start), to_iso(end), limit),
            ).fetchall()
        return [row_to_email(r) for r in rows]

    def list_labels(self, account_id: str) -> list[Label]:
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT l.account_id, l.name, COUNT(el.email_id) AS message_count
                FROM labels l
                LEFT JOIN email_labels el ON el.label_id = l.id
                WHERE l.account_id = ?
                GROUP BY l.id
                ORDER BY l.name
                """,
                (account_id,),
            ).fetchall()
        return [
            Label(account_id=r["account_id"], name=r["name"], message_count=int(r["message_count"]))
            for r in rows
        ]

    # Contacts

    def list_contacts(self, account_id: str, limit: int = 100) -> list[Contact]:
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM contacts WHERE account_id = ?
                ORDER BY message_count DESC, address ASC
                LIMIT ?
                """,
                (account_id, limit),
            ).fetchall()
        return [row_to_contact(r) for r in rows]

    def rebuild_contacts(self, account_id: str) -> int:
        """Recompute the contact table of an account from its emails."""

        with self._write(account_id) as conn:
            conn.execute("DELETE FROM contacts WHERE account_id = ?", (account_id,))
            rows = conn.execute(
                "SELECT * FROM emails WHERE account_id = ? ORDER BY sent_at_iso, id",
                (account_id,),
            ).fetchall()
            tx = StoreTransaction(conn, account_id, self.now())
            for row in rows:
                tx.observe_contacts(row_to_email(row))
            (count,) = conn.execute(
                "SELECT COUNT(*) FROM contacts WHERE account_id = ?", (account_id,)
            ).fetchone()
        logger.info("contacts_rebuilt", account_id=account_id, contacts=count)
        return int(count)

    # Keyword search

    def keyword_search(
        self, text: str, email_filter: EmailFilter | None = None, limit: int = 200
    ) -> list[KeywordHit]:
        """Rank emails with FTS5 bm25; ties are broken by email id."""

        query = build_fts_query(text)
        if query is None:
            return []

        where, params = (email_filter or EmailFilter()).to_sql("e")
        with self._read() as conn:
            rows = conn.execute(
                f"""
                SELECT
                    e.id AS email_id,
                    bm25(emails_fts) AS score,
                    snippet(emails_fts, -1, '[', ']', '...', 12) AS snippet
                FROM emails_fts
                JOIN emails e ON e.rowid = emails_fts.rowid
                WHERE emails_fts MATCH ? AND {where}
                ORDER BY score ASC, e.id ASC
                LIMIT ?
                """,
                [query, *params, limit],
            ).fetchall()
        return [
            KeywordHit(email_id=row["email_id"], rank=i, snippet=row["snippet"] or "")
            for i, row in enumerate(rows, start=1)
        ]

    def filter_email_ids(
        self, email_ids: Iterable[str], email_filter: EmailFilter | None = None
    ) -> set[str]:
        """Subset of ``email_ids`` that exist and match ``email_filter``."""

        ids = list(dict.fromkeys(email_ids))
        if not ids:
            return set()
        where, params = (email_filter or EmailFilter()).to_sql("e")
        placeholders = ", ".join("?" for _ in ids)
        with self._read() as conn:
            rows = conn.execute(
                f"SELECT e.id FROM emails e WHERE e.id IN ({placeholders}) AND {where}",
                [*ids, *params],
            ).fetchall()
        return {row[0] for row in rows}

    # Mutation outbox

    def due_mutations(self, account_id: str, limit: int = 100) -> list[LocalMutation]:
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM local_mutations
                WHERE account_id = ? AND status = 'pending' AND next_attempt_at_iso <= ?
                ORDER BY created_at_iso ASC, id ASC
                LIMIT ?
                """,
                (account_id, to_iso(self.now()), limit),
            ).fetchall()
        return [row_to_mutation(r) for r in rows]

    def pending_mutations(self, account_id: str) -> list[LocalMutation]:
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM local_mutations
                WHERE account_id = ? AND status = 'pending'
                ORDER BY created_at_iso ASC, id ASC
                """,
                (account_id,),
            ).fetchall()
        return [row_to_mutation(r) for r in rows]

    def list_failed_mutations(self, account_id: str) -> list[LocalMutation]:
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM local_mutations
                WHERE account_id = ? AND status = 'failed'
                ORDER BY created_at_iso ASC, id ASC
                """,
                (account_id,),
            ).fetchall()
        return [row_to_mutation(r) for r in rows]

    # Embeddings

    def get_embedding(self, email_id: str) -> EmbeddingVector | None:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM embeddings WHERE email_id = ?", (email_id,)
            ).fetchone()
        return None if row is None else row_to_embedding(row)

    def upsert_embedding(self, vector: EmbeddingVector) -> bool:
        """Store a vector; returns False when its email no longer exists."""

        with self._write(vector.account_id) as conn:
            exists = conn.execute(
                "SELECT 1 FROM emails WHERE id = ?", (vector.email_id,)
            ).fetchone()
            if exists is None:
                return False
            conn.execute(
                """
                INSERT INTO embeddings (
                    email_id, account_id, content_hash, model, dimension, vector_json, updated_at_iso
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(email_id) DO UPDATE SET
                    content_hash=excluded.content_hash,
                    model=excluded.model,
                    dimension=excluded.dimension,
                    vector_json=excluded.vector_json,
                    updated_at_iso=excluded.updated_at_iso
                """,
                (
                    vector.email_id,
                    vector.account_id,
                    vector.content_hash,
                    vector.model,
                    vector.dimension,
                    json.dumps(vector.vector),
                    to_iso(vector.updated_at),
                ),
            )
        return True

    def delete_embedding(self, account_id: str, email_id: str) -> None:
        with self._write(account_id) as conn:
            conn.execute("DELETE FROM embeddings WHERE email_id = ?", (email_id,))

    def stale_embeddings(self, account_id: str | None = None) -> list[tuple[str, str]]:
        """(account id, email id) of emails whose vector is missing or out of date."""

        sql = """
            SELECT e.account_id, e.id FROM emails e
            LEFT JOIN embeddings v ON v.email_id = e.id
            WHERE (v.email_id IS NULL OR v.content_hash != e.content_hash)
        """
        params: list[object] = []
        if account_id is not None:
            sql += " AND e.account_id = ?"
            params.append(account_id)
        sql += " ORDER BY e.account_id, e.id"
        with self._read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [(row[0], row[1]) for row in rows]

    def iter_embeddings(self, account_id: str | None = None) -> list[EmbeddingVector]:
        sql = "SELECT * FROM embeddings"
        params: list[object] = []
        if account_id is not None:
            sql += " WHERE account_id = ?"
            params.append(account_id)
        sql += " ORDER BY email_id"
        with self._read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [row_to_embedding(r) for r in rows]

    # Change log

    def read_changes(self, after_seq: int = 0, limit: int = 256) -> list[ChangeNotification]:
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT seq, account_id, email_id, kind FROM change_log
                WHERE seq > ?
                ORDER BY seq ASC
                LIMIT ?
                """,
                (after_seq, limit),
            ).fetchall()
        return [
            ChangeNotification(
                seq=int(r["seq"]),
                account_id=r["account_id"],
                email_id=r["email_id"],
                kind=NotificationKind(r["kind"]),
            )
            for r in rows
        ]

    def ack_changes(self, seqs: Iterable[int]) -> None:
        """Acknowledge processed change-log rows by deleting them."""

        values = [(int(s),) for s in seqs]
        if not values:
            return
        with self._connect() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                conn.executemany("DELETE FROM change_log WHERE seq = ?", values)
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                _rollback(conn)
                raise StorageError(f"Failed to acknowledge changes: {exc}") from exc

    def pending_change_count(self) -> int:
        with self._read() as conn:
            (count,) = conn.execute("SELECT COUNT(*) FROM change_log").fetchone()
        return int(count)


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        conn.execute("ROLLBACK")
