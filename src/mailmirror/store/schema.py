"""SQLite schema for the local mirror.

The schema is versioned through ``_schema_meta``. Every table owned by an
account references ``accounts`` with ``ON DELETE CASCADE`` so removing an
account removes its whole mirror in one statement.
"""

from __future__ import annotations

import sqlite3

SCHEMA_VERSION = 1


def get_schema_version(conn: sqlite3.Connection) -> int | None:
    row = conn.execute(
        "SELECT value FROM _schema_meta WHERE key = 'schema_version'"
    ).fetchone()
    if row is None:
        return None
    return int(row[0])


def set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    conn.execute(
        "INSERT OR REPLACE INTO _schema_meta(key, value) VALUES('schema_version', ?) ",
        (str(version),),
    )


def create_schema_v1(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS accounts (
            id TEXT PRIMARY KEY,
            email_address TEXT NOT NULL,
            provider TEXT NOT NULL,
            auth_ref TEXT NOT NULL,
            display_name TEXT,
            status TEXT NOT NULL DEFAULT 'active',
            status_detail TEXT,
            created_at_iso TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_state (
            account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
            mailbox TEXT NOT NULL,
            cursor TEXT,
            cursor_seq INTEGER NOT NULL DEFAULT 0,
            last_synced_at_iso TEXT,
            PRIMARY KEY (account_id, mailbox)
        );

        CREATE TABLE IF NOT EXISTS threads (
            id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
            thread_key TEXT NOT NULL,
            subject TEXT NOT NULL DEFAULT '',
            last_message_at_iso TEXT,
            message_count INTEGER NOT NULL DEFAULT 0,
            UNIQUE (account_id, thread_key)
        );

        CREATE INDEX IF NOT EXISTS idx_threads_account_last_message
            ON threads(account_id, last_message_at_iso);

        CREATE TABLE IF NOT EXISTS emails (
            rowid INTEGER PRIMARY KEY,
            id TEXT NOT NULL UNIQUE,
            account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
            thread_id TEXT NOT NULL REFERENCES threads(id) ON DELETE CASCADE,
            provider_id TEXT NOT NULL,
            subject TEXT NOT NULL,
            body TEXT NOT NULL,
            sender TEXT NOT NULL,
            sender_name TEXT,
            recipients_json TEXT NOT NULL,
            recipients_text TEXT NOT NULL,
            sent_at_iso TEXT NOT NULL,
            thread_key TEXT NOT NULL,
            content_hash TEXT NOT NULL,
            is_read INTEGER NOT NULL DEFAULT 0,
            is_starred INTEGER NOT NULL DEFAULT 0,
            is_archived INTEGER NOT NULL DEFAULT 0,
            is_deleted INTEGER NOT NULL DEFAULT 0,
            is_delivered INTEGER NOT NULL DEFAULT 1,
            field_state_json TEXT NOT NULL,
            updated_at_iso TEXT NOT NULL,
            UNIQUE (account_id, provider_id)
        );

        CREATE INDEX IF NOT EXISTS idx_emails_thread_sent
            ON emails(thread_id, sent_at_iso);

        CREATE INDEX IF NOT EXISTS idx_emails_account_sent
            ON emails(account_id, sent_at_iso);

        CREATE TABLE IF NOT EXISTS labels (
            id INTEGER PRIMARY KEY,
            account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            UNIQUE (account_id, name)
        );

        CREATE TABLE IF NOT EXISTS email_labels (
            email_id TEXT NOT NULL REFERENCES emails(id) ON DELETE CASCADE,
            label_id INTEGER NOT NULL REFERENCES labels(id) ON DELETE CASCADE,
            PRIMARY KEY (email_id, label_id)
        );

        CREATE INDEX IF NOT EXISTS idx_email_labels_label
            ON email_labels(label_id);

        CREATE TABLE IF NOT EXISTS contacts (
            account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
            address TEXT NOT NULL,
            display_name TEXT,
            message_count INTEGER NOT NULL DEFAULT 0,
            last_seen_at_iso TEXT,
            PRIMARY KEY (account_id, address)
        );

        CREATE TABLE IF NOT EXISTS embeddings (
            email_id TEXT PRIMARY KEY REFERENCES emails(id) ON DELETE CASCADE,
            account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
            content_hash TEXT NOT NULL,
            model TEXT NOT NULL,
            dimension INTEGER NOT NULL,
            vector_json TEXT NOT NULL,
            updated_at_iso TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS local_mutations (
            id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
            email_id TEXT NOT NULL REFERENCES emails(id) ON DELETE CASCADE,
            provider_id TEXT NOT NULL,
            field TEXT NOT NULL,
            value INTEGER NOT NULL,
            version INTEGER NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            attempts INTEGER NOT NULL DEFAULT 0,
            next_attempt_at_iso TEXT NOT NULL,
            last_error TEXT,
            created_at_iso TEXT NOT NULL
        );

        CREATE UNIQUE INDEX IF NOT EXISTS idx_local_mutations_pending_field
            ON local_mutations(email_id, field) WHERE status = 'pending';

        CREATE INDEX IF NOT EXISTS idx_local_mutations_due
            ON local_mutations(account_id, status, next_attempt_at_iso);

        CREATE TABLE IF NOT EXISTS tombstones (
            account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
            provider_id TEXT NOT NULL,
            deleted_at_iso TEXT NOT NULL,
            PRIMARY KEY (account_id, provider_id)
        );

        CREATE TABLE IF NOT EXISTS change_log (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
            email_id TEXT NOT NULL,
            kind TEXT NOT NULL,
            created_at_iso TEXT NOT NULL
        );

        CREATE VIRTUAL TABLE IF NOT EXISTS emails_fts USING fts5(
            subject,
            body,
            sender,
            recipients_text,
            content='emails',
            content_rowid='rowid'
        );

        CREATE TRIGGER IF NOT EXISTS emails_ai
        AFTER INSERT ON emails
        BEGIN
            INSERT INTO emails_fts(rowid, subject, body, sender, recipients_text)
            VALUES (new.rowid, new.subject, new.body, new.sender, new.recipients_text);
        END;

        CREATE TRIGGER IF NOT EXISTS emails_ad
        AFTER DELETE ON emails
        BEGIN
            INSERT INTO emails_fts(emails_fts, rowid, subject, body, sender, recipients_text)
            VALUES ('delete', old.rowid, old.subject, old.body, old.sender, old.recipients_text);
        END;

        CREATE TRIGGER IF NOT EXISTS emails_au
        AFTER UPDATE OF subject, body, sender, recipients_text ON emails
        BEGIN
            INSERT INTO emails_fts(emails_fts, rowid, subject, body, sender, recipients_text)
            VALUES ('delete', old.rowid, old.subject, old.body, old.sender, old.recipients_text);

            INSERT INTO emails_fts(rowid, subject, body, sender, recipients_text)
            VALUES (new.rowid, new.subject, new.body, new.sender, new.recipients_text);
        END;
        """
    )
