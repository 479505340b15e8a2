"""Email filters shared by keyword search and semantic result filtering."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from mailmirror.store.rows import to_iso


class Folder(str, Enum):
    """Virtual folder an email is listed under."""

    ALL = "all"
    INBOX = "inbox"
    ARCHIVE = "archive"
    TRASH = "trash"
    DRAFTS = "drafts"
    STARRED = "starred"


_FOLDER_SQL: dict[Folder, str] = {
    Folder.ALL: "{e}.is_deleted = 0",
    Folder.INBOX: "{e}.is_deleted = 0 AND {e}.is_archived = 0 AND {e}.is_delivered = 1",
    Folder.ARCHIVE: "{e}.is_deleted = 0 AND {e}.is_archived = 1",
    Folder.TRASH: "{e}.is_deleted = 1",
    Folder.DRAFTS: "{e}.is_deleted = 0 AND {e}.is_delivered = 0",
    Folder.STARRED: "{e}.is_deleted = 0 AND {e}.is_starred = 1",
}


@dataclass(frozen=True)
class EmailFilter:
    """Faceted restriction over mirrored emails."""

    account_ids: tuple[str, ...] = ()
    folder: Folder = Folder.ALL
    label: str | None = None
    sent_after: datetime | None = None
    sent_before: datetime | None = None
    sender: str | None = None
    recipient: str | None = None
    is_unread: bool | None = None
    is_starred: bool | None = None

    def to_sql(self, alias: str = "e") -> tuple[str, list[object]]:
        """Render as a SQL boolean expression plus its parameters."""

        clauses = [_FOLDER_SQL[self.folder].format(e=alias)]
        params: list[object] = []

        if self.account_ids:
            placeholders = ", ".join("?" for _ in self.account_ids)
            clauses.append(f"{alias}.account_id IN ({placeholders})")
            params.extend(self.account_ids)
        if self.label:
            clauses.append(
                f"""EXISTS (
                    SELECT 1 FROM email_labels el
                    JOIN labels l ON l.id = el.label_id
                    WHERE el.email_id = {alias}.id AND l.name = ?
                )"""
            )
            params.append(self.label)
        if self.sent_after is not None:
            clauses.append(f"{alias}.sent_at_iso >= ?")
            params.append(to_iso(self.sent_after))
        if self.sent_before is not None:
            clauses.append(f"{alias}.sent_at_iso <= ?")
            params.append(to_iso(self.sent_before))
        if self.sender:
            clauses.append(f"LOWER({alias}.sender) LIKE ?")
            params.append(f"%{self.sender.lower()}%")
        if self.recipient:
            clauses.append(f"LOWER({alias}.recipients_text) LIKE ?")
            params.append(f"%{self.recipient.lower()}%")
        if self.is_unread is not None:
            clauses.append(f"{alias}.is_read = ?")
            params.append(0 if self.is_unread else 1)
        if self.is_starred is not None:
            clauses.append(f"{alias}.is_starred = ?")
            params.append(1 if self.is_starred else 0)

        return " AND ".join(clauses), params
