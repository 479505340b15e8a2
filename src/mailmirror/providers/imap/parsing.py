"""Helpers for translating IMAP fetch responses to and from mirror models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from email import policy
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime
from typing import Any

from mailmirror.models import (
    ARCHIVED,
    DELETED,
    DELIVERED,
    READ,
    STARRED,
    EmailContent,
    is_label_field,
    label_name,
)

SEEN = "\\Seen"
FLAGGED = "\\Flagged"
DELETED_FLAG = "\\Deleted"
DRAFT = "\\Draft"


@dataclass(frozen=True)
class ImapCursor:
    """``<uidvalidity>:<last_uid>:<highestmodseq>``; modseq is empty without CONDSTORE."""

    uidvalidity: int
    last_uid: int = 0
    modseq: int | None = None

    def encode(self) -> str:
        return f"{self.uidvalidity}:{self.last_uid}:{'' if self.modseq is None else self.modseq}"


def parse_cursor(cursor: str) -> ImapCursor:
    parts = cursor.split(":")
    if len(parts) != 3:
        raise ValueError(f"Malformed IMAP cursor: {cursor!r}")
    uidvalidity, last_uid, modseq = parts
    return ImapCursor(
        uidvalidity=int(uidvalidity),
        last_uid=int(last_uid),
        modseq=int(modseq) if modseq else None,
    )


def provider_id_for(uidvalidity: int, uid: int) -> str:
    return f"{uidvalidity}:{uid}"


def split_provider_id(provider_id: str) -> tuple[int, int]:
    uidvalidity, _, uid = provider_id.partition(":")
    return int(uidvalidity), int(uid)


def _decode(value: Any) -> str:
    return value.decode("utf-8", errors="replace") if isinstance(value, bytes) else str(value)


def _first(data: dict[Any, Any], *keys: bytes) -> bytes | None:
    # Servers differ between BODY.PEEK[...] and BODY[...] response keys.
    for key in keys:
        if key in data:
            value = data[key]
            if isinstance(value, bytes):
                return value
            if isinstance(value, str):
                return value.encode("utf-8")
    return None


def _as_utc(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (bytes, str)):
        try:
            return _as_utc(parsedate_to_datetime(_decode(value)))
        except (TypeError, ValueError):
            return None
    return None


def flags_to_state(raw_flags: Any, *, archive_keyword: str) -> tuple[dict[str, bool], list[str]]:
    """Split IMAP system flags and keywords into a flag snapshot and labels."""

    names = {_decode(f) for f in (raw_flags or ())}
    flags = {
        READ: SEEN in names,
        STARRED: FLAGGED in names,
        ARCHIVED: archive_keyword in names,
        DELETED: False,
        DELIVERED: DRAFT not in names,
    }
    labels = sorted(n for n in names if not n.startswith("\\") and n != archive_keyword)
    return flags, labels


def is_deleted(raw_flags: Any) -> bool:
    return DELETED_FLAG in {_decode(f) for f in (raw_flags or ())}


def _thread_key(message: Any, fallback: str) -> str:
    references = (message.get("References") or "").split()
    if references:
        return references[0]
    in_reply_to = (message.get("In-Reply-To") or "").strip()
    if in_reply_to:
        return in_reply_to
    return (message.get("Message-ID") or "").strip() or fallback


def fetch_to_content(data: dict[Any, Any], fallback_key: str) -> EmailContent:
    """Parse one ``IMAPClient.fetch`` entry into remote content."""

    header_bytes = _first(data, b"BODY[HEADER]", b"BODY.PEEK[HEADER]") or b""
    body_bytes = _first(data, b"BODY[TEXT]", b"BODY.PEEK[TEXT]") or b""
    message = BytesParser(policy=policy.default).parsebytes(header_bytes + b"\r\n" + body_bytes)

    body_part = message.get_body(preferencelist=("plain",))
    text = ""
    if body_part is not None:
        try:
            text = body_part.get_content()
        except (LookupError, ValueError):
            text = ""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")

    senders = [(n, a) for n, a in getaddresses([str(message.get("From") or "")]) if a]
    sender_name, sender = senders[0] if senders else ("", "")
    recipients = [
        addr
        for header in ("To", "Cc")
        for _, addr in getaddresses([str(message.get(header) or "")])
        if addr
    ]
    sent_at = (
        _as_utc(data.get(b"INTERNALDATE"))
        or _as_utc(message.get("Date"))
        or datetime(1970, 1, 1, tzinfo=timezone.utc)
    )

    return EmailContent(
        subject=str(message.get("Subject") or ""),
        body=text.replace("\r\n", "\n").strip(),
        sender=sender,
        sender_name=sender_name or None,
        recipients=recipients,
        sent_at=sent_at,
        thread_key=_thread_key(message, fallback_key),
    )


def mutation_to_flag(field: str, *, archive_keyword: str) -> str:
    """IMAP flag or keyword implementing a local field."""

    if field == READ:
        return SEEN
    if field == STARRED:
        return FLAGGED
    if field == ARCHIVED:
        return archive_keyword
    if field == DELETED:
        return DELETED_FLAG
    if is_label_field(field):
        return label_name(field)
    raise ValueError(f"Field {field!r} cannot be pushed over IMAP")
