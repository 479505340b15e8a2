"""Helpers for translating Gmail API payloads to and from mirror models."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import getaddresses, parsedate_to_datetime
from typing import Any

from mailmirror.models import (
    ARCHIVED,
    DELETED,
    DELIVERED,
    READ,
    STARRED,
    ChangeKind,
    EmailContent,
    LocalMutation,
    RemoteChange,
    is_label_field,
    label_name,
)

# System label ids that map onto flags rather than labels.
FLAG_LABELS = frozenset({"UNREAD", "STARRED", "INBOX", "DRAFT", "TRASH", "SPAM"})

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class GmailCursor:
    """Decoded sync cursor.

    ``full`` cursors page through ``messages.list`` and remember the history
    id observed before the listing started; ``history`` cursors page through
    ``history.list`` from that id.
    """

    mode: str
    history_id: str
    page_token: str | None = None

    def encode(self) -> str:
        if self.mode == "full":
            return f"full:{self.history_id}:{self.page_token or ''}"
        if self.page_token:
            return f"history:{self.history_id}:{self.page_token}"
        return f"history:{self.history_id}"


def parse_cursor(cursor: str) -> GmailCursor:
    mode, _, rest = cursor.partition(":")
    history_id, _, page_token = rest.partition(":")
    if mode not in ("full", "history") or not history_id:
        raise ValueError(f"Malformed Gmail cursor: {cursor!r}")
    return GmailCursor(mode=mode, history_id=history_id, page_token=page_token or None)


def _header_map(message: dict[str, Any]) -> dict[str, str]:
    payload = message.get("payload") or {}
    headers = payload.get("headers") or []
    result: dict[str, str] = {}
    for h in headers:
        name = h.get("name")
        value = h.get("value")
        if isinstance(name, str) and isinstance(value, str):
            # Gmail can include duplicates; keep the first.
            result.setdefault(name.lower(), value)
    return result


def _parse_address_list(value: str | None) -> list[tuple[str, str]]:
    if not value:
        return []
    return [(name, addr) for name, addr in getaddresses([value]) if addr]


def _parse_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _internal_date(message: dict[str, Any]) -> datetime | None:
    raw = message.get("internalDate")
    try:
        millis = int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None
    if millis is None:
        return None
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)


def message_body_text(message: dict[str, Any]) -> str:
    """Best-effort plain-text body of a ``format=full`` message."""

    def decode_b64(data: str) -> str:
        raw = base64.urlsafe_b64decode(data.encode("utf-8") + b"=" * (-len(data) % 4))
        return raw.decode("utf-8", errors="replace")

    def walk_parts(part: dict[str, Any]) -> list[str]:
        mime = (part.get("mimeType") or "").lower()
        body = part.get("body", {}) or {}
        data = body.get("data")
        if data and mime.startswith("text/plain"):
            return [decode_b64(data)]

        texts: list[str] = []
        for p in part.get("parts", []) or []:
            texts.extend(walk_parts(p))
        return texts

    texts = walk_parts(message.get("payload", {}) or {})
    if texts:
        return "\n\n".join(texts).strip()

    # Gmail's snippet is short but better than nothing.
    return (message.get("snippet") or "").strip()


def message_to_content(message: dict[str, Any]) -> EmailContent:
    """Convert a Gmail API message (format=full) to remote content."""

    hm = _header_map(message)
    senders = _parse_address_list(hm.get("from"))
    sender_name, sender = senders[0] if senders else ("", "")
    recipients = [
        addr
        for header in ("to", "cc")
        for _, addr in _parse_address_list(hm.get(header))
    ]
    sent_at = _internal_date(message) or _parse_date(hm.get("date")) or _EPOCH

    return EmailContent(
        subject=hm.get("subject") or "",
        body=message_body_text(message),
        sender=sender,
        sender_name=sender_name or None,
        recipients=recipients,
        sent_at=sent_at,
        thread_key=str(message.get("threadId") or message.get("id") or ""),
    )


def label_ids_to_state(label_ids: list[str]) -> tuple[dict[str, bool], list[str]]:
    """Split Gmail label ids into a flag snapshot and user-visible labels."""

    present = set(label_ids)
    flags = {
        READ: "UNREAD" not in present,
        STARRED: "STARRED" in present,
        ARCHIVED: "INBOX" not in present,
        DELETED: False,
        DELIVERED: "DRAFT" not in present,
    }
    labels = sorted(x for x in present if x not in FLAG_LABELS)
    return flags, labels


def label_delta_to_flags(label_ids: list[str], *, added: bool) -> dict[str, bool]:
    """Flag observations implied by labels being added (or removed) on a message."""

    flags: dict[str, bool] = {}
    for label_id in label_ids:
        if label_id == "UNREAD":
            flags[READ] = not added
        elif label_id == "STARRED":
            flags[STARRED] = added
        elif label_id == "INBOX":
            flags[ARCHIVED] = not added
        elif label_id == "DRAFT":
            flags[DELIVERED] = not added
    return flags


def message_to_change(
    message: dict[str, Any],
    kind: ChangeKind,
    *,
    observed_at: datetime | None = None,
) -> RemoteChange:
    """Build a NEW/UPDATED change, or DELETED when the message sits in the trash.

    The change is stamped with the send time unless ``observed_at`` says when
    the state was seen, as for a message restored from the trash.
    """

    label_ids = [str(x) for x in (message.get("labelIds") or []) if isinstance(x, str)]
    provider_id = str(message.get("id") or "")
    content = message_to_content(message)

    if "TRASH" in label_ids or "SPAM" in label_ids:
        return RemoteChange(
            kind=ChangeKind.DELETED,
            provider_id=provider_id,
            timestamp=datetime.now(timezone.utc),
        )

    flags, labels = label_ids_to_state(label_ids)
    return RemoteChange(
        kind=kind,
        provider_id=provider_id,
        timestamp=observed_at or content.sent_at,
        content=content,
        flags=flags,
        labels=labels,
    )


@dataclass(frozen=True)
class GmailModification:
    """Absolute remote operation implementing one local mutation."""

    action: str
    add_label_ids: tuple[str, ...] = ()
    remove_label_ids: tuple[str, ...] = ()

    def body(self) -> dict[str, list[str]]:
        return {
            "addLabelIds": list(self.add_label_ids),
            "removeLabelIds": list(self.remove_label_ids),
        }


def mutation_to_modification(mutation: LocalMutation) -> GmailModification:
    """Translate a local mutation into ``messages.modify``/``trash``/``untrash``."""

    field, value = mutation.field, mutation.value

    def toggle(label_id: str, present: bool) -> GmailModification:
        if present:
            return GmailModification("modify", add_label_ids=(label_id,))
        return GmailModification("modify", remove_label_ids=(label_id,))

    if field == READ:
        return toggle("UNREAD", not value)
    if field == STARRED:
        return toggle("STARRED", value)
    if field == ARCHIVED:
        return toggle("INBOX", not value)
    if field == DELETED:
        return GmailModification("trash" if value else "untrash")
    if is_label_field(field):
        return toggle(label_name(field), value)
    raise ValueError(f"Field {field!r} cannot be pushed to Gmail")
