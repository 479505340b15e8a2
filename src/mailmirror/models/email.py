"""Mirrored email content, flags, threads and derived artifacts.

Remote content (subject, body, sender, recipients, sent timestamp) is
immutable from the local side. Flags and labels are the only locally writable
fields; each is tracked as a :class:`FieldState` carrying the logical versions
the conflict resolver compares.
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

READ = "read"
STARRED = "starred"
ARCHIVED = "archived"
DELETED = "deleted"
DELIVERED = "delivered"

LABEL_PREFIX = "label:"

# Flags the user can set locally. Everything else is owned by the server.
USER_FLAGS = frozenset({READ, STARRED, ARCHIVED, DELETED})
SERVER_FLAGS = frozenset({DELIVERED})


def label_field(name: str) -> str:
    """Return the field name tracking membership of label ``name``."""

    return f"{LABEL_PREFIX}{name}"


def is_label_field(field: str) -> bool:
    return field.startswith(LABEL_PREFIX)


def label_name(field: str) -> str:
    return field[len(LABEL_PREFIX) :]


def is_user_settable(field: str) -> bool:
    """Whether a local mutation may target ``field``."""

    return field in USER_FLAGS or is_label_field(field)


def compute_content_hash(subject: str, body: str) -> str:
    """Hash of the text an embedding is computed from."""

    digest = hashlib.sha256()
    digest.update(subject.encode("utf-8"))
    digest.update(b"\x1f")
    digest.update(body.encode("utf-8"))
    return digest.hexdigest()


class FieldState(BaseModel):
    """Value and logical versions of one flag or label membership.

    ``version`` increments on every applied mutation (local or remote).
    ``synced_version`` is the version last agreed with the remote, and
    ``remote_value`` the value the remote last reported.
    """

    model_config = ConfigDict(frozen=True)

    value: bool
    version: int = 0
    synced_version: int = 0
    remote_value: bool | None = None


class EmailContent(BaseModel):
    """Remote-owned content of an email."""

    subject: str = Field(default="", description="Subject header")
    body: str = Field(default="", description="Plain-text body")
    sender: str = Field(default="", description="Parsed sender address")
    sender_name: str | None = Field(default=None, description="Sender display name")
    recipients: list[str] = Field(default_factory=list, description="To/Cc addresses")
    sent_at: datetime = Field(description="Send timestamp")
    thread_key: str = Field(description="Provider conversation identity")

    @property
    def content_hash(self) -> str:
        return compute_content_hash(self.subject, self.body)


class Email(BaseModel):
    """A mirrored email: remote content plus local flag state."""

    id: str = Field(description="Local EmailId (UUIDv5 of account id and provider id)")
    account_id: str
    thread_id: str
    provider_id: str = Field(description="Provider-native message id")
    content: EmailContent
    field_states: dict[str, FieldState] = Field(default_factory=dict)
    content_hash: str
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def flag(self, field: str) -> bool:
        state = self.field_states.get(field)
        return bool(state and state.value)

    @property
    def is_read(self) -> bool:
        return self.flag(READ)

    @property
    def is_starred(self) -> bool:
        return self.flag(STARRED)

    @property
    def is_archived(self) -> bool:
        return self.flag(ARCHIVED)

    @property
    def is_deleted(self) -> bool:
        return self.flag(DELETED)

    @property
    def is_delivered(self) -> bool:
        # Drafts are the exception; a missing observation means delivered.
        state = self.field_states.get(DELIVERED)
        return True if state is None else state.value

    @property
    def labels(self) -> list[str]:
        return sorted(
            label_name(name)
            for name, state in self.field_states.items()
            if is_label_field(name) and state.value
        )


class Thread(BaseModel):
    """Conversation grouping; membership is derived from the remote only."""

    id: str
    account_id: str
    thread_key: str
    subject: str = ""
    last_message_at: datetime | None = None
    message_count: int = 0


class Label(BaseModel):
    """Named tag within an account."""

    account_id: str
    name: str
    message_count: int = 0


class Contact(BaseModel):
    """Sender/recipient identity aggregated from observed emails."""

    account_id: str
    address: str
    display_name: str | None = None
    message_count: int = 0
    last_seen_at: datetime | None = None


class EmbeddingVector(BaseModel):
    """Vector representation of an email's text."""

    email_id: str
    account_id: str
    vector: list[float]
    content_hash: str
    model: str
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def dimension(self) -> int:
        return len(self.vector)
