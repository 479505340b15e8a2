"""Remote deltas, local mutations and push outcomes."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, model_validator

from mailmirror.models.email import EmailContent


class ChangeKind(str, Enum):
    """Kind of a remote delta."""

    NEW = "new"
    UPDATED = "updated"
    DELETED = "deleted"
    FLAG_CHANGED = "flag_changed"
    LABEL_CHANGED = "label_changed"


class RemoteChange(BaseModel):
    """One discrete delta reported by a provider.

    ``NEW``/``UPDATED`` carry the full remote content together with a snapshot
    of flags and labels. ``FLAG_CHANGED`` carries only the changed flags,
    ``LABEL_CHANGED`` only the labels added or removed.
    """

    kind: ChangeKind
    provider_id: str = Field(description="Provider-native message id")
    timestamp: datetime = Field(description="When the remote observed the change")
    content: EmailContent | None = None
    flags: dict[str, bool] = Field(default_factory=dict)
    labels: list[str] | None = Field(
        default=None, description="Full label snapshot (NEW/UPDATED, optionally FLAG_CHANGED)"
    )
    labels_added: list[str] = Field(default_factory=list)
    labels_removed: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _content_required(self) -> "RemoteChange":
        if self.kind in (ChangeKind.NEW, ChangeKind.UPDATED) and self.content is None:
            raise ValueError(f"{self.kind.value} change requires content")
        return self


class ChangeBatch(BaseModel):
    """One finite page returned by ``fetch_changes``."""

    changes: list[RemoteChange] = Field(default_factory=list)
    next_cursor: str
    has_more: bool = False


class MutationStatus(str, Enum):
    PENDING = "pending"
    FAILED = "failed"


class LocalMutation(BaseModel):
    """A locally made flag/label edit waiting to be pushed to the remote."""

    id: str
    account_id: str
    email_id: str
    provider_id: str
    field: str
    value: bool
    version: int = Field(description="Field version produced by this edit")
    status: MutationStatus = MutationStatus.PENDING
    attempts: int = 0
    next_attempt_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_error: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class Ack:
    """The remote accepted the mutation."""

    remote_ref: str | None = None


@dataclass(frozen=True)
class RemoteRejected:
    """The remote refused the mutation; terminal for that mutation."""

    reason: str


@dataclass(frozen=True)
class TransientFailure:
    """Temporary failure (rate limit, 5xx); retry after ``retry_after`` seconds."""

    retry_after: float = 0.0
    reason: str = ""


PushResult = Ack | RemoteRejected | TransientFailure


class NotificationKind(str, Enum):
    UPSERTED = "upserted"
    DELETED = "deleted"


class ChangeNotification(BaseModel):
    """Committed change to one email, as delivered by the change feed."""

    seq: int | None = Field(default=None, description="Change-log sequence; None when synthetic")
    account_id: str
    email_id: str
    kind: NotificationKind
