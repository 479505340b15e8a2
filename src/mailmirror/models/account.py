"""Account and sync-state models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


class ProviderKind(str, Enum):
    """Remote backend an account is mirrored from."""

    GMAIL = "gmail"
    IMAP = "imap"


class AccountStatus(str, Enum):
    """Visible sync status of an account."""

    ACTIVE = "active"
    AUTH_PAUSED = "auth_paused"
    NEEDS_REPAIR = "needs_repair"


class Account(BaseModel):
    """Identity of one remote mailbox."""

    id: str = Field(description="Local account id")
    email_address: str = Field(description="Mailbox address")
    provider: ProviderKind = Field(description="Remote backend kind")
    auth_ref: str = Field(
        description="Opaque authentication handle (token path or credential key), never the secret"
    )
    display_name: str | None = Field(default=None, description="Optional display name")
    status: AccountStatus = Field(default=AccountStatus.ACTIVE, description="Sync status")
    status_detail: str | None = Field(
        default=None, description="Human-readable reason for the current status"
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Creation timestamp",
    )


class SyncState(BaseModel):
    """Per-account, per-mailbox sync cursor.

    ``cursor`` is opaque and provider-issued. ``cursor_seq`` is a local
    generation counter: it only ever increases and guards cursor writes with a
    compare-and-set, so a stale cycle can never move the cursor backwards.
    """

    account_id: str
    mailbox: str
    cursor: str | None = None
    cursor_seq: int = 0
    last_synced_at: datetime | None = None
