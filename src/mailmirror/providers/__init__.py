"""Remote mailbox providers.

Every backend satisfies :class:`ProviderClient`. Backends are chosen per
account by :func:`build_provider` from the account's ``ProviderKind``.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol, runtime_checkable

from mailmirror.config import Settings
from mailmirror.exceptions import ConfigurationError
from mailmirror.models import Account, ChangeBatch, LocalMutation, ProviderKind, PushResult

CredentialLookup = Callable[[str], str]


@runtime_checkable
class ProviderClient(Protocol):
    """Capability interface of a remote mailbox."""

    async def authenticate(self) -> None:
        """Establish credentials; raises ``AuthError`` when they are invalid."""

    async def fetch_changes(self, cursor: str | None) -> ChangeBatch:
        """Return one page of remote changes after ``cursor`` (``None`` = full sync)."""

    async def push_mutation(self, mutation: LocalMutation) -> PushResult:
        """Apply one local mutation remotely as an absolute state assignment."""


def build_provider(
    account: Account,
    settings: Settings,
    *,
    credential_lookup: CredentialLookup | None = None,
) -> ProviderClient:
    """Create the provider backend for an account."""

    if account.provider == ProviderKind.GMAIL:
        from mailmirror.providers.gmail import GmailProvider

        return GmailProvider(account, settings)

    if account.provider == ProviderKind.IMAP:
        from mailmirror.providers.imap import ImapProvider

        if credential_lookup is None:
            raise ConfigurationError("IMAP accounts need a credential lookup for their password")
        return ImapProvider(account, settings, credential_lookup=credential_lookup)

    raise ConfigurationError(f"Unsupported provider kind: {account.provider}")


__all__ = ["CredentialLookup", "ProviderClient", "build_provider"]
