"""Gmail API provider backend."""

from mailmirror.providers.gmail.client import GmailProvider

__all__ = ["GmailProvider"]
