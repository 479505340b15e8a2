"""IMAP provider backend."""

from mailmirror.providers.imap.client import ImapProvider

__all__ = ["ImapProvider"]
