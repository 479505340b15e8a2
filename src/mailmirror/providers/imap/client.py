"""IMAP provider built on ``imapclient``.

The account's ``auth_ref`` is an ``imap://user@host[:port]`` locator; the
password is resolved through the credential lookup passed in by the caller.
All operations run in UID mode against the configured mailbox. ``imapclient``
is synchronous, so every call is wrapped with ``asyncio.to_thread``.

New messages are those above the cursor's ``last_uid``. When the server
supports CONDSTORE, flag and keyword changes of known messages are fetched
with ``CHANGEDSINCE``. A ``\\Deleted`` flag is reported as a deletion. A
UIDVALIDITY change invalidates the cursor.
"""

from __future__ import annotations

import asyncio
import socket
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlsplit

import structlog
from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientAbortError, IMAPClientError, LoginError

from mailmirror.config import Settings
from mailmirror.exceptions import AuthError, ConfigurationError, CursorExpired, NetworkError
from mailmirror.models import (
    Account,
    Ack,
    ChangeBatch,
    ChangeKind,
    LocalMutation,
    PushResult,
    RemoteChange,
    RemoteRejected,
    TransientFailure,
)
from mailmirror.providers import CredentialLookup
from mailmirror.providers.imap.parsing import (
    ImapCursor,
    fetch_to_content,
    flags_to_state,
    is_deleted,
    mutation_to_flag,
    parse_cursor,
    provider_id_for,
    split_provider_id,
)

logger = structlog.get_logger()

_FETCH_ITEMS = [b"FLAGS", b"INTERNALDATE", b"BODY.PEEK[HEADER]", b"BODY.PEEK[TEXT]"]
_NETWORK_ERRORS = (IMAPClientAbortError, socket.timeout, OSError)


class ImapProvider:
    """Provider backend for one IMAP mailbox."""

    def __init__(
        self,
        account: Account,
        settings: Settings,
        *,
        credential_lookup: CredentialLookup,
        client_factory: Any = IMAPClient,
    ) -> None:
        locator = urlsplit(account.auth_ref)
        if locator.scheme not in ("imap", "imaps") or not locator.hostname:
            raise ConfigurationError(
                f"IMAP auth reference must look like imap://user@host[:port], got {account.auth_ref!r}"
            )
        self.account = account
        self.settings = settings
        self._host = locator.hostname
        self._port = locator.port or settings.imap_port
        self._username = locator.username or account.email_address
        self._credential_lookup = credential_lookup
        self._client_factory = client_factory
        self._client: Any | None = None
        self._mailbox = settings.default_mailbox
        logger.info("imap_provider_initialized", account_id=account.id, host=self._host)

    async def authenticate(self) -> None:
        if self._client is not None:
            return
        try:
            self._client = await asyncio.to_thread(self._connect)
        except (LoginError, KeyError) as exc:
            raise AuthError(f"IMAP login rejected for {self._username}: {exc}") from exc
        except (IMAPClientError, *_NETWORK_ERRORS) as exc:
            raise NetworkError(f"IMAP connection to {self._host} failed: {exc}") from exc
        logger.info("imap_authentication_completed", account_id=self.account.id)

    async def fetch_changes(self, cursor: str | None) -> ChangeBatch:
        client = self._require_client()
        try:
            return await asyncio.to_thread(self._fetch_changes_sync, client, cursor)
        except (IMAPClientAbortError, *_NETWORK_ERRORS) as exc:
            self._client = None
            raise NetworkError(str(exc)) from exc
        except IMAPClientError as exc:
            raise NetworkError(f"IMAP fetch failed: {exc}") from exc

    async def push_mutation(self, mutation: LocalMutation) -> PushResult:
        client = self._require_client()
        try:
            flag = mutation_to_flag(mutation.field, archive_keyword=self.settings.imap_archive_keyword)
        except ValueError as exc:
            return RemoteRejected(reason=str(exc))

        try:
            return await asyncio.to_thread(self._push_sync, client, mutation, flag)
        except (IMAPClientAbortError, *_NETWORK_ERRORS) as exc:
            self._client = None
            return TransientFailure(reason=str(exc))
        except IMAPClientError as exc:
            return RemoteRejected(reason=str(exc))

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await asyncio.to_thread(client.logout)

    def _require_client(self) -> Any:
        if self._client is None:
            raise AuthError("IMAP provider is not connected. Call authenticate() first.")
        return self._client

    def _connect(self) -> Any:
        client = self._client_factory(
            self._host,
            port=self._port,
            ssl=self.settings.imap_ssl,
            timeout=self.settings.sync_network_timeout_seconds,
        )
        client.login(self._username, self._credential_lookup(self.account.auth_ref))
        return client

    # Sync implementations (run in a worker thread)

    def _fetch_changes_sync(self, client: Any, cursor: str | None) -> ChangeBatch:
        status = client.select_folder(self._mailbox)
        uidvalidity = int(status[b"UIDVALIDITY"])
        highest = status.get(b"HIGHESTMODSEQ")
        highest_modseq = int(highest) if highest is not None else None

        if cursor is None:
            previous = ImapCursor(uidvalidity=uidvalidity)
        else:
            try:
                previous = parse_cursor(cursor)
            except ValueError as exc:
                raise CursorExpired(str(exc)) from exc
            if previous.uidvalidity != uidvalidity:
                raise CursorExpired(
                    f"UIDVALIDITY changed from {previous.uidvalidity} to {uidvalidity}"
                )

        new_uids = sorted(
            uid for uid in client.search(["UID", f"{previous.last_uid + 1}:*"])
            if uid > previous.last_uid
        )
        page = new_uids[: self.settings.fetch_page_size]
        has_more = len(new_uids) > len(page)

        changes = self._new_message_changes(client, uidvalidity, page)
        next_modseq = previous.modseq
        if not has_more:
            if previous.modseq is not None and previous.last_uid > 0:
                changes.extend(
                    self._flag_changes(client, uidvalidity, previous.last_uid, previous.modseq)
                )
            next_modseq = highest_modseq

        next_cursor = ImapCursor(
            uidvalidity=uidvalidity,
            last_uid=max(page, default=previous.last_uid),
            modseq=next_modseq,
        )
        return ChangeBatch(changes=changes, next_cursor=next_cursor.encode(), has_more=has_more)

    def _new_message_changes(
        self, client: Any, uidvalidity: int, uids: list[int]
    ) -> list[RemoteChange]:
        if not uids:
            return []
        archive_keyword = self.settings.imap_archive_keyword
        response = client.fetch(uids, _FETCH_ITEMS)
        changes: list[RemoteChange] = []
        for uid in uids:
            data = response.get(uid)
            if data is None:
                continue
            provider_id = provider_id_for(uidvalidity, uid)
            raw_flags = data.get(b"FLAGS")
            if is_deleted(raw_flags):
                continue
            content = fetch_to_content(data, provider_id)
            flags, labels = flags_to_state(raw_flags, archive_keyword=archive_keyword)
            changes.append(
                RemoteChange(
                    kind=ChangeKind.NEW,
                    provider_id=provider_id,
                    timestamp=content.sent_at,
                    content=content,
                    flags=flags,
                    labels=labels,
                )
            )
        return changes

    def _flag_changes(
        self, client: Any, uidvalidity: int, last_uid: int, modseq: int
    ) -> list[RemoteChange]:
        if not client.has_capability("CONDSTORE"):
            return []
        response = client.fetch(
            f"1:{last_uid}", [b"FLAGS"], modifiers=[f"CHANGEDSINCE {modseq}"]
        )
        now = datetime.now(timezone.utc)
        archive_keyword = self.settings.imap_archive_keyword
        changes: list[RemoteChange] = []
        for uid in sorted(response):
            raw_flags = response[uid].get(b"FLAGS")
            provider_id = provider_id_for(uidvalidity, uid)
            if is_deleted(raw_flags):
                changes.append(
                    RemoteChange(kind=ChangeKind.DELETED, provider_id=provider_id, timestamp=now)
                )
                continue
            flags, labels = flags_to_state(raw_flags, archive_keyword=archive_keyword)
            changes.append(
                RemoteChange(
                    kind=ChangeKind.FLAG_CHANGED,
                    provider_id=provider_id,
                    timestamp=now,
                    flags=flags,
                    labels=labels,
                )
            )
        logger.debug("imap_flag_changes_fetched", account_id=self.account.id, changes=len(changes))
        return changes

    def _push_sync(self, client: Any, mutation: LocalMutation, flag: str) -> PushResult:
        uidvalidity, uid = split_provider_id(mutation.provider_id)
        status = client.select_folder(self._mailbox)
        if int(status[b"UIDVALIDITY"]) != uidvalidity:
            return RemoteRejected(reason="Mailbox UIDVALIDITY changed; message no longer addressable")

        if mutation.value:
            client.add_flags([uid], [flag])
        else:
            client.remove_flags([uid], [flag])
        logger.debug(
            "imap_mutation_pushed",
            account_id=self.account.id,
            uid=uid,
            flag=flag,
            value=mutation.value,
        )
        return Ack(remote_ref=mutation.provider_id)
