"""Gmail API provider.

Notes:
    The Google API client is synchronous. Calls are wrapped with
    ``asyncio.to_thread`` so the sync engine can remain async.

Initial sync pages ``users.messages.list`` after recording the mailbox
history id; incremental sync pages ``users.history.list`` from that id. An
expired history id surfaces as :class:`CursorExpired`.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

from mailmirror.config import Settings
from mailmirror.exceptions import AuthError, CursorExpired, NetworkError, ProviderError
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
from mailmirror.providers.gmail.parsing import (
    FLAG_LABELS,
    GmailCursor,
    GmailModification,
    label_delta_to_flags,
    message_to_change,
    mutation_to_modification,
    parse_cursor,
)

logger = structlog.get_logger()

_HISTORY_TYPES = ["messageAdded", "messageDeleted", "labelAdded", "labelRemoved"]


def _status_of(exc: BaseException) -> int | None:
    resp = getattr(exc, "resp", None)
    status = getattr(resp, "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def _retry_after_of(exc: BaseException) -> float:
    resp = getattr(exc, "resp", None)
    raw = None
    if resp is not None and hasattr(resp, "get"):
        raw = resp.get("retry-after")
    try:
        return float(raw) if raw is not None else 0.0
    except (TypeError, ValueError):
        return 0.0


class GmailProvider:
    """Provider backend for one Gmail account.

    The account's ``auth_ref`` is the path of its OAuth token file.
    """

    def __init__(self, account: Account, settings: Settings, *, service: Any | None = None) -> None:
        self.account = account
        self.settings = settings
        self._service = service
        self._token_path = Path(account.auth_ref)
        logger.info("gmail_provider_initialized", account_id=account.id)

    async def authenticate(self) -> None:
        """Authenticate with the Gmail API using OAuth2.

        Raises:
            AuthError: If the client secrets are missing or authentication fails.
        """

        if self._service is not None:
            return

        credentials_path = Path(self.settings.gmail_credentials_path)
        scope = self.settings.gmail_scope
        if not credentials_path.exists() and not self._token_path.exists():
            raise AuthError(f"Gmail credentials file not found: {credentials_path}")

        logger.info(
            "gmail_authentication_started",
            account_id=self.account.id,
            token_path=str(self._token_path),
            scope=scope,
        )

        try:
            self._service = await asyncio.to_thread(
                self._build_service, credentials_path, self._token_path, scope
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("gmail_authentication_failed", account_id=self.account.id, error=str(exc))
            raise AuthError(str(exc)) from exc

        logger.info("gmail_authentication_completed", account_id=self.account.id)

    async def fetch_changes(self, cursor: str | None) -> ChangeBatch:
        service = self._require_service()
        try:
            return await asyncio.to_thread(self._fetch_changes_sync, service, cursor)
        except ProviderError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise self._translate_error(exc, during="fetch") from exc

    async def push_mutation(self, mutation: LocalMutation) -> PushResult:
        service = self._require_service()
        try:
            modification = mutation_to_modification(mutation)
        except ValueError as exc:
            return RemoteRejected(reason=str(exc))

        try:
            await asyncio.to_thread(self._push_sync, service, mutation.provider_id, modification)
        except Exception as exc:  # noqa: BLE001
            status = _status_of(exc)
            if status in (401, 403):
                raise AuthError(str(exc)) from exc
            if status == 429 or (status is not None and status >= 500):
                return TransientFailure(retry_after=_retry_after_of(exc), reason=str(exc))
            if status is not None:
                return RemoteRejected(reason=f"HTTP {status}: {exc}")
            raise NetworkError(str(exc)) from exc

        logger.debug(
            "gmail_mutation_pushed",
            account_id=self.account.id,
            message_id=mutation.provider_id,
            field=mutation.field,
        )
        return Ack(remote_ref=mutation.provider_id)

    def _require_service(self) -> Any:
        if self._service is None:
            raise AuthError("Gmail provider is not authenticated. Call authenticate() first.")
        return self._service

    def _translate_error(self, exc: Exception, *, during: str) -> ProviderError:
        status = _status_of(exc)
        logger.warning(
            "gmail_request_failed",
            account_id=self.account.id,
            during=during,
            status=status,
            error=str(exc),
        )
        if status in (401, 403):
            return AuthError(str(exc))
        if status is None or status == 429 or status >= 500:
            return NetworkError(str(exc))
        return ProviderError(f"Gmail request failed with HTTP {status}: {exc}")

    def _build_service(self, credentials_path: Path, token_path: Path, scope: str) -> Any:
        # Imported lazily to keep import-time cost low and tests fast.
        from google.auth.transport.requests import Request
        from google.oauth2.credentials import Credentials
        from google_auth_oauthlib.flow import InstalledAppFlow
        from googleapiclient.discovery import build

        creds: Credentials | None = None
        if token_path.exists():
            creds = Credentials.from_authorized_user_file(str(token_path), scopes=[scope])

        if creds is not None and creds.expired and creds.refresh_token:
            creds.refresh(Request())

        if creds is None or not creds.valid:
            if not self.settings.gmail_allow_interactive:
                raise AuthError(f"Gmail token at {token_path} is missing or invalid")
            flow = InstalledAppFlow.from_client_secrets_file(str(credentials_path), scopes=[scope])
            creds = flow.run_local_server(port=0)
            token_path.parent.mkdir(parents=True, exist_ok=True)
            token_path.write_text(creds.to_json(), encoding="utf-8")

        # cache_discovery=False prevents writing discovery docs to disk.
        return build("gmail", "v1", credentials=creds, cache_discovery=False)

    # Sync implementations (run in a worker thread)

    def _fetch_changes_sync(self, service: Any, cursor: str | None) -> ChangeBatch:
        if cursor is None:
            profile = service.users().getProfile(userId=self.settings.gmail_user_id).execute()
            decoded = GmailCursor(mode="full", history_id=str(profile["historyId"]))
            logger.info("gmail_full_sync_started", account_id=self.account.id, history_id=decoded.history_id)
        else:
            try:
                decoded = parse_cursor(cursor)
            except ValueError as exc:
                raise CursorExpired(str(exc)) from exc

        if decoded.mode == "full":
            return self._list_page(service, decoded)
        return self._history_page(service, decoded)

    def _list_page(self, service: Any, cursor: GmailCursor) -> ChangeBatch:
        response = (
            service.users()
            .messages()
            .list(
                userId=self.settings.gmail_user_id,
                maxResults=self.settings.fetch_page_size,
                pageToken=cursor.page_token,
            )
            .execute()
        )

        changes: list[RemoteChange] = []
        for ref in response.get("messages", []) or []:
            message = self._get_message(service, str(ref["id"]))
            if message is not None:
                changes.append(message_to_change(message, ChangeKind.NEW))

        next_token = response.get("nextPageToken")
        if next_token:
            next_cursor = GmailCursor("full", cursor.history_id, next_token)
        else:
            next_cursor = GmailCursor("history", cursor.history_id)
        return ChangeBatch(
            changes=changes, next_cursor=next_cursor.encode(), has_more=bool(next_token)
        )

    def _history_page(self, service: Any, cursor: GmailCursor) -> ChangeBatch:
        try:
            response = (
                service.users()
                .history()
                .list(
                    userId=self.settings.gmail_user_id,
                    startHistoryId=cursor.history_id,
                    pageToken=cursor.page_token,
                    maxResults=self.settings.fetch_page_size,
                    historyTypes=_HISTORY_TYPES,
                )
                .execute()
            )
        except Exception as exc:  # noqa: BLE001
            if _status_of(exc) == 404:
                raise CursorExpired(f"History id {cursor.history_id} is no longer available") from exc
            raise

        now = datetime.now(timezone.utc)
        changes: list[RemoteChange] = []
        for record in response.get("history", []) or []:
            changes.extend(self._history_record_changes(service, record, now))

        next_token = response.get("nextPageToken")
        if next_token:
            next_cursor = GmailCursor("history", cursor.history_id, next_token)
        else:
            latest = str(response.get("historyId") or cursor.history_id)
            next_cursor = GmailCursor("history", latest)
        return ChangeBatch(
            changes=changes, next_cursor=next_cursor.encode(), has_more=bool(next_token)
        )

    def _history_record_changes(
        self, service: Any, record: dict[str, Any], now: datetime
    ) -> list[RemoteChange]:
        changes: list[RemoteChange] = []

        for item in record.get("messagesAdded", []) or []:
            message_id = str(item["message"]["id"])
            message = self._get_message(service, message_id)
            if message is not None:
                changes.append(message_to_change(message, ChangeKind.NEW))

        for item in record.get("messagesDeleted", []) or []:
            changes.append(
                RemoteChange(
                    kind=ChangeKind.DELETED,
                    provider_id=str(item["message"]["id"]),
                    timestamp=now,
                )
            )

        for key, added in (("labelsAdded", True), ("labelsRemoved", False)):
            for item in record.get(key, []) or []:
                message_id = str(item["message"]["id"])
                label_ids = [str(x) for x in item.get("labelIds", []) or []]
                changes.extend(self._label_event(service, message_id, label_ids, added, now))

        return changes

    def _label_event(
        self,
        service: Any,
        message_id: str,
        label_ids: list[str],
        added: bool,
        now: datetime,
    ) -> list[RemoteChange]:
        if "TRASH" in label_ids or "SPAM" in label_ids:
            if added:
                return [RemoteChange(kind=ChangeKind.DELETED, provider_id=message_id, timestamp=now)]
            # Restored from trash: refetch the full message.
            message = self._get_message(service, message_id)
            if message is None:
                return []
            return [message_to_change(message, ChangeKind.UPDATED, observed_at=now)]

        changes: list[RemoteChange] = []
        flags = label_delta_to_flags(label_ids, added=added)
        if flags:
            changes.append(
                RemoteChange(
                    kind=ChangeKind.FLAG_CHANGED,
                    provider_id=message_id,
                    timestamp=now,
                    flags=flags,
                )
            )
        user_labels = [x for x in label_ids if x not in FLAG_LABELS]
        if user_labels:
            changes.append(
                RemoteChange(
                    kind=ChangeKind.LABEL_CHANGED,
                    provider_id=message_id,
                    timestamp=now,
                    labels_added=user_labels if added else [],
                    labels_removed=[] if added else user_labels,
                )
            )
        return changes

    def _get_message(self, service: Any, message_id: str) -> dict[str, Any] | None:
        try:
            return (
                service.users()
                .messages()
                .get(userId=self.settings.gmail_user_id, id=message_id, format="full")
                .execute()
            )
        except Exception as exc:  # noqa: BLE001
            if _status_of(exc) == 404:
                logger.debug("gmail_message_gone", account_id=self.account.id, message_id=message_id)
                return None
            raise

    def _push_sync(self, service: Any, message_id: str, modification: GmailModification) -> None:
        messages = service.users().messages()
        user_id = self.settings.gmail_user_id
        if modification.action == "trash":
            messages.trash(userId=user_id, id=message_id).execute()
        elif modification.action == "untrash":
            messages.untrash(userId=user_id, id=message_id).execute()
        else:
            messages.modify(userId=user_id, id=message_id, body=modification.body()).execute()
