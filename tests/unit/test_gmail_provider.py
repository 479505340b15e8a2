"""Unit tests for the Gmail provider against a mocked API service."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from mailmirror.config import Settings
from mailmirror.exceptions import AuthError, CursorExpired, NetworkError
from mailmirror.models import (
    DELETED,
    DELIVERED,
    READ,
    STARRED,
    Account,
    Ack,
    ChangeKind,
    LocalMutation,
    RemoteRejected,
    TransientFailure,
)
from mailmirror.providers.gmail import GmailProvider


class ApiError(Exception):
    """Stand-in for ``googleapiclient.errors.HttpError``."""

    def __init__(self, status: int, **headers: str) -> None:
        super().__init__(f"HTTP {status}")
        self.resp = _Response(status, headers)


class _Response(dict):
    def __init__(self, status: int, headers: dict[str, str]) -> None:
        super().__init__(headers)
        self.status = status


def _mutation(field: str, value: bool) -> LocalMutation:
    return LocalMutation(
        id="m1",
        account_id="acct-a",
        email_id="e1",
        provider_id="msg123456",
        field=field,
        value=value,
        version=2,
    )


@pytest.fixture
def service(sample_email_data: dict) -> MagicMock:
    api = MagicMock()
    users = api.users.return_value
    users.getProfile.return_value.execute.return_value = {"historyId": "100"}
    users.messages.return_value.list.return_value.execute.return_value = {
        "messages": [{"id": "msg123456"}]
    }
    users.messages.return_value.get.return_value.execute.return_value = sample_email_data
    return api


@pytest.fixture
def provider(account: Account, mock_settings: Settings, service: MagicMock) -> GmailProvider:
    return GmailProvider(account, mock_settings, service=service)


class TestGmailProvider:
    """Test suite for GmailProvider."""

    async def test_requires_authentication(self, account: Account, mock_settings: Settings) -> None:
        """Test that fetching before authenticate() fails with an auth error."""
        gmail = GmailProvider(account, mock_settings)

        with pytest.raises(AuthError):
            await gmail.fetch_changes(None)

    async def test_authenticate_missing_credentials_raises(
        self, account: Account, mock_settings: Settings, tmp_path
    ) -> None:
        """Test that authenticate fails fast when no secrets or token exist."""
        settings = mock_settings.model_copy(
            update={"gmail_credentials_path": tmp_path / "missing.json"}
        )
        gmail = GmailProvider(
            account.model_copy(update={"auth_ref": str(tmp_path / "token.json")}), settings
        )

        with pytest.raises(AuthError):
            await gmail.authenticate()

    async def test_full_sync_lists_messages(
        self, provider: GmailProvider, service: MagicMock
    ) -> None:
        """Test that the initial fetch lists messages and hands over to history."""
        batch = await provider.fetch_changes(None)

        assert [c.kind for c in batch.changes] == [ChangeKind.NEW]
        assert batch.changes[0].provider_id == "msg123456"
        assert batch.next_cursor == "history:100"
        assert not batch.has_more

    async def test_full_sync_pages(self, provider: GmailProvider, service: MagicMock) -> None:
        listing = service.users.return_value.messages.return_value.list.return_value
        listing.execute.return_value = {"messages": [{"id": "msg123456"}], "nextPageToken": "p2"}

        batch = await provider.fetch_changes(None)

        assert batch.has_more
        assert batch.next_cursor == "full:100:p2"

    async def test_history_page(self, provider: GmailProvider, service: MagicMock) -> None:
        history = service.users.return_value.history.return_value.list.return_value
        history.execute.return_value = {
            "history": [
                {"labelsAdded": [{"message": {"id": "m1"}, "labelIds": ["STARRED", "Label_9"]}]},
                {"labelsRemoved": [{"message": {"id": "m1"}, "labelIds": ["UNREAD"]}]},
                {"messagesDeleted": [{"message": {"id": "m2"}}]},
                {"labelsAdded": [{"message": {"id": "m3"}, "labelIds": ["TRASH"]}]},
            ],
            "historyId": "105",
        }

        batch = await provider.fetch_changes("history:100")

        kinds = [(c.kind, c.provider_id) for c in batch.changes]
        assert kinds == [
            (ChangeKind.FLAG_CHANGED, "m1"),
            (ChangeKind.LABEL_CHANGED, "m1"),
            (ChangeKind.FLAG_CHANGED, "m1"),
            (ChangeKind.DELETED, "m2"),
            (ChangeKind.DELETED, "m3"),
        ]
        assert batch.changes[0].flags == {STARRED: True}
        assert batch.changes[1].labels_added == ["Label_9"]
        assert batch.changes[2].flags == {READ: True}
        assert batch.next_cursor == "history:105"

    async def test_restore_from_trash_is_stamped_when_observed(
        self, provider: GmailProvider, service: MagicMock
    ) -> None:
        """Test that a restore carries the time it was seen, not the send time."""
        history = service.users.return_value.history.return_value.list.return_value
        history.execute.return_value = {
            "history": [
                {"labelsRemoved": [{"message": {"id": "msg123456"}, "labelIds": ["TRASH"]}]}
            ],
            "historyId": "106",
        }

        batch = await provider.fetch_changes("history:100")

        [restored] = batch.changes
        assert restored.kind == ChangeKind.UPDATED
        assert restored.content is not None
        assert restored.timestamp > restored.content.sent_at

    async def test_expired_history_id(self, provider: GmailProvider, service: MagicMock) -> None:
        history = service.users.return_value.history.return_value.list.return_value
        history.execute.side_effect = ApiError(404)

        with pytest.raises(CursorExpired):
            await provider.fetch_changes("history:1")

    async def test_malformed_cursor_is_expired(self, provider: GmailProvider) -> None:
        with pytest.raises(CursorExpired):
            await provider.fetch_changes("bogus")

    async def test_server_errors_are_network_errors(
        self, provider: GmailProvider, service: MagicMock
    ) -> None:
        service.users.return_value.getProfile.return_value.execute.side_effect = ApiError(503)

        with pytest.raises(NetworkError):
            await provider.fetch_changes(None)

    async def test_push_modifies_labels(self, provider: GmailProvider, service: MagicMock) -> None:
        messages = service.users.return_value.messages.return_value

        result = await provider.push_mutation(_mutation(READ, True))

        assert result == Ack(remote_ref="msg123456")
        messages.modify.assert_called_once_with(
            userId="me",
            id="msg123456",
            body={"addLabelIds": [], "removeLabelIds": ["UNREAD"]},
        )

    async def test_push_delete_trashes(self, provider: GmailProvider, service: MagicMock) -> None:
        messages = service.users.return_value.messages.return_value

        await provider.push_mutation(_mutation(DELETED, True))

        messages.trash.assert_called_once_with(userId="me", id="msg123456")

    async def test_rate_limit_is_transient(
        self, provider: GmailProvider, service: MagicMock
    ) -> None:
        modify = service.users.return_value.messages.return_value.modify.return_value
        modify.execute.side_effect = ApiError(429, **{"retry-after": "7"})

        result = await provider.push_mutation(_mutation(STARRED, True))

        assert isinstance(result, TransientFailure)
        assert result.retry_after == 7.0

    async def test_client_error_is_rejection(
        self, provider: GmailProvider, service: MagicMock
    ) -> None:
        modify = service.users.return_value.messages.return_value.modify.return_value
        modify.execute.side_effect = ApiError(400)

        result = await provider.push_mutation(_mutation(STARRED, True))

        assert isinstance(result, RemoteRejected)

    async def test_revoked_token_is_auth_error(
        self, provider: GmailProvider, service: MagicMock
    ) -> None:
        modify = service.users.return_value.messages.return_value.modify.return_value
        modify.execute.side_effect = ApiError(401)

        with pytest.raises(AuthError):
            await provider.push_mutation(_mutation(STARRED, True))

    async def test_server_field_is_rejected_locally(
        self, provider: GmailProvider, service: MagicMock
    ) -> None:
        result = await provider.push_mutation(_mutation(DELIVERED, True))

        assert isinstance(result, RemoteRejected)
        service.users.return_value.messages.return_value.modify.assert_not_called()
