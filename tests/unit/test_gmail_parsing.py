"""Unit tests for Gmail parsing helpers."""

from datetime import datetime, timezone

import pytest

from mailmirror.models import (
    ARCHIVED,
    DELETED,
    DELIVERED,
    READ,
    STARRED,
    ChangeKind,
    LocalMutation,
    label_field,
)
from mailmirror.providers.gmail.parsing import (
    GmailCursor,
    label_delta_to_flags,
    label_ids_to_state,
    message_body_text,
    message_to_change,
    message_to_content,
    mutation_to_modification,
    parse_cursor,
)


def _mutation(field: str, value: bool) -> LocalMutation:
    return LocalMutation(
        id="m1",
        account_id="a",
        email_id="e1",
        provider_id="msg1",
        field=field,
        value=value,
        version=2,
    )


class TestMessageToContent:
    """Test suite for Gmail message conversion."""

    def test_parses_headers_and_body(self, sample_email_data: dict) -> None:
        """Test that a full Gmail message maps onto remote content."""
        content = message_to_content(sample_email_data)

        assert content.subject == "Weekly Newsletter - Python Tips"
        assert content.sender == "newsletter@python.org"
        assert content.sender_name == "Python Weekly"
        assert content.recipients == ["user@example.com", "team@example.com"]
        assert content.sent_at == datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert content.body == "Welcome to this week's Python tips!"
        assert content.thread_key == "thread789"

    def test_date_header_is_used_without_internal_date(self, sample_email_data: dict) -> None:
        """Test falling back to the Date header."""
        sample_email_data.pop("internalDate")
        sample_email_data["payload"]["headers"].append(
            {"name": "Date", "value": "Thu, 02 Jan 2025 08:30:00 +0000"}
        )

        content = message_to_content(sample_email_data)

        assert content.sent_at == datetime(2025, 1, 2, 8, 30, tzinfo=timezone.utc)

    def test_snippet_is_used_when_no_text_part(self) -> None:
        """Test that the snippet stands in for a missing text/plain part."""
        message = {"id": "m", "snippet": "  short preview ", "payload": {"mimeType": "text/html"}}

        assert message_body_text(message) == "short preview"


class TestLabelMapping:
    def test_system_labels_become_flags(self) -> None:
        flags, labels = label_ids_to_state(["INBOX", "UNREAD", "STARRED", "Label_7", "IMPORTANT"])

        assert flags == {
            READ: False,
            STARRED: True,
            ARCHIVED: False,
            DELETED: False,
            DELIVERED: True,
        }
        assert labels == ["IMPORTANT", "Label_7"]

    def test_missing_inbox_means_archived(self) -> None:
        flags, _ = label_ids_to_state(["DRAFT"])

        assert flags[ARCHIVED] is True
        assert flags[READ] is True
        assert flags[DELIVERED] is False

    def test_label_deltas(self) -> None:
        assert label_delta_to_flags(["UNREAD", "INBOX"], added=False) == {
            READ: True,
            ARCHIVED: True,
        }
        assert label_delta_to_flags(["STARRED", "Label_1"], added=True) == {STARRED: True}


class TestMessageToChange:
    def test_new_message(self, sample_email_data: dict) -> None:
        change = message_to_change(sample_email_data, ChangeKind.NEW)

        assert change.kind == ChangeKind.NEW
        assert change.provider_id == "msg123456"
        assert change.timestamp == change.content.sent_at
        assert change.flags[READ] is False
        assert change.labels == ["Label_7"]

    def test_trashed_message_is_a_deletion(self, sample_email_data: dict) -> None:
        sample_email_data["labelIds"] = ["TRASH"]

        change = message_to_change(sample_email_data, ChangeKind.UPDATED)

        assert change.kind == ChangeKind.DELETED
        assert change.content is None


class TestCursor:
    @pytest.mark.parametrize(
        "cursor",
        [
            GmailCursor("full", "100", "tok"),
            GmailCursor("history", "100"),
            GmailCursor("history", "100", "tok"),
        ],
    )
    def test_round_trip(self, cursor: GmailCursor) -> None:
        assert parse_cursor(cursor.encode()) == cursor

    def test_full_cursor_without_token(self) -> None:
        assert GmailCursor("full", "7").encode() == "full:7:"
        assert parse_cursor("full:7:").page_token is None

    @pytest.mark.parametrize("raw", ["", "delta:1", "history:", "12345"])
    def test_malformed(self, raw: str) -> None:
        with pytest.raises(ValueError):
            parse_cursor(raw)


class TestMutationToModification:
    def test_read_removes_unread(self) -> None:
        mod = mutation_to_modification(_mutation(READ, True))

        assert mod.action == "modify"
        assert mod.body() == {"addLabelIds": [], "removeLabelIds": ["UNREAD"]}

    def test_archive_removes_inbox(self) -> None:
        mod = mutation_to_modification(_mutation(ARCHIVED, True))

        assert mod.remove_label_ids == ("INBOX",)

    def test_unstar(self) -> None:
        assert mutation_to_modification(_mutation(STARRED, False)).remove_label_ids == ("STARRED",)

    def test_delete_and_restore(self) -> None:
        assert mutation_to_modification(_mutation(DELETED, True)).action == "trash"
        assert mutation_to_modification(_mutation(DELETED, False)).action == "untrash"

    def test_user_label(self) -> None:
        mod = mutation_to_modification(_mutation(label_field("Label_3"), True))

        assert mod.add_label_ids == ("Label_3",)

    def test_server_field_is_refused(self) -> None:
        with pytest.raises(ValueError):
            mutation_to_modification(_mutation(DELIVERED, True))
