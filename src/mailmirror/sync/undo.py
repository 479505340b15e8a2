"""Undo history for local flag and label edits.

Each edit remembers the value the field had before it. Undoing an edit
queues the inverse as an ordinary local mutation, so it coalesces with the
original edit when that has not been pushed yet and is pushed like any other
edit when it has. Entries expire after a short window.
"""

from __future__ import annotations

import dataclasses
import threading
import time
from collections import deque
from collections.abc import Callable

from mailmirror.models import ARCHIVED, DELETED, READ, STARRED, is_label_field, label_name
from mailmirror.utils import new_id

_DESCRIPTIONS = {
    (READ, True): "marked as read",
    (READ, False): "marked as unread",
    (STARRED, True): "starred",
    (STARRED, False): "unstarred",
    (ARCHIVED, True): "archived",
    (ARCHIVED, False): "moved to inbox",
    (DELETED, True): "deleted",
    (DELETED, False): "restored",
}


@dataclasses.dataclass(frozen=True)
class UndoableEdit:
    """One local edit together with the value it replaced."""

    account_id: str
    email_id: str
    field: str
    previous: bool
    value: bool
    performed_at: float
    id: str = dataclasses.field(default_factory=new_id)

    @property
    def description(self) -> str:
        if is_label_field(self.field):
            name = label_name(self.field)
            return f"labeled {name}" if self.value else f"unlabeled {name}"
        return _DESCRIPTIONS.get((self.field, self.value), f"set {self.field}")


class UndoHistory:
    """Most recent local edits, newest last, bounded in size and age.

    Safe to share between threads.
    """

    def __init__(
        self,
        *,
        window_seconds: float = 30.0,
        max_entries: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._window = window_seconds
        self._clock = clock
        self._entries: deque[UndoableEdit] = deque(maxlen=max(1, max_entries))
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            self._expire()
            return len(self._entries)

    def record(
        self, account_id: str, email_id: str, field_name: str, previous: bool, value: bool
    ) -> UndoableEdit:
        edit = UndoableEdit(
            account_id=account_id,
            email_id=email_id,
            field=field_name,
            previous=previous,
            value=value,
            performed_at=self._clock(),
        )
        with self._lock:
            self._entries.append(edit)
            self._expire()
        return edit

    def peek(self) -> UndoableEdit | None:
        with self._lock:
            self._expire()
            return self._entries[-1] if self._entries else None

    def pop(self) -> UndoableEdit | None:
        """Remove and return the newest edit still inside the undo window."""

        with self._lock:
            self._expire()
            return self._entries.pop() if self._entries else None

    def recent(self, limit: int = 10) -> list[UndoableEdit]:
        """Newest first."""

        with self._lock:
            self._expire()
            return list(reversed(self._entries))[: max(0, limit)]

    def time_remaining(self, edit: UndoableEdit) -> float:
        return max(0.0, self._window - (self._clock() - edit.performed_at))

    def discard_account(self, account_id: str) -> None:
        with self._lock:
            kept = [e for e in self._entries if e.account_id != account_id]
            self._entries.clear()
            self._entries.extend(kept)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _expire(self) -> None:
        now = self._clock()
        while self._entries and now - self._entries[0].performed_at >= self._window:
            self._entries.popleft()
