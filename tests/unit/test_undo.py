"""Unit tests for the local edit undo history."""

from __future__ import annotations

import pytest

from mailmirror.models import ARCHIVED, READ, STARRED, label_field
from mailmirror.sync import UndoHistory


class TickClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def tick() -> TickClock:
    return TickClock()


@pytest.fixture
def history(tick: TickClock) -> UndoHistory:
    return UndoHistory(window_seconds=30.0, max_entries=3, clock=tick)


class TestUndoHistory:
    def test_pop_returns_newest_edit_first(self, history: UndoHistory) -> None:
        first = history.record("a", "e1", READ, False, True)
        second = history.record("a", "e2", STARRED, False, True)

        assert history.pop() == second
        assert history.pop() == first
        assert history.pop() is None

    def test_edits_expire_after_the_window(self, history: UndoHistory, tick: TickClock) -> None:
        old = history.record("a", "e1", READ, False, True)
        tick.now += 20
        fresh = history.record("a", "e2", READ, True, False)

        assert history.time_remaining(old) == pytest.approx(10.0)
        tick.now += 10

        assert history.recent() == [fresh]
        assert history.time_remaining(old) == 0.0
        tick.now += 20
        assert history.pop() is None
        assert len(history) == 0

    def test_oldest_edits_fall_off_when_full(self, history: UndoHistory) -> None:
        edits = [history.record("a", f"e{i}", READ, False, True) for i in range(5)]

        assert len(history) == 3
        assert history.recent(limit=10) == list(reversed(edits[2:]))

    def test_discard_account_keeps_other_accounts(self, history: UndoHistory) -> None:
        history.record("a", "e1", READ, False, True)
        kept = history.record("b", "e2", READ, False, True)

        history.discard_account("a")

        assert history.recent() == [kept]

    def test_descriptions(self, history: UndoHistory) -> None:
        assert history.record("a", "e1", STARRED, True, False).description == "unstarred"
        assert history.record("a", "e1", ARCHIVED, False, True).description == "archived"
        assert (
            history.record("a", "e1", label_field("Work"), False, True).description
            == "labeled Work"
        )
