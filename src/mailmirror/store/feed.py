"""Change feed: the durable change log exposed as a bounded async queue.

Sync commits append to the ``change_log`` table inside their own
transaction and never wait on consumers. A pump task copies rows into a
bounded :class:`asyncio.Queue`; when the queue is full the pump waits, so no
entry is ever dropped. Consumers acknowledge rows once processed, and
unacknowledged rows are re-read after a restart.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

import structlog

from mailmirror.models import ChangeNotification
from mailmirror.store.local_store import LocalStore

logger = structlog.get_logger()


class ChangeFeed:
    """Ordered stream of committed email changes."""

    def __init__(self, store: LocalStore, *, capacity: int = 256) -> None:
        self._store = store
        self._capacity = max(1, capacity)
        self._queue: asyncio.Queue[ChangeNotification] = asyncio.Queue(maxsize=self._capacity)
        self._wakeup = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._last_seq = 0
        store.add_commit_listener(self.notify)

    @property
    def last_seq(self) -> int:
        return self._last_seq

    def qsize(self) -> int:
        return self._queue.qsize()

    def notify(self, account_id: str) -> None:
        """Commit listener; may be called from any thread."""

        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._wakeup.set)
        else:
            self._wakeup.set()

    async def pump_once(self) -> int:
        """Move newly committed rows into the queue; returns how many were moved."""

        moved = 0
        changes = self._store.read_changes(after_seq=self._last_seq, limit=self._capacity)
        for change in changes:
            await self._queue.put(change)
            self._last_seq = change.seq or self._last_seq
            moved += 1
        if moved:
            logger.debug("change_feed_pumped", moved=moved, last_seq=self._last_seq)
        return moved

    def skip_pending(self) -> int:
        """Acknowledge committed rows without delivering them, for runs with no consumer."""

        skipped = 0
        while True:
            changes = self._store.read_changes(after_seq=self._last_seq, limit=self._capacity)
            if not changes:
                break
            self.ack(c.seq for c in changes)
            self._last_seq = changes[-1].seq or self._last_seq
            skipped += len(changes)
        if skipped:
            logger.debug("change_feed_skipped", skipped=skipped, last_seq=self._last_seq)
        return skipped

    async def run(self, poll_interval: float = 1.0, *, deliver: bool = True) -> None:
        """Pump until cancelled, waking on commits or every ``poll_interval`` seconds.

        With ``deliver=False`` rows are acknowledged instead of queued.
        """

        self._loop = asyncio.get_running_loop()
        logger.info("change_feed_started", last_seq=self._last_seq, deliver=deliver)
        while True:
            self._wakeup.clear()
            if deliver:
                if await self.pump_once():
                    continue
            else:
                self.skip_pending()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=poll_interval)
            except asyncio.TimeoutError:
                pass

    async def get(self) -> ChangeNotification:
        return await self._queue.get()

    def get_nowait(self) -> ChangeNotification | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def ack(self, seqs: Iterable[int | None]) -> None:
        self._store.ack_changes(s for s in seqs if s is not None)

    def discard_account(self, account_id: str) -> int:
        """Drop queued entries of an account; returns how many were dropped."""

        kept: list[ChangeNotification] = []
        dropped = 0
        while True:
            item = self.get_nowait()
            if item is None:
                break
            if item.account_id == account_id:
                dropped += 1
            else:
                kept.append(item)
        for item in kept:
            self._queue.put_nowait(item)
        if dropped:
            logger.info("change_feed_account_discarded", account_id=account_id, dropped=dropped)
        return dropped
