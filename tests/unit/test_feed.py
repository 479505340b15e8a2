"""Unit tests for the change feed."""

from __future__ import annotations

import asyncio

from fakes import make_email, seed

from mailmirror.models import Account, NotificationKind
from mailmirror.store import ChangeFeed, LocalStore


async def test_pump_moves_committed_rows_in_order(store: LocalStore, account: Account) -> None:
    feed = ChangeFeed(store)
    first, second = make_email(account.id, "p1", 1), make_email(account.id, "p2", 2)
    seed(store, first, second)

    assert await feed.pump_once() == 2
    assert await feed.pump_once() == 0

    received = [await feed.get(), await feed.get()]
    assert [n.email_id for n in received] == [first.id, second.id]
    assert all(n.kind == NotificationKind.UPSERTED for n in received)
    assert feed.last_seq == received[-1].seq


async def test_pump_never_drops_when_queue_is_full(store: LocalStore, account: Account) -> None:
    feed = ChangeFeed(store, capacity=2)
    seed(store, *(make_email(account.id, f"p{i}", i) for i in range(3)))

    assert await feed.pump_once() == 2
    assert feed.qsize() == 2

    await feed.get()
    assert await feed.pump_once() == 1
    assert feed.qsize() == 2


async def test_unacked_rows_are_redelivered_after_restart(
    store: LocalStore, account: Account
) -> None:
    seed(store, make_email(account.id, "p1", 1), make_email(account.id, "p2", 2))
    feed = ChangeFeed(store)
    await feed.pump_once()
    done = await feed.get()
    feed.ack([done.seq, None])

    restarted = ChangeFeed(store)

    assert await restarted.pump_once() == 1
    assert (await restarted.get()).email_id == make_email(account.id, "p2", 2).id


async def test_discard_account_keeps_other_accounts(store: LocalStore, account: Account) -> None:
    other = store.add_account(account.model_copy(update={"id": "acct-b"}), mailbox="INBOX")
    seed(store, make_email(account.id, "p1", 1), make_email(other.id, "p1", 1))
    feed = ChangeFeed(store)
    await feed.pump_once()

    assert feed.discard_account(account.id) == 1

    remaining = feed.get_nowait()
    assert remaining.account_id == other.id
    assert feed.get_nowait() is None


async def test_run_wakes_on_commit(store: LocalStore, account: Account) -> None:
    feed = ChangeFeed(store)
    task = asyncio.create_task(feed.run(poll_interval=30.0))
    try:
        await asyncio.sleep(0)
        seed(store, make_email(account.id, "p1", 1))

        notification = await asyncio.wait_for(feed.get(), timeout=5.0)

        assert notification.email_id == make_email(account.id, "p1", 1).id
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


async def test_skip_pending_acks_rows_past_the_queue_capacity(
    store: LocalStore, account: Account
) -> None:
    feed = ChangeFeed(store, capacity=2)
    seed(store, *(make_email(account.id, f"p{i}", i) for i in range(5)))

    assert feed.skip_pending() == 5

    assert store.pending_change_count() == 0
    assert feed.qsize() == 0


async def test_run_without_delivery_keeps_the_log_empty(
    store: LocalStore, account: Account
) -> None:
    feed = ChangeFeed(store, capacity=1)
    task = asyncio.create_task(feed.run(poll_interval=0.01, deliver=False))
    try:
        seed(store, *(make_email(account.id, f"p{i}", i) for i in range(3)))
        for _ in range(200):
            if store.pending_change_count() == 0:
                break
            await asyncio.sleep(0.01)

        assert store.pending_change_count() == 0
        assert feed.qsize() == 0
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
