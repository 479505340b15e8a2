"""Unit tests for the embedding indexer."""

from __future__ import annotations

import asyncio
import contextlib
import random

import pytest
from fakes import FailingModel, FlakyIndex, RecordingModel, SlowModel, make_email, seed

from mailmirror.config import Settings
from mailmirror.embedding import EmbeddingIndexer, HashedBagOfWordsModel, SimilarityIndex
from mailmirror.exceptions import StorageError
from mailmirror.models import READ, Account, FieldState
from mailmirror.store import ChangeFeed, LocalStore


class TickClock:
    """Monotonic clock advanced by hand."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def tick() -> TickClock:
    return TickClock()


@pytest.fixture
def feed(store: LocalStore) -> ChangeFeed:
    return ChangeFeed(store)


def _indexer(
    store: LocalStore,
    feed: ChangeFeed,
    model,
    index: SimilarityIndex,
    settings: Settings,
    tick: TickClock,
) -> EmbeddingIndexer:
    return EmbeddingIndexer(store, feed, model, index, settings, clock=tick, rng=random.Random(3))


async def _consume(feed: ChangeFeed, indexer: EmbeddingIndexer) -> int:
    await feed.pump_once()
    return indexer.drain_feed()


async def test_changes_are_debounced_and_coalesced(
    store: LocalStore,
    account: Account,
    feed: ChangeFeed,
    similarity_index: SimilarityIndex,
    mock_settings: Settings,
    tick: TickClock,
) -> None:
    settings = mock_settings.model_copy(update={"embedding_debounce_seconds": 10.0})
    model = RecordingModel(settings.embedding_dimension)
    indexer = _indexer(store, feed, model, similarity_index, settings, tick)
    email = make_email(account.id, "p1", 1)
    seed(store, email)
    await _consume(feed, indexer)

    tick.now = 5.0
    with store.transaction(account.id) as tx:
        tx.write_field_states(
            email.id, {**email.field_states, READ: FieldState(value=True, version=2)}
        )
    await _consume(feed, indexer)

    tick.now = 12.0
    early = await indexer.process_pending()
    tick.now = 15.0
    ready = await indexer.process_pending()

    assert indexer.pending_count == 0
    assert early.embedded == 0
    assert ready.embedded == 1
    assert len(model.batches) == 1
    assert store.pending_change_count() == 0
    assert similarity_index.count() == 1


async def test_batches_respect_batch_size(
    store: LocalStore,
    account: Account,
    feed: ChangeFeed,
    similarity_index: SimilarityIndex,
    mock_settings: Settings,
    tick: TickClock,
) -> None:
    model = RecordingModel(mock_settings.embedding_dimension)
    indexer = _indexer(store, feed, model, similarity_index, mock_settings, tick)
    seed(store, *(make_email(account.id, f"p{i}", i) for i in range(6)))
    await _consume(feed, indexer)

    report = await indexer.process_pending()

    assert report.embedded == 6
    assert [len(b) for b in model.batches] == [4, 2]
    assert store.stale_embeddings() == []


async def test_flag_only_changes_are_not_re_embedded(
    store: LocalStore,
    account: Account,
    feed: ChangeFeed,
    similarity_index: SimilarityIndex,
    mock_settings: Settings,
    tick: TickClock,
) -> None:
    model = RecordingModel(mock_settings.embedding_dimension)
    indexer = _indexer(store, feed, model, similarity_index, mock_settings, tick)
    email = make_email(account.id, "p1", 1)
    seed(store, email)
    await indexer.drain()

    with store.transaction(account.id) as tx:
        tx.write_field_states(
            email.id, {**email.field_states, READ: FieldState(value=True, version=2)}
        )
    report = await indexer.drain()

    assert report.unchanged == 1
    assert report.embedded == 0
    assert len(model.batches) == 1
    assert store.pending_change_count() == 0


async def test_deleted_emails_leave_the_index(
    store: LocalStore,
    account: Account,
    feed: ChangeFeed,
    similarity_index: SimilarityIndex,
    mock_settings: Settings,
    tick: TickClock,
) -> None:
    model = HashedBagOfWordsModel(mock_settings.embedding_dimension)
    indexer = _indexer(store, feed, model, similarity_index, mock_settings, tick)
    email = make_email(account.id, "p1", 1)
    seed(store, email)
    await indexer.drain()
    assert similarity_index.count() == 1

    with store.transaction(account.id) as tx:
        tx.delete_email(email, deleted_at=tx.now)
    report = await indexer.drain()

    assert report.removed == 1
    assert similarity_index.count() == 0
    assert store.pending_change_count() == 0


async def test_model_failure_is_retried_without_losing_the_change(
    store: LocalStore,
    account: Account,
    feed: ChangeFeed,
    similarity_index: SimilarityIndex,
    mock_settings: Settings,
    tick: TickClock,
) -> None:
    settings = mock_settings.model_copy(
        update={"embedding_retry_base_seconds": 1.0, "embedding_retry_cap_seconds": 2.0}
    )
    model = FailingModel(settings.embedding_dimension, failures=1)
    indexer = _indexer(store, feed, model, similarity_index, settings, tick)
    email = make_email(account.id, "p1", 1)
    seed(store, email)
    await _consume(feed, indexer)

    failed = await indexer.process_pending()

    assert failed.failed == 1
    assert indexer.is_pending(email.id)
    assert store.pending_change_count() == 1
    assert store.get_embedding(email.id) is None

    tick.now = 10.0
    retried = await indexer.process_pending()

    assert retried.embedded == 1
    assert model.calls == 2
    assert not indexer.is_pending(email.id)
    assert store.pending_change_count() == 0
    assert store.get_embedding(email.id).content_hash == email.content_hash


async def test_model_timeout_counts_as_failure(
    store: LocalStore,
    account: Account,
    feed: ChangeFeed,
    similarity_index: SimilarityIndex,
    mock_settings: Settings,
    tick: TickClock,
) -> None:
    settings = mock_settings.model_copy(update={"embedding_timeout_seconds": 0.05})
    indexer = _indexer(
        store, feed, SlowModel(settings.embedding_dimension), similarity_index, settings, tick
    )
    email = make_email(account.id, "p1", 1)
    seed(store, email)
    await _consume(feed, indexer)

    report = await indexer.process_pending()

    assert report.failed == 1
    assert indexer.is_pending(email.id)
    assert store.pending_change_count() == 1


async def test_index_write_failure_is_retried_before_the_change_is_acked(
    store: LocalStore,
    account: Account,
    feed: ChangeFeed,
    similarity_index: SimilarityIndex,
    mock_settings: Settings,
    tick: TickClock,
) -> None:
    settings = mock_settings.model_copy(
        update={"embedding_retry_base_seconds": 1.0, "embedding_retry_cap_seconds": 2.0}
    )
    flaky = FlakyIndex(similarity_index, failures=1)
    model = HashedBagOfWordsModel(settings.embedding_dimension)
    indexer = _indexer(store, feed, model, flaky, settings, tick)
    email = make_email(account.id, "p1", 1)
    seed(store, email)
    await _consume(feed, indexer)

    failed = await indexer.process_pending()

    assert failed.failed == 1
    assert indexer.is_pending(email.id)
    assert store.pending_change_count() == 1
    assert store.get_embedding(email.id) is None
    assert store.stale_embeddings() == [(account.id, email.id)]

    tick.now = 10.0
    retried = await indexer.process_pending()

    assert retried.embedded == 1
    assert similarity_index.content_hash_of(email.id) == email.content_hash
    assert store.pending_change_count() == 0


async def test_storage_error_reading_vectors_is_retried(
    store: LocalStore,
    account: Account,
    feed: ChangeFeed,
    similarity_index: SimilarityIndex,
    mock_settings: Settings,
    tick: TickClock,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    model = HashedBagOfWordsModel(mock_settings.embedding_dimension)
    indexer = _indexer(store, feed, model, similarity_index, mock_settings, tick)
    email = make_email(account.id, "p1", 1)
    seed(store, email)
    await _consume(feed, indexer)
    real_get_embedding = store.get_embedding
    calls = []

    def broken_once(email_id: str):
        calls.append(email_id)
        if len(calls) == 1:
            raise StorageError("database is locked")
        return real_get_embedding(email_id)

    monkeypatch.setattr(store, "get_embedding", broken_once)

    failed = await indexer.process_pending()
    retried = await indexer.process_pending(force=True)

    assert failed.failed == 1
    assert retried.embedded == 1
    assert store.pending_change_count() == 0


async def test_run_survives_a_failed_round(
    store: LocalStore,
    account: Account,
    feed: ChangeFeed,
    similarity_index: SimilarityIndex,
    mock_settings: Settings,
    tick: TickClock,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    settings = mock_settings.model_copy(update={"embedding_retry_base_seconds": 0.01})
    model = HashedBagOfWordsModel(settings.embedding_dimension)
    indexer = _indexer(store, feed, model, similarity_index, settings, tick)
    email = make_email(account.id, "p1", 1)
    seed(store, email)
    real_process = indexer.process_pending
    rounds = []

    async def crash_once(**kwargs):
        rounds.append(kwargs)
        if len(rounds) == 1:
            raise RuntimeError("boom")
        return await real_process(**kwargs)

    monkeypatch.setattr(indexer, "process_pending", crash_once)

    task = asyncio.create_task(indexer.run())
    try:
        for _ in range(200):
            if store.get_embedding(email.id) is not None:
                break
            await asyncio.sleep(0.01)
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    assert len(rounds) >= 2
    assert store.get_embedding(email.id) is not None


async def test_drain_stops_when_only_failures_remain(
    store: LocalStore,
    account: Account,
    feed: ChangeFeed,
    similarity_index: SimilarityIndex,
    mock_settings: Settings,
    tick: TickClock,
) -> None:
    model = FailingModel(mock_settings.embedding_dimension, failures=100)
    indexer = _indexer(store, feed, model, similarity_index, mock_settings, tick)
    seed(store, make_email(account.id, "p1", 1))

    report = await indexer.drain(max_rounds=5)

    assert report.failed == 1
    assert model.calls == 1
    assert indexer.pending_count == 1


async def test_reconcile_queues_missing_vectors(
    store: LocalStore,
    account: Account,
    feed: ChangeFeed,
    similarity_index: SimilarityIndex,
    mock_settings: Settings,
    tick: TickClock,
) -> None:
    model = HashedBagOfWordsModel(mock_settings.embedding_dimension)
    indexer = _indexer(store, feed, model, similarity_index, mock_settings, tick)
    seed(store, make_email(account.id, "p1", 1), make_email(account.id, "p2", 2))

    assert indexer.reconcile() == 2
    report = await indexer.process_pending()

    assert report.embedded == 2
    assert store.stale_embeddings() == []
    assert indexer.reconcile() == 0


async def test_discard_account_forgets_its_work(
    store: LocalStore,
    account: Account,
    feed: ChangeFeed,
    similarity_index: SimilarityIndex,
    mock_settings: Settings,
    tick: TickClock,
) -> None:
    model = HashedBagOfWordsModel(mock_settings.embedding_dimension)
    indexer = _indexer(store, feed, model, similarity_index, mock_settings, tick)
    seed(store, make_email(account.id, "p1", 1))
    await indexer.drain()
    seed(store, make_email(account.id, "p2", 2))
    await _consume(feed, indexer)

    dropped = indexer.discard_account(account.id)

    assert dropped == 1
    assert indexer.pending_count == 0
    assert similarity_index.count() == 0
