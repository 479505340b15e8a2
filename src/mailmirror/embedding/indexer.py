"""Embedding indexer: keeps vectors eventually consistent with the store.

The indexer consumes the change feed, debounces bursts of changes to the same
email, batches ready emails per account and embeds them. Vectors are written
to the store's ``embeddings`` table and to the similarity index. Model
failures and timeouts are never fatal: affected emails are retried with
exponential backoff and their change-log rows stay unacknowledged until they
succeed.
"""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

from mailmirror.config import Settings
from mailmirror.embedding.model import EmbeddingModel
from mailmirror.embedding.similarity import SimilarityIndex
from mailmirror.embedding.text import email_embedding_text
from mailmirror.exceptions import EmbeddingError, StorageError
from mailmirror.models import ChangeNotification, EmbeddingVector, NotificationKind
from mailmirror.store import ChangeFeed, LocalStore
from mailmirror.utils import full_jitter_delay

logger = structlog.get_logger()


@dataclass
class _PendingEmail:
    account_id: str
    email_id: str
    ready_at: float
    attempts: int = 0
    seqs: list[int] = field(default_factory=list)


@dataclass
class IndexReport:
    embedded: int = 0
    removed: int = 0
    unchanged: int = 0
    failed: int = 0

    def merge(self, other: "IndexReport") -> None:
        self.embedded += other.embedded
        self.removed += other.removed
        self.unchanged += other.unchanged
        self.failed += other.failed


class EmbeddingIndexer:
    """Consumes committed email changes and maintains their vectors."""

    def __init__(
        self,
        store: LocalStore,
        feed: ChangeFeed,
        model: EmbeddingModel,
        index: SimilarityIndex,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        self._store = store
        self._feed = feed
        self._model = model
        self._index = index
        self._settings = settings
        self._clock = clock
        self._rng = rng
        self._pending: dict[str, _PendingEmail] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, email_id: str) -> bool:
        return email_id in self._pending

    def enqueue(self, notification: ChangeNotification) -> None:
        """Schedule an email for (re)indexing; only the latest request is kept."""

        ready_at = self._clock() + self._settings.embedding_debounce_seconds
        item = self._pending.get(notification.email_id)
        if item is None:
            item = _PendingEmail(
                account_id=notification.account_id,
                email_id=notification.email_id,
                ready_at=ready_at,
            )
            self._pending[notification.email_id] = item
        else:
            # A fresh change restarts the debounce but never shortens a retry backoff.
            item.ready_at = max(item.ready_at, ready_at)
        if notification.seq is not None:
            item.seqs.append(notification.seq)
        if notification.kind == NotificationKind.DELETED:
            logger.debug("embedding_removal_queued", email_id=notification.email_id)

    def discard_account(self, account_id: str) -> int:
        """Forget queued work and vectors of a removed account."""

        dropped = [k for k, v in self._pending.items() if v.account_id == account_id]
        for email_id in dropped:
            del self._pending[email_id]
        dropped_from_feed = self._feed.discard_account(account_id)
        self._index.delete_account(account_id)
        logger.info(
            "embedding_account_discarded",
            account_id=account_id,
            dropped=len(dropped) + dropped_from_feed,
        )
        return len(dropped) + dropped_from_feed

    def reconcile(self, account_id: str | None = None) -> int:
        """Queue every email whose vector is missing or stale."""

        stale = self._store.stale_embeddings(account_id)
        now = self._clock()
        for acct, email_id in stale:
            if email_id not in self._pending:
                self._pending[email_id] = _PendingEmail(account_id=acct, email_id=email_id, ready_at=now)
        if stale:
            logger.info("embedding_reconcile_queued", emails=len(stale))
        return len(stale)

    def drain_feed(self) -> int:
        moved = 0
        while True:
            item = self._feed.get_nowait()
            if item is None:
                return moved
            self.enqueue(item)
            moved += 1

    async def process_pending(self, *, force: bool = False) -> IndexReport:
        """Index every ready email (all queued emails when ``force``)."""

        now = self._clock()
        ready = sorted(
            (p for p in self._pending.values() if force or p.ready_at <= now),
            key=lambda p: (p.account_id, p.ready_at, p.email_id),
        )
        report = IndexReport()
        batch_size = max(1, self._settings.embedding_batch_size)

        by_account: dict[str, list[_PendingEmail]] = {}
        for item in ready:
            by_account.setdefault(item.account_id, []).append(item)

        for account_id, items in by_account.items():
            for start in range(0, len(items), batch_size):
                batch = items[start : start + batch_size]
                report.merge(await self._process_batch(account_id, batch))
        return report

    async def _process_batch(self, account_id: str, batch: list[_PendingEmail]) -> IndexReport:
        report = IndexReport()
        try:
            emails = self._store.get_emails(p.email_id for p in batch)
        except StorageError as exc:
            self._schedule_retry(batch, str(exc))
            report.failed += len(batch)
            return report

        gone = [p for p in batch if p.email_id not in emails]
        if gone:
            try:
                self._index.delete(p.email_id for p in gone)
            except Exception as exc:  # noqa: BLE001
                self._index_failed(account_id, gone, exc, report)
            else:
                self._complete(gone)
                report.removed += len(gone)

        to_embed: list[_PendingEmail] = []
        for item in batch:
            email = emails.get(item.email_id)
            if email is None:
                continue
            try:
                existing = self._store.get_embedding(item.email_id)
            except StorageError as exc:
                self._schedule_retry([item], str(exc))
                report.failed += 1
                continue
            if (
                existing is not None
                and existing.content_hash == email.content_hash
                and existing.model == self._model.name
            ):
                self._complete([item])
                report.unchanged += 1
            else:
                to_embed.append(item)

        if not to_embed:
            return report

        texts = [
            email_embedding_text(emails[p.email_id], max_chars=self._settings.embedding_max_chars)
            for p in to_embed
        ]
        try:
            vectors = await asyncio.wait_for(
                self._model.embed(texts), timeout=self._settings.embedding_timeout_seconds
            )
            if len(vectors) != len(to_embed):
                raise EmbeddingError(
                    f"Model returned {len(vectors)} vectors for {len(to_embed)} texts"
                )
        except (EmbeddingError, asyncio.TimeoutError) as exc:
            reason = str(exc) or type(exc).__name__
            self._schedule_retry(to_embed, reason)
            report.failed += len(to_embed)
            logger.warning(
                "embedding_batch_failed",
                account_id=account_id,
                emails=len(to_embed),
                error=reason,
            )
            return report

        embeddings = [
            EmbeddingVector(
                email_id=emails[item.email_id].id,
                account_id=emails[item.email_id].account_id,
                vector=vector,
                content_hash=emails[item.email_id].content_hash,
                model=self._model.name,
            )
            for item, vector in zip(to_embed, vectors)
        ]
        # The stored hash marks an email as indexed, so the index is written first.
        try:
            self._index.upsert(embeddings)
        except Exception as exc:  # noqa: BLE001
            self._index_failed(account_id, to_embed, exc, report)
            return report

        embedded = 0
        for item, embedding in zip(to_embed, embeddings):
            try:
                written = self._store.upsert_embedding(embedding)
                if not written:
                    # Deleted while we were embedding.
                    self._index.delete([item.email_id])
            except Exception as exc:  # noqa: BLE001
                self._index_failed(account_id, [item], exc, report)
                continue
            embedded += int(written)
            self._complete([item])

        report.embedded += embedded
        logger.info("embedding_batch_indexed", account_id=account_id, embedded=embedded)
        return report

    def _index_failed(
        self, account_id: str, items: list[_PendingEmail], exc: Exception, report: IndexReport
    ) -> None:
        reason = str(exc) or type(exc).__name__
        self._schedule_retry(items, reason)
        report.failed += len(items)
        logger.warning(
            "embedding_index_write_failed",
            account_id=account_id,
            emails=len(items),
            error=reason,
        )

    def _complete(self, items: list[_PendingEmail]) -> None:
        seqs: list[int] = []
        for item in items:
            current = self._pending.get(item.email_id)
            if current is item:
                del self._pending[item.email_id]
            seqs.extend(item.seqs)
        try:
            self._feed.ack(seqs)
        except StorageError as exc:
            # Unacknowledged rows are replayed on the next start.
            logger.warning("embedding_ack_failed", seqs=len(seqs), error=str(exc))

    def _schedule_retry(self, items: list[_PendingEmail], reason: str) -> None:
        now = self._clock()
        for item in items:
            delay = full_jitter_delay(
                item.attempts,
                base=self._settings.embedding_retry_base_seconds,
                cap=self._settings.embedding_retry_cap_seconds,
                rng=self._rng,
            )
            item.attempts += 1
            item.ready_at = now + delay
            logger.debug(
                "embedding_retry_scheduled",
                email_id=item.email_id,
                attempts=item.attempts,
                delay=delay,
                reason=reason,
            )

    def _next_delay(self) -> float | None:
        if not self._pending:
            return None
        earliest = min(p.ready_at for p in self._pending.values())
        return max(0.0, earliest - self._clock())

    async def drain(self, *, max_rounds: int = 10) -> IndexReport:
        """Pump the feed and index until nothing is queued (or rounds run out)."""

        total = IndexReport()
        for _ in range(max_rounds):
            await self._feed.pump_once()
            self.drain_feed()
            if not self._pending:
                break
            report = await self.process_pending(force=True)
            total.merge(report)
            if report.failed and not (report.embedded or report.removed or report.unchanged):
                break
        return total

    async def run(self) -> None:
        """Index until cancelled; a failed round is logged and retried after a pause."""

        logger.info("embedding_indexer_started", model=self._model.name)
        reconciled = False
        while True:
            try:
                if not reconciled:
                    self.reconcile()
                    reconciled = True
                self.drain_feed()
                await self.process_pending()
            except Exception:  # noqa: BLE001
                logger.exception("embedding_indexer_round_failed")
                await asyncio.sleep(self._settings.embedding_retry_base_seconds)
                continue
            delay = self._next_delay()
            try:
                item = await asyncio.wait_for(self._feed.get(), timeout=delay)
            except asyncio.TimeoutError:
                continue
            self.enqueue(item)
