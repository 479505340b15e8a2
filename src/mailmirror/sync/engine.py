"""Sync engine: per-account pull, merge and push cycles.

One cycle of an account:

1. read the stored cursor;
2. fetch remote changes page by page;
3. merge each page with the conflict resolver and commit it as one store
   transaction;
4. advance the cursor with a separate compare-and-set write, only after the
   page committed;
5. push due local mutations and record their outcome.

Cycles of one account are serialized; cycles of different accounts run
concurrently. No store transaction ever spans an ``await``, so cancelling a
cycle always lands between transactions.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TypeVar

import structlog

from mailmirror.config import Settings
from mailmirror.exceptions import (
    AuthError,
    CursorExpired,
    NetworkError,
    ProviderError,
    StorageError,
    SyncCancelled,
)
from mailmirror.models import (
    DELETED,
    AccountStatus,
    Ack,
    ChangeBatch,
    ChangeKind,
    Email,
    FieldState,
    LocalMutation,
    PushResult,
    RemoteChange,
    RemoteRejected,
    TransientFailure,
    is_user_settable,
)
from mailmirror.providers import ProviderClient
from mailmirror.store import LocalStore, StoreTransaction
from mailmirror.sync.resolver import Resolution, resolve
from mailmirror.utils import email_id_for, new_id, retry_delay, thread_id_for

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass
class CycleReport:
    """What one sync cycle did for one account."""

    account_id: str
    pages: int = 0
    fetched: int = 0
    applied: int = 0
    skipped: int = 0
    deleted: int = 0
    pushed: int = 0
    deferred: int = 0
    rejected: int = 0
    full_resync: bool = False
    cancelled: bool = False
    status: AccountStatus = AccountStatus.ACTIVE
    error: str | None = None
    discarded_mutations: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled


class SyncEngine:
    """Reconciles each registered account with its remote provider."""

    def __init__(
        self,
        store: LocalStore,
        settings: Settings,
        *,
        rng: random.Random | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._rng = rng
        self._providers: dict[str, ProviderClient] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._storage_failures: dict[str, int] = {}
        self._authenticated: set[str] = set()

    # Registration

    def register(self, account_id: str, provider: ProviderClient) -> None:
        self._providers[account_id] = provider
        self._cancel_events[account_id] = asyncio.Event()
        self._authenticated.discard(account_id)

    def unregister(self, account_id: str) -> None:
        """Forget an account; any cycle in flight stops at its next checkpoint."""

        self.cancel(account_id)
        self._providers.pop(account_id, None)
        self._cancel_events.pop(account_id, None)
        self._storage_failures.pop(account_id, None)
        self._authenticated.discard(account_id)

    def is_registered(self, account_id: str) -> bool:
        return account_id in self._providers

    def cancel(self, account_id: str) -> None:
        event = self._cancel_events.get(account_id)
        if event is not None:
            event.set()

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock

    # Cycle

    async def run_cycle(self, account_id: str) -> CycleReport:
        """Run one pull/merge/push cycle for an account."""

        report = CycleReport(account_id=account_id)
        async with self._lock_for(account_id):
            provider = self._providers.get(account_id)
            account = self._store.get_account(account_id)
            if provider is None or account is None:
                report.error = "account is not registered"
                return report
            if account.status != AccountStatus.ACTIVE:
                report.status = account.status
                report.error = f"account is {account.status.value}"
                logger.debug("sync_cycle_skipped", account_id=account_id, status=account.status.value)
                return report

            log = logger.bind(account_id=account_id)
            log.info("sync_cycle_started")
            try:
                if account_id not in self._authenticated:
                    await self._call(provider.authenticate())
                    self._authenticated.add(account_id)
                await self._pull(account_id, provider, report)
                await self._push(account_id, provider, report)
            except SyncCancelled:
                # A cancel request stops one cycle; the next one starts clean.
                event = self._cancel_events.get(account_id)
                if event is not None:
                    event.clear()
                report.cancelled = True
                log.info("sync_cycle_cancelled")
                return report
            except AuthError as exc:
                self._authenticated.discard(account_id)
                self._store.set_account_status(account_id, AccountStatus.AUTH_PAUSED, str(exc))
                report.status = AccountStatus.AUTH_PAUSED
                report.error = str(exc)
                log.warning("sync_auth_paused", error=str(exc))
                return report
            except ProviderError as exc:
                report.error = str(exc)
                log.warning("sync_provider_error", error=str(exc), error_type=type(exc).__name__)
                return report
            except StorageError as exc:
                report.error = str(exc)
                report.status = self._record_storage_failure(account_id, exc)
                return report

            self._storage_failures[account_id] = 0
            log.info(
                "sync_cycle_completed",
                pages=report.pages,
                fetched=report.fetched,
                applied=report.applied,
                deleted=report.deleted,
                pushed=report.pushed,
                deferred=report.deferred,
                rejected=report.rejected,
            )
            return report

    async def _call(self, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(
                awaitable, timeout=self._settings.sync_network_timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            raise NetworkError("Provider call timed out") from exc

    def _checkpoint(self, account_id: str) -> None:
        event = self._cancel_events.get(account_id)
        if event is None or event.is_set():
            raise SyncCancelled(f"Sync for account {account_id} was cancelled")

    def _record_storage_failure(self, account_id: str, exc: StorageError) -> AccountStatus:
        failures = self._storage_failures.get(account_id, 0) + 1
        self._storage_failures[account_id] = failures
        logger.error("sync_storage_error", account_id=account_id, failures=failures, error=str(exc))
        if failures < self._settings.storage_error_threshold:
            return AccountStatus.ACTIVE
        try:
            self._store.set_account_status(
                account_id,
                AccountStatus.NEEDS_REPAIR,
                f"{failures} consecutive storage failures; rebuild from remote required",
            )
        except StorageError as status_exc:
            logger.error("account_status_update_failed", account_id=account_id, error=str(status_exc))
        return AccountStatus.NEEDS_REPAIR

    # Pull

    async def _pull(self, account_id: str, provider: ProviderClient, report: CycleReport) -> None:
        mailbox = self._settings.default_mailbox
        state = self._store.get_sync_state(account_id, mailbox)
        cursor, seq = state.cursor, state.cursor_seq

        while True:
            try:
                batch = await self._call(provider.fetch_changes(cursor))
            except CursorExpired as exc:
                if cursor is None:
                    raise
                logger.warning("sync_cursor_expired", account_id=account_id, error=str(exc))
                cursor = None
                report.full_resync = True
                continue

            report.pages += 1
            report.fetched += len(batch.changes)
            self.apply_batch(account_id, batch, report)
            self._checkpoint(account_id)

            state = self._store.advance_cursor(
                account_id, mailbox, batch.next_cursor, expected_seq=seq
            )
            cursor, seq = state.cursor, state.cursor_seq
            self._checkpoint(account_id)

            if not batch.has_more:
                return

    def apply_batch(self, account_id: str, batch: ChangeBatch, report: CycleReport) -> None:
        """Merge one page of remote changes in a single transaction."""

        with self._store.transaction(account_id) as tx:
            for change in batch.changes:
                self._apply_change(tx, change, report)

    def _apply_change(self, tx: StoreTransaction, change: RemoteChange, report: CycleReport) -> None:
        account_id = tx.account_id
        email_id = email_id_for(account_id, change.provider_id)
        current = tx.get_email(email_id)

        if change.kind != ChangeKind.DELETED:
            deleted_at = tx.tombstone_at(change.provider_id)
            if deleted_at is not None and change.timestamp <= deleted_at:
                report.skipped += 1
                logger.debug(
                    "remote_change_tombstoned",
                    account_id=account_id,
                    provider_id=change.provider_id,
                    kind=change.kind.value,
                )
                return
            if deleted_at is not None and change.kind in (ChangeKind.NEW, ChangeKind.UPDATED):
                # Observed after our delete: the remote restored the message.
                tx.clear_tombstone(change.provider_id)

        pending = tx.pending_mutations(email_id) if current is not None else []
        result = resolve(change, current, pending)

        if result.resolution == Resolution.SKIP:
            report.skipped += 1
            return

        if result.retired_mutations:
            tx.remove_mutations(list(result.retired_mutations))

        if result.resolution == Resolution.DELETE:
            if result.retired_mutations:
                report.discarded_mutations.extend(result.retired_mutations)
                logger.info(
                    "pending_mutations_discarded_by_remote_delete",
                    account_id=account_id,
                    email_id=email_id,
                    mutations=list(result.retired_mutations),
                )
            tx.delete_email(current)
            report.deleted += 1
            return

        report.applied += 1
        if not result.changed:
            return

        content = result.content
        if current is not None and content == current.content:
            tx.write_field_states(email_id, result.field_states)
            return

        tx.write_email(
            Email(
                id=email_id,
                account_id=account_id,
                thread_id=thread_id_for(account_id, content.thread_key),
                provider_id=change.provider_id,
                content=content,
                field_states=result.field_states,
                content_hash=content.content_hash,
                updated_at=tx.now,
            ),
            created=current is None,
        )

    # Push

    async def _push(self, account_id: str, provider: ProviderClient, report: CycleReport) -> None:
        for mutation in self._store.due_mutations(account_id):
            self._checkpoint(account_id)
            try:
                result = await self._call(provider.push_mutation(mutation))
            except NetworkError as exc:
                result = TransientFailure(reason=str(exc))
            self.record_push_result(mutation, result, report)

    def record_push_result(
        self, mutation: LocalMutation, result: PushResult, report: CycleReport
    ) -> None:
        """Persist the outcome of one push."""

        account_id = mutation.account_id
        if isinstance(result, Ack):
            with self._store.transaction(account_id) as tx:
                self._apply_ack(tx, mutation)
            report.pushed += 1
            logger.debug("mutation_pushed", account_id=account_id, mutation_id=mutation.id)
            return

        if isinstance(result, TransientFailure):
            delay = retry_delay(
                mutation.attempts,
                retry_after=result.retry_after,
                base=self._settings.push_backoff_base_seconds,
                cap=self._settings.push_backoff_cap_seconds,
                rng=self._rng,
            )
            with self._store.transaction(account_id) as tx:
                superseded = _is_superseded(tx, mutation)
                if not superseded:
                    tx.reschedule_mutation(
                        mutation.id,
                        tx.now + timedelta(seconds=delay),
                        result.reason or "transient failure",
                    )
            if superseded:
                logger.debug(
                    "superseded_push_failed", account_id=account_id, mutation_id=mutation.id
                )
                return
            report.deferred += 1
            logger.info(
                "mutation_push_deferred",
                account_id=account_id,
                mutation_id=mutation.id,
                attempts=mutation.attempts + 1,
                delay=delay,
            )
            return

        with self._store.transaction(account_id) as tx:
            superseded = _is_superseded(tx, mutation)
            if not superseded:
                self._apply_rejection(tx, mutation, result)
        if superseded:
            # A newer edit of the field is still queued and will be pushed on its own.
            logger.info(
                "superseded_push_rejected",
                account_id=account_id,
                mutation_id=mutation.id,
                field=mutation.field,
                reason=result.reason,
            )
            return
        report.rejected += 1
        self._store.set_account_status(
            account_id,
            AccountStatus.ACTIVE,
            f"Change to {mutation.field} of {mutation.provider_id} was rejected: {result.reason}",
        )
        logger.warning(
            "mutation_rejected",
            account_id=account_id,
            mutation_id=mutation.id,
            field=mutation.field,
            reason=result.reason,
        )

    def _apply_ack(self, tx: StoreTransaction, mutation: LocalMutation) -> None:
        superseded = _is_superseded(tx, mutation)
        if not superseded:
            tx.remove_mutations([mutation.id])

        email = tx.get_email(mutation.email_id)
        if email is None:
            return

        if mutation.field == DELETED and mutation.value and not superseded:
            tx.delete_email(email, deleted_at=tx.now)
            return

        state = email.field_states.get(mutation.field) or FieldState(value=mutation.value)
        states = dict(email.field_states)
        states[mutation.field] = state.model_copy(
            update={
                "synced_version": max(state.synced_version, mutation.version),
                "remote_value": mutation.value,
            }
        )
        tx.write_field_states(email.id, states)

    def _apply_rejection(
        self, tx: StoreTransaction, mutation: LocalMutation, result: RemoteRejected
    ) -> None:
        tx.fail_mutation(mutation.id, result.reason)
        email = tx.get_email(mutation.email_id)
        if email is None:
            return

        state = email.field_states.get(mutation.field)
        if state is None:
            return
        reverted = bool(state.remote_value)
        version = state.version + 1
        states = dict(email.field_states)
        states[mutation.field] = FieldState(
            value=reverted,
            version=version,
            synced_version=version,
            remote_value=state.remote_value,
        )
        tx.write_field_states(email.id, states)

    # Local edits

    def queue_mutation(
        self, account_id: str, email_id: str, field_name: str, value: bool
    ) -> LocalMutation:
        """Apply a local flag/label edit optimistically and queue it for push.

        Raises:
            ValueError: If the field is server-owned or the email is unknown.
        """

        if not is_user_settable(field_name):
            raise ValueError(f"Field {field_name!r} cannot be changed locally")

        with self._store.transaction(account_id) as tx:
            email = tx.get_email(email_id)
            if email is None or email.account_id != account_id:
                raise ValueError(f"Unknown email {email_id} for account {account_id}")

            state = email.field_states.get(field_name) or FieldState(value=False)
            new_state = state.model_copy(update={"value": value, "version": state.version + 1})
            states = dict(email.field_states)
            states[field_name] = new_state
            tx.write_field_states(email.id, states)

            mutation = tx.upsert_pending_mutation(
                LocalMutation(
                    id=new_id(),
                    account_id=account_id,
                    email_id=email.id,
                    provider_id=email.provider_id,
                    field=field_name,
                    value=value,
                    version=new_state.version,
                    next_attempt_at=tx.now,
                    created_at=tx.now,
                )
            )

        logger.info(
            "local_mutation_queued",
            account_id=account_id,
            email_id=email_id,
            field=field_name,
            value=value,
            version=mutation.version,
        )
        return mutation

    # Recovery

    def resume_account(self, account_id: str) -> None:
        """Clear an authentication pause after the user re-authenticated."""

        self._authenticated.discard(account_id)
        self._store.set_account_status(account_id, AccountStatus.ACTIVE, None)
        logger.info("account_resumed", account_id=account_id)

    async def rebuild_account(self, account_id: str) -> int:
        """Drop the local mirror of an account and restart from a full sync."""

        async with self._lock_for(account_id):
            removed = self._store.reset_account_mirror(account_id)
            self._store.set_account_status(account_id, AccountStatus.ACTIVE, None)
            self._storage_failures[account_id] = 0
        logger.info("account_rebuild_scheduled", account_id=account_id, removed=removed)
        return removed


def _is_superseded(tx: StoreTransaction, mutation: LocalMutation) -> bool:
    """True when a newer edit was coalesced into the row while ``mutation`` was in flight."""

    stored = tx.get_mutation(mutation.id)
    return stored is not None and stored.version != mutation.version
