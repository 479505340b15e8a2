"""Application wiring: one object owning the store, sync and search pipeline.

``MailMirror`` is what the CLI and the HTTP API talk to. It builds every
component from :class:`~mailmirror.config.Settings`, registers provider
backends for the stored accounts and runs the background tasks (change-feed
pump, embedding indexer, sync scheduler).
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable

import structlog

from mailmirror.config import Settings
from mailmirror.embedding import EmbeddingIndexer, EmbeddingModel, SimilarityIndex, build_embedding_model
from mailmirror.exceptions import ConfigurationError
from mailmirror.models import Account, AccountStatus
from mailmirror.providers import CredentialLookup, ProviderClient, build_provider
from mailmirror.search import SearchService
from mailmirror.store import ChangeFeed, LocalStore
from mailmirror.sync import CycleReport, SyncEngine, SyncScheduler, UndoableEdit, UndoHistory

logger = structlog.get_logger()

ProviderFactory = Callable[[Account], ProviderClient]


class MailMirror:
    """Local mirror of every configured account."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: LocalStore | None = None,
        model: EmbeddingModel | None = None,
        index: SimilarityIndex | None = None,
        provider_factory: ProviderFactory | None = None,
        credential_lookup: CredentialLookup | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or LocalStore(
            settings.db_path, busy_timeout_seconds=settings.sqlite_busy_timeout_seconds
        )
        self.store.initialize()
        self.feed = ChangeFeed(self.store, capacity=settings.change_feed_capacity)
        self.engine = SyncEngine(self.store, settings)
        self.scheduler = SyncScheduler(
            self.engine,
            self.store,
            workers=settings.sync_workers,
            interval_seconds=settings.sync_interval_seconds,
        )
        self.undo_history = UndoHistory(
            window_seconds=settings.undo_window_seconds,
            max_entries=settings.undo_history_size,
        )

        if model is None:
            try:
                model = build_embedding_model(settings)
            except ConfigurationError as exc:
                logger.warning("embeddings_disabled", reason=str(exc))
        self.model = model
        self.index = index
        if self.model is not None and self.index is None:
            self.index = SimilarityIndex.from_settings(settings)

        self.indexer: EmbeddingIndexer | None = None
        if self.model is not None and self.index is not None:
            self.indexer = EmbeddingIndexer(self.store, self.feed, self.model, self.index, settings)
        self.search = SearchService(self.store, settings, model=self.model, index=self.index)

        self._provider_factory = provider_factory
        self._credential_lookup = credential_lookup
        self._tasks: list[asyncio.Task[None]] = []

    # Accounts

    def _provider_for(self, account: Account) -> ProviderClient:
        if self._provider_factory is not None:
            return self._provider_factory(account)
        return build_provider(account, self.settings, credential_lookup=self._credential_lookup)

    def register_accounts(self) -> int:
        """Attach provider backends to every stored account."""

        registered = 0
        for account in self.store.list_accounts():
            if self.engine.is_registered(account.id):
                continue
            try:
                self.engine.register(account.id, self._provider_for(account))
            except ConfigurationError as exc:
                logger.error("account_registration_failed", account_id=account.id, error=str(exc))
                continue
            registered += 1
        return registered

    def add_account(self, account: Account) -> Account:
        provider = self._provider_for(account)
        self.store.add_account(account, mailbox=self.settings.default_mailbox)
        self.engine.register(account.id, provider)
        return account

    async def remove_account(self, account_id: str) -> bool:
        """Stop syncing an account and delete everything mirrored for it."""

        await self.scheduler.cancel_account(account_id)
        self.engine.unregister(account_id)
        removed = self.store.remove_account(account_id)
        self.undo_history.discard_account(account_id)
        if self.indexer is not None:
            self.indexer.discard_account(account_id)
        else:
            self.feed.discard_account(account_id)
        return removed

    def resume_account(self, account_id: str) -> Account:
        account = self._require_account(account_id)
        if account.status == AccountStatus.AUTH_PAUSED:
            self.engine.resume_account(account_id)
        return self._require_account(account_id)

    async def rebuild_account(self, account_id: str) -> int:
        self._require_account(account_id)
        removed = await self.engine.rebuild_account(account_id)
        if self.index is not None:
            self.index.delete_account(account_id)
        return removed

    def _require_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if account is None:
            raise KeyError(account_id)
        return account

    # Local edits

    def set_flag(self, email_id: str, field_name: str, value: bool) -> UndoableEdit:
        """Apply a local flag/label edit and queue it for push.

        The edit stays undoable for ``undo_window_seconds``.

        Raises:
            KeyError: If the email is not mirrored.
            ValueError: If the field cannot be changed locally.
        """

        email = self.store.get_email(email_id)
        if email is None:
            raise KeyError(email_id)
        state = email.field_states.get(field_name)
        previous = state.value if state is not None else False
        self.engine.queue_mutation(email.account_id, email_id, field_name, value)
        edit = self.undo_history.record(email.account_id, email_id, field_name, previous, value)
        logger.info(
            "local_edit_queued",
            account_id=email.account_id,
            email_id=email_id,
            field=field_name,
            value=value,
        )
        return edit

    def undo(self) -> UndoableEdit | None:
        """Revert the newest edit still inside the undo window, if any.

        Raises:
            ValueError: If the email has disappeared since the edit.
        """

        edit = self.undo_history.pop()
        if edit is None:
            return None
        self.engine.queue_mutation(edit.account_id, edit.email_id, edit.field, edit.previous)
        logger.info(
            "local_edit_undone",
            account_id=edit.account_id,
            email_id=edit.email_id,
            field=edit.field,
            value=edit.previous,
        )
        return edit

    # Sync and indexing

    async def sync_once(self) -> list[CycleReport]:
        """One sync pass over all accounts followed by draining the indexer."""

        self.register_accounts()
        reports = await self.scheduler.run_once()
        if self.indexer is not None:
            await self.indexer.drain()
        else:
            self.feed.skip_pending()
        return reports

    async def start(self) -> None:
        """Start the background tasks."""

        if self._tasks:
            return
        self.register_accounts()
        self._tasks.append(
            asyncio.create_task(self.feed.run(deliver=self.indexer is not None), name="change-feed")
        )
        if self.indexer is not None:
            self._tasks.append(asyncio.create_task(self.indexer.run(), name="embedding-indexer"))
        self._tasks.append(asyncio.create_task(self.scheduler.run_forever(), name="sync-scheduler"))
        logger.info("mailmirror_started", tasks=[t.get_name() for t in self._tasks])

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if tasks:
            logger.info("mailmirror_stopped")
