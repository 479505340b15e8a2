"""Bounded worker pool running sync cycles across accounts."""

from __future__ import annotations

import asyncio
import contextlib

import structlog

from mailmirror.models import AccountStatus
from mailmirror.store import LocalStore
from mailmirror.sync.engine import CycleReport, SyncEngine

logger = structlog.get_logger()


class SyncScheduler:
    """Runs one cycle per active account, at most ``workers`` at a time."""

    def __init__(
        self,
        engine: SyncEngine,
        store: LocalStore,
        *,
        workers: int = 4,
        interval_seconds: float = 60.0,
    ) -> None:
        self._engine = engine
        self._store = store
        self._semaphore = asyncio.Semaphore(max(1, workers))
        self._interval = interval_seconds
        self._tasks: dict[str, asyncio.Task[CycleReport]] = {}

    @property
    def running(self) -> list[str]:
        return sorted(self._tasks)

    async def run_account(self, account_id: str) -> CycleReport:
        async with self._semaphore:
            return await self._engine.run_cycle(account_id)

    async def run_once(self) -> list[CycleReport]:
        """Run one cycle for every active, registered account."""

        account_ids = [
            account.id
            for account in self._store.list_accounts()
            if account.status == AccountStatus.ACTIVE and self._engine.is_registered(account.id)
        ]
        tasks: dict[str, asyncio.Task[CycleReport]] = {}
        for account_id in account_ids:
            if account_id in self._tasks:
                continue
            task = asyncio.create_task(self.run_account(account_id), name=f"sync:{account_id}")
            tasks[account_id] = task
            self._tasks[account_id] = task

        try:
            results = await asyncio.gather(*tasks.values(), return_exceptions=True)
        finally:
            for account_id in tasks:
                self._tasks.pop(account_id, None)

        reports: list[CycleReport] = []
        for account_id, result in zip(tasks, results):
            if isinstance(result, CycleReport):
                reports.append(result)
            elif isinstance(result, asyncio.CancelledError):
                reports.append(CycleReport(account_id=account_id, cancelled=True))
            else:
                logger.error("sync_cycle_crashed", account_id=account_id, error=repr(result))
                reports.append(CycleReport(account_id=account_id, error=repr(result)))
        return reports

    async def run_forever(self) -> None:
        logger.info("sync_scheduler_started", interval=self._interval)
        while True:
            await self.run_once()
            await asyncio.sleep(self._interval)

    async def cancel_account(self, account_id: str) -> None:
        """Stop an account's in-flight cycle and wait for it to wind down."""

        self._engine.cancel(account_id)
        task = self._tasks.get(account_id)
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("sync_cycle_cancelled_by_removal", account_id=account_id)
