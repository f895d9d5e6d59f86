"""Fan sync runs out across accounts and track per-account progress."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime
from enum import Enum

from gmail_mirror.core.exceptions import StorageError, SyncCancelledError, SyncInProgressError
from gmail_mirror.core.gmail_client import GmailClient
from gmail_mirror.core.models import (
    Account,
    ProgressStatus,
    SyncFailure,
    SyncPartialSuccess,
    SyncProgress,
    SyncResult,
    SyncSuccess,
)
from gmail_mirror.storage.repository import MailRepository
from gmail_mirror.sync.engine import SyncEngine
from gmail_mirror.sync.lock import SyncLock

logger = logging.getLogger(__name__)

RepositoryFactory = Callable[[], MailRepository]
EngineFactory = Callable[..., SyncEngine]


class LockPolicy(str, Enum):
    """What to do when a sync is requested for an account that is already syncing."""

    SKIP = "skip"
    CANCEL_PRIOR = "cancel_prior"
    ENQUEUE = "enqueue"


def describe_result(result: SyncResult) -> str:
    """Human-readable one-liner for a sync result."""
    if isinstance(result, SyncSuccess):
        parts = []
        if result.added:
            parts.append(f"{result.added} new")
        if result.updated:
            parts.append(f"{result.updated} updated")
        if result.deleted:
            parts.append(f"{result.deleted} deleted")
        return ", ".join(parts) if parts else "Up to date"
    if isinstance(result, SyncPartialSuccess):
        return f"Completed with {result.failed} errors"
    return str(result.error)


class SyncCoordinator:
    """Runs one SyncEngine per account with bounded concurrency.

    Each run gets its own repository connection from `repository_factory`.
    Observers poll `progress` and `last_sync_at`; nothing is pushed.
    """

    def __init__(
        self,
        client: GmailClient,
        repository_factory: RepositoryFactory,
        lock: SyncLock | None = None,
        *,
        max_concurrent_accounts: int = 4,
        lock_policy: LockPolicy = LockPolicy.SKIP,
        max_messages: int = 1000,
        page_size: int = 100,
        max_failure_attempts: int = 3,
        engine_factory: EngineFactory = SyncEngine,
    ) -> None:
        self._client = client
        self._repository_factory = repository_factory
        self._lock = lock or SyncLock()
        self._semaphore = asyncio.Semaphore(max_concurrent_accounts)
        self._lock_policy = LockPolicy(lock_policy)
        self._engine_factory = engine_factory
        self._engine_options = {
            "max_messages": max_messages,
            "page_size": page_size,
            "max_failure_attempts": max_failure_attempts,
        }

        self._progress: dict[str, SyncProgress] = {}
        self._tasks: dict[str, asyncio.Task[SyncResult]] = {}
        self._queued: dict[str, tuple[Account, asyncio.Future[SyncResult]]] = {}
        self._cancel_requested: set[str] = set()
        self.last_sync_at: datetime | None = None

    @property
    def lock(self) -> SyncLock:
        return self._lock

    @property
    def progress(self) -> dict[str, SyncProgress]:
        return dict(self._progress)

    def get_progress(self, account_id: str) -> SyncProgress:
        return self._progress.get(account_id, SyncProgress())

    @property
    def is_syncing(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    async def sync_all(self, accounts: Iterable[Account] | None = None) -> dict[str, SyncResult]:
        """Sync every enabled account concurrently.

        Args:
            accounts: Accounts to sync. Defaults to the enabled accounts in
                the repository, re-read on every call.

        Returns:
            Result per account id. Completion order is not significant.
        """
        if accounts is None:
            targets = await asyncio.to_thread(self._enabled_accounts)
        else:
            targets = [a for a in accounts if a.is_enabled]

        logger.info("Syncing %d accounts", len(targets))
        results = await asyncio.gather(*(self.sync_one(a) for a in targets))
        self.last_sync_at = datetime.now(UTC)
        return {account.account_id: result for account, result in zip(targets, results)}

    async def sync_one(self, account: Account) -> SyncResult:
        """Sync a single account, applying the lock policy if it is busy."""
        running = self._tasks.get(account.account_id)
        if running is not None and not running.done():
            return await self._handle_busy(account, running)
        return await self._await_run(self._spawn(account), account.account_id)

    def cancel(self, account_id: str) -> bool:
        """Cancel the account's running and queued syncs.

        Returns:
            True if anything was cancelled.
        """
        cancelled = False
        queued = self._queued.pop(account_id, None)
        if queued is not None and not queued[1].done():
            queued[1].set_result(SyncFailure(SyncCancelledError(f"Sync cancelled for {account_id}")))
            cancelled = True

        task = self._tasks.get(account_id)
        if task is not None and not task.done():
            self._cancel_requested.add(account_id)
            task.cancel()
            cancelled = True

        if cancelled:
            logger.info("Cancelled sync for %s", account_id)
        return cancelled

    def cancel_all(self) -> None:
        for account_id in list(self._tasks):
            self.cancel(account_id)

    def _spawn(self, account: Account) -> asyncio.Task[SyncResult]:
        account_id = account.account_id
        task = asyncio.create_task(self._run(account), name=f"sync-{account_id}")
        self._tasks[account_id] = task
        task.add_done_callback(lambda t: self._on_done(account_id, t))
        return task

    def _on_done(self, account_id: str, task: asyncio.Task[SyncResult]) -> None:
        if self._tasks.get(account_id) is task:
            del self._tasks[account_id]
        if task.cancelled():
            self._cancel_requested.discard(account_id)

        queued = self._queued.pop(account_id, None)
        if queued is None:
            return
        account, future = queued
        if future.done():
            return

        logger.info("Starting queued sync for %s", account_id)
        follow_up = self._spawn(account)
        follow_up.add_done_callback(lambda t: self._resolve(future, t))

    @staticmethod
    def _resolve(future: asyncio.Future[SyncResult], task: asyncio.Task[SyncResult]) -> None:
        if future.done():
            return
        if task.cancelled():
            future.set_result(SyncFailure(SyncCancelledError("Queued sync was cancelled")))
        elif task.exception() is not None:
            future.set_exception(task.exception())
        else:
            future.set_result(task.result())

    @staticmethod
    async def _await_run(task: Awaitable[SyncResult], account_id: str) -> SyncResult:
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            # The run was cancelled before it started, not the caller
            return SyncFailure(SyncCancelledError(f"Sync cancelled for {account_id}"))

    async def _handle_busy(
        self, account: Account, running: asyncio.Task[SyncResult]
    ) -> SyncResult:
        account_id = account.account_id

        if self._lock_policy is LockPolicy.CANCEL_PRIOR:
            logger.info("Cancelling running sync for %s to start a new one", account_id)
            self._cancel_requested.add(account_id)
            running.cancel()
            await asyncio.wait({running})
            self._cancel_requested.discard(account_id)

            replacement = self._tasks.get(account_id)
            if replacement is not None and not replacement.done():
                # Another caller waiting on the same run already restarted it
                logger.info("Joining the restarted sync for %s", account_id)
                return await self._await_run(asyncio.shield(replacement), account_id)
            return await self._await_run(self._spawn(account), account_id)

        if self._lock_policy is LockPolicy.ENQUEUE:
            queued = self._queued.get(account_id)
            if queued is not None and not queued[1].done():
                future = queued[1]
            else:
                future = asyncio.get_running_loop().create_future()
            # Depth one: a newer request replaces the queued account, waiters share the run
            self._queued[account_id] = (account, future)
            logger.info("Queued sync for %s behind the running one", account_id)
            return await asyncio.shield(future)

        logger.info("Sync already running for %s, skipping", account_id)
        return SyncFailure(SyncInProgressError(f"Sync already in progress for {account_id}"))

    async def _run(self, account: Account) -> SyncResult:
        account_id = account.account_id
        previous = self.get_progress(account_id)
        try:
            async with self._semaphore:
                self._progress[account_id] = SyncProgress(ProgressStatus.SYNCING, "Syncing")
                result = await self._run_engine(account)
        except asyncio.CancelledError:
            if account_id not in self._cancel_requested:
                self._progress[account_id] = SyncProgress(ProgressStatus.IDLE, "Cancelled")
                raise
            # Cancelled through cancel() or CANCEL_PRIOR: report it as a result
            self._cancel_requested.discard(account_id)
            current = asyncio.current_task()
            if current is not None:
                current.uncancel()
            result = SyncFailure(SyncCancelledError(f"Sync cancelled for {account_id}"))

        self._record(account_id, result, previous)
        return result

    async def _run_engine(self, account: Account) -> SyncResult:
        repository = self._repository_factory()
        try:
            await asyncio.to_thread(repository.connect)
            engine = self._engine_factory(
                account, self._client, repository, self._lock, **self._engine_options
            )
            return await engine.sync()
        except sqlite3.Error as e:
            return SyncFailure(StorageError(f"Could not open database: {e}"))
        except Exception as e:
            logger.exception("Unexpected error while syncing %s", account.account_id)
            return SyncFailure(e)
        finally:
            repository.close()

    def _record(self, account_id: str, result: SyncResult, previous: SyncProgress) -> None:
        if isinstance(result, SyncSuccess):
            progress = SyncProgress(ProgressStatus.COMPLETED, describe_result(result))
        elif isinstance(result, SyncPartialSuccess):
            progress = SyncProgress(ProgressStatus.COMPLETED_WITH_WARNINGS, describe_result(result))
        elif isinstance(result.error, SyncInProgressError):
            # Someone else holds the account; their run owns the status
            progress = previous
        elif isinstance(result.error, SyncCancelledError):
            progress = SyncProgress(ProgressStatus.IDLE, "Cancelled")
        else:
            progress = SyncProgress(ProgressStatus.ERROR, describe_result(result))
        self._progress[account_id] = progress
        logger.info("Sync for %s: %s (%s)", account_id, progress.status.value, progress.message)

    def _enabled_accounts(self) -> list[Account]:
        try:
            with self._repository_factory() as repository:
                return repository.list_accounts(enabled_only=True)
        except sqlite3.Error as e:
            raise StorageError(f"Could not read accounts: {e}") from e
