"""Per-account sync engine: full sync, incremental history sync, eviction, derivation."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from gmail_mirror.core.exceptions import (
    AuthenticationError,
    GmailMirrorError,
    HistoryExpiredError,
    MalformedResponseError,
    NotFoundError,
    QuotaExceededError,
    StorageError,
    SyncInProgressError,
)
from gmail_mirror.core.gmail_client import GmailClient
from gmail_mirror.core.models import (
    Account,
    HistoryEntry,
    Label,
    Message,
    MessageDelta,
    SyncCursor,
    SyncFailure,
    SyncPartialSuccess,
    SyncResult,
    SyncStatus,
    SyncSuccess,
)
from gmail_mirror.storage.repository import MailRepository
from gmail_mirror.sync.deltas import apply_label_delta, fold_history
from gmail_mirror.sync.eviction import evict_excess
from gmail_mirror.sync.lock import SyncLock
from gmail_mirror.sync.threads import rederive_conversations

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors that end the run instead of being recorded against one message
_FATAL_ERRORS = (AuthenticationError, QuotaExceededError)


class SyncStrategy(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


@dataclass
class _RunStats:
    added: int = 0
    updated: int = 0
    deleted: int = 0
    errors: list[str] = field(default_factory=list)

    def result(self) -> SyncResult:
        if self.errors:
            return SyncPartialSuccess(
                succeeded=self.added + self.updated + self.deleted,
                failed=len(self.errors),
                errors=tuple(self.errors),
            )
        return SyncSuccess(added=self.added, updated=self.updated, deleted=self.deleted)


class SyncEngine:
    """Synchronises one account's local replica with Gmail.

    The run is a small state machine. It starts with a full sync when the
    cursor has no history position, otherwise with an incremental sync; an
    expired history position drops back to a full sync once. Both strategies
    end with eviction and conversation derivation committed in the same
    batch as the cursor.

    Repository work runs in worker threads and a write batch never awaits
    the network, so a failed batch is rolled back as a whole.
    """

    def __init__(
        self,
        account: Account,
        client: GmailClient,
        repository: MailRepository,
        lock: SyncLock,
        *,
        max_messages: int = 1000,
        page_size: int = 100,
        max_failure_attempts: int = 3,
    ) -> None:
        self._account = account
        self._client = client
        self._repo = repository
        self._lock = lock
        self._max_messages = max_messages
        self._page_size = page_size
        self._max_failure_attempts = max_failure_attempts

    @property
    def account_id(self) -> str:
        return self._account.account_id

    async def sync(self) -> SyncResult:
        """Run one sync cycle for the account.

        Returns:
            SyncSuccess, SyncPartialSuccess when some messages failed, or
            SyncFailure when the run was aborted. A busy account yields
            SyncFailure(SyncInProgressError).
        """
        try:
            with self._lock.held(self.account_id):
                return await self._run()
        except SyncInProgressError as e:
            logger.info("Sync already running for %s, not starting another", self.account_id)
            return SyncFailure(e)

    async def _run(self) -> SyncResult:
        stats = _RunStats()
        cursor: SyncCursor | None = None
        try:
            cursor = await self._db(self._repo.load_cursor, self.account_id)
            cursor.status = SyncStatus.RUNNING
            cursor.error_message = None
            await self._db(self._save_cursor, cursor)

            start = cursor.history_id
            while True:
                strategy = SyncStrategy.FULL if start is None else SyncStrategy.INCREMENTAL
                logger.info("Starting %s sync for %s", strategy.value, self.account_id)
                try:
                    if start is None:
                        await self._full_sync(cursor, stats)
                    else:
                        await self._incremental_sync(cursor, start, stats)
                    break
                except HistoryExpiredError:
                    if start is None:
                        raise
                    logger.warning(
                        "History position %s expired for %s, falling back to full sync",
                        start, self.account_id,
                    )
                    cursor.history_id = start = None
                    await self._db(self._save_cursor, cursor)

        except GmailMirrorError as e:
            logger.error("Sync failed for %s: %s", self.account_id, e)
            if cursor is not None:
                await self._record_run_error(cursor, e)
            return SyncFailure(e)

        result = stats.result()
        logger.info("Sync finished for %s: %s", self.account_id, result)
        return result

    async def _full_sync(self, cursor: SyncCursor, stats: _RunStats) -> None:
        await self._sync_labels()

        # Captured before paging so changes made meanwhile replay on the next run
        position = await self._client.current_history_position(self.account_id)
        skipped = self._permanently_failed(cursor)

        listed = 0
        page_token: str | None = None
        while listed < self._max_messages:
            remaining = self._max_messages - listed
            stubs, page_token = await self._client.list_messages(
                self.account_id, page_token, max_results=min(self._page_size, remaining)
            )
            stubs = stubs[:remaining]
            listed += len(stubs)

            ids = [s.message_id for s in stubs if s.message_id not in skipped]
            if ids:
                messages, errors = await self._client.get_messages_batch(self.account_id, ids)
                self._raise_fatal(errors)
                await self._db(self._store_page, messages, errors, stats)
                logger.info(
                    "Full sync page for %s: %d stored, %d failed (%d listed so far)",
                    self.account_id, len(messages), len(errors), listed,
                )

            if not page_token:
                break

        await self._db(self._finish_full_sync, cursor, position)

    async def _incremental_sync(self, cursor: SyncCursor, start: int, stats: _RunStats) -> None:
        await self._sync_labels()

        entries: list[HistoryEntry] = []
        newest = start
        page_token: str | None = None
        while True:
            page = await self._client.history(self.account_id, start, page_token=page_token)
            entries.extend(page.entries)
            newest = max(newest, page.history_id)
            page_token = page.next_page_token
            if not page_token:
                break

        deltas = fold_history(entries)
        skipped = self._permanently_failed(cursor)

        # Earlier failures that still have attempts left are fetched again
        for message_id in cursor.failures:
            if message_id not in skipped and message_id not in deltas:
                deltas[message_id] = MessageDelta(message_id=message_id, needs_full_fetch=True)

        fetch_ids = [
            mid for mid, delta in deltas.items()
            if delta.needs_full_fetch and not delta.is_deleted and mid not in skipped
        ]
        messages: list[Message] = []
        errors: dict[str, GmailMirrorError] = {}
        if fetch_ids:
            messages, errors = await self._client.get_messages_batch(self.account_id, fetch_ids)
            self._raise_fatal(errors)

        logger.info(
            "Incremental sync for %s: %d history entries, %d messages changed, %d fetched",
            self.account_id, len(entries), len(deltas), len(messages),
        )
        await self._db(
            self._apply_deltas, cursor, deltas, messages, errors, skipped, newest, stats
        )

    def _replace_labels(self, labels: Sequence[Label]) -> None:
        with self._repo.transaction():
            self._repo.replace_labels(self.account_id, labels)

    def _save_cursor(self, cursor: SyncCursor) -> None:
        with self._repo.transaction():
            self._repo.save_cursor(cursor)

    def _store_page(
        self,
        messages: Sequence[Message],
        errors: dict[str, GmailMirrorError],
        stats: _RunStats,
    ) -> None:
        added = updated = 0
        failed: list[str] = []
        with self._repo.transaction():
            for message in messages:
                if self._repo.upsert_message(message):
                    added += 1
                else:
                    updated += 1
                self._repo.clear_failure(self.account_id, message.message_id)

            for message_id, error in errors.items():
                if isinstance(error, NotFoundError):
                    # Deleted between listing and fetching
                    continue
                failed.append(self._record_failure(message_id, "fetch", error))

            # Each page leaves the store within the cap with its conversations current
            _, evicted_threads = evict_excess(self._repo, self.account_id, self._max_messages)
            touched = {m.thread_id for m in messages} | evicted_threads
            rederive_conversations(self._repo, self.account_id, touched)

        stats.added += added
        stats.updated += updated
        stats.errors.extend(failed)

    def _finish_full_sync(self, cursor: SyncCursor, position: int) -> None:
        now = datetime.now(UTC)
        pending = replace(cursor)
        with self._repo.transaction():
            pending.advance_history(position)
            pending.last_full_sync_at = now
            self._finalize(pending, thread_ids=None, now=now)
        self._adopt(cursor, pending)

    def _apply_deltas(
        self,
        cursor: SyncCursor,
        deltas: dict[str, MessageDelta],
        messages: Sequence[Message],
        errors: dict[str, GmailMirrorError],
        skipped: set[str],
        newest: int,
        stats: _RunStats,
    ) -> None:
        fetched = {m.message_id: m for m in messages}
        touched: set[str] = set()
        added = updated = deleted = 0
        failed: list[str] = []
        now = datetime.now(UTC)
        pending = replace(cursor)

        with self._repo.transaction():
            for message_id, delta in deltas.items():
                if delta.is_deleted:
                    deleted += self._delete_local(message_id, touched)
                    continue

                if message_id in skipped:
                    continue

                if delta.needs_full_fetch:
                    message = fetched.get(message_id)
                    if message is not None:
                        if self._repo.upsert_message(message):
                            added += 1
                        else:
                            updated += 1
                        self._repo.clear_failure(self.account_id, message_id)
                        touched.add(message.thread_id)
                        continue

                    error = errors.get(message_id)
                    if isinstance(error, NotFoundError):
                        # Gone on the server before we could fetch it
                        deleted += self._delete_local(message_id, touched)
                        continue

                    error = error or MalformedResponseError("Not returned in batch response")
                    failed.append(self._record_failure(message_id, "fetch", error))
                    continue

                if delta.has_label_changes:
                    existing = self._repo.get_message(self.account_id, message_id)
                    if existing is None:
                        # Not part of the local window
                        continue
                    labels = apply_label_delta(existing.label_ids, delta)
                    self._repo.set_message_labels(self.account_id, message_id, labels)
                    touched.add(existing.thread_id)
                    updated += 1

            pending.advance_history(newest)
            pending.last_incremental_sync_at = now
            self._finalize(pending, thread_ids=touched, now=now)

        self._adopt(cursor, pending)
        stats.added += added
        stats.updated += updated
        stats.deleted += deleted
        stats.errors.extend(failed)

    def _finalize(self, cursor: SyncCursor, thread_ids: set[str] | None, now: datetime) -> None:
        """Eviction, derivation and cursor write; shared tail of both strategies."""
        _, evicted_threads = evict_excess(self._repo, self.account_id, self._max_messages)
        if thread_ids is not None:
            thread_ids = thread_ids | evicted_threads
        rederive_conversations(self._repo, self.account_id, thread_ids)

        cursor.status = SyncStatus.COMPLETED
        cursor.error_message = None
        cursor.message_count = self._repo.count_messages(self.account_id)
        self._repo.save_cursor(cursor)
        self._repo.update_account_last_sync(self.account_id, now)

    @staticmethod
    def _adopt(cursor: SyncCursor, committed: SyncCursor) -> None:
        """Copy a committed cursor back; the original stays untouched if the batch fails."""
        cursor.history_id = committed.history_id
        cursor.last_full_sync_at = committed.last_full_sync_at
        cursor.last_incremental_sync_at = committed.last_incremental_sync_at
        cursor.status = committed.status
        cursor.error_message = committed.error_message
        cursor.message_count = committed.message_count

    def _delete_local(self, message_id: str, touched: set[str]) -> int:
        self._repo.clear_failure(self.account_id, message_id)
        thread_id = self._repo.delete_message(self.account_id, message_id)
        if thread_id is None:
            return 0
        touched.add(thread_id)
        return 1

    def _record_failure(self, message_id: str, operation: str, error: GmailMirrorError) -> str:
        failure = self._repo.record_failure(self.account_id, message_id, operation, str(error))
        if failure.attempts >= self._max_failure_attempts:
            logger.warning(
                "Message %s failed %d times, skipping it from now on: %s",
                message_id, failure.attempts, error,
            )
        else:
            logger.warning(
                "Failed to %s message %s (attempt %d): %s",
                operation, message_id, failure.attempts, error,
            )
        return f"{message_id}: {error}"

    async def _sync_labels(self) -> None:
        labels = await self._client.list_labels(self.account_id)
        await self._db(self._replace_labels, labels)
        logger.debug("Replaced %d labels for %s", len(labels), self.account_id)

    def _permanently_failed(self, cursor: SyncCursor) -> set[str]:
        return {
            mid for mid, failure in cursor.failures.items()
            if failure.attempts >= self._max_failure_attempts
        }

    @staticmethod
    def _raise_fatal(errors: dict[str, GmailMirrorError]) -> None:
        for error in errors.values():
            if isinstance(error, _FATAL_ERRORS):
                raise error

    async def _record_run_error(self, cursor: SyncCursor, error: GmailMirrorError) -> None:
        cursor.status = SyncStatus.ERROR
        cursor.error_message = str(error)
        try:
            await self._db(self._save_cursor, cursor)
        except StorageError as e:
            logger.error("Could not persist error state for %s: %s", self.account_id, e)

    @staticmethod
    async def _db(fn: Callable[..., T], *args: Any) -> T:
        """Run a repository call in a worker thread.

        On cancellation the batch already in the thread is allowed to commit
        or roll back before the cancellation propagates.
        """
        work = asyncio.ensure_future(asyncio.to_thread(fn, *args))
        try:
            return await asyncio.shield(work)
        except asyncio.CancelledError:
            await asyncio.wait({work})
            raise
        except sqlite3.Error as e:
            raise StorageError(f"Database operation failed: {e}") from e
