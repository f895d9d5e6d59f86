"""Per-account mutual exclusion for sync runs."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from gmail_mirror.core.exceptions import SyncInProgressError

logger = logging.getLogger(__name__)


class SyncLock:
    """Set of account ids that currently have a sync running.

    The check-and-insert in `try_acquire` is atomic, so two callers can
    never both hold the same account.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._held: set[str] = set()

    def try_acquire(self, account_id: str) -> bool:
        """Mark the account as syncing. Returns False if it already is."""
        with self._guard:
            if account_id in self._held:
                return False
            self._held.add(account_id)
        logger.debug("Acquired sync lock for %s", account_id)
        return True

    def release(self, account_id: str) -> None:
        """Release the account. Releasing a free account is a no-op."""
        with self._guard:
            self._held.discard(account_id)
        logger.debug("Released sync lock for %s", account_id)

    @contextmanager
    def held(self, account_id: str) -> Iterator[None]:
        """Hold the account for the duration of the block.

        Raises:
            SyncInProgressError: If the account is already held.
        """
        if not self.try_acquire(account_id):
            raise SyncInProgressError(f"Sync already in progress for {account_id}")
        try:
            yield
        finally:
            self.release(account_id)
