"""Periodic sync loop on top of the coordinator."""

from __future__ import annotations

import asyncio
import logging

from gmail_mirror.core.exceptions import GmailMirrorError
from gmail_mirror.core.models import SyncFailure, SyncPartialSuccess, SyncResult
from gmail_mirror.sync.coordinator import SyncCoordinator

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs `SyncCoordinator.sync_all()` every `interval` seconds.

    The loop sleeps first, then syncs. `set_interval` wakes a sleeping loop
    so the new interval applies immediately; `trigger_now` runs a cycle
    without touching the timer.
    """

    def __init__(
        self,
        coordinator: SyncCoordinator,
        interval: float = 300.0,
        *,
        run_immediately: bool = False,
    ) -> None:
        self._check_interval(interval)
        self._coordinator = coordinator
        self._interval = interval
        self._run_immediately = run_immediately
        self._task: asyncio.Task[None] | None = None
        self._wake = asyncio.Event()
        self.cycles = 0
        self.last_results: dict[str, SyncResult] = {}

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, interval: float | None = None) -> None:
        """Start the loop. Starting a running scheduler only updates the interval."""
        if interval is not None:
            self.set_interval(interval)
        if self.is_running:
            return
        self._wake.clear()
        self._task = asyncio.create_task(self._loop(), name="gmail-mirror-scheduler")
        logger.info("Scheduler started, syncing every %.0fs", self._interval)

    async def stop(self) -> None:
        """Cancel the loop, including a cycle in progress, and wait for it to end."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Scheduler stopped after %d cycles", self.cycles)

    def set_interval(self, interval: float) -> None:
        self._check_interval(interval)
        self._interval = interval
        self._wake.set()
        logger.debug("Sync interval set to %.0fs", interval)

    async def trigger_now(self) -> dict[str, SyncResult]:
        """Run one sync cycle right away."""
        logger.info("Manual sync triggered")
        return await self._run_cycle()

    async def _loop(self) -> None:
        if self._run_immediately:
            await self._run_cycle()
        while True:
            if await self._sleep():
                continue
            await self._run_cycle()

    async def _sleep(self) -> bool:
        """Wait one interval. Returns True if woken early by set_interval."""
        self._wake.clear()
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=self._interval)
        except TimeoutError:
            return False
        return True

    async def _run_cycle(self) -> dict[str, SyncResult]:
        try:
            results = await self._coordinator.sync_all()
        except GmailMirrorError as e:
            logger.error("Sync cycle failed: %s", e)
            return {}

        self.cycles += 1
        self.last_results = results
        failed = sum(isinstance(r, SyncFailure) for r in results.values())
        partial = sum(isinstance(r, SyncPartialSuccess) for r in results.values())
        logger.info(
            "Sync cycle %d done: %d accounts, %d failed, %d with warnings",
            self.cycles, len(results), failed, partial,
        )
        return results

    @staticmethod
    def _check_interval(interval: float) -> None:
        if interval <= 0:
            raise ValueError(f"Sync interval must be positive, got {interval}")
