"""Tests for SyncCoordinator: fan-out, progress and lock policies."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from gmail_mirror.core.exceptions import (
    AuthenticationError,
    SyncCancelledError,
    SyncInProgressError,
)
from gmail_mirror.core.models import (
    Account,
    ProgressStatus,
    SyncFailure,
    SyncPartialSuccess,
    SyncResult,
    SyncSuccess,
)
from gmail_mirror.storage.repository import MailRepository
from gmail_mirror.sync.coordinator import LockPolicy, SyncCoordinator, describe_result
from tests.factories import ACCOUNT_ID


class ScriptedEngines:
    """Engine factory whose runs return queued results and can be held open."""

    def __init__(self) -> None:
        self.results: dict[str, list[SyncResult]] = {}
        self.hold = False
        self.release = asyncio.Event()
        self.started: list[str] = []
        self.options: list[dict[str, Any]] = []
        self.active = 0
        self.peak = 0

    def __call__(self, account: Account, client: Any, repository: MailRepository,
                 lock: Any, **options: Any) -> _ScriptedEngine:
        self.options.append(options)
        return _ScriptedEngine(self, account.account_id, self.hold)


class _ScriptedEngine:
    def __init__(self, script: ScriptedEngines, account_id: str, hold: bool) -> None:
        self._script = script
        self._account_id = account_id
        self._hold = hold

    async def sync(self) -> SyncResult:
        script = self._script
        script.started.append(self._account_id)
        script.active += 1
        script.peak = max(script.peak, script.active)
        try:
            if self._hold:
                await script.release.wait()
            else:
                await asyncio.sleep(0)
            queued = script.results.get(self._account_id)
            return queued.pop(0) if queued else SyncSuccess()
        finally:
            script.active -= 1


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


@pytest.fixture
def engines() -> ScriptedEngines:
    return ScriptedEngines()


@pytest.fixture
def make_coordinator(
    tmp_db_path: Path, repository: MailRepository, engines: ScriptedEngines
) -> Callable[..., SyncCoordinator]:
    def _make(**kwargs: Any) -> SyncCoordinator:
        return SyncCoordinator(
            MagicMock(),
            lambda: MailRepository(tmp_db_path),
            engine_factory=engines,
            **kwargs,
        )
    return _make


class TestDescribeResult:
    def test_success(self) -> None:
        assert describe_result(SyncSuccess(added=2, deleted=1)) == "2 new, 1 deleted"

    def test_nothing_changed(self) -> None:
        assert describe_result(SyncSuccess()) == "Up to date"

    def test_partial(self) -> None:
        assert describe_result(SyncPartialSuccess(3, 2)) == "Completed with 2 errors"

    def test_failure(self) -> None:
        assert describe_result(SyncFailure(AuthenticationError("token revoked"))) == "token revoked"


class TestSyncAll:
    async def test_reads_enabled_accounts(
        self, make_coordinator: Callable[..., SyncCoordinator], repository: MailRepository,
        engines: ScriptedEngines,
    ) -> None:
        repository.add_account("bob", "bob@example.com")
        repository.add_account("carol", "carol@example.com")
        repository.set_account_enabled("carol", False)
        coordinator = make_coordinator()

        results = await coordinator.sync_all()

        assert set(results) == {ACCOUNT_ID, "bob"}
        assert sorted(engines.started) == sorted([ACCOUNT_ID, "bob"])
        assert coordinator.last_sync_at is not None

    async def test_explicit_accounts_skip_disabled(
        self, make_coordinator: Callable[..., SyncCoordinator], account: Account
    ) -> None:
        disabled = Account("bob", "bob@example.com", is_enabled=False)

        results = await make_coordinator().sync_all([account, disabled])

        assert list(results) == [ACCOUNT_ID]

    async def test_engine_options_forwarded(
        self, make_coordinator: Callable[..., SyncCoordinator], account: Account,
        engines: ScriptedEngines,
    ) -> None:
        coordinator = make_coordinator(max_messages=50, page_size=10, max_failure_attempts=2)

        await coordinator.sync_one(account)

        assert engines.options == [
            {"max_messages": 50, "page_size": 10, "max_failure_attempts": 2}
        ]

    async def test_concurrency_is_bounded(
        self, make_coordinator: Callable[..., SyncCoordinator], engines: ScriptedEngines
    ) -> None:
        accounts = [Account(f"user{i}", f"user{i}@example.com") for i in range(4)]
        coordinator = make_coordinator(max_concurrent_accounts=2)
        engines.hold = True

        task = asyncio.create_task(coordinator.sync_all(accounts))
        await wait_until(lambda: len(engines.started) == 2)
        await asyncio.sleep(0.05)
        assert len(engines.started) == 2

        engines.release.set()
        results = await task

        assert len(results) == 4
        assert engines.peak == 2


class TestProgress:
    async def test_statuses_follow_results(
        self, make_coordinator: Callable[..., SyncCoordinator], engines: ScriptedEngines
    ) -> None:
        accounts = [Account(name, f"{name}@example.com") for name in ("ok", "warn", "bad")]
        engines.results = {
            "ok": [SyncSuccess(added=2, updated=1)],
            "warn": [SyncPartialSuccess(succeeded=4, failed=1, errors=("m1: boom",))],
            "bad": [SyncFailure(AuthenticationError("token revoked"))],
        }
        coordinator = make_coordinator()

        await coordinator.sync_all(accounts)

        progress = coordinator.progress
        assert progress["ok"].status is ProgressStatus.COMPLETED
        assert progress["ok"].message == "2 new, 1 updated"
        assert progress["warn"].status is ProgressStatus.COMPLETED_WITH_WARNINGS
        assert progress["warn"].message == "Completed with 1 errors"
        assert progress["bad"].status is ProgressStatus.ERROR
        assert progress["bad"].message == "token revoked"

    async def test_syncing_while_running(
        self, make_coordinator: Callable[..., SyncCoordinator], account: Account,
        engines: ScriptedEngines,
    ) -> None:
        coordinator = make_coordinator()
        engines.hold = True

        task = asyncio.create_task(coordinator.sync_one(account))
        await wait_until(lambda: bool(engines.started))

        assert coordinator.is_syncing
        assert coordinator.get_progress(ACCOUNT_ID).status is ProgressStatus.SYNCING

        engines.release.set()
        await task
        assert not coordinator.is_syncing

    async def test_unknown_account_is_idle(
        self, make_coordinator: Callable[..., SyncCoordinator]
    ) -> None:
        assert make_coordinator().get_progress("nobody").status is ProgressStatus.IDLE

    async def test_unexpected_engine_error_becomes_failure(
        self, make_coordinator: Callable[..., SyncCoordinator], account: Account,
        engines: ScriptedEngines,
    ) -> None:
        def broken(*args: Any, **kwargs: Any) -> Any:
            raise KeyError("boom")

        coordinator = make_coordinator()
        coordinator._engine_factory = broken

        result = await coordinator.sync_one(account)

        assert isinstance(result, SyncFailure)
        assert isinstance(result.error, KeyError)
        assert coordinator.get_progress(ACCOUNT_ID).status is ProgressStatus.ERROR


class TestLockPolicies:
    async def test_skip_returns_in_progress(
        self, make_coordinator: Callable[..., SyncCoordinator], account: Account,
        engines: ScriptedEngines,
    ) -> None:
        coordinator = make_coordinator(lock_policy=LockPolicy.SKIP)
        engines.hold = True
        first = asyncio.create_task(coordinator.sync_one(account))
        await wait_until(lambda: bool(engines.started))

        second = await coordinator.sync_one(account)

        assert isinstance(second, SyncFailure)
        assert isinstance(second.error, SyncInProgressError)
        assert coordinator.get_progress(ACCOUNT_ID).status is ProgressStatus.SYNCING

        engines.release.set()
        assert await first == SyncSuccess()
        assert engines.started == [ACCOUNT_ID]

    async def test_cancel_prior_restarts(
        self, make_coordinator: Callable[..., SyncCoordinator], account: Account,
        engines: ScriptedEngines,
    ) -> None:
        coordinator = make_coordinator(lock_policy=LockPolicy.CANCEL_PRIOR)
        engines.hold = True
        engines.results[ACCOUNT_ID] = [SyncSuccess(added=7)]
        first = asyncio.create_task(coordinator.sync_one(account))
        await wait_until(lambda: bool(engines.started))
        engines.hold = False

        second = await coordinator.sync_one(account)
        first_result = await first

        assert isinstance(first_result, SyncFailure)
        assert isinstance(first_result.error, SyncCancelledError)
        assert second == SyncSuccess(added=7)
        assert engines.started == [ACCOUNT_ID, ACCOUNT_ID]
        assert coordinator.get_progress(ACCOUNT_ID).status is ProgressStatus.COMPLETED

    async def test_cancel_prior_concurrent_requests_share_one_restart(
        self, make_coordinator: Callable[..., SyncCoordinator], account: Account,
        engines: ScriptedEngines,
    ) -> None:
        coordinator = make_coordinator(lock_policy=LockPolicy.CANCEL_PRIOR)
        engines.hold = True
        engines.results[ACCOUNT_ID] = [SyncSuccess(added=3)]
        first = asyncio.create_task(coordinator.sync_one(account))
        await wait_until(lambda: bool(engines.started))
        engines.hold = False

        second, third = await asyncio.gather(
            coordinator.sync_one(account), coordinator.sync_one(account)
        )
        first_result = await first

        assert isinstance(first_result, SyncFailure)
        assert isinstance(first_result.error, SyncCancelledError)
        assert second == third == SyncSuccess(added=3)
        assert engines.started == [ACCOUNT_ID, ACCOUNT_ID]
        assert engines.peak == 1

    async def test_enqueue_runs_once_after_current(
        self, make_coordinator: Callable[..., SyncCoordinator], account: Account,
        engines: ScriptedEngines,
    ) -> None:
        coordinator = make_coordinator(lock_policy=LockPolicy.ENQUEUE)
        engines.hold = True
        engines.results[ACCOUNT_ID] = [SyncSuccess(added=1), SyncSuccess(added=2)]
        first = asyncio.create_task(coordinator.sync_one(account))
        await wait_until(lambda: bool(engines.started))
        engines.hold = False

        second = asyncio.create_task(coordinator.sync_one(account))
        third = asyncio.create_task(coordinator.sync_one(account))
        await asyncio.sleep(0.05)
        assert engines.started == [ACCOUNT_ID]

        engines.release.set()

        assert await first == SyncSuccess(added=1)
        assert await second == SyncSuccess(added=2)
        assert await third == SyncSuccess(added=2)
        assert engines.started == [ACCOUNT_ID, ACCOUNT_ID]


class TestCancel:
    async def test_cancel_running_sync(
        self, make_coordinator: Callable[..., SyncCoordinator], account: Account,
        engines: ScriptedEngines,
    ) -> None:
        coordinator = make_coordinator()
        engines.hold = True
        task = asyncio.create_task(coordinator.sync_one(account))
        await wait_until(lambda: bool(engines.started))

        assert coordinator.cancel(ACCOUNT_ID) is True
        result = await task

        assert isinstance(result, SyncFailure)
        assert isinstance(result.error, SyncCancelledError)
        progress = coordinator.get_progress(ACCOUNT_ID)
        assert progress.status is ProgressStatus.IDLE
        assert progress.message == "Cancelled"
        assert coordinator.cancel(ACCOUNT_ID) is False

    async def test_cancel_resolves_queued_waiters(
        self, make_coordinator: Callable[..., SyncCoordinator], account: Account,
        engines: ScriptedEngines,
    ) -> None:
        coordinator = make_coordinator(lock_policy=LockPolicy.ENQUEUE)
        engines.hold = True
        first = asyncio.create_task(coordinator.sync_one(account))
        await wait_until(lambda: bool(engines.started))
        queued = asyncio.create_task(coordinator.sync_one(account))
        await asyncio.sleep(0.05)

        coordinator.cancel_all()

        for task in (first, queued):
            result = await task
            assert isinstance(result, SyncFailure)
            assert isinstance(result.error, SyncCancelledError)
        assert engines.started == [ACCOUNT_ID]

    async def test_caller_cancellation_propagates(
        self, make_coordinator: Callable[..., SyncCoordinator], account: Account,
        engines: ScriptedEngines,
    ) -> None:
        coordinator = make_coordinator()
        engines.hold = True
        task = asyncio.create_task(coordinator.sync_one(account))
        await wait_until(lambda: bool(engines.started))

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await wait_until(lambda: not coordinator.is_syncing)
        assert coordinator.get_progress(ACCOUNT_ID).message == "Cancelled"
