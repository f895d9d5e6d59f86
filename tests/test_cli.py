"""Tests for the command-line interface."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

import scripts.cli as cli
from gmail_mirror.config.settings import GmailMirrorSettings
from gmail_mirror.core.exceptions import AuthenticationError
from gmail_mirror.core.models import (
    SyncCursor,
    SyncFailure,
    SyncPartialSuccess,
    SyncStatus,
    SyncSuccess,
)
from gmail_mirror.storage.repository import MailRepository
from tests.factories import ACCOUNT_ID, make_message


@pytest.fixture
def settings(tmp_path: Path) -> GmailMirrorSettings:
    return GmailMirrorSettings(
        credentials_path=tmp_path / "credentials" / "client_secret.json",
        token_dir=tmp_path / "credentials" / "tokens",
        database_path=tmp_path / "data" / "mirror.db",
    )


@pytest.fixture(autouse=True)
def patched_settings(settings: GmailMirrorSettings) -> Iterator[None]:
    with patch("scripts.cli.GmailMirrorSettings", return_value=settings), \
         patch("scripts.cli.setup_logging"):
        yield


@pytest.fixture
def store(settings: GmailMirrorSettings) -> Iterator[MailRepository]:
    settings.ensure_directories()
    with MailRepository(settings.database_path) as repo:
        repo.add_account(ACCOUNT_ID, ACCOUNT_ID)
        yield repo


class TestParser:
    def test_sync_account_flag(self) -> None:
        args = cli.build_parser().parse_args(["sync", "-a", ACCOUNT_ID])
        assert args.command == "sync"
        assert args.account == ACCOUNT_ID

    def test_messages_defaults(self) -> None:
        args = cli.build_parser().parse_args(["messages", "--account", ACCOUNT_ID])
        assert args.limit == 20
        assert args.unread is False
        assert args.query is None

    def test_run_interval(self) -> None:
        args = cli.build_parser().parse_args(["run", "--interval", "60"])
        assert args.interval == 60.0

    @pytest.mark.parametrize(
        "argv",
        [
            ["run", "--interval", "0"],
            ["messages", "--account", ACCOUNT_ID, "--limit", "-1"],
            ["retry-failed"],
            ["labels"],
        ],
    )
    def test_invalid_args_exit(self, argv: list[str]) -> None:
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(argv)


class TestAccountCommands:
    def test_no_command_prints_help(self) -> None:
        with pytest.raises(SystemExit) as exc:
            cli.main([])
        assert exc.value.code == 1

    def test_list_accounts(self, store: MailRepository, capsys: pytest.CaptureFixture[str]) -> None:
        cli.main(["accounts"])

        out = capsys.readouterr().out
        assert "Found 1 accounts" in out
        assert ACCOUNT_ID in out

    def test_disable_and_enable(self, store: MailRepository) -> None:
        cli.main(["disable", ACCOUNT_ID])
        account = store.get_account(ACCOUNT_ID)
        assert account is not None and not account.is_enabled

        cli.main(["enable", ACCOUNT_ID])
        account = store.get_account(ACCOUNT_ID)
        assert account is not None and account.is_enabled

    def test_remove_account(self, store: MailRepository, capsys: pytest.CaptureFixture[str]) -> None:
        cli.main(["remove-account", ACCOUNT_ID])

        assert store.get_account(ACCOUNT_ID) is None
        assert f"Removed {ACCOUNT_ID}" in capsys.readouterr().out

    @patch("scripts.cli.build_gmail_service")
    @patch("scripts.cli.authenticate")
    def test_add_account(
        self,
        mock_auth: MagicMock,
        mock_build: MagicMock,
        settings: GmailMirrorSettings,
    ) -> None:
        service = mock_build.return_value
        service.users().getProfile().execute.return_value = {"emailAddress": ACCOUNT_ID}

        cli.main(["add-account", ACCOUNT_ID])

        mock_auth.assert_called_once_with(
            settings.credentials_path, settings.token_dir / f"{ACCOUNT_ID}.json"
        )
        with MailRepository(settings.database_path) as repo:
            account = repo.get_account(ACCOUNT_ID)
        assert account is not None and account.email == ACCOUNT_ID

    @patch("scripts.cli.authenticate", side_effect=AuthenticationError("no credentials"))
    def test_errors_exit_nonzero(
        self, mock_auth: MagicMock, capsys: pytest.CaptureFixture[str]
    ) -> None:
        with pytest.raises(SystemExit) as exc:
            cli.main(["add-account", ACCOUNT_ID])

        assert exc.value.code == 1
        assert "Error: no credentials" in capsys.readouterr().err


class TestSyncCommands:
    @patch("scripts.cli.build_coordinator")
    def test_sync_all(
        self, mock_build: MagicMock, store: MailRepository, capsys: pytest.CaptureFixture[str]
    ) -> None:
        mock_build.return_value.sync_all = AsyncMock(return_value={
            ACCOUNT_ID: SyncSuccess(added=3),
            "bob@example.com": SyncPartialSuccess(succeeded=1, failed=2),
        })

        cli.main(["sync"])

        mock_build.return_value.sync_all.assert_awaited_once_with(None)
        out = capsys.readouterr().out
        assert "3 new" in out
        assert "Completed with 2 errors" in out

    @patch("scripts.cli.build_coordinator")
    def test_sync_one_account(self, mock_build: MagicMock, store: MailRepository) -> None:
        mock_build.return_value.sync_all = AsyncMock(return_value={
            ACCOUNT_ID: SyncFailure(AuthenticationError("token revoked")),
        })

        cli.main(["sync", "--account", ACCOUNT_ID])

        (accounts,), _ = mock_build.return_value.sync_all.await_args
        assert [a.account_id for a in accounts] == [ACCOUNT_ID]

    @patch("scripts.cli.build_coordinator")
    def test_sync_unknown_account(self, mock_build: MagicMock, store: MailRepository) -> None:
        with pytest.raises(SystemExit) as exc:
            cli.main(["sync", "--account", "nobody@example.com"])

        assert exc.value.code == 1
        mock_build.return_value.sync_all.assert_not_called()

    def test_build_coordinator_uses_settings(self, settings: GmailMirrorSettings) -> None:
        settings.lock_policy = "enqueue"
        coordinator = cli.build_coordinator(settings)
        assert coordinator._lock_policy.value == "enqueue"
        assert coordinator._engine_options["max_messages"] == settings.max_messages_per_account

    def test_status(self, store: MailRepository, capsys: pytest.CaptureFixture[str]) -> None:
        store.save_cursor(SyncCursor(
            account_id=ACCOUNT_ID,
            history_id=10,
            status=SyncStatus.ERROR,
            error_message="token revoked",
        ))
        store.record_failure(ACCOUNT_ID, "m1", "fetch", "boom")
        store.commit()

        cli.main(["status"])

        out = capsys.readouterr().out
        assert "status=error" in out
        assert "failures=1" in out
        assert "last error: token revoked" in out

    def test_retry_failed(self, store: MailRepository, capsys: pytest.CaptureFixture[str]) -> None:
        store.record_failure(ACCOUNT_ID, "m1", "fetch", "boom")
        store.commit()

        cli.main(["retry-failed", "--account", ACCOUNT_ID])

        assert store.load_failures(ACCOUNT_ID) == {}
        assert "Cleared 1 failed messages" in capsys.readouterr().out


class TestMailboxCommands:
    def test_messages_unread(self, store: MailRepository, capsys: pytest.CaptureFixture[str]) -> None:
        store.upsert_message(make_message("m1", subject="Read one"))
        store.upsert_message(make_message("m2", subject="Unread one", label_ids=("INBOX", "UNREAD")))
        store.commit()

        cli.main(["messages", "--account", ACCOUNT_ID, "--unread"])

        out = capsys.readouterr().out
        assert "1 messages (1 unread in store)" in out
        assert "Unread one" in out
        assert "Read one" not in out

    def test_messages_query(self, store: MailRepository, capsys: pytest.CaptureFixture[str]) -> None:
        store.upsert_message(make_message("m1", subject="Invoice March"))
        store.upsert_message(make_message("m2", subject="Lunch"))
        store.commit()

        cli.main(["messages", "--account", ACCOUNT_ID, "-q", "invoice"])

        out = capsys.readouterr().out
        assert "Invoice March" in out
        assert "Lunch" not in out
