"""Tests for GmailMirrorSettings."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from gmail_mirror.config.settings import GmailMirrorSettings


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    # Keep a developer's .env out of the picture
    monkeypatch.chdir(tmp_path)


class TestDefaults:
    def test_sync_limits(self) -> None:
        settings = GmailMirrorSettings()
        assert settings.max_messages_per_account == 1000
        assert settings.max_failure_attempts == 3
        assert settings.sync_interval_seconds == 300.0
        assert settings.lock_policy == "skip"

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GMAIL_MIRROR_MAX_MESSAGES_PER_ACCOUNT", "250")
        monkeypatch.setenv("GMAIL_MIRROR_DATABASE_PATH", "/var/lib/mirror.db")

        settings = GmailMirrorSettings()

        assert settings.max_messages_per_account == 250
        assert settings.database_path == Path("/var/lib/mirror.db")

    def test_env_file(self, tmp_path: Path) -> None:
        (tmp_path / ".env").write_text("GMAIL_MIRROR_PAGE_SIZE=25\n")
        assert GmailMirrorSettings().page_size == 25


class TestValidation:
    @pytest.mark.parametrize(
        "field, value",
        [
            ("max_messages_per_account", 0),
            ("page_size", 501),
            ("batch_size", 101),
            ("sync_interval_seconds", 0),
            ("max_retries", -1),
        ],
    )
    def test_rejects_out_of_range(self, field: str, value: float) -> None:
        with pytest.raises(ValidationError):
            GmailMirrorSettings(**{field: value})


class TestEnsureDirectories:
    def test_creates_parents(self, tmp_path: Path) -> None:
        settings = GmailMirrorSettings(
            credentials_path=tmp_path / "creds" / "client_secret.json",
            token_dir=tmp_path / "creds" / "tokens",
            database_path=tmp_path / "data" / "mirror.db",
        )

        settings.ensure_directories()

        assert (tmp_path / "creds" / "tokens").is_dir()
        assert (tmp_path / "data").is_dir()
