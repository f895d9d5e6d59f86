"""Shared fixtures for Gmail Mirror tests."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from gmail_mirror.core.models import Account
from gmail_mirror.storage.repository import MailRepository
from tests.factories import ACCOUNT_ID


@pytest.fixture
def account() -> Account:
    return Account(account_id=ACCOUNT_ID, email=ACCOUNT_ID)


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> Path:
    """Temporary database path for tests."""
    return tmp_path / "test.db"


@pytest.fixture
def repository(tmp_db_path: Path, account: Account) -> Iterator[MailRepository]:
    """Connected repository with the test account registered."""
    with MailRepository(tmp_db_path) as repo:
        repo.add_account(account.account_id, account.email)
        yield repo
