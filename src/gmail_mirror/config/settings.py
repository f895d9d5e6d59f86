"""Configuration via pydantic-settings with .env support."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class GmailMirrorSettings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix="GMAIL_MIRROR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # OAuth credentials
    credentials_path: Path = Path("credentials/client_secret.json")
    token_dir: Path = Path("credentials/tokens")

    # Database
    database_path: Path = Path("data/gmail_mirror.db")

    # Sync limits
    max_messages_per_account: int = Field(default=1000, gt=0)
    page_size: int = Field(default=100, gt=0, le=500)
    batch_size: int = Field(default=50, gt=0, le=100)
    max_failure_attempts: int = Field(default=3, gt=0)

    # Retry & backoff
    max_retries: int = Field(default=5, ge=0)
    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 60.0

    # Per-call deadlines
    metadata_timeout_seconds: float = 30.0
    bulk_timeout_seconds: float = 120.0

    # Scheduling
    sync_interval_seconds: float = Field(default=300.0, gt=0)
    max_concurrent_accounts: int = Field(default=4, gt=0)
    lock_policy: str = "skip"

    # Logging
    log_level: str = "INFO"

    def ensure_directories(self) -> None:
        """Create token and data directories if they don't exist."""
        self.token_dir.mkdir(parents=True, exist_ok=True)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.credentials_path.parent.mkdir(parents=True, exist_ok=True)
