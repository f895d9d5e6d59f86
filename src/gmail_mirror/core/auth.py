"""OAuth 2.0 authentication with per-account token caching for Gmail API."""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Protocol

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import Resource, build

from gmail_mirror.core.exceptions import AuthenticationError, NetworkError

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/gmail.modify"]

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_.@-]")


class TokenProvider(Protocol):
    """Returns a valid bearer token for an account, refreshing as needed."""

    async def valid_access_token(self, account_id: str, *, force_refresh: bool = False) -> str:
        ...


def authenticate(credentials_path: Path, token_path: Path) -> Credentials:
    """Authenticate with Gmail API, using cached token if available.

    Args:
        credentials_path: Path to OAuth 2.0 client credentials JSON.
        token_path: Path to store/load the OAuth token.

    Returns:
        Valid Google OAuth2 credentials.

    Raises:
        AuthenticationError: If authentication fails.
    """
    creds: Credentials | None = None

    if token_path.exists():
        try:
            creds = Credentials.from_authorized_user_file(str(token_path), SCOPES)
        except ValueError as e:
            logger.warning("Failed to load cached token: %s", e)
            creds = None

    if creds and creds.valid:
        return creds

    if creds and creds.expired and creds.refresh_token:
        try:
            creds.refresh(Request())
            _save_token(creds, token_path)
            return creds
        except RefreshError as e:
            logger.warning("Token refresh failed, re-authenticating: %s", e)

    if not credentials_path.exists():
        raise AuthenticationError(
            f"Credentials file not found: {credentials_path}. "
            "Download it from Google Cloud Console."
        )

    try:
        flow = InstalledAppFlow.from_client_secrets_file(str(credentials_path), SCOPES)
        creds = flow.run_local_server(port=0)
        _save_token(creds, token_path)
        logger.info("Authentication successful, token cached at %s", token_path)
        return creds
    except Exception as e:
        raise AuthenticationError(f"OAuth flow failed: {e}") from e


def build_gmail_service(creds: Credentials) -> Resource:
    """Build a Gmail API service resource.

    Args:
        creds: Valid Google OAuth2 credentials.

    Returns:
        Gmail API service resource.
    """
    return build("gmail", "v1", credentials=creds, cache_discovery=False)


def build_service_for_token(access_token: str) -> Resource:
    """Build a Gmail API service authorised by a bare access token."""
    return build_gmail_service(Credentials(token=access_token))


def token_path_for(token_dir: Path, account_id: str) -> Path:
    """Location of the cached token file for an account."""
    return token_dir / f"{_SAFE_NAME.sub('_', account_id)}.json"


class FileTokenProvider:
    """Token provider backed by one authorized-user JSON file per account."""

    def __init__(self, token_dir: Path) -> None:
        self._token_dir = token_dir
        self._cache: dict[str, Credentials] = {}

    async def valid_access_token(self, account_id: str, *, force_refresh: bool = False) -> str:
        """Return a usable access token, refreshing it in a worker thread if needed.

        Raises:
            AuthenticationError: No token on disk, or it cannot be refreshed.
        """
        creds = self._cache.get(account_id) or self._load(account_id)

        if creds.valid and not force_refresh:
            return creds.token

        if not creds.refresh_token:
            raise AuthenticationError(f"No refresh token for account {account_id}; sign in again")

        try:
            await asyncio.to_thread(creds.refresh, Request())
        except RefreshError as e:
            self._cache.pop(account_id, None)
            raise AuthenticationError(f"Token refresh failed for {account_id}: {e}") from e
        except OSError as e:
            raise NetworkError(f"Token refresh failed for {account_id}: {e}") from e

        _save_token(creds, token_path_for(self._token_dir, account_id))
        self._cache[account_id] = creds
        logger.debug("Refreshed access token for %s", account_id)
        return creds.token

    def _load(self, account_id: str) -> Credentials:
        path = token_path_for(self._token_dir, account_id)
        if not path.exists():
            raise AuthenticationError(f"No cached token for account {account_id} at {path}")
        try:
            creds = Credentials.from_authorized_user_file(str(path), SCOPES)
        except ValueError as e:
            raise AuthenticationError(f"Unreadable token file {path}: {e}") from e
        self._cache[account_id] = creds
        return creds


def _save_token(creds: Credentials, token_path: Path) -> None:
    """Save credentials to the token cache file."""
    token_path.parent.mkdir(parents=True, exist_ok=True)
    token_path.write_text(creds.to_json())
