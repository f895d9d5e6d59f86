"""Custom exceptions for Gmail Mirror, grouped by failure kind."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Classification used by the backoff policy."""

    AUTHORIZATION = "authorization"
    RATE_LIMITED = "rate_limited"
    QUOTA_EXCEEDED = "quota_exceeded"
    NOT_FOUND = "not_found"
    MALFORMED_RESPONSE = "malformed_response"
    INVALID_REQUEST = "invalid_request"
    NETWORK = "network"
    SERVER = "server"
    HISTORY_EXPIRED = "history_expired"
    STORAGE = "storage"
    CONFLICT = "conflict"
    CANCELLED = "cancelled"


class GmailMirrorError(Exception):
    """Base exception for all Gmail Mirror errors."""

    kind: ErrorKind = ErrorKind.SERVER


class AuthenticationError(GmailMirrorError):
    """Token invalid or expired and could not be refreshed."""

    kind = ErrorKind.AUTHORIZATION


class RateLimitError(GmailMirrorError):
    """Gmail API rate limit exceeded."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class QuotaExceededError(GmailMirrorError):
    """Daily or per-account quota exhausted."""

    kind = ErrorKind.QUOTA_EXCEEDED


class NotFoundError(GmailMirrorError):
    """Resource was deleted server-side."""

    kind = ErrorKind.NOT_FOUND


class MalformedResponseError(GmailMirrorError):
    """Failed to decode a Gmail API response."""

    kind = ErrorKind.MALFORMED_RESPONSE


class InvalidRequestError(GmailMirrorError):
    """Permanent client error (4xx other than 401/404/429)."""

    kind = ErrorKind.INVALID_REQUEST


class NetworkError(GmailMirrorError):
    """Connectivity failure or timeout."""

    kind = ErrorKind.NETWORK


class ServerError(GmailMirrorError):
    """Gmail returned a 5xx status."""

    kind = ErrorKind.SERVER

    def __init__(self, message: str, status_code: int = 500) -> None:
        super().__init__(message)
        self.status_code = status_code


class HistoryExpiredError(GmailMirrorError):
    """The stored history position is no longer valid."""

    kind = ErrorKind.HISTORY_EXPIRED


class StorageError(GmailMirrorError):
    """Local repository failure."""

    kind = ErrorKind.STORAGE


class SyncInProgressError(GmailMirrorError):
    """A sync for the account is already running."""

    kind = ErrorKind.CONFLICT


class SyncCancelledError(GmailMirrorError):
    """The sync run was cancelled before it finished."""

    kind = ErrorKind.CANCELLED
