"""Async Gmail API client: labels, message listing, batch fetch, history and modify."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from typing import Any

import httplib2
from googleapiclient.discovery import Resource
from googleapiclient.errors import HttpError
from googleapiclient.http import BatchHttpRequest

from gmail_mirror.core.auth import TokenProvider, build_service_for_token
from gmail_mirror.core.backoff import Retry, RetryAfterReauth, RetryDecision, decide_for
from gmail_mirror.core.exceptions import (
    AuthenticationError,
    GmailMirrorError,
    HistoryExpiredError,
    InvalidRequestError,
    MalformedResponseError,
    NetworkError,
    NotFoundError,
    QuotaExceededError,
    RateLimitError,
    ServerError,
)
from gmail_mirror.core.models import HistoryPage, Label, Message, MessageStub
from gmail_mirror.core.parser import GmailParser

logger = logging.getLogger(__name__)

HISTORY_TYPES = ("messageAdded", "messageDeleted", "labelAdded", "labelRemoved")

_RATE_LIMIT_REASONS = ("rateLimitExceeded", "userRateLimitExceeded")
_QUOTA_REASONS = ("dailyLimitExceeded", "quotaExceeded")


def _error_detail(exc: HttpError) -> str:
    content = exc.content
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="replace")
    return f"{exc} {content or ''}"


def _is_rate_limit_error(exc: HttpError) -> bool:
    """Check whether an HTTP error represents a Gmail API rate limit."""
    if exc.resp.status == 429:
        return True
    if exc.resp.status == 403:
        detail = _error_detail(exc)
        return any(reason in detail for reason in _RATE_LIMIT_REASONS)
    return False


def _retry_after(exc: HttpError) -> float | None:
    value = exc.resp.get("retry-after") if isinstance(exc.resp, dict) else None
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def map_error(exc: Exception, context: str) -> GmailMirrorError | None:
    """Translate a transport exception into the error taxonomy.

    Returns None for exceptions that are not transport failures, so callers
    re-raise them untouched.
    """
    if isinstance(exc, GmailMirrorError):
        return exc

    if isinstance(exc, HttpError):
        status = exc.resp.status
        message = f"Failed to {context}: HTTP {status}"
        if status == 401:
            return AuthenticationError(message)
        if _is_rate_limit_error(exc):
            return RateLimitError(message, retry_after=_retry_after(exc))
        if status == 403 and any(r in _error_detail(exc) for r in _QUOTA_REASONS):
            return QuotaExceededError(message)
        if status == 404:
            return NotFoundError(message)
        if 400 <= status < 500:
            return InvalidRequestError(message)
        if status >= 500:
            return ServerError(message, status_code=status)
        return MalformedResponseError(message)

    if isinstance(exc, (TimeoutError, OSError, httplib2.HttpLib2Error)):
        return NetworkError(f"Failed to {context}: {exc!r}")

    if isinstance(exc, ValueError):
        return MalformedResponseError(f"Failed to {context}: {exc}")

    return None


class GmailClient:
    """Async wrapper around the Gmail API with per-account services and retries.

    Blocking googleapiclient calls run in worker threads bounded by a deadline;
    every failure goes through the backoff policy before it is raised.
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        *,
        service_builder: Callable[[str], Resource] = build_service_for_token,
        parser: GmailParser | None = None,
        user_id: str = "me",
        max_retries: int = 5,
        backoff_base_seconds: float = 1.0,
        backoff_cap_seconds: float = 60.0,
        metadata_timeout_seconds: float = 30.0,
        bulk_timeout_seconds: float = 120.0,
        batch_size: int = 50,
    ) -> None:
        self._token_provider = token_provider
        self._service_builder = service_builder
        self._parser = parser or GmailParser()
        self._user_id = user_id
        self._max_retries = max_retries
        self._backoff_base = backoff_base_seconds
        self._backoff_cap = backoff_cap_seconds
        self._metadata_timeout = metadata_timeout_seconds
        self._bulk_timeout = bulk_timeout_seconds
        self._batch_size = batch_size
        self._services: dict[str, tuple[str, Resource]] = {}

    async def _service_for(self, account_id: str, *, force_refresh: bool = False) -> Resource:
        token = await self._token_provider.valid_access_token(
            account_id, force_refresh=force_refresh
        )
        cached = self._services.get(account_id)
        if cached and cached[0] == token:
            return cached[1]
        service = self._service_builder(token)
        self._services[account_id] = (token, service)
        return service

    def _decide(self, error: GmailMirrorError, attempt: int) -> RetryDecision:
        return decide_for(
            error,
            attempt,
            self._max_retries,
            base=self._backoff_base,
            cap=self._backoff_cap,
        )

    async def _execute(
        self,
        account_id: str,
        build_request: Callable[[Resource], Any],
        context: str,
        timeout: float,
    ) -> Any:
        """Execute a single API request with the retry policy applied.

        Args:
            account_id: Account whose credentials authorise the call.
            build_request: Builds a googleapiclient HttpRequest from a service.
            context: Description for log messages (e.g. "list labels").
            timeout: Deadline for one attempt, in seconds.

        Returns:
            The API response dict.

        Raises:
            GmailMirrorError: The mapped failure once retries are exhausted
                or the error is not retryable.
        """
        force_refresh = False

        for attempt in range(self._max_retries + 1):
            service = await self._service_for(account_id, force_refresh=force_refresh)
            force_refresh = False
            try:
                request = build_request(service)
                return await asyncio.wait_for(
                    asyncio.to_thread(request.execute, num_retries=0), timeout
                )
            except Exception as e:
                error = map_error(e, context)
                if error is None:
                    raise

                decision = self._decide(error, attempt)
                if isinstance(decision, Retry):
                    logger.warning(
                        "%s during %s (attempt %d/%d), sleeping %.2fs",
                        type(error).__name__, context, attempt + 1,
                        self._max_retries + 1, decision.after,
                    )
                    await asyncio.sleep(decision.after)
                elif isinstance(decision, RetryAfterReauth):
                    logger.info("Unauthorized during %s, refreshing token", context)
                    force_refresh = True
                else:
                    if error is e:
                        raise
                    raise error from e

        # Should not be reached, but just in case
        raise NetworkError(f"Retries exhausted during {context}")

    async def list_labels(self, account_id: str) -> list[Label]:
        """List all labels of the mailbox."""
        response = await self._execute(
            account_id,
            lambda s: s.users().labels().list(userId=self._user_id),
            "list labels",
            self._metadata_timeout,
        )
        return [self._parser.parse_label(raw, account_id) for raw in response.get("labels", [])]

    async def list_messages(
        self,
        account_id: str,
        page_token: str | None = None,
        max_results: int = 100,
    ) -> tuple[list[MessageStub], str | None]:
        """List one page of message ids, newest first.

        Returns:
            (stubs, next_page_token); the token is None on the last page.
        """
        kwargs: dict[str, Any] = {"userId": self._user_id, "maxResults": max_results}
        if page_token:
            kwargs["pageToken"] = page_token

        response = await self._execute(
            account_id,
            lambda s: s.users().messages().list(**kwargs),
            "list messages",
            self._metadata_timeout,
        )
        try:
            stubs = [
                MessageStub(message_id=msg["id"], thread_id=msg["threadId"])
                for msg in response.get("messages", [])
            ]
        except (KeyError, TypeError) as e:
            raise MalformedResponseError(f"Malformed message list: {e}") from e
        logger.debug("Listed %d message IDs (page)", len(stubs))
        return stubs, response.get("nextPageToken") or None

    async def get_message(self, account_id: str, message_id: str) -> Message:
        """Fetch and parse one message in full format."""
        raw = await self._execute(
            account_id,
            lambda s: s.users().messages().get(userId=self._user_id, id=message_id, format="full"),
            f"get message {message_id}",
            self._bulk_timeout,
        )
        return self._parser.parse(raw, account_id)

    def _run_batch(
        self, service: Resource, message_ids: Sequence[str]
    ) -> tuple[dict[str, dict[str, Any]], dict[str, Exception]]:
        """Execute one batch request synchronously; called from a worker thread."""
        responses: dict[str, dict[str, Any]] = {}
        failures: dict[str, Exception] = {}

        def _callback(
            request_id: str,
            response: dict[str, Any] | None,
            exception: Exception | None,
        ) -> None:
            if exception is not None:
                failures[request_id] = exception
            elif response:
                responses[request_id] = response
            else:
                failures[request_id] = MalformedResponseError("Empty batch response")

        batch: BatchHttpRequest = service.new_batch_http_request(callback=_callback)
        for msg_id in message_ids:
            batch.add(
                service.users().messages().get(userId=self._user_id, id=msg_id, format="full"),
                request_id=msg_id,
            )
        batch.execute()
        return responses, failures

    async def get_messages_batch(
        self, account_id: str, message_ids: Sequence[str]
    ) -> tuple[list[Message], dict[str, GmailMirrorError]]:
        """Fetch full messages with batch requests.

        Rate-limited and transient per-message failures are retried with
        backoff; other failures are returned rather than raised.

        Returns:
            (messages in request order, errors keyed by message id).

        Raises:
            GmailMirrorError: When the batch request itself fails for good.
        """
        unique_ids = list(dict.fromkeys(message_ids))
        fetched: dict[str, Message] = {}
        errors: dict[str, GmailMirrorError] = {}

        for start in range(0, len(unique_ids), self._batch_size):
            chunk = unique_ids[start:start + self._batch_size]
            await self._fetch_chunk(account_id, chunk, fetched, errors)

        if errors:
            logger.warning(
                "Batch had %d errors out of %d requests", len(errors), len(unique_ids)
            )
        return [fetched[i] for i in unique_ids if i in fetched], errors

    async def _fetch_chunk(
        self,
        account_id: str,
        chunk: list[str],
        fetched: dict[str, Message],
        errors: dict[str, GmailMirrorError],
    ) -> None:
        pending = chunk
        force_refresh = False

        for attempt in range(self._max_retries + 1):
            service = await self._service_for(account_id, force_refresh=force_refresh)
            force_refresh = False
            try:
                responses, failures = await asyncio.wait_for(
                    asyncio.to_thread(self._run_batch, service, pending), self._bulk_timeout
                )
            except Exception as e:
                error = map_error(e, "batch fetch messages")
                if error is None:
                    raise
                decision = self._decide(error, attempt)
                if isinstance(decision, Retry):
                    logger.warning(
                        "Batch fetch failed (attempt %d/%d), sleeping %.2fs: %s",
                        attempt + 1, self._max_retries + 1, decision.after, error,
                    )
                    await asyncio.sleep(decision.after)
                    continue
                if isinstance(decision, RetryAfterReauth):
                    force_refresh = True
                    continue
                if error is e:
                    raise
                raise error from e

            for msg_id, raw in responses.items():
                try:
                    fetched[msg_id] = self._parser.parse(raw, account_id)
                except MalformedResponseError as e:
                    errors[msg_id] = e

            retry_ids: list[str] = []
            delay = 0.0
            for msg_id, exc in failures.items():
                error = map_error(exc, f"get message {msg_id}") or MalformedResponseError(
                    f"Failed to get message {msg_id}: {exc}"
                )
                decision = self._decide(error, attempt)
                if isinstance(decision, Retry):
                    retry_ids.append(msg_id)
                    delay = max(delay, decision.after)
                elif isinstance(decision, RetryAfterReauth):
                    retry_ids.append(msg_id)
                    force_refresh = True
                else:
                    errors[msg_id] = error

            if not retry_ids:
                return

            logger.warning(
                "Retrying %d messages of batch (attempt %d/%d), sleeping %.2fs",
                len(retry_ids), attempt + 1, self._max_retries + 1, delay,
            )
            if delay > 0:
                await asyncio.sleep(delay)
            pending = retry_ids

    async def history(
        self,
        account_id: str,
        start_history_id: int,
        history_types: Sequence[str] = HISTORY_TYPES,
        page_token: str | None = None,
    ) -> HistoryPage:
        """Fetch one page of history since `start_history_id`.

        Raises:
            HistoryExpiredError: The start position is too old for the server.
        """
        kwargs: dict[str, Any] = {
            "userId": self._user_id,
            "startHistoryId": str(start_history_id),
            "historyTypes": list(history_types),
        }
        if page_token:
            kwargs["pageToken"] = page_token

        try:
            response = await self._execute(
                account_id,
                lambda s: s.users().history().list(**kwargs),
                "list history",
                self._metadata_timeout,
            )
        except NotFoundError as e:
            raise HistoryExpiredError(
                f"History position {start_history_id} expired for {account_id}"
            ) from e

        entries = self._parser.parse_history(response.get("history", []))
        try:
            history_id = int(response.get("historyId", start_history_id))
        except (TypeError, ValueError) as e:
            raise MalformedResponseError(f"Invalid historyId: {e}") from e
        return HistoryPage(
            entries=tuple(entries),
            history_id=history_id,
            next_page_token=response.get("nextPageToken") or None,
        )

    async def get_profile(self, account_id: str) -> dict[str, Any]:
        """Return the mailbox profile (emailAddress, historyId, counts)."""
        return await self._execute(
            account_id,
            lambda s: s.users().getProfile(userId=self._user_id),
            "get profile",
            self._metadata_timeout,
        )

    async def current_history_position(self, account_id: str) -> int:
        """Return the mailbox's current history id."""
        profile = await self.get_profile(account_id)
        try:
            return int(profile["historyId"])
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError(f"Profile has no valid historyId: {e}") from e

    async def modify_message(
        self,
        account_id: str,
        message_id: str,
        add_label_ids: Sequence[str] = (),
        remove_label_ids: Sequence[str] = (),
    ) -> tuple[str, ...]:
        """Add/remove labels on a message. Returns the resulting label ids."""
        body = {
            "addLabelIds": list(add_label_ids),
            "removeLabelIds": list(remove_label_ids),
        }
        response = await self._execute(
            account_id,
            lambda s: s.users().messages().modify(userId=self._user_id, id=message_id, body=body),
            f"modify message {message_id}",
            self._metadata_timeout,
        )
        return tuple(response.get("labelIds", []))
