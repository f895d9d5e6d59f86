"""Retry decisions and exponential backoff with jitter."""

from __future__ import annotations

import random
from dataclasses import dataclass

from gmail_mirror.core.exceptions import ErrorKind, GmailMirrorError, RateLimitError, ServerError

DEFAULT_BASE_DELAY = 1.0
MAX_DELAY = 60.0
JITTER_FACTOR = 0.1

# 501 Not Implemented will not start working on retry
_NON_RETRYABLE_SERVER_CODES = frozenset({501})


@dataclass(frozen=True)
class Retry:
    """Retry after `after` seconds."""

    after: float


@dataclass(frozen=True)
class RetryAfterReauth:
    """Refresh the access token, then retry immediately."""


@dataclass(frozen=True)
class DoNotRetry:
    """Propagate the error."""


RetryDecision = Retry | RetryAfterReauth | DoNotRetry


def compute_delay(
    attempt: int,
    *,
    base: float = DEFAULT_BASE_DELAY,
    cap: float = MAX_DELAY,
    rng: random.Random | None = None,
) -> float:
    """Exponential delay `base * 2**attempt`, capped, with +-10% jitter.

    The jittered value is clamped to [0, cap] so the cap is never exceeded.
    """
    uniform = (rng or random).uniform
    delay = min(base * (2 ** attempt), cap)
    jitter = delay * JITTER_FACTOR * uniform(-1.0, 1.0)
    return min(cap, max(0.0, delay + jitter))


def decide(
    kind: ErrorKind,
    attempt: int,
    max_attempts: int,
    *,
    retry_after: float | None = None,
    status_code: int | None = None,
    base: float = DEFAULT_BASE_DELAY,
    cap: float = MAX_DELAY,
    rng: random.Random | None = None,
) -> RetryDecision:
    """Decide whether a failed call should be retried.

    Args:
        kind: Classification of the failure.
        attempt: Zero-based number of the attempt that just failed.
        max_attempts: Attempts allowed in total; anything at or beyond it is final.
        retry_after: Server-provided delay for rate limits, in seconds.
        status_code: HTTP status for server errors.

    Returns:
        Retry, RetryAfterReauth or DoNotRetry.
    """
    if attempt >= max_attempts:
        return DoNotRetry()

    if kind is ErrorKind.AUTHORIZATION:
        return RetryAfterReauth() if attempt == 0 else DoNotRetry()

    if kind is ErrorKind.RATE_LIMITED:
        if retry_after is not None:
            return Retry(after=max(0.0, retry_after))
        return Retry(after=compute_delay(attempt, base=base, cap=cap, rng=rng))

    if kind is ErrorKind.SERVER:
        if status_code in _NON_RETRYABLE_SERVER_CODES:
            return DoNotRetry()
        return Retry(after=compute_delay(attempt, base=base, cap=cap, rng=rng))

    if kind is ErrorKind.NETWORK:
        return Retry(after=compute_delay(attempt, base=base, cap=cap, rng=rng))

    return DoNotRetry()


def decide_for(
    error: Exception,
    attempt: int,
    max_attempts: int,
    **kwargs: object,
) -> RetryDecision:
    """Apply `decide` to an exception, extracting retry-after and status code."""
    if not isinstance(error, GmailMirrorError):
        return DoNotRetry()
    retry_after = error.retry_after if isinstance(error, RateLimitError) else None
    status_code = error.status_code if isinstance(error, ServerError) else None
    return decide(
        error.kind,
        attempt,
        max_attempts,
        retry_after=retry_after,
        status_code=status_code,
        **kwargs,  # type: ignore[arg-type]
    )
