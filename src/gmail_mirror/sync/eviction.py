"""Keep each account's local store within its message cap."""

from __future__ import annotations

import logging

from gmail_mirror.storage.repository import MailRepository

logger = logging.getLogger(__name__)


def evict_excess(repo: MailRepository, account_id: str, cap: int) -> tuple[list[str], set[str]]:
    """Delete the oldest messages beyond `cap`.

    Messages are ranked newest first by date, ties broken by message id;
    everything after the first `cap` is deleted. Conversations are not
    touched here; callers re-derive the returned threads.

    Returns:
        (deleted message ids, thread ids those messages belonged to).
    """
    ranked = repo.message_ids_newest_first(account_id)
    excess = ranked[cap:]
    if not excess:
        return [], set()

    deleted = [message_id for message_id, _ in excess]
    threads = {thread_id for _, thread_id in excess}
    repo.delete_messages(account_id, deleted)

    logger.info(
        "Evicted %d oldest messages for %s (cap %d)", len(deleted), account_id, cap
    )
    return deleted, threads
