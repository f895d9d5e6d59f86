"""Derive conversation aggregates from stored messages."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from gmail_mirror.core.models import Conversation, Message
from gmail_mirror.storage.repository import MailRepository

logger = logging.getLogger(__name__)


def derive_conversation(
    thread_id: str, account_id: str, messages: Sequence[Message]
) -> Conversation | None:
    """Build the aggregate for one thread, or None if it has no messages.

    Subject comes from the earliest message, snippet from the latest.
    Participants are senders and To/Cc recipients in first-seen order.
    """
    if not messages:
        return None

    ordered = sorted(messages, key=lambda m: (m.date, m.message_id))
    earliest, latest = ordered[0], ordered[-1]

    participants: dict[str, None] = {}
    for msg in ordered:
        for address in (msg.sender, *msg.to, *msg.cc):
            if address:
                participants.setdefault(address.lower(), None)

    return Conversation(
        thread_id=thread_id,
        account_id=account_id,
        subject=earliest.subject,
        snippet=latest.snippet,
        last_message_at=latest.date,
        message_count=len(ordered),
        is_read=all(m.is_read for m in ordered),
        is_starred=any(m.is_starred for m in ordered),
        participants=tuple(participants),
    )


def rederive_conversations(
    repo: MailRepository, account_id: str, thread_ids: Iterable[str] | None = None
) -> int:
    """Recompute conversations for the given threads (all threads if None).

    Threads left without messages lose their conversation. Writes are not
    committed here.

    Returns:
        Number of conversations written.
    """
    if thread_ids is None:
        targets = repo.thread_ids(account_id)
        repo.delete_orphan_conversations(account_id)
    else:
        targets = set(thread_ids)

    written = 0
    for thread_id in sorted(targets):
        messages = repo.fetch_messages(account_id, thread_id=thread_id)
        conversation = derive_conversation(thread_id, account_id, messages)
        if conversation is None:
            repo.delete_conversation(account_id, thread_id)
            continue
        repo.upsert_conversation(conversation)
        written += 1

    logger.debug("Derived %d conversations for %s", written, account_id)
    return written
