"""Builders for domain objects and raw Gmail API payloads used across tests."""

from __future__ import annotations

import base64
from datetime import UTC, datetime, timedelta
from typing import Any

from gmail_mirror.core.models import Message

ACCOUNT_ID = "alice@example.com"
BASE_DATE = datetime(2024, 1, 1, tzinfo=UTC)


def make_message(
    message_id: str,
    thread_id: str | None = None,
    *,
    account_id: str = ACCOUNT_ID,
    minutes: int = 0,
    subject: str = "Subject",
    sender: str = "bob@example.com",
    to: tuple[str, ...] = ("alice@example.com",),
    cc: tuple[str, ...] = (),
    label_ids: tuple[str, ...] = ("INBOX",),
) -> Message:
    """Build a Message dated `minutes` after BASE_DATE, flags derived from labels."""
    return Message(
        message_id=message_id,
        thread_id=thread_id or f"t-{message_id}",
        account_id=account_id,
        date=BASE_DATE + timedelta(minutes=minutes),
        subject=subject,
        snippet=f"snippet {message_id}",
        sender=sender,
        to=to,
        cc=cc,
        is_read="UNREAD" not in label_ids,
        is_starred="STARRED" in label_ids,
        label_ids=label_ids,
    )


def make_raw_message(
    message_id: str,
    thread_id: str | None = None,
    *,
    minutes: int = 0,
    label_ids: list[str] | None = None,
    subject: str = "Subject",
    sender: str = "Bob <bob@example.com>",
    body: str = "Hello",
) -> dict[str, Any]:
    """Build a raw Gmail API message resource (format=full)."""
    date = BASE_DATE + timedelta(minutes=minutes)
    return {
        "id": message_id,
        "threadId": thread_id or f"t-{message_id}",
        "labelIds": label_ids if label_ids is not None else ["INBOX"],
        "snippet": f"snippet {message_id}",
        "internalDate": str(int(date.timestamp() * 1000)),
        "payload": {
            "mimeType": "text/plain",
            "headers": [
                {"name": "Subject", "value": subject},
                {"name": "From", "value": sender},
                {"name": "To", "value": "Alice <alice@example.com>"},
            ],
            "body": {"data": base64.urlsafe_b64encode(body.encode()).decode().rstrip("=")},
        },
    }


