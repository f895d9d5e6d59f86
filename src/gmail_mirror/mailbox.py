"""Read path over the local replica, plus user label changes routed through Gmail."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from gmail_mirror.core.exceptions import NotFoundError
from gmail_mirror.core.gmail_client import GmailClient
from gmail_mirror.core.models import (
    STARRED_LABEL,
    UNREAD_LABEL,
    Conversation,
    Label,
    Message,
)
from gmail_mirror.storage.repository import MailRepository
from gmail_mirror.sync.threads import rederive_conversations

logger = logging.getLogger(__name__)


class MailboxService:
    """Queries and user actions for one local mailbox store.

    Reads never touch the network. Writes go to Gmail first; the local row
    and its conversation are updated from the server's answer in one commit.
    """

    def __init__(self, repository: MailRepository, client: GmailClient | None = None) -> None:
        self._repo = repository
        self._client = client

    def list_messages(
        self,
        account_id: str,
        *,
        label_id: str | None = None,
        unread_only: bool = False,
        starred_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Message]:
        """Messages newest first, optionally filtered by label and flags."""
        return self._repo.fetch_messages(
            account_id,
            label_id=label_id,
            is_read=False if unread_only else None,
            is_starred=True if starred_only else None,
            limit=limit,
            offset=offset,
        )

    def search(self, account_id: str, query: str, *, limit: int = 50) -> list[Message]:
        """Substring match on subject, sender and snippet."""
        return self._repo.fetch_messages(account_id, query=query, limit=limit)

    def get_message(self, account_id: str, message_id: str) -> Message:
        message = self._repo.get_message(account_id, message_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found for {account_id}")
        return message

    def list_conversations(
        self, account_id: str, *, limit: int = 50, offset: int = 0
    ) -> list[Conversation]:
        return self._repo.fetch_conversations(account_id, limit=limit, offset=offset)

    def list_labels(self, account_id: str) -> list[Label]:
        return self._repo.fetch_labels(account_id)

    def unread_count(self, account_id: str, label_id: str | None = None) -> int:
        return self._repo.count_messages(account_id, label_id=label_id, is_read=False)

    async def set_read(self, account_id: str, message_id: str, read: bool = True) -> Message:
        if read:
            return await self.modify_labels(account_id, message_id, remove=[UNREAD_LABEL])
        return await self.modify_labels(account_id, message_id, add=[UNREAD_LABEL])

    async def set_starred(self, account_id: str, message_id: str, starred: bool = True) -> Message:
        if starred:
            return await self.modify_labels(account_id, message_id, add=[STARRED_LABEL])
        return await self.modify_labels(account_id, message_id, remove=[STARRED_LABEL])

    async def modify_labels(
        self,
        account_id: str,
        message_id: str,
        add: Sequence[str] = (),
        remove: Sequence[str] = (),
    ) -> Message:
        """Apply a label change on Gmail, then mirror the result locally.

        Raises:
            NotFoundError: The message is not in the local store.
            GmailMirrorError: The server rejected the change; nothing local changes.
        """
        if self._client is None:
            raise RuntimeError("MailboxService was created without a Gmail client")

        self.get_message(account_id, message_id)
        labels = await self._client.modify_message(account_id, message_id, add, remove)
        await asyncio.to_thread(self._store_labels, account_id, message_id, labels)
        logger.info(
            "Modified labels of %s (+%s -%s)", message_id, ",".join(add), ",".join(remove)
        )
        return self.get_message(account_id, message_id)

    def _store_labels(self, account_id: str, message_id: str, labels: Sequence[str]) -> None:
        with self._repo.transaction():
            thread_id = self._repo.set_message_labels(account_id, message_id, labels)
            if thread_id is not None:
                rederive_conversations(self._repo, account_id, [thread_id])
