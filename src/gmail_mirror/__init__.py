"""Gmail Mirror - Keep a bounded local SQLite replica of Gmail mailboxes in sync."""

from gmail_mirror.core.models import (
    Account,
    Conversation,
    Label,
    Message,
    SyncCursor,
    SyncFailure,
    SyncPartialSuccess,
    SyncProgress,
    SyncResult,
    SyncSuccess,
)
from gmail_mirror.mailbox import MailboxService
from gmail_mirror.storage.repository import MailRepository
from gmail_mirror.sync.coordinator import LockPolicy, SyncCoordinator
from gmail_mirror.sync.engine import SyncEngine
from gmail_mirror.sync.scheduler import SyncScheduler

__all__ = [
    "Account",
    "Conversation",
    "Label",
    "LockPolicy",
    "MailRepository",
    "MailboxService",
    "Message",
    "SyncCoordinator",
    "SyncCursor",
    "SyncEngine",
    "SyncFailure",
    "SyncPartialSuccess",
    "SyncProgress",
    "SyncResult",
    "SyncScheduler",
    "SyncSuccess",
]
