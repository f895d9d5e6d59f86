"""Dataclasses for the Gmail Mirror domain model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

UNREAD_LABEL = "UNREAD"
STARRED_LABEL = "STARRED"

SYSTEM_LABEL_IDS = frozenset(
    {
        "INBOX",
        "SENT",
        "DRAFT",
        "TRASH",
        "SPAM",
        "STARRED",
        "UNREAD",
        "IMPORTANT",
        "CATEGORY_PERSONAL",
        "CATEGORY_SOCIAL",
        "CATEGORY_PROMOTIONS",
        "CATEGORY_UPDATES",
        "CATEGORY_FORUMS",
    }
)


class LabelType(str, Enum):
    SYSTEM = "system"
    USER = "user"


class LabelVisibility(str, Enum):
    SHOW = "show"
    HIDE = "hide"
    SHOW_IF_UNREAD = "show_if_unread"


class SyncStatus(str, Enum):
    """Persisted state of an account's sync cursor."""

    IDLE = "idle"
    RUNNING = "running"
    ERROR = "error"
    COMPLETED = "completed"


class ProgressStatus(str, Enum):
    """Per-account status exposed to observers by the coordinator."""

    IDLE = "idle"
    SYNCING = "syncing"
    COMPLETED = "completed"
    COMPLETED_WITH_WARNINGS = "completed_with_warnings"
    ERROR = "error"


class HistoryEventType(str, Enum):
    ADDED = "added"
    DELETED = "deleted"
    LABEL_ADDED = "label_added"
    LABEL_REMOVED = "label_removed"


@dataclass(frozen=True)
class Account:
    """A synchronised mailbox."""

    account_id: str
    email: str
    is_enabled: bool = True
    last_sync_at: datetime | None = None


@dataclass(frozen=True)
class MessageStub:
    """Lightweight message reference from Gmail list API."""

    message_id: str
    thread_id: str


@dataclass(frozen=True)
class Message:
    """A stored email, unique per account by message_id."""

    message_id: str
    thread_id: str
    account_id: str
    date: datetime
    subject: str = ""
    snippet: str = ""
    sender: str = ""
    sender_name: str = ""
    to: tuple[str, ...] = field(default_factory=tuple)
    cc: tuple[str, ...] = field(default_factory=tuple)
    is_read: bool = False
    is_starred: bool = False
    label_ids: tuple[str, ...] = field(default_factory=tuple)
    body_text: str | None = None
    body_html: str | None = None


@dataclass(frozen=True)
class Conversation:
    """Aggregate of all messages sharing a thread id. Never authored directly."""

    thread_id: str
    account_id: str
    subject: str
    snippet: str
    last_message_at: datetime
    message_count: int
    is_read: bool
    is_starred: bool
    participants: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Label:
    label_id: str
    account_id: str
    name: str
    label_type: LabelType = LabelType.USER
    message_list_visibility: LabelVisibility = LabelVisibility.SHOW
    label_list_visibility: LabelVisibility = LabelVisibility.SHOW
    text_color: str | None = None
    background_color: str | None = None


@dataclass(frozen=True)
class FailedMessage:
    """A message that failed to sync, with how many times it has failed."""

    message_id: str
    operation: str
    error: str
    attempts: int = 1


@dataclass
class SyncCursor:
    """Checkpoint for resuming incremental sync of one account."""

    account_id: str
    history_id: int | None = None
    last_full_sync_at: datetime | None = None
    last_incremental_sync_at: datetime | None = None
    status: SyncStatus = SyncStatus.IDLE
    error_message: str | None = None
    message_count: int = 0
    failures: dict[str, FailedMessage] = field(default_factory=dict)

    def advance_history(self, history_id: int) -> None:
        """Move the history position forward, never backward."""
        if self.history_id is None or history_id > self.history_id:
            self.history_id = history_id


@dataclass(frozen=True)
class HistoryEntry:
    """One change from the Gmail history API, flattened to a single message."""

    kind: HistoryEventType
    message_id: str
    thread_id: str = ""
    label_ids: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class HistoryPage:
    entries: tuple[HistoryEntry, ...]
    history_id: int
    next_page_token: str | None = None


@dataclass
class MessageDelta:
    """All history changes for one message id folded together."""

    message_id: str
    is_deleted: bool = False
    needs_full_fetch: bool = False
    labels_to_add: set[str] = field(default_factory=set)
    labels_to_remove: set[str] = field(default_factory=set)

    @property
    def has_label_changes(self) -> bool:
        return bool(self.labels_to_add or self.labels_to_remove)


@dataclass(frozen=True)
class SyncSuccess:
    added: int = 0
    updated: int = 0
    deleted: int = 0


@dataclass(frozen=True)
class SyncPartialSuccess:
    succeeded: int
    failed: int
    errors: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class SyncFailure:
    error: Exception


SyncResult = SyncSuccess | SyncPartialSuccess | SyncFailure


@dataclass(frozen=True)
class SyncProgress:
    """Status and human-readable message for one account."""

    status: ProgressStatus = ProgressStatus.IDLE
    message: str = ""
