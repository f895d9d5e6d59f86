"""SQLite-backed repository for accounts, messages, conversations, labels and sync cursors."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from gmail_mirror.core.exceptions import StorageError
from gmail_mirror.core.models import (
    STARRED_LABEL,
    UNREAD_LABEL,
    Account,
    Conversation,
    FailedMessage,
    Label,
    LabelType,
    LabelVisibility,
    Message,
    SyncCursor,
    SyncStatus,
)

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return int(value.timestamp() * 1000)


def _from_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=UTC)


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class MailRepository:
    """Stores the local mailbox replica in SQLite.

    Write methods never commit on their own; callers group them into a batch
    with `transaction()` (or `commit()`/`rollback()`), so a failed batch leaves
    the previous committed state untouched.

    Tables:
    - accounts: synchronised mailboxes
    - messages / conversations / labels: per-account replica, cascade on account delete
    - sync_state: one cursor per account
    - sync_failures: per-message failure bookkeeping
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Open database connection and ensure schema exists."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), timeout=30.0, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._create_tables()

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> MailRepository:
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    def _create_tables(self) -> None:
        """Create tables if they don't exist."""
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS accounts (
                account_id TEXT PRIMARY KEY,
                email TEXT NOT NULL,
                is_enabled INTEGER NOT NULL DEFAULT 1,
                last_sync_at TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                account_id TEXT NOT NULL REFERENCES accounts(account_id) ON DELETE CASCADE,
                message_id TEXT NOT NULL,
                thread_id TEXT NOT NULL,
                subject TEXT DEFAULT '',
                snippet TEXT DEFAULT '',
                sender TEXT DEFAULT '',
                sender_name TEXT DEFAULT '',
                to_addresses TEXT NOT NULL DEFAULT '[]',
                cc_addresses TEXT NOT NULL DEFAULT '[]',
                date_ms INTEGER NOT NULL,
                is_read INTEGER NOT NULL DEFAULT 0,
                is_starred INTEGER NOT NULL DEFAULT 0,
                label_ids TEXT NOT NULL DEFAULT '[]',
                body_text TEXT,
                body_html TEXT,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (account_id, message_id)
            );

            CREATE INDEX IF NOT EXISTS idx_messages_date ON messages(account_id, date_ms);
            CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages(account_id, thread_id);

            CREATE TABLE IF NOT EXISTS conversations (
                account_id TEXT NOT NULL REFERENCES accounts(account_id) ON DELETE CASCADE,
                thread_id TEXT NOT NULL,
                subject TEXT DEFAULT '',
                snippet TEXT DEFAULT '',
                last_message_ms INTEGER NOT NULL,
                message_count INTEGER NOT NULL,
                is_read INTEGER NOT NULL,
                is_starred INTEGER NOT NULL,
                participants TEXT NOT NULL DEFAULT '[]',
                PRIMARY KEY (account_id, thread_id)
            );

            CREATE TABLE IF NOT EXISTS labels (
                account_id TEXT NOT NULL REFERENCES accounts(account_id) ON DELETE CASCADE,
                label_id TEXT NOT NULL,
                name TEXT NOT NULL,
                label_type TEXT NOT NULL,
                message_list_visibility TEXT NOT NULL,
                label_list_visibility TEXT NOT NULL,
                text_color TEXT,
                background_color TEXT,
                PRIMARY KEY (account_id, label_id)
            );

            CREATE TABLE IF NOT EXISTS sync_state (
                account_id TEXT PRIMARY KEY REFERENCES accounts(account_id) ON DELETE CASCADE,
                history_id INTEGER,
                last_full_sync_at TEXT,
                last_incremental_sync_at TEXT,
                status TEXT NOT NULL DEFAULT 'idle',
                error_message TEXT,
                message_count INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS sync_failures (
                account_id TEXT NOT NULL REFERENCES accounts(account_id) ON DELETE CASCADE,
                message_id TEXT NOT NULL,
                operation TEXT NOT NULL,
                error TEXT NOT NULL DEFAULT '',
                attempts INTEGER NOT NULL DEFAULT 1,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (account_id, message_id)
            );
        """)

    def commit(self) -> None:
        try:
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise StorageError(f"Commit failed: {e}") from e

    def rollback(self) -> None:
        self.conn.rollback()

    @contextmanager
    def transaction(self) -> Iterator[MailRepository]:
        """Commit everything written inside the block, or discard all of it."""
        try:
            yield self
        except sqlite3.Error as e:
            self.conn.rollback()
            raise StorageError(f"Database write failed: {e}") from e
        except BaseException:
            self.conn.rollback()
            raise
        self.commit()

    def add_account(self, account_id: str, email: str) -> Account:
        """Insert an account (or re-enable an existing one) and commit."""
        with self.transaction():
            self.conn.execute(
                """INSERT INTO accounts (account_id, email, is_enabled, created_at)
                   VALUES (?, ?, 1, ?)
                   ON CONFLICT(account_id) DO UPDATE SET
                       email = excluded.email, is_enabled = 1""",
                (account_id, email, _now()),
            )
        return Account(account_id=account_id, email=email)

    def set_account_enabled(self, account_id: str, enabled: bool) -> None:
        with self.transaction():
            self.conn.execute(
                "UPDATE accounts SET is_enabled = ? WHERE account_id = ?",
                (int(enabled), account_id),
            )

    def remove_account(self, account_id: str) -> bool:
        """Delete an account and, through the cascade, everything it owns."""
        with self.transaction():
            cursor = self.conn.execute("DELETE FROM accounts WHERE account_id = ?", (account_id,))
        return cursor.rowcount > 0

    def get_account(self, account_id: str) -> Account | None:
        row = self.conn.execute(
            "SELECT * FROM accounts WHERE account_id = ?", (account_id,)
        ).fetchone()
        return self._row_to_account(row) if row else None

    def list_accounts(self, *, enabled_only: bool = False) -> list[Account]:
        sql = "SELECT * FROM accounts"
        if enabled_only:
            sql += " WHERE is_enabled = 1"
        rows = self.conn.execute(sql + " ORDER BY email").fetchall()
        return [self._row_to_account(row) for row in rows]

    def update_account_last_sync(self, account_id: str, when: datetime) -> None:
        self.conn.execute(
            "UPDATE accounts SET last_sync_at = ? WHERE account_id = ?",
            (when.isoformat(), account_id),
        )

    def upsert_message(self, message: Message) -> bool:
        """Insert or replace a message by remote id.

        Returns True if the message was new.
        """
        existed = self.message_exists(message.account_id, message.message_id)
        self.conn.execute(
            """INSERT INTO messages
               (account_id, message_id, thread_id, subject, snippet, sender, sender_name,
                to_addresses, cc_addresses, date_ms, is_read, is_starred, label_ids,
                body_text, body_html, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(account_id, message_id) DO UPDATE SET
                   thread_id = excluded.thread_id,
                   subject = excluded.subject,
                   snippet = excluded.snippet,
                   sender = excluded.sender,
                   sender_name = excluded.sender_name,
                   to_addresses = excluded.to_addresses,
                   cc_addresses = excluded.cc_addresses,
                   date_ms = excluded.date_ms,
                   is_read = excluded.is_read,
                   is_starred = excluded.is_starred,
                   label_ids = excluded.label_ids,
                   body_text = COALESCE(excluded.body_text, messages.body_text),
                   body_html = COALESCE(excluded.body_html, messages.body_html),
                   updated_at = excluded.updated_at""",
            (
                message.account_id,
                message.message_id,
                message.thread_id,
                message.subject,
                message.snippet,
                message.sender,
                message.sender_name,
                json.dumps(list(message.to)),
                json.dumps(list(message.cc)),
                _to_ms(message.date),
                int(message.is_read),
                int(message.is_starred),
                json.dumps(list(message.label_ids)),
                message.body_text,
                message.body_html,
                _now(),
            ),
        )
        return not existed

    def set_message_labels(
        self, account_id: str, message_id: str, label_ids: Iterable[str]
    ) -> str | None:
        """Replace a message's labels and re-derive read/starred from them.

        Returns the message's thread id, or None if the message is not stored.
        """
        row = self.conn.execute(
            "SELECT thread_id FROM messages WHERE account_id = ? AND message_id = ?",
            (account_id, message_id),
        ).fetchone()
        if row is None:
            return None
        labels = sorted(set(label_ids))
        self.conn.execute(
            """UPDATE messages SET label_ids = ?, is_read = ?, is_starred = ?, updated_at = ?
               WHERE account_id = ? AND message_id = ?""",
            (
                json.dumps(labels),
                int(UNREAD_LABEL not in labels),
                int(STARRED_LABEL in labels),
                _now(),
                account_id,
                message_id,
            ),
        )
        return row["thread_id"]

    def delete_message(self, account_id: str, message_id: str) -> str | None:
        """Delete a message. Returns its thread id, or None if it was not stored."""
        row = self.conn.execute(
            "SELECT thread_id FROM messages WHERE account_id = ? AND message_id = ?",
            (account_id, message_id),
        ).fetchone()
        if row is None:
            return None
        self.conn.execute(
            "DELETE FROM messages WHERE account_id = ? AND message_id = ?",
            (account_id, message_id),
        )
        return row["thread_id"]

    def delete_messages(self, account_id: str, message_ids: Sequence[str]) -> int:
        rows = [(account_id, message_id) for message_id in message_ids]
        cursor = self.conn.executemany(
            "DELETE FROM messages WHERE account_id = ? AND message_id = ?", rows
        )
        return cursor.rowcount

    def message_exists(self, account_id: str, message_id: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM messages WHERE account_id = ? AND message_id = ?",
            (account_id, message_id),
        ).fetchone()
        return row is not None

    def get_message(self, account_id: str, message_id: str) -> Message | None:
        row = self.conn.execute(
            "SELECT * FROM messages WHERE account_id = ? AND message_id = ?",
            (account_id, message_id),
        ).fetchone()
        return self._row_to_message(row) if row else None

    def fetch_messages(
        self,
        account_id: str,
        *,
        thread_id: str | None = None,
        label_id: str | None = None,
        is_read: bool | None = None,
        is_starred: bool | None = None,
        query: str | None = None,
        newest_first: bool = True,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Message]:
        """Fetch an account's messages matching every given filter."""
        where, params = self._message_filters(
            account_id,
            thread_id=thread_id,
            label_id=label_id,
            is_read=is_read,
            is_starred=is_starred,
            query=query,
        )
        direction = "DESC" if newest_first else "ASC"
        sql = (
            f"SELECT * FROM messages WHERE {where} "
            f"ORDER BY date_ms {direction}, message_id {direction} LIMIT ? OFFSET ?"
        )
        params.extend([-1 if limit is None else limit, offset])
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_message(row) for row in rows]

    def count_messages(
        self,
        account_id: str,
        *,
        label_id: str | None = None,
        is_read: bool | None = None,
    ) -> int:
        where, params = self._message_filters(account_id, label_id=label_id, is_read=is_read)
        row = self.conn.execute(
            f"SELECT COUNT(*) AS cnt FROM messages WHERE {where}", params
        ).fetchone()
        return row["cnt"]

    def message_ids_newest_first(self, account_id: str) -> list[tuple[str, str]]:
        """(message_id, thread_id) pairs ordered newest first."""
        rows = self.conn.execute(
            """SELECT message_id, thread_id FROM messages WHERE account_id = ?
               ORDER BY date_ms DESC, message_id DESC""",
            (account_id,),
        ).fetchall()
        return [(row["message_id"], row["thread_id"]) for row in rows]

    def thread_ids(self, account_id: str) -> set[str]:
        rows = self.conn.execute(
            "SELECT DISTINCT thread_id FROM messages WHERE account_id = ?", (account_id,)
        ).fetchall()
        return {row["thread_id"] for row in rows}

    @staticmethod
    def _message_filters(
        account_id: str,
        *,
        thread_id: str | None = None,
        label_id: str | None = None,
        is_read: bool | None = None,
        is_starred: bool | None = None,
        query: str | None = None,
    ) -> tuple[str, list[Any]]:
        clauses = ["account_id = ?"]
        params: list[Any] = [account_id]

        if thread_id is not None:
            clauses.append("thread_id = ?")
            params.append(thread_id)
        if label_id is not None:
            clauses.append(
                "EXISTS (SELECT 1 FROM json_each(messages.label_ids) WHERE json_each.value = ?)"
            )
            params.append(label_id)
        if is_read is not None:
            clauses.append("is_read = ?")
            params.append(int(is_read))
        if is_starred is not None:
            clauses.append("is_starred = ?")
            params.append(int(is_starred))
        if query:
            pattern = f"%{query}%"
            clauses.append("(subject LIKE ? OR sender LIKE ? OR sender_name LIKE ? OR snippet LIKE ?)")
            params.extend([pattern] * 4)

        return " AND ".join(clauses), params

    def upsert_conversation(self, conversation: Conversation) -> None:
        self.conn.execute(
            """INSERT INTO conversations
               (account_id, thread_id, subject, snippet, last_message_ms, message_count,
                is_read, is_starred, participants)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(account_id, thread_id) DO UPDATE SET
                   subject = excluded.subject,
                   snippet = excluded.snippet,
                   last_message_ms = excluded.last_message_ms,
                   message_count = excluded.message_count,
                   is_read = excluded.is_read,
                   is_starred = excluded.is_starred,
                   participants = excluded.participants""",
            (
                conversation.account_id,
                conversation.thread_id,
                conversation.subject,
                conversation.snippet,
                _to_ms(conversation.last_message_at),
                conversation.message_count,
                int(conversation.is_read),
                int(conversation.is_starred),
                json.dumps(list(conversation.participants)),
            ),
        )

    def delete_conversation(self, account_id: str, thread_id: str) -> bool:
        cursor = self.conn.execute(
            "DELETE FROM conversations WHERE account_id = ? AND thread_id = ?",
            (account_id, thread_id),
        )
        return cursor.rowcount > 0

    def delete_orphan_conversations(self, account_id: str) -> int:
        """Delete conversations that no longer have any message."""
        cursor = self.conn.execute(
            """DELETE FROM conversations WHERE account_id = ? AND NOT EXISTS (
                   SELECT 1 FROM messages m
                   WHERE m.account_id = conversations.account_id
                     AND m.thread_id = conversations.thread_id)""",
            (account_id,),
        )
        return cursor.rowcount

    def get_conversation(self, account_id: str, thread_id: str) -> Conversation | None:
        row = self.conn.execute(
            "SELECT * FROM conversations WHERE account_id = ? AND thread_id = ?",
            (account_id, thread_id),
        ).fetchone()
        return self._row_to_conversation(row) if row else None

    def fetch_conversations(
        self, account_id: str, *, limit: int | None = None, offset: int = 0
    ) -> list[Conversation]:
        rows = self.conn.execute(
            """SELECT * FROM conversations WHERE account_id = ?
               ORDER BY last_message_ms DESC LIMIT ? OFFSET ?""",
            (account_id, -1 if limit is None else limit, offset),
        ).fetchall()
        return [self._row_to_conversation(row) for row in rows]

    def replace_labels(self, account_id: str, labels: Sequence[Label]) -> int:
        """Replace the account's labels wholesale."""
        self.conn.execute("DELETE FROM labels WHERE account_id = ?", (account_id,))
        rows = [
            (
                account_id,
                lbl.label_id,
                lbl.name,
                lbl.label_type.value,
                lbl.message_list_visibility.value,
                lbl.label_list_visibility.value,
                lbl.text_color,
                lbl.background_color,
            )
            for lbl in labels
        ]
        self.conn.executemany(
            """INSERT INTO labels
               (account_id, label_id, name, label_type, message_list_visibility,
                label_list_visibility, text_color, background_color)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            rows,
        )
        return len(rows)

    def fetch_labels(self, account_id: str) -> list[Label]:
        rows = self.conn.execute(
            "SELECT * FROM labels WHERE account_id = ? ORDER BY label_type, name",
            (account_id,),
        ).fetchall()
        return [
            Label(
                label_id=row["label_id"],
                account_id=row["account_id"],
                name=row["name"],
                label_type=LabelType(row["label_type"]),
                message_list_visibility=LabelVisibility(row["message_list_visibility"]),
                label_list_visibility=LabelVisibility(row["label_list_visibility"]),
                text_color=row["text_color"],
                background_color=row["background_color"],
            )
            for row in rows
        ]

    def load_cursor(self, account_id: str) -> SyncCursor:
        """Load the account's cursor, or a fresh one if it has never synced."""
        row = self.conn.execute(
            "SELECT * FROM sync_state WHERE account_id = ?", (account_id,)
        ).fetchone()
        cursor = SyncCursor(account_id=account_id)
        if row:
            cursor.history_id = row["history_id"]
            cursor.last_full_sync_at = _from_iso(row["last_full_sync_at"])
            cursor.last_incremental_sync_at = _from_iso(row["last_incremental_sync_at"])
            cursor.status = SyncStatus(row["status"])
            cursor.error_message = row["error_message"]
            cursor.message_count = row["message_count"]
        cursor.failures = self.load_failures(account_id)
        return cursor

    def save_cursor(self, cursor: SyncCursor) -> None:
        self.conn.execute(
            """INSERT INTO sync_state
               (account_id, history_id, last_full_sync_at, last_incremental_sync_at,
                status, error_message, message_count, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(account_id) DO UPDATE SET
                   history_id = excluded.history_id,
                   last_full_sync_at = excluded.last_full_sync_at,
                   last_incremental_sync_at = excluded.last_incremental_sync_at,
                   status = excluded.status,
                   error_message = excluded.error_message,
                   message_count = excluded.message_count,
                   updated_at = excluded.updated_at""",
            (
                cursor.account_id,
                cursor.history_id,
                _to_iso(cursor.last_full_sync_at),
                _to_iso(cursor.last_incremental_sync_at),
                cursor.status.value,
                cursor.error_message,
                cursor.message_count,
                _now(),
            ),
        )

    def load_failures(self, account_id: str) -> dict[str, FailedMessage]:
        rows = self.conn.execute(
            "SELECT * FROM sync_failures WHERE account_id = ?", (account_id,)
        ).fetchall()
        return {
            row["message_id"]: FailedMessage(
                message_id=row["message_id"],
                operation=row["operation"],
                error=row["error"],
                attempts=row["attempts"],
            )
            for row in rows
        }

    def record_failure(
        self, account_id: str, message_id: str, operation: str, error: str
    ) -> FailedMessage:
        """Record one more failed attempt for a message."""
        self.conn.execute(
            """INSERT INTO sync_failures
               (account_id, message_id, operation, error, attempts, updated_at)
               VALUES (?, ?, ?, ?, 1, ?)
               ON CONFLICT(account_id, message_id) DO UPDATE SET
                   operation = excluded.operation,
                   error = excluded.error,
                   attempts = sync_failures.attempts + 1,
                   updated_at = excluded.updated_at""",
            (account_id, message_id, operation, error, _now()),
        )
        row = self.conn.execute(
            "SELECT attempts FROM sync_failures WHERE account_id = ? AND message_id = ?",
            (account_id, message_id),
        ).fetchone()
        return FailedMessage(message_id, operation, error, row["attempts"])

    def clear_failure(self, account_id: str, message_id: str) -> None:
        self.conn.execute(
            "DELETE FROM sync_failures WHERE account_id = ? AND message_id = ?",
            (account_id, message_id),
        )

    def clear_failures(self, account_id: str) -> int:
        """Forget all failures for an account so they are retried."""
        with self.transaction():
            cursor = self.conn.execute(
                "DELETE FROM sync_failures WHERE account_id = ?", (account_id,)
            )
        return cursor.rowcount

    @staticmethod
    def _row_to_account(row: sqlite3.Row) -> Account:
        return Account(
            account_id=row["account_id"],
            email=row["email"],
            is_enabled=bool(row["is_enabled"]),
            last_sync_at=_from_iso(row["last_sync_at"]),
        )

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> Message:
        return Message(
            message_id=row["message_id"],
            thread_id=row["thread_id"],
            account_id=row["account_id"],
            date=_from_ms(row["date_ms"]),
            subject=row["subject"],
            snippet=row["snippet"],
            sender=row["sender"],
            sender_name=row["sender_name"],
            to=tuple(json.loads(row["to_addresses"])),
            cc=tuple(json.loads(row["cc_addresses"])),
            is_read=bool(row["is_read"]),
            is_starred=bool(row["is_starred"]),
            label_ids=tuple(json.loads(row["label_ids"])),
            body_text=row["body_text"],
            body_html=row["body_html"],
        )

    @staticmethod
    def _row_to_conversation(row: sqlite3.Row) -> Conversation:
        return Conversation(
            thread_id=row["thread_id"],
            account_id=row["account_id"],
            subject=row["subject"],
            snippet=row["snippet"],
            last_message_at=_from_ms(row["last_message_ms"]),
            message_count=row["message_count"],
            is_read=bool(row["is_read"]),
            is_starred=bool(row["is_starred"]),
            participants=tuple(json.loads(row["participants"])),
        )
