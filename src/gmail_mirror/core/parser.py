"""Gmail message parser: MIME tree walking, base64url decoding, header extraction."""

from __future__ import annotations

import base64
import logging
from datetime import UTC, datetime
from email.utils import getaddresses, parseaddr, parsedate_to_datetime
from typing import Any

from gmail_mirror.core.exceptions import MalformedResponseError
from gmail_mirror.core.models import (
    STARRED_LABEL,
    SYSTEM_LABEL_IDS,
    UNREAD_LABEL,
    HistoryEntry,
    HistoryEventType,
    Label,
    LabelType,
    LabelVisibility,
    Message,
)

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

_VISIBILITY = {
    "show": LabelVisibility.SHOW,
    "labelShow": LabelVisibility.SHOW,
    "hide": LabelVisibility.HIDE,
    "labelHide": LabelVisibility.HIDE,
    "labelShowIfUnread": LabelVisibility.SHOW_IF_UNREAD,
}

# Order matters: entries for a message are folded in this order within a record
_HISTORY_FIELDS = (
    ("messagesAdded", HistoryEventType.ADDED),
    ("messagesDeleted", HistoryEventType.DELETED),
    ("labelsAdded", HistoryEventType.LABEL_ADDED),
    ("labelsRemoved", HistoryEventType.LABEL_REMOVED),
)


class GmailParser:
    """Parses raw Gmail API dicts into domain objects."""

    def parse(self, raw_message: dict[str, Any], account_id: str) -> Message:
        """Parse a raw Gmail API message dict into a Message.

        Args:
            raw_message: Full message dict from Gmail API (format=full).
            account_id: Owning account.

        Returns:
            Parsed Message with read/starred derived from its labels.

        Raises:
            MalformedResponseError: If the message structure is invalid.
        """
        try:
            message_id = raw_message["id"]
            thread_id = raw_message["threadId"]
            label_ids = tuple(raw_message.get("labelIds", []))
            payload = raw_message.get("payload", {})
            headers = self._extract_headers(payload)
            plain_text, html = self._extract_body(payload)

            sender_name, sender = parseaddr(headers.get("from", ""))
            date = self._parse_internal_date(raw_message.get("internalDate"))
            if date is None:
                date = self._parse_date(headers.get("date", ""))

            return Message(
                message_id=message_id,
                thread_id=thread_id,
                account_id=account_id,
                date=date,
                subject=headers.get("subject", "(no subject)"),
                snippet=raw_message.get("snippet", ""),
                sender=sender.lower(),
                sender_name=sender_name,
                to=self._addresses(headers.get("to", "")),
                cc=self._addresses(headers.get("cc", "")),
                is_read=UNREAD_LABEL not in label_ids,
                is_starred=STARRED_LABEL in label_ids,
                label_ids=label_ids,
                body_text=plain_text,
                body_html=html,
            )
        except MalformedResponseError:
            raise
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise MalformedResponseError(
                f"Failed to parse message {raw_message.get('id', '?')}: {e}"
            ) from e

    def parse_label(self, raw_label: dict[str, Any], account_id: str) -> Label:
        """Parse a label resource from users.labels.list."""
        try:
            label_id = raw_label["id"]
            color = raw_label.get("color") or {}
            if raw_label.get("type") == "system" or label_id in SYSTEM_LABEL_IDS:
                label_type = LabelType.SYSTEM
            else:
                label_type = LabelType.USER
            return Label(
                label_id=label_id,
                account_id=account_id,
                name=raw_label.get("name", label_id),
                label_type=label_type,
                message_list_visibility=_VISIBILITY.get(
                    raw_label.get("messageListVisibility", "show"), LabelVisibility.SHOW
                ),
                label_list_visibility=_VISIBILITY.get(
                    raw_label.get("labelListVisibility", "labelShow"), LabelVisibility.SHOW
                ),
                text_color=color.get("textColor"),
                background_color=color.get("backgroundColor"),
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise MalformedResponseError(f"Failed to parse label: {e}") from e

    def parse_history(self, records: list[dict[str, Any]]) -> list[HistoryEntry]:
        """Flatten history records into per-message entries, preserving order."""
        entries: list[HistoryEntry] = []
        try:
            for record in records:
                for field_name, kind in _HISTORY_FIELDS:
                    for change in record.get(field_name, []):
                        message = change["message"]
                        if kind in (HistoryEventType.LABEL_ADDED, HistoryEventType.LABEL_REMOVED):
                            label_ids = tuple(change.get("labelIds", []))
                        else:
                            label_ids = tuple(message.get("labelIds", []))
                        entries.append(
                            HistoryEntry(
                                kind=kind,
                                message_id=message["id"],
                                thread_id=message.get("threadId", ""),
                                label_ids=label_ids,
                            )
                        )
        except (KeyError, TypeError, AttributeError) as e:
            raise MalformedResponseError(f"Failed to parse history records: {e}") from e
        return entries

    @staticmethod
    def _extract_headers(payload: dict[str, Any]) -> dict[str, str]:
        """Collect the standard headers, lower-cased by name."""
        headers: dict[str, str] = {}
        for h in payload.get("headers", []):
            name = h.get("name", "").lower()
            if name in ("subject", "from", "to", "date", "cc") and name not in headers:
                headers[name] = h.get("value", "")
        return headers

    def _extract_body(self, payload: dict[str, Any]) -> tuple[str | None, str | None]:
        """Recursively walk the MIME tree to extract text/html bodies."""
        plain_text, html = self._walk_parts(payload)

        if plain_text is None and html is None:
            # Try the top-level body directly
            body_data = payload.get("body", {}).get("data")
            if body_data:
                decoded = self._decode_body(body_data)
                if "html" in payload.get("mimeType", ""):
                    html = decoded
                else:
                    plain_text = decoded

        return plain_text, html

    def _walk_parts(self, part: dict[str, Any]) -> tuple[str | None, str | None]:
        """Recursively walk MIME parts to find text/plain and text/html."""
        plain_text: str | None = None
        html: str | None = None
        mime_type = part.get("mimeType", "")

        if mime_type == "text/plain":
            data = part.get("body", {}).get("data")
            if data:
                plain_text = self._decode_body(data)
        elif mime_type == "text/html":
            data = part.get("body", {}).get("data")
            if data:
                html = self._decode_body(data)
        elif mime_type.startswith("multipart/"):
            for sub_part in part.get("parts", []):
                # Skip attachments
                if sub_part.get("filename"):
                    continue

                sub_plain, sub_html = self._walk_parts(sub_part)
                if sub_plain and not plain_text:
                    plain_text = sub_plain
                if sub_html and not html:
                    html = sub_html

        return plain_text, html

    @staticmethod
    def _decode_body(data: str) -> str:
        # Gmail uses base64url encoding (RFC 4648 §5)
        padded = data + "=" * (4 - len(data) % 4) if len(data) % 4 else data
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")

    @staticmethod
    def _addresses(value: str) -> tuple[str, ...]:
        return tuple(addr.lower() for _, addr in getaddresses([value]) if addr)

    @staticmethod
    def _parse_internal_date(value: Any) -> datetime | None:
        """internalDate is milliseconds since the epoch, as a string."""
        if value in (None, ""):
            return None
        try:
            return datetime.fromtimestamp(int(value) / 1000, tz=UTC)
        except (TypeError, ValueError, OverflowError):
            logger.warning("Invalid internalDate: %s", value)
            return None

    @staticmethod
    def _parse_date(date_str: str) -> datetime:
        """Parse an RFC 2822 date header, or return the epoch if that fails."""
        if not date_str:
            return EPOCH
        try:
            parsed = parsedate_to_datetime(date_str)
        except (TypeError, ValueError):
            logger.warning("Failed to parse date: %s", date_str)
            return EPOCH
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed
