"""Fold Gmail history entries into one pending change per message."""

from __future__ import annotations

from collections.abc import Iterable

from gmail_mirror.core.models import HistoryEntry, HistoryEventType, MessageDelta


def fold_history(entries: Iterable[HistoryEntry]) -> dict[str, MessageDelta]:
    """Collapse ordered history entries into a delta per message id.

    - A deletion dominates every other change for that message.
    - An addition means the message must be fetched in full.
    - Label changes are last-writer-wins per label id.

    Folding the same entries twice yields the same result, so a history
    window that is replayed after a failed commit is applied idempotently.
    """
    deltas: dict[str, MessageDelta] = {}

    for entry in entries:
        delta = deltas.get(entry.message_id)
        if delta is None:
            delta = deltas[entry.message_id] = MessageDelta(message_id=entry.message_id)

        if delta.is_deleted:
            continue

        if entry.kind is HistoryEventType.DELETED:
            delta.is_deleted = True
            delta.needs_full_fetch = False
            delta.labels_to_add.clear()
            delta.labels_to_remove.clear()
        elif entry.kind is HistoryEventType.ADDED:
            delta.needs_full_fetch = True
        elif entry.kind is HistoryEventType.LABEL_ADDED:
            for label_id in entry.label_ids:
                delta.labels_to_add.add(label_id)
                delta.labels_to_remove.discard(label_id)
        elif entry.kind is HistoryEventType.LABEL_REMOVED:
            for label_id in entry.label_ids:
                delta.labels_to_remove.add(label_id)
                delta.labels_to_add.discard(label_id)

    return deltas


def apply_label_delta(label_ids: Iterable[str], delta: MessageDelta) -> set[str]:
    """Return `label_ids` with the delta's additions and removals applied."""
    return (set(label_ids) | delta.labels_to_add) - delta.labels_to_remove
