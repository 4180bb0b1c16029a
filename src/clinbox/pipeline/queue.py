"""Ordered triage queue with a cursor over write-once outcomes."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING

from clinbox.core.exceptions import InvariantViolation
from clinbox.core.models import (
    MessageContent,
    MessageRef,
    Outcome,
    QueueItem,
    TriageFilter,
)

if TYPE_CHECKING:
    from clinbox.core.interfaces import MailSource
    from clinbox.storage.checkpoint import Checkpoint

logger = logging.getLogger(__name__)

UNAVAILABLE_REASON = "message no longer available"


class TriageQueue:
    """Queue items in listing order plus a cursor.

    The order is fixed at construction. The cursor only moves forward, and
    only past items that already carry a terminal outcome, so it never
    points past the first pending item.
    """

    def __init__(self, triage_filter: TriageFilter, items: list[QueueItem]) -> None:
        self._filter = triage_filter
        self._items = items
        self._cursor = 0
        self._skip_terminal()

    @classmethod
    def build(cls, source: MailSource, triage_filter: TriageFilter) -> TriageQueue:
        """List and fetch the messages for a fresh session.

        References whose content cannot be fetched are dropped; positions are
        renumbered so they stay contiguous.
        """
        refs = source.list(triage_filter)
        contents = {c.message_id: c for c in source.fetch_many([r.message_id for r in refs])}

        items: list[QueueItem] = []
        for ref in refs:
            content = contents.get(ref.message_id)
            if content is None:
                logger.warning("Dropping message %s: content could not be fetched", ref.message_id)
                continue
            items.append(QueueItem(ref=replace(ref, position=len(items)), content=content))

        logger.info("Built queue of %d messages for %s", len(items), triage_filter.canonical_key())
        return cls(triage_filter, items)

    @classmethod
    def restore(
        cls,
        checkpoint: Checkpoint,
        contents: list[MessageContent],
    ) -> TriageQueue:
        """Rebuild a queue from a checkpoint, keeping order and terminal outcomes.

        Pending items whose content is gone from the mailbox are recorded as
        failed so the session does not stall on them.
        """
        by_id = {c.message_id: c for c in contents}
        items: list[QueueItem] = []
        for ref in checkpoint.refs:
            outcome = checkpoint.outcomes.get(ref.message_id, Outcome.pending())
            item = QueueItem(ref=ref, content=by_id.get(ref.message_id), outcome=outcome)
            if item.is_pending and item.content is None:
                logger.warning("Message %s vanished since the checkpoint", ref.message_id)
                item.set_outcome(Outcome.failed(UNAVAILABLE_REASON))
            items.append(item)

        queue = cls(checkpoint.triage_filter, items)
        logger.info(
            "Restored queue for %s at %d/%d",
            checkpoint.triage_filter.canonical_key(), queue.position, len(queue),
        )
        return queue

    @property
    def triage_filter(self) -> TriageFilter:
        return self._filter

    @property
    def items(self) -> list[QueueItem]:
        return list(self._items)

    @property
    def position(self) -> int:
        return self._cursor

    @property
    def is_exhausted(self) -> bool:
        return self._cursor >= len(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def current(self) -> QueueItem | None:
        if self.is_exhausted:
            return None
        return self._items[self._cursor]

    def record(self, outcome: Outcome) -> QueueItem:
        """Set the current item's terminal outcome (write-once)."""
        item = self.current()
        if item is None:
            raise InvariantViolation("Cannot record an outcome on an exhausted queue")
        item.set_outcome(outcome)
        return item

    def advance(self) -> None:
        """Move past the current item, which must already be terminal."""
        item = self.current()
        if item is None:
            raise InvariantViolation("Cannot advance an exhausted queue")
        if item.is_pending:
            raise InvariantViolation(
                f"Cannot advance past pending message {item.message_id} at {self._cursor}"
            )
        self._cursor += 1
        self._skip_terminal()

    def upcoming(self, count: int) -> list[QueueItem]:
        """Pending items from the cursor onward, at most ``count`` of them."""
        window: list[QueueItem] = []
        for item in self._items[self._cursor:]:
            if len(window) >= count:
                break
            if item.is_pending:
                window.append(item)
        return window

    def pending_refs(self) -> list[MessageRef]:
        return [item.ref for item in self._items if item.is_pending]

    def outcomes(self) -> dict[str, Outcome]:
        return {item.message_id: item.outcome for item in self._items}

    def _skip_terminal(self) -> None:
        while self._cursor < len(self._items) and not self._items[self._cursor].is_pending:
            self._cursor += 1
