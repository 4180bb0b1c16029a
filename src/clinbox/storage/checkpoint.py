"""SQLite-backed session checkpoint: queue order, cursor and outcomes per filter."""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from clinbox.core.exceptions import CheckpointError
from clinbox.core.models import MessageRef, Outcome, OutcomeKind, TriageFilter

if TYPE_CHECKING:
    from clinbox.pipeline.queue import TriageQueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Checkpoint:
    """A persisted queue snapshot."""

    triage_filter: TriageFilter
    refs: list[MessageRef]
    cursor: int
    outcomes: dict[str, Outcome] = field(default_factory=dict)
    updated_at: str = ""

    def pending_refs(self) -> list[MessageRef]:
        return [
            ref for ref in self.refs
            if not self.outcomes.get(ref.message_id, Outcome.pending()).is_terminal
        ]


class CheckpointStore:
    """Persists one checkpoint per filter configuration in SQLite.

    Tables:
    - checkpoints: one row per filter key with the cursor
    - checkpoint_items: ordered message references and their outcomes
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Open database connection and ensure schema exists."""
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self._db_path))
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._create_tables()
        except (OSError, sqlite3.Error) as e:
            raise CheckpointError(f"Cannot open checkpoint database {self._db_path}: {e}") from e

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> CheckpointStore:
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
            CREATE TABLE IF NOT EXISTS checkpoints (
                filter_key TEXT PRIMARY KEY,
                filter_json TEXT NOT NULL,
                cursor INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS checkpoint_items (
                filter_key TEXT NOT NULL,
                position INTEGER NOT NULL,
                message_id TEXT NOT NULL,
                thread_id TEXT NOT NULL DEFAULT '',
                outcome TEXT NOT NULL DEFAULT 'pending',
                reason TEXT NOT NULL DEFAULT '',
                updated_at TEXT NOT NULL,
                PRIMARY KEY (filter_key, position),
                FOREIGN KEY (filter_key) REFERENCES checkpoints(filter_key)
            );

            CREATE INDEX IF NOT EXISTS idx_checkpoint_items_outcome
                ON checkpoint_items(filter_key, outcome);
        """)

    def save(self, queue: TriageQueue) -> None:
        """Replace the checkpoint for the queue's filter in a single transaction.

        Raises:
            CheckpointError: If the write fails. Callers treat this as a warning.
        """
        key = queue.triage_filter.canonical_key()
        filter_json = json.dumps(queue.triage_filter.to_dict(), sort_keys=True)
        now = datetime.now(UTC).isoformat()
        rows = [
            (
                key,
                item.ref.position,
                item.ref.message_id,
                item.ref.thread_id,
                item.outcome.kind.value,
                item.outcome.reason,
                now,
            )
            for item in queue.items
        ]
        try:
            with self.conn:
                self.conn.execute(
                    """INSERT INTO checkpoints (filter_key, filter_json, cursor, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?)
                       ON CONFLICT(filter_key) DO UPDATE SET
                           filter_json = excluded.filter_json,
                           cursor = excluded.cursor,
                           updated_at = excluded.updated_at""",
                    (key, filter_json, queue.position, now, now),
                )
                self.conn.execute("DELETE FROM checkpoint_items WHERE filter_key = ?", (key,))
                self.conn.executemany(
                    """INSERT INTO checkpoint_items
                       (filter_key, position, message_id, thread_id, outcome, reason, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    rows,
                )
        except sqlite3.Error as e:
            raise CheckpointError(f"Failed to save checkpoint for {key}: {e}") from e
        logger.debug("Saved checkpoint %s (cursor=%d, items=%d)", key, queue.position, len(rows))

    def load(self, triage_filter: TriageFilter) -> Checkpoint | None:
        """Load the checkpoint stored for exactly this filter, if any.

        A record whose stored filter does not match is discarded rather than
        merged into the new run.
        """
        key = triage_filter.canonical_key()
        try:
            row = self.conn.execute(
                "SELECT * FROM checkpoints WHERE filter_key = ?", (key,)
            ).fetchone()
            if row is None:
                return None

            stored_filter = TriageFilter.from_dict(json.loads(row["filter_json"]))
            if stored_filter != triage_filter:
                logger.warning("Discarding checkpoint %s: filter parameters differ", key)
                self.discard(triage_filter)
                return None

            item_rows = self.conn.execute(
                "SELECT * FROM checkpoint_items WHERE filter_key = ? ORDER BY position",
                (key,),
            ).fetchall()

            refs: list[MessageRef] = []
            outcomes: dict[str, Outcome] = {}
            for item in item_rows:
                ref = MessageRef(
                    message_id=item["message_id"],
                    thread_id=item["thread_id"],
                    position=item["position"],
                )
                refs.append(ref)
                outcomes[ref.message_id] = Outcome(OutcomeKind(item["outcome"]), item["reason"])
        except (sqlite3.Error, ValueError, KeyError, IndexError) as e:
            raise CheckpointError(f"Failed to load checkpoint for {key}: {e}") from e

        return Checkpoint(
            triage_filter=stored_filter,
            refs=refs,
            cursor=row["cursor"],
            outcomes=outcomes,
            updated_at=row["updated_at"],
        )

    def discard(self, triage_filter: TriageFilter) -> None:
        """Delete the checkpoint for a filter."""
        key = triage_filter.canonical_key()
        try:
            with self.conn:
                self.conn.execute("DELETE FROM checkpoint_items WHERE filter_key = ?", (key,))
                self.conn.execute("DELETE FROM checkpoints WHERE filter_key = ?", (key,))
        except sqlite3.Error as e:
            raise CheckpointError(f"Failed to discard checkpoint for {key}: {e}") from e
        logger.info("Discarded checkpoint %s", key)

    def clear_all(self) -> int:
        """Delete every stored checkpoint. Returns how many were removed."""
        try:
            with self.conn:
                self.conn.execute("DELETE FROM checkpoint_items")
                cursor = self.conn.execute("DELETE FROM checkpoints")
        except sqlite3.Error as e:
            raise CheckpointError(f"Failed to clear checkpoints: {e}") from e
        logger.info("Cleared %d checkpoints", cursor.rowcount)
        return cursor.rowcount

    def list_checkpoints(self) -> list[dict[str, object]]:
        """Summaries of stored checkpoints: key, cursor, item and pending counts."""
        rows = self.conn.execute(
            """SELECT c.filter_key, c.cursor, c.updated_at,
                      COUNT(i.position) AS items,
                      SUM(CASE WHEN i.outcome = 'pending' THEN 1 ELSE 0 END) AS pending
               FROM checkpoints c
               LEFT JOIN checkpoint_items i ON c.filter_key = i.filter_key
               GROUP BY c.filter_key
               ORDER BY c.updated_at DESC"""
        ).fetchall()
        return [
            {
                "filter_key": row["filter_key"],
                "cursor": row["cursor"],
                "updated_at": row["updated_at"],
                "items": row["items"],
                "pending": row["pending"] or 0,
            }
            for row in rows
        ]
