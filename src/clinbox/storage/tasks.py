"""JSON-file task store with idempotent append keyed by source message id."""

from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path

from clinbox.core.exceptions import StorageError
from clinbox.core.models import TaskRecord

logger = logging.getLogger(__name__)


def new_task(
    source_message_id: str,
    title: str,
    *,
    description: str | None = None,
    source_subject: str | None = None,
) -> TaskRecord:
    """Create a fresh, not yet persisted task record."""
    return TaskRecord(
        task_id=f"task_{uuid.uuid4().hex[:12]}",
        source_message_id=source_message_id,
        title=title,
        created_at=datetime.now(UTC),
        description=description,
        source_subject=source_subject,
    )


class TaskStore:
    """Durable task list stored as ``{"tasks": [...]}``.

    Every mutation rewrites the file through a temporary file and an atomic
    rename, so a crash never leaves a half-written task list behind.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._tasks: list[TaskRecord] | None = None

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> list[TaskRecord]:
        if self._tasks is not None:
            return self._tasks
        if not self._path.exists():
            self._tasks = []
            return self._tasks
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            self._tasks = [TaskRecord.from_dict(t) for t in data.get("tasks", [])]
        except (OSError, ValueError, KeyError) as e:
            raise StorageError(f"Failed to read tasks file {self._path}: {e}") from e
        return self._tasks

    def _save(self, tasks: list[TaskRecord]) -> None:
        payload = json.dumps({"tasks": [t.to_dict() for t in tasks]}, indent=2, ensure_ascii=False)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(payload, encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as e:
            raise StorageError(f"Failed to write tasks file {self._path}: {e}") from e
        self._tasks = tasks

    def find_by_source(self, source_message_id: str) -> TaskRecord | None:
        for task in self._load():
            if task.source_message_id == source_message_id:
                return task
        return None

    def append_if_absent(self, source_message_id: str, record: TaskRecord) -> bool:
        """Append ``record`` unless a task for this message already exists.

        Returns:
            True if the record was written, False if one already existed.

        Raises:
            StorageError: If the task file cannot be read or written.
        """
        if self.find_by_source(source_message_id) is not None:
            logger.info("Task for message %s already exists, not re-creating", source_message_id)
            return False
        self._save([*self._load(), record])
        logger.info("Created task %s for message %s", record.task_id, source_message_id)
        return True

    def list_pending(self) -> list[TaskRecord]:
        return [t for t in self._load() if not t.completed]

    def complete(self, task_id: str) -> bool:
        """Mark a task completed. Returns False if no task has that id."""
        tasks = self._load()
        for idx, task in enumerate(tasks):
            if task.task_id == task_id:
                done = replace(task, completed=True, completed_at=datetime.now(UTC))
                self._save([*tasks[:idx], done, *tasks[idx + 1:]])
                return True
        return False
