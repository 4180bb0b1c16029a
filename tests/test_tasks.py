"""Tests for the JSON-file TaskStore."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from clinbox.core.exceptions import StorageError
from clinbox.storage.tasks import TaskStore, new_task


class TestNewTask:
    """new_task() builds unsaved records."""

    def test_fields(self) -> None:
        task = new_task("m1", "Pay invoice", description="Due Friday", source_subject="Invoice")
        assert task.task_id.startswith("task_")
        assert len(task.task_id) == len("task_") + 12
        assert task.source_message_id == "m1"
        assert task.completed is False
        assert task.created_at.tzinfo is not None

    def test_ids_are_unique(self) -> None:
        assert new_task("m1", "a").task_id != new_task("m1", "a").task_id


class TestAppendIfAbsent:
    """Idempotent append keyed by source message id."""

    def test_creates_file(self, tmp_tasks_path: Path) -> None:
        store = TaskStore(tmp_tasks_path)
        assert store.append_if_absent("m1", new_task("m1", "Pay invoice")) is True

        data = json.loads(tmp_tasks_path.read_text())
        assert [t["source_email_id"] for t in data["tasks"]] == ["m1"]
        assert data["tasks"][0]["title"] == "Pay invoice"

    def test_second_append_for_same_message_is_noop(self, tmp_tasks_path: Path) -> None:
        store = TaskStore(tmp_tasks_path)
        store.append_if_absent("m1", new_task("m1", "First"))

        assert store.append_if_absent("m1", new_task("m1", "Second")) is False
        assert [t.title for t in store.list_pending()] == ["First"]

    def test_idempotent_across_store_instances(self, tmp_tasks_path: Path) -> None:
        TaskStore(tmp_tasks_path).append_if_absent("m1", new_task("m1", "First"))

        reopened = TaskStore(tmp_tasks_path)
        assert reopened.append_if_absent("m1", new_task("m1", "Again")) is False
        assert len(reopened.list_pending()) == 1

    def test_keeps_order(self, tmp_tasks_path: Path) -> None:
        store = TaskStore(tmp_tasks_path)
        for mid in ("m1", "m2", "m3"):
            store.append_if_absent(mid, new_task(mid, f"Task {mid}"))
        assert [t.source_message_id for t in store.list_pending()] == ["m1", "m2", "m3"]

    def test_no_temp_file_left_behind(self, tmp_tasks_path: Path) -> None:
        TaskStore(tmp_tasks_path).append_if_absent("m1", new_task("m1", "x"))
        assert list(tmp_tasks_path.parent.glob("*.tmp")) == []

    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "tasks.json"
        TaskStore(path).append_if_absent("m1", new_task("m1", "x"))
        assert path.exists()


class TestCompleteAndList:
    """complete() and list_pending()."""

    def test_complete_hides_task(self, tmp_tasks_path: Path) -> None:
        store = TaskStore(tmp_tasks_path)
        task = new_task("m1", "Pay invoice")
        store.append_if_absent("m1", task)

        assert store.complete(task.task_id) is True
        assert store.list_pending() == []

        saved = json.loads(tmp_tasks_path.read_text())["tasks"][0]
        assert saved["completed"] is True
        assert saved["completed_at"] is not None

    def test_complete_unknown_id(self, tmp_tasks_path: Path) -> None:
        assert TaskStore(tmp_tasks_path).complete("task_missing") is False

    def test_completed_task_still_blocks_duplicate(self, tmp_tasks_path: Path) -> None:
        store = TaskStore(tmp_tasks_path)
        task = new_task("m1", "Pay invoice")
        store.append_if_absent("m1", task)
        store.complete(task.task_id)

        assert store.append_if_absent("m1", new_task("m1", "Pay invoice")) is False

    def test_missing_file_means_no_tasks(self, tmp_tasks_path: Path) -> None:
        assert TaskStore(tmp_tasks_path).list_pending() == []

    def test_corrupt_file_raises_storage_error(self, tmp_tasks_path: Path) -> None:
        tmp_tasks_path.write_text("{not json")
        with pytest.raises(StorageError, match="Failed to read tasks file"):
            TaskStore(tmp_tasks_path).list_pending()

    def test_unwritable_location_raises_storage_error(self, tmp_path: Path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("x")
        store = TaskStore(blocker / "tasks.json")
        with pytest.raises(StorageError, match="Failed to write tasks file"):
            store.append_if_absent("m1", new_task("m1", "x"))
