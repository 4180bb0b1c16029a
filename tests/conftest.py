"""Shared fixtures and in-memory collaborators for Clinbox tests."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest

from clinbox.core.exceptions import AnalyzerError, ComposerError, RemoteError
from clinbox.core.models import (
    AnalysisResult,
    AnalysisState,
    Command,
    FailureChoice,
    MailOp,
    MessageContent,
    MessageRef,
    Priority,
    ReplyDecision,
    SessionSummary,
    TaskRecord,
    TriageFilter,
)
from clinbox.pipeline.actions import ActionStateMachine
from clinbox.pipeline.prefetch import PrefetchPipeline
from clinbox.pipeline.queue import TriageQueue


def make_content(
    message_id: str,
    *,
    sender: str = "Alice Example <alice@example.com>",
    subject: str | None = None,
    body: str = "Could you review the attached proposal by Friday?",
    labels: tuple[str, ...] = ("INBOX", "UNREAD"),
) -> MessageContent:
    return MessageContent(
        message_id=message_id,
        thread_id=f"thread_{message_id}",
        sender=sender,
        subject=subject or f"Subject {message_id}",
        date=datetime(2024, 3, 1, 9, 30),
        body=body,
        to="me@example.com",
        snippet=body[:40],
        label_ids=labels,
        message_id_header=f"<{message_id}@example.com>",
    )


def make_contents(count: int) -> list[MessageContent]:
    return [make_content(f"m{i}") for i in range(1, count + 1)]


class FakeMailSource:
    """Serves a fixed list of messages and records every mutation and send.

    Exceptions placed in ``failures`` are raised, in order, by the next
    mutate/send calls.
    """

    def __init__(self, contents: list[MessageContent]) -> None:
        self.contents = {c.message_id: c for c in contents}
        self.order = [c.message_id for c in contents]
        self.mutations: list[tuple[str, MailOp]] = []
        self.sent: list[tuple[str, str]] = []
        self.failures: list[Exception] = []
        self.list_calls = 0
        self.fetched: list[str] = []

    def list(self, triage_filter: TriageFilter) -> list[MessageRef]:
        self.list_calls += 1
        return [
            MessageRef(message_id=mid, thread_id=f"thread_{mid}", position=i)
            for i, mid in enumerate(self.order[: triage_filter.limit])
        ]

    def fetch(self, message_id: str) -> MessageContent:
        if message_id not in self.contents:
            raise RemoteError(f"Message {message_id} not found")
        return self.contents[message_id]

    def fetch_many(self, message_ids: list[str]) -> list[MessageContent]:
        self.fetched.extend(message_ids)
        return [self.contents[mid] for mid in message_ids if mid in self.contents]

    def mutate(self, message_id: str, op: MailOp) -> None:
        self._maybe_fail()
        self.mutations.append((message_id, op))

    def send(self, message_id: str, body: str) -> None:
        self._maybe_fail()
        self.sent.append((message_id, body))

    def _maybe_fail(self) -> None:
        if self.failures:
            raise self.failures.pop(0)


class FakeAnalyzer:
    """Returns a canned analysis; can block per message or fail a set number of times."""

    def __init__(self, failures: dict[str, int] | None = None) -> None:
        self.failures = dict(failures or {})
        self.gates: dict[str, threading.Event] = {}
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def block(self, *message_ids: str) -> None:
        for mid in message_ids:
            self.gates[mid] = threading.Event()

    def release(self, *message_ids: str) -> None:
        for mid in message_ids or tuple(self.gates):
            self.gates[mid].set()

    def analyze(self, content: MessageContent) -> AnalysisResult:
        mid = content.message_id
        with self._lock:
            self.calls.append(mid)
        gate = self.gates.get(mid)
        if gate is not None:
            gate.wait(timeout=5)
        with self._lock:
            if self.failures.get(mid, 0) > 0:
                self.failures[mid] -= 1
                raise AnalyzerError("model unavailable")
        return AnalysisResult(
            message_id=mid,
            priority=Priority.ACTIONABLE,
            category="work",
            summary=f"Summary of {mid}",
            suggested_action=f"Follow up on {mid}",
            estimated_minutes=5,
        )


class FakeComposer:
    def __init__(self, draft: str = "Thanks, I will take a look.", error: bool = False) -> None:
        self.draft = draft
        self.error = error
        self.calls: list[tuple[str, str]] = []

    def compose(self, content: MessageContent, tone: str) -> str:
        self.calls.append((content.message_id, tone))
        if self.error:
            raise ComposerError("model overloaded")
        return self.draft


class MemoryTaskSink:
    def __init__(self) -> None:
        self.records: dict[str, TaskRecord] = {}
        self.failures: list[Exception] = []
        self.append_calls = 0

    def append_if_absent(self, source_message_id: str, record: TaskRecord) -> bool:
        self.append_calls += 1
        if self.failures:
            raise self.failures.pop(0)
        if source_message_id in self.records:
            return False
        self.records[source_message_id] = record
        return True

    def list_pending(self) -> list[TaskRecord]:
        return [r for r in self.records.values() if not r.completed]


class ScriptedSurface:
    """Plays back a fixed list of commands and records everything shown.

    When the command script runs out it answers QUIT, or raises
    KeyboardInterrupt when ``crash_when_done`` is set to simulate the
    process being killed.
    """

    def __init__(
        self,
        commands: list[Command],
        *,
        confirm: bool = True,
        decisions: list[ReplyDecision] | None = None,
        failure_choices: list[FailureChoice] | None = None,
        crash_when_done: bool = False,
    ) -> None:
        self.commands = list(commands)
        self.confirm = confirm
        self.decisions = list(decisions or [])
        self.failure_choices = list(failure_choices or [])
        self.crash_when_done = crash_when_done
        self.renders: list[tuple[str, AnalysisState, int, int]] = []
        self.viewed: list[str] = []
        self.confirmations: list[tuple[str, str]] = []
        self.drafts: list[str] = []
        self.failures: list[tuple[str, str]] = []
        self.notifications: list[str] = []
        self.warnings: list[str] = []
        self.summaries: list[SessionSummary] = []

    @property
    def rendered_ids(self) -> list[str]:
        return [r[0] for r in self.renders]

    def render(
        self, content: MessageContent, analysis: AnalysisState, position: int, total: int
    ) -> None:
        self.renders.append((content.message_id, analysis, position, total))

    def ask_command(self) -> Command:
        if not self.commands:
            if self.crash_when_done:
                raise KeyboardInterrupt
            return Command.QUIT
        return self.commands.pop(0)

    def show_full(self, content: MessageContent) -> None:
        self.viewed.append(content.message_id)

    def confirm_task(self, title: str, subject: str) -> bool:
        self.confirmations.append((title, subject))
        return self.confirm

    def review_draft(self, content: MessageContent, draft: str) -> ReplyDecision:
        self.drafts.append(draft)
        if self.decisions:
            return self.decisions.pop(0)
        return ReplyDecision(send=True, body=draft)

    def ask_failure(self, action: str, error: str) -> FailureChoice:
        self.failures.append((action, error))
        if self.failure_choices:
            return self.failure_choices.pop(0)
        return FailureChoice.QUIT

    def notify(self, message: str) -> None:
        self.notifications.append(message)

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def show_summary(self, summary: SessionSummary) -> None:
        self.summaries.append(summary)


@dataclass
class Harness:
    """Wires fakes into a queue, pipeline and state machine."""

    source: FakeMailSource
    surface: ScriptedSurface
    analyzer: FakeAnalyzer = field(default_factory=FakeAnalyzer)
    composer: FakeComposer = field(default_factory=FakeComposer)
    tasks: MemoryTaskSink = field(default_factory=MemoryTaskSink)
    checkpoint: Any = None
    open_result: bool = True
    opened: list[str] = field(default_factory=list)

    def opener(self, url: str) -> bool:
        self.opened.append(url)
        return self.open_result

    def build(
        self, triage_filter: TriageFilter | None = None, **options: Any
    ) -> tuple[ActionStateMachine, TriageQueue, PrefetchPipeline]:
        queue = TriageQueue.build(self.source, triage_filter or TriageFilter(limit=20))
        pipeline = PrefetchPipeline(self.analyzer, 2, retry_backoff=0.0)
        machine = ActionStateMachine(
            queue,
            self.source,
            self.composer,
            self.tasks,
            self.surface,
            pipeline,
            self.checkpoint,
            opener=self.opener,
            presentation_wait=2.0,
            **options,
        )
        return machine, queue, pipeline

    def run(
        self, triage_filter: TriageFilter | None = None, **options: Any
    ) -> tuple[SessionSummary, TriageQueue]:
        machine, queue, pipeline = self.build(triage_filter, **options)
        pipeline.start(queue)
        try:
            summary = machine.run()
        finally:
            pipeline.close()
        return summary, queue


# ---------- fixtures ----------


@pytest.fixture
def content_factory() -> Callable[..., MessageContent]:
    """Factory for MessageContent with sensible defaults."""
    return make_content


@pytest.fixture
def sample_content() -> MessageContent:
    """A single unread message from a named sender."""
    return make_content("msg_test_001", subject="Quarterly report")


@pytest.fixture
def analyzer() -> Iterator[FakeAnalyzer]:
    """A FakeAnalyzer that succeeds immediately unless told otherwise."""
    fake = FakeAnalyzer()
    yield fake
    # Never leave a worker thread blocked on a gate.
    for gate in fake.gates.values():
        gate.set()


@pytest.fixture
def harness_factory() -> Callable[..., Harness]:
    """Build a Harness over ``count`` messages and a scripted command list."""

    def _make(count: int = 1, commands: list[Command] | None = None, **surface_options: Any) -> Harness:
        return Harness(
            source=FakeMailSource(make_contents(count)),
            surface=ScriptedSurface(commands or [], **surface_options),
        )

    return _make


@pytest.fixture
def mail_source() -> FakeMailSource:
    """Mail source holding five messages m1..m5."""
    return FakeMailSource(make_contents(5))


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> Path:
    """Temporary SQLite checkpoint database path."""
    return tmp_path / "test_clinbox.db"


@pytest.fixture
def tmp_tasks_path(tmp_path: Path) -> Path:
    """Temporary tasks JSON path."""
    return tmp_path / "tasks.json"
