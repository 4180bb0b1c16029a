"""Collaborator interfaces consumed by the triage pipeline.

The pipeline only depends on these protocols; the Gmail, AI and rich
implementations live in their own modules and tests substitute fakes.
"""

from __future__ import annotations

from typing import Protocol

from clinbox.core.models import (
    AnalysisResult,
    AnalysisState,
    Command,
    FailureChoice,
    MailOp,
    MessageContent,
    MessageRef,
    ReplyDecision,
    SessionSummary,
    TaskRecord,
    TriageFilter,
)


class MailSource(Protocol):
    def list(self, triage_filter: TriageFilter) -> list[MessageRef]:
        """List references matching the filter, newest first, at most ``limit``."""
        ...

    def fetch(self, message_id: str) -> MessageContent: ...

    def fetch_many(self, message_ids: list[str]) -> list[MessageContent]:
        """Fetch several messages; ids that could not be fetched are omitted."""
        ...

    def mutate(self, message_id: str, op: MailOp) -> None:
        """Apply one label mutation as a single remote call. Raises RemoteError."""
        ...

    def send(self, message_id: str, body: str) -> None:
        """Send ``body`` as a reply to the message. Raises RemoteError."""
        ...


class Analyzer(Protocol):
    def analyze(self, content: MessageContent) -> AnalysisResult:
        """Raises AnalyzerError on failure or timeout."""
        ...


class Composer(Protocol):
    def compose(self, content: MessageContent, tone: str) -> str:
        """Raises ComposerError on failure or timeout."""
        ...


class TaskSink(Protocol):
    def append_if_absent(self, source_message_id: str, record: TaskRecord) -> bool:
        """Append unless a record for this message exists. Raises StorageError."""
        ...

    def list_pending(self) -> list[TaskRecord]: ...


class PresentationSurface(Protocol):
    def render(
        self,
        content: MessageContent,
        analysis: AnalysisState,
        position: int,
        total: int,
    ) -> None: ...

    def ask_command(self) -> Command: ...

    def show_full(self, content: MessageContent) -> None: ...

    def confirm_task(self, title: str, subject: str) -> bool: ...

    def review_draft(self, content: MessageContent, draft: str) -> ReplyDecision: ...

    def ask_failure(self, action: str, error: str) -> FailureChoice: ...

    def notify(self, message: str) -> None: ...

    def warn(self, message: str) -> None: ...

    def show_summary(self, summary: SessionSummary) -> None: ...
