"""Domain model for the triage pipeline."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, StrEnum
from typing import Any

from clinbox.core.exceptions import InvariantViolation


@dataclass(frozen=True)
class TriageFilter:
    """Which messages a session triages. Also the checkpoint key."""

    unread_only: bool = True
    limit: int = 20

    def __post_init__(self) -> None:
        if self.limit <= 0:
            raise ValueError(f"limit must be positive, got {self.limit}")

    def canonical_key(self) -> str:
        return f"unread_only={int(self.unread_only)};limit={self.limit}"

    def to_dict(self) -> dict[str, Any]:
        return {"unread_only": self.unread_only, "limit": self.limit}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TriageFilter:
        return cls(unread_only=bool(data["unread_only"]), limit=int(data["limit"]))


@dataclass(frozen=True)
class MessageRef:
    """Lightweight message reference from the list API, with its queue position."""

    message_id: str
    thread_id: str
    position: int = 0


@dataclass(frozen=True)
class MessageContent:
    """A fetched message. Body is already plain text and sanitized."""

    message_id: str
    thread_id: str
    sender: str
    subject: str
    date: datetime
    body: str
    to: str = ""
    snippet: str = ""
    label_ids: tuple[str, ...] = field(default_factory=tuple)
    message_id_header: str = ""

    @property
    def is_unread(self) -> bool:
        return "UNREAD" in self.label_ids

    def sender_name(self) -> str:
        """Display name from a ``Name <addr>`` sender, or the raw sender."""
        idx = self.sender.find("<")
        if idx > 0:
            name = self.sender[:idx].strip().strip('"')
            if name:
                return name
        return self.sender

    def truncated_body(self, max_chars: int) -> str:
        if len(self.body) <= max_chars:
            return self.body
        return self.body[:max_chars] + "..."

    def reply_subject(self) -> str:
        if self.subject[:3].lower() == "re:":
            return self.subject
        return f"Re: {self.subject}"


class Priority(StrEnum):
    URGENT = "urgent"
    ACTIONABLE = "actionable"
    INFORMATIVE = "informative"

    @classmethod
    def from_label(cls, label: str | None) -> Priority:
        """Map a model-produced priority label onto the three tiers."""
        value = (label or "").strip().lower().replace("-", "_").replace(" ", "_")
        if value == "urgent":
            return cls.URGENT
        if value in ("actionable", "action_required", "action"):
            return cls.ACTIONABLE
        return cls.INFORMATIVE


@dataclass(frozen=True)
class AnalysisResult:
    """Structured triage result for one message."""

    message_id: str
    priority: Priority
    category: str
    summary: str
    suggested_action: str | None = None
    estimated_minutes: int | None = None


class AnalysisStatus(Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class AnalysisState:
    """What the prefetch pipeline currently knows about one message."""

    status: AnalysisStatus
    result: AnalysisResult | None = None
    reason: str = ""

    @classmethod
    def pending(cls) -> AnalysisState:
        return cls(AnalysisStatus.PENDING)

    @classmethod
    def ready(cls, result: AnalysisResult) -> AnalysisState:
        return cls(AnalysisStatus.READY, result=result)

    @classmethod
    def failed(cls, reason: str) -> AnalysisState:
        return cls(AnalysisStatus.FAILED, reason=reason)

    @property
    def is_pending(self) -> bool:
        return self.status is AnalysisStatus.PENDING

    @property
    def is_failed(self) -> bool:
        return self.status is AnalysisStatus.FAILED


class OutcomeKind(StrEnum):
    PENDING = "pending"
    ARCHIVED = "archived"
    DELETED = "deleted"
    TASK_CREATED = "task_created"
    REPLIED = "replied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    reason: str = ""

    @classmethod
    def pending(cls) -> Outcome:
        return cls(OutcomeKind.PENDING)

    @classmethod
    def failed(cls, reason: str) -> Outcome:
        return cls(OutcomeKind.FAILED, reason)

    @property
    def is_terminal(self) -> bool:
        return self.kind is not OutcomeKind.PENDING


@dataclass
class QueueItem:
    """One entry of the triage queue. The outcome is write-once."""

    ref: MessageRef
    content: MessageContent | None = None
    outcome: Outcome = field(default_factory=Outcome.pending)

    @property
    def message_id(self) -> str:
        return self.ref.message_id

    @property
    def is_pending(self) -> bool:
        return not self.outcome.is_terminal

    def set_outcome(self, outcome: Outcome) -> None:
        """Record a terminal outcome.

        Re-recording the identical outcome is a no-op; anything else after a
        terminal outcome raises InvariantViolation.
        """
        if not outcome.is_terminal:
            raise InvariantViolation(
                f"Cannot reset message {self.message_id} back to pending"
            )
        if self.outcome.is_terminal:
            if self.outcome == outcome:
                return
            raise InvariantViolation(
                f"Outcome of message {self.message_id} is already "
                f"{self.outcome.kind}, refusing {outcome.kind}"
            )
        self.outcome = outcome


@dataclass(frozen=True)
class TaskRecord:
    """A local task created from an email."""

    task_id: str
    source_message_id: str
    title: str
    created_at: datetime
    description: str | None = None
    source_subject: str | None = None
    completed: bool = False
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.task_id,
            "source_email_id": self.source_message_id,
            "title": self.title,
            "created_at": self.created_at.isoformat(),
            "description": self.description,
            "source_email_subject": self.source_subject,
            "completed": self.completed,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskRecord:
        completed_at = data.get("completed_at")
        return cls(
            task_id=data["id"],
            source_message_id=data.get("source_email_id") or "",
            title=data.get("title", ""),
            created_at=datetime.fromisoformat(data["created_at"]),
            description=data.get("description"),
            source_subject=data.get("source_email_subject"),
            completed=bool(data.get("completed", False)),
            completed_at=datetime.fromisoformat(completed_at) if completed_at else None,
        )


class Command(Enum):
    ARCHIVE = "archive"
    DELETE = "delete"
    TASK = "task"
    REPLY = "reply"
    OPEN = "open"
    VIEW = "view"
    SKIP = "skip"
    QUIT = "quit"


class FailureChoice(Enum):
    RETRY = "retry"
    SKIP = "skip"
    QUIT = "quit"


class MailOp(Enum):
    ARCHIVE = "archive"
    TRASH = "trash"
    MARK_READ = "mark_read"


@dataclass(frozen=True)
class ReplyDecision:
    """Result of reviewing a draft: send the (possibly edited) body, or cancel."""

    send: bool
    body: str = ""


@dataclass
class SessionSummary:
    """Mutable per-invocation counts of terminal outcomes."""

    counts: Counter[OutcomeKind] = field(default_factory=Counter)
    quit: bool = False
    resumed: bool = False
    total_items: int = 0

    def record(self, kind: OutcomeKind) -> None:
        self.counts[kind] += 1

    def count(self, kind: OutcomeKind) -> int:
        return self.counts[kind]

    def total(self) -> int:
        return sum(self.counts.values())

    def as_dict(self) -> dict[str, int]:
        return {kind.value: n for kind, n in self.counts.items() if n}
