"""Clinbox - Triage a Gmail inbox from the terminal, one message at a time."""

from clinbox.core.models import (
    AnalysisResult,
    AnalysisState,
    MessageContent,
    MessageRef,
    Outcome,
    OutcomeKind,
    Priority,
    SessionSummary,
    TaskRecord,
    TriageFilter,
)
from clinbox.pipeline.session import TriageSession

__all__ = [
    "AnalysisResult",
    "AnalysisState",
    "MessageContent",
    "MessageRef",
    "Outcome",
    "OutcomeKind",
    "Priority",
    "SessionSummary",
    "TaskRecord",
    "TriageFilter",
    "TriageSession",
]
