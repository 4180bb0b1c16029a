"""Per-item control loop: present, decide, execute, record, advance."""

from __future__ import annotations

import logging
import webbrowser
from collections.abc import Callable
from enum import Enum

from clinbox.core.exceptions import (
    ComposerError,
    InvariantViolation,
    RemoteError,
    StorageError,
)
from clinbox.core.interfaces import Composer, MailSource, PresentationSurface, TaskSink
from clinbox.core.models import (
    AnalysisState,
    Command,
    FailureChoice,
    MailOp,
    MessageContent,
    Outcome,
    OutcomeKind,
    QueueItem,
    SessionSummary,
)
from clinbox.pipeline.prefetch import PrefetchPipeline
from clinbox.pipeline.queue import TriageQueue
from clinbox.storage.checkpoint import CheckpointStore
from clinbox.storage.tasks import new_task

logger = logging.getLogger(__name__)

GMAIL_WEB_URL = "https://mail.google.com/mail/u/0/#inbox/{message_id}"

INFORMAL_GREETINGS = ("hi", "hey", "hello", "hola", "yo", "cheers")
NO_REPLY_MARKERS = ("noreply", "no-reply", "donotreply", "notifications@")


class ItemState(Enum):
    PRESENTING = "presenting"
    DECIDING = "deciding"
    EXECUTING = "executing"
    TERMINAL = "terminal"


class Step(Enum):
    """Where control goes after executing a command."""

    TERMINAL = "terminal"
    BACK = "back"
    QUIT = "quit"


class _Attempt(Enum):
    OK = "ok"
    SKIPPED = "skipped"
    QUIT = "quit"


def gmail_url(message_id: str) -> str:
    """Web link to a message in the Gmail inbox view."""
    return GMAIL_WEB_URL.format(message_id=message_id)


def derive_tone(content: MessageContent) -> str:
    """Pick a reply tone that mirrors the original message."""
    sender = content.sender.lower()
    if any(marker in sender for marker in NO_REPLY_MARKERS):
        return "brief and neutral"
    first_line = content.body.lstrip().split("\n", 1)[0].lower()
    if first_line.startswith(INFORMAL_GREETINGS):
        return "friendly and informal"
    return "professional"


def task_title(content: MessageContent, analysis: AnalysisState) -> str:
    """Suggested action if the analysis has one, else the subject."""
    if analysis.result is not None and analysis.result.suggested_action:
        return analysis.result.suggested_action
    return content.subject


class ActionStateMachine:
    """Drives one item at a time through PRESENTING -> DECIDING -> EXECUTING -> TERMINAL.

    Every mailbox mutation and task append is issued from this object on the
    foreground thread, one at a time, so there is never more than one
    mutation in flight. An outcome is written and checkpointed before the
    next item is presented. A failed remote call never advances the queue unless the
    user chooses to skip it.
    """

    def __init__(
        self,
        queue: TriageQueue,
        source: MailSource,
        composer: Composer,
        tasks: TaskSink,
        surface: PresentationSurface,
        pipeline: PrefetchPipeline,
        checkpoint: CheckpointStore | None = None,
        *,
        opener: Callable[[str], bool] = webbrowser.open,
        presentation_wait: float = 5.0,
        archive_after_task: bool = True,
        archive_after_reply: bool = True,
        summary: SessionSummary | None = None,
    ) -> None:
        self._queue = queue
        self._source = source
        self._composer = composer
        self._tasks = tasks
        self._surface = surface
        self._pipeline = pipeline
        self._checkpoint = checkpoint
        self._opener = opener
        self._presentation_wait = presentation_wait
        self._archive_after_task = archive_after_task
        self._archive_after_reply = archive_after_reply
        self._summary = summary or SessionSummary()
        self._state = ItemState.PRESENTING
        self._last_error = ""

    @property
    def state(self) -> ItemState:
        return self._state

    @property
    def summary(self) -> SessionSummary:
        return self._summary

    def run(self) -> SessionSummary:
        """Process items in queue order until exhausted or the user quits."""
        while (item := self._queue.current()) is not None:
            if not self.process(item):
                self._summary.quit = True
                logger.info("Session quit at %d/%d", self._queue.position + 1, len(self._queue))
                break
        return self._summary

    def process(self, item: QueueItem) -> bool:
        """Handle one item until it is terminal. Returns False if the user quit."""
        self._present(item)
        while True:
            self._state = ItemState.DECIDING
            command = self._surface.ask_command()
            logger.debug("Command %s on %s", command.value, item.message_id)

            if command is Command.QUIT:
                return False
            if command is Command.VIEW:
                self._surface.show_full(self._content(item))
                self._present(item)
                continue
            if command is Command.OPEN:
                self._open(item)
                continue

            step = self.execute(item, command)
            if step is Step.QUIT:
                return False
            if step is Step.TERMINAL:
                return True
            self._present(item)

    def execute(self, item: QueueItem, command: Command) -> Step:
        """Run one terminal-capable command against an item."""
        self._state = ItemState.EXECUTING
        if command is Command.ARCHIVE:
            attempt = self._attempt(
                "archive", lambda: self._source.mutate(item.message_id, MailOp.ARCHIVE)
            )
            return self._conclude(item, attempt, OutcomeKind.ARCHIVED, "Archived")
        if command is Command.DELETE:
            attempt = self._attempt(
                "delete", lambda: self._source.mutate(item.message_id, MailOp.TRASH)
            )
            return self._conclude(item, attempt, OutcomeKind.DELETED, "Deleted")
        if command is Command.TASK:
            return self._create_task(item)
        if command is Command.REPLY:
            return self._reply(item)
        if command is Command.SKIP:
            self._finish(item, Outcome(OutcomeKind.SKIPPED))
            return Step.TERMINAL
        raise ValueError(f"{command.value} is not an executable command")

    def _create_task(self, item: QueueItem) -> Step:
        """Confirm and append a task, then archive the message if configured."""
        content = self._content(item)
        analysis = self._pipeline.result_for(item.message_id)
        title = task_title(content, analysis)
        if not self._surface.confirm_task(title, content.subject):
            return Step.BACK

        record = new_task(
            item.message_id,
            title,
            description=analysis.result.summary if analysis.result else None,
            source_subject=content.subject,
        )
        created: list[bool] = []
        attempt = self._attempt(
            "create task",
            lambda: created.append(self._tasks.append_if_absent(item.message_id, record)),
        )
        if attempt is not _Attempt.OK:
            return self._conclude(item, attempt, OutcomeKind.TASK_CREATED, "")

        if not created[-1]:
            return self._conclude(item, attempt, OutcomeKind.TASK_CREATED, "Task already exists")
        if self._archive_after_task:
            self._follow_up_archive(item)
        return self._conclude(item, attempt, OutcomeKind.TASK_CREATED, "Task created")

    def _reply(self, item: QueueItem) -> Step:
        """Draft a reply, let the user review it, send, then archive if configured."""
        content = self._content(item)
        try:
            draft = self._composer.compose(content, derive_tone(content))
        except ComposerError as e:
            logger.warning("Draft generation for %s failed: %s", item.message_id, e)
            self._surface.warn(f"Failed to generate draft: {e}")
            return Step.BACK

        decision = self._surface.review_draft(content, draft)
        if not decision.send:
            return Step.BACK

        attempt = self._attempt(
            "send reply", lambda: self._source.send(item.message_id, decision.body)
        )
        if attempt is _Attempt.OK and self._archive_after_reply:
            self._follow_up_archive(item)
        return self._conclude(item, attempt, OutcomeKind.REPLIED, "Reply sent")

    def _attempt(self, action: str, call: Callable[[], object]) -> _Attempt:
        """Run a mutating call, letting the user retry, skip or quit on failure."""
        while True:
            try:
                call()
                return _Attempt.OK
            except (RemoteError, StorageError) as e:
                logger.warning("%s failed: %s", action, e)
                self._last_error = str(e)
                choice = self._surface.ask_failure(action, str(e))
                if choice is FailureChoice.RETRY:
                    continue
                if choice is FailureChoice.SKIP:
                    return _Attempt.SKIPPED
                return _Attempt.QUIT

    def _conclude(
        self, item: QueueItem, attempt: _Attempt, kind: OutcomeKind, message: str
    ) -> Step:
        """Turn an attempt into a terminal outcome, or quit."""
        if attempt is _Attempt.QUIT:
            return Step.QUIT
        if attempt is _Attempt.SKIPPED:
            self._finish(item, Outcome.failed(self._last_error))
            return Step.TERMINAL
        self._finish(item, Outcome(kind))
        if message:
            self._surface.notify(message)
        return Step.TERMINAL

    def _follow_up_archive(self, item: QueueItem) -> None:
        """Archive after a task or reply. A failure only warns."""
        try:
            self._source.mutate(item.message_id, MailOp.ARCHIVE)
        except RemoteError as e:
            logger.warning("Follow-up archive of %s failed: %s", item.message_id, e)
            self._surface.warn(f"Could not archive after action: {e}")

    def _finish(self, item: QueueItem, outcome: Outcome) -> None:
        """Record a terminal outcome, advance, then checkpoint.

        The saved cursor already points at the next pending item, and the
        save completes before that item is presented.
        """
        was_pending = item.is_pending
        item.set_outcome(outcome)
        if was_pending:
            self._summary.record(outcome.kind)
        self._state = ItemState.TERMINAL
        if self._queue.current() is item:
            self._queue.advance()
        self._save_checkpoint()
        self._pipeline.top_up()

    def _save_checkpoint(self) -> None:
        if self._checkpoint is None:
            return
        try:
            self._checkpoint.save(self._queue)
        except StorageError as e:
            logger.warning("Checkpoint save failed: %s", e)
            self._surface.warn(f"Progress not saved: {e}")

    def _present(self, item: QueueItem) -> None:
        """Render the item with whatever analysis arrives within the wait."""
        self._state = ItemState.PRESENTING
        analysis = self._pipeline.wait_for(item.message_id, self._presentation_wait)
        self._surface.render(
            self._content(item), analysis, item.ref.position + 1, len(self._queue)
        )

    def _open(self, item: QueueItem) -> None:
        url = gmail_url(item.message_id)
        if self._opener(url):
            self._surface.notify("Opened in browser")
        else:
            self._surface.warn(f"Could not open a browser, visit {url}")

    @staticmethod
    def _content(item: QueueItem) -> MessageContent:
        if item.content is None:
            raise InvariantViolation(f"Message {item.message_id} has no content loaded")
        return item.content
