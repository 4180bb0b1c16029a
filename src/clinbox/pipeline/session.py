"""Session orchestrator: build or resume the queue, then run the triage loop."""

from __future__ import annotations

import logging
import webbrowser
from collections.abc import Callable

from clinbox.config.settings import ClinboxSettings
from clinbox.core.ai_client import AIClient
from clinbox.core.auth import authenticate, build_gmail_service
from clinbox.core.exceptions import CheckpointError
from clinbox.core.gmail_client import GmailClient
from clinbox.core.interfaces import Analyzer, Composer, MailSource, PresentationSurface, TaskSink
from clinbox.core.mail_source import GmailMailSource
from clinbox.core.models import SessionSummary, TriageFilter
from clinbox.pipeline.actions import ActionStateMachine
from clinbox.pipeline.prefetch import PrefetchPipeline
from clinbox.pipeline.queue import TriageQueue
from clinbox.storage.checkpoint import CheckpointStore
from clinbox.storage.tasks import TaskStore
from clinbox.ui.console import ConsoleSurface

logger = logging.getLogger(__name__)


class TriageSession:
    """Wires the collaborators together and exposes ``run(filter)``.

    Startup: load the checkpoint for the filter; resume it when it still has
    pending items, otherwise list and fetch a fresh queue and checkpoint it
    immediately so its order is pinned. Shutdown: a fully processed queue
    clears its checkpoint, a quit session keeps it for the next run.

    Collaborators can be injected; anything left out is built lazily from
    settings on first use.
    """

    def __init__(
        self,
        settings: ClinboxSettings | None = None,
        *,
        source: MailSource | None = None,
        analyzer: Analyzer | None = None,
        composer: Composer | None = None,
        tasks: TaskSink | None = None,
        surface: PresentationSurface | None = None,
        checkpoint: CheckpointStore | None = None,
        opener: Callable[[str], bool] = webbrowser.open,
    ) -> None:
        self._settings = settings or ClinboxSettings()
        self._source = source
        self._analyzer = analyzer
        self._composer = composer
        self._tasks = tasks
        self._surface = surface
        self._checkpoint = checkpoint
        self._opener = opener

    def _ensure_initialized(
        self,
    ) -> tuple[MailSource, Analyzer, Composer, TaskSink, PresentationSurface, CheckpointStore]:
        """Initialize all components if not already done."""
        if self._source is None:
            self._settings.ensure_directories()
            creds = authenticate(self._settings.credentials_path, self._settings.token_path)
            service = build_gmail_service(creds, self._settings.remote_timeout_seconds)
            client = GmailClient(
                service,
                max_retries=self._settings.max_retries,
                initial_backoff_seconds=self._settings.initial_backoff_seconds,
                max_backoff_seconds=self._settings.max_backoff_seconds,
                inter_page_delay_seconds=self._settings.inter_page_delay_seconds,
                num_retries=self._settings.num_retries,
            )
            self._source = GmailMailSource(client)

        if self._analyzer is None or self._composer is None:
            ai = AIClient.from_settings(self._settings)
            self._analyzer = self._analyzer or ai
            self._composer = self._composer or ai

        if self._tasks is None:
            self._tasks = TaskStore(self._settings.tasks_path)

        if self._surface is None:
            self._surface = ConsoleSurface()

        if self._checkpoint is None:
            self._checkpoint = CheckpointStore(self._settings.database_path)
            self._checkpoint.connect()

        return (
            self._source,
            self._analyzer,
            self._composer,
            self._tasks,
            self._surface,
            self._checkpoint,
        )

    def prepare_queue(
        self, triage_filter: TriageFilter, *, fresh: bool = False
    ) -> tuple[TriageQueue, bool]:
        """Resume the filter's checkpoint or build a new queue.

        Returns:
            The queue and whether it was resumed from a checkpoint.

        Raises:
            RemoteError: If a fresh queue cannot be listed or fetched.
        """
        source, _, _, _, surface, checkpoint = self._ensure_initialized()

        saved = None
        try:
            if fresh:
                checkpoint.discard(triage_filter)
            saved = checkpoint.load(triage_filter)
        except CheckpointError as e:
            logger.warning("Ignoring unreadable checkpoint: %s", e)
            surface.warn(f"Could not read saved progress, starting fresh: {e}")

        if saved is not None:
            pending = saved.pending_refs()
            if pending:
                contents = source.fetch_many([ref.message_id for ref in pending])
                return TriageQueue.restore(saved, contents), True
            logger.info("Checkpoint for %s has no pending items", triage_filter.canonical_key())

        queue = TriageQueue.build(source, triage_filter)
        self._save(queue)
        return queue, False

    def run(self, triage_filter: TriageFilter, *, fresh: bool = False) -> SessionSummary:
        """Drive the interactive loop to completion or quit.

        Raises:
            RemoteError: If the initial queue cannot be built.
            InvariantViolation: If the queue/outcome contract breaks mid-session.
        """
        source, analyzer, composer, tasks, surface, checkpoint = self._ensure_initialized()
        queue, resumed = self.prepare_queue(triage_filter, fresh=fresh)
        summary = SessionSummary(resumed=resumed, total_items=len(queue))

        if queue.is_exhausted:
            surface.notify("No messages to triage. Inbox zero!")
            self._discard(triage_filter)
            return summary

        if resumed:
            surface.notify(f"Resuming at message {queue.position + 1} of {len(queue)}")

        pipeline = PrefetchPipeline(
            analyzer,
            self._settings.prefetch_depth,
            analysis_timeout=self._settings.analysis_timeout_seconds,
            retry_backoff=self._settings.analysis_retry_backoff_seconds,
        )
        machine = ActionStateMachine(
            queue,
            source,
            composer,
            tasks,
            surface,
            pipeline,
            checkpoint,
            opener=self._opener,
            presentation_wait=self._settings.presentation_wait_seconds,
            archive_after_task=self._settings.archive_after_task,
            archive_after_reply=self._settings.archive_after_reply,
            summary=summary,
        )

        pipeline.start(queue)
        try:
            machine.run()
        finally:
            pipeline.close()

        if queue.is_exhausted:
            self._discard(triage_filter)

        logger.info("Session finished: %s (quit=%s)", summary.as_dict(), summary.quit)
        surface.show_summary(summary)
        return summary

    def close(self) -> None:
        """Clean up resources."""
        if self._checkpoint:
            self._checkpoint.close()

    def _save(self, queue: TriageQueue) -> None:
        if self._checkpoint is None:
            return
        try:
            self._checkpoint.save(queue)
        except CheckpointError as e:
            logger.warning("Checkpoint save failed: %s", e)
            if self._surface is not None:
                self._surface.warn(f"Progress not saved: {e}")

    def _discard(self, triage_filter: TriageFilter) -> None:
        if self._checkpoint is None:
            return
        try:
            self._checkpoint.discard(triage_filter)
        except CheckpointError as e:
            logger.warning("Could not clear finished checkpoint: %s", e)
