"""Bounded look-ahead analysis running behind the user's review."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait

from clinbox.core.exceptions import AnalyzerError
from clinbox.core.interfaces import Analyzer
from clinbox.core.models import AnalysisState, MessageContent
from clinbox.pipeline.queue import TriageQueue

logger = logging.getLogger(__name__)

DEFAULT_DEPTH = 3


class PrefetchPipeline:
    """Analyzes the next ``depth`` pending items on background threads.

    The per-message Future map is the only state shared with the foreground
    loop. Each message id is submitted at most once, so a result is written
    exactly once. Only the foreground loop calls ``top_up``.

    Each request is attempted at most twice (one retry after
    ``retry_backoff`` seconds). An answer that arrives at or after
    ``analysis_timeout`` counts as a timeout even if it succeeded.
    """

    def __init__(
        self,
        analyzer: Analyzer,
        depth: int = DEFAULT_DEPTH,
        *,
        analysis_timeout: float = 30.0,
        retry_backoff: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if depth < 1:
            raise ValueError(f"depth must be at least 1, got {depth}")
        self._analyzer = analyzer
        self._depth = depth
        self._timeout = analysis_timeout
        self._retry_backoff = retry_backoff
        self._sleep = sleep
        self._clock = clock
        self._queue: TriageQueue | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._futures: dict[str, Future[AnalysisState]] = {}
        self._closed = False

    @property
    def depth(self) -> int:
        return self._depth

    @property
    def requested_ids(self) -> list[str]:
        return list(self._futures)

    def in_flight(self) -> int:
        return sum(1 for f in self._futures.values() if not f.done())

    def start(self, queue: TriageQueue) -> None:
        """Attach to a queue and issue the first window of requests."""
        self._queue = queue
        self._executor = ThreadPoolExecutor(
            max_workers=self._depth, thread_name_prefix="clinbox-prefetch"
        )
        self.top_up()

    def top_up(self) -> None:
        """Request analysis for not-yet-requested items inside the window."""
        if self._closed or self._queue is None or self._executor is None:
            return
        for item in self._queue.upcoming(self._depth):
            if item.message_id in self._futures or item.content is None:
                continue
            if self.in_flight() >= self._depth:
                break
            logger.debug("Requesting analysis for %s", item.message_id)
            self._futures[item.message_id] = self._executor.submit(self._analyze, item.content)

    def result_for(self, message_id: str) -> AnalysisState:
        future = self._futures.get(message_id)
        if self._closed or future is None or not future.done() or future.cancelled():
            return AnalysisState.pending()
        return future.result()

    def wait_for(self, message_id: str, timeout: float) -> AnalysisState:
        """Block up to ``timeout`` seconds for a message's analysis.

        If the window is still full of requests for items the user already
        passed, wait for one of them to finish and request this message as
        soon as a slot frees up.
        """
        deadline = time.monotonic() + timeout
        self.top_up()
        future = self._futures.get(message_id)
        while future is None and not self._closed:
            remaining = deadline - time.monotonic()
            outstanding = [f for f in self._futures.values() if not f.done()]
            if remaining <= 0 or not outstanding:
                break
            wait(outstanding, timeout=remaining, return_when=FIRST_COMPLETED)
            self.top_up()
            future = self._futures.get(message_id)

        remaining = deadline - time.monotonic()
        if future is not None and remaining > 0:
            wait([future], timeout=remaining)
        return self.result_for(message_id)

    def close(self) -> None:
        """Abandon outstanding work; late results are discarded."""
        self._closed = True
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    def _analyze(self, content: MessageContent) -> AnalysisState:
        reason = ""
        for attempt in range(2):
            if self._closed:
                return AnalysisState.failed("session ended")
            if attempt:
                logger.warning(
                    "Analysis of %s failed (%s), retrying in %.1fs",
                    content.message_id, reason, self._retry_backoff,
                )
                self._sleep(self._retry_backoff)

            started = self._clock()
            try:
                result = self._analyzer.analyze(content)
            except AnalyzerError as e:
                reason = str(e)
                continue
            except Exception as e:
                logger.exception("Unexpected analyzer failure for %s", content.message_id)
                reason = f"unexpected error: {e}"
                continue

            elapsed = self._clock() - started
            if elapsed >= self._timeout:
                reason = f"analysis timed out after {elapsed:.1f}s"
                continue
            return AnalysisState.ready(result)

        logger.warning("Analysis of %s failed: %s", content.message_id, reason)
        return AnalysisState.failed(reason)
