"""Tests for the bounded look-ahead analysis pipeline."""

from __future__ import annotations

import threading
from typing import Any
from unittest.mock import MagicMock

import pytest

from clinbox.core.models import AnalysisStatus, Outcome, OutcomeKind, TriageFilter
from clinbox.pipeline.prefetch import PrefetchPipeline
from clinbox.pipeline.queue import TriageQueue

WAIT = 2.0


@pytest.fixture
def queue(mail_source: Any) -> TriageQueue:
    return TriageQueue.build(mail_source, TriageFilter(limit=5))


def _skip_current(queue: TriageQueue) -> None:
    queue.record(Outcome(OutcomeKind.SKIPPED))
    queue.advance()


# ---------- window ----------


class TestWindow:
    """Tests for how many requests are issued and when."""

    def test_rejects_non_positive_depth(self, analyzer: Any) -> None:
        with pytest.raises(ValueError, match="depth"):
            PrefetchPipeline(analyzer, 0)

    def test_start_requests_first_window(self, analyzer: Any, queue: TriageQueue) -> None:
        analyzer.block("m1", "m2", "m3", "m4", "m5")
        pipeline = PrefetchPipeline(analyzer, 2)
        pipeline.start(queue)
        try:
            assert pipeline.requested_ids == ["m1", "m2"]
            assert pipeline.in_flight() <= 2
        finally:
            pipeline.close()

    def test_tops_up_after_cursor_advances(self, analyzer: Any, queue: TriageQueue) -> None:
        analyzer.block("m1", "m2", "m3", "m4", "m5")
        pipeline = PrefetchPipeline(analyzer, 2)
        pipeline.start(queue)
        try:
            analyzer.release("m1")
            assert pipeline.wait_for("m1", WAIT).status is AnalysisStatus.READY

            _skip_current(queue)
            pipeline.top_up()

            assert pipeline.requested_ids == ["m1", "m2", "m3"]
            assert pipeline.in_flight() == 2
        finally:
            pipeline.close()

    def test_in_flight_never_exceeds_depth(self, analyzer: Any, queue: TriageQueue) -> None:
        analyzer.block("m1", "m2", "m3", "m4", "m5")
        pipeline = PrefetchPipeline(analyzer, 2)
        pipeline.start(queue)
        try:
            # m1 is still running, so advancing twice must not exceed the bound.
            _skip_current(queue)
            pipeline.top_up()
            _skip_current(queue)
            pipeline.top_up()

            assert pipeline.in_flight() <= 2
            assert "m4" not in pipeline.requested_ids
        finally:
            pipeline.close()

    def test_each_message_requested_once(self, analyzer: Any, queue: TriageQueue) -> None:
        pipeline = PrefetchPipeline(analyzer, 3)
        pipeline.start(queue)
        try:
            for mid in ("m1", "m2", "m3"):
                pipeline.wait_for(mid, WAIT)
            for _ in range(3):
                pipeline.top_up()

            assert sorted(analyzer.calls) == ["m1", "m2", "m3"]
        finally:
            pipeline.close()


# ---------- results ----------


class TestResults:
    """Tests for result_for / wait_for."""

    def test_unknown_message_is_pending(self, analyzer: Any) -> None:
        pipeline = PrefetchPipeline(analyzer, 2)
        assert pipeline.result_for("nope").is_pending

    def test_ready_result(self, analyzer: Any, queue: TriageQueue) -> None:
        pipeline = PrefetchPipeline(analyzer, 1)
        pipeline.start(queue)
        try:
            state = pipeline.wait_for("m1", WAIT)
        finally:
            pipeline.close()

        assert state.status is AnalysisStatus.READY
        assert state.result.summary == "Summary of m1"

    def test_out_of_order_completion(self, analyzer: Any, queue: TriageQueue) -> None:
        analyzer.block("m1", "m2")
        pipeline = PrefetchPipeline(analyzer, 2)
        pipeline.start(queue)
        try:
            analyzer.release("m2")
            assert pipeline.wait_for("m2", WAIT).status is AnalysisStatus.READY
            assert pipeline.result_for("m1").is_pending

            analyzer.release("m1")
            assert pipeline.wait_for("m1", WAIT).status is AnalysisStatus.READY
        finally:
            pipeline.close()

    def test_wait_for_gives_up_as_pending(self, analyzer: Any, queue: TriageQueue) -> None:
        analyzer.block("m1")
        pipeline = PrefetchPipeline(analyzer, 1)
        pipeline.start(queue)
        try:
            assert pipeline.wait_for("m1", 0.05).is_pending
        finally:
            pipeline.close()

    def test_wait_for_requests_current_once_stale_slot_frees(
        self, analyzer: Any, queue: TriageQueue
    ) -> None:
        analyzer.block("m1")
        pipeline = PrefetchPipeline(analyzer, 1)
        pipeline.start(queue)
        try:
            # The user skips m1 while its analysis still holds the only slot.
            _skip_current(queue)
            pipeline.top_up()
            assert pipeline.requested_ids == ["m1"]

            timer = threading.Timer(0.2, analyzer.release, args=("m1",))
            timer.start()
            state = pipeline.wait_for("m2", WAIT)
            timer.join()
        finally:
            pipeline.close()

        assert state.status is AnalysisStatus.READY
        assert state.result.message_id == "m2"
        assert pipeline.requested_ids == ["m1", "m2"]

    def test_wait_for_unrequested_gives_up_at_timeout(
        self, analyzer: Any, queue: TriageQueue
    ) -> None:
        analyzer.block("m1")
        pipeline = PrefetchPipeline(analyzer, 1)
        pipeline.start(queue)
        try:
            _skip_current(queue)
            assert pipeline.wait_for("m2", 0.05).is_pending
            assert pipeline.requested_ids == ["m1"]
        finally:
            pipeline.close()

    def test_close_discards_late_results(self, analyzer: Any, queue: TriageQueue) -> None:
        analyzer.block("m1")
        pipeline = PrefetchPipeline(analyzer, 1)
        pipeline.start(queue)

        pipeline.close()
        analyzer.release("m1")
        pipeline.top_up()

        assert pipeline.result_for("m1").is_pending
        assert pipeline.requested_ids == ["m1"]


# ---------- retry and timeout ----------


class TestRetryAndTimeout:
    """Tests for the single retry and the timeout tie-break."""

    def test_retries_once_then_succeeds(self, analyzer: Any, queue: TriageQueue) -> None:
        analyzer.failures["m1"] = 1
        sleeps: list[float] = []
        pipeline = PrefetchPipeline(analyzer, 1, retry_backoff=0.5, sleep=sleeps.append)
        pipeline.start(queue)
        try:
            state = pipeline.wait_for("m1", WAIT)
        finally:
            pipeline.close()

        assert state.status is AnalysisStatus.READY
        assert analyzer.calls == ["m1", "m1"]
        assert sleeps == [0.5]

    def test_second_failure_is_final(self, analyzer: Any, queue: TriageQueue) -> None:
        analyzer.failures["m1"] = 5
        pipeline = PrefetchPipeline(analyzer, 1, sleep=lambda _: None)
        pipeline.start(queue)
        try:
            state = pipeline.wait_for("m1", WAIT)
        finally:
            pipeline.close()

        assert state.is_failed
        assert state.reason == "model unavailable"
        assert analyzer.calls == ["m1", "m1"]

    def test_unexpected_exception_is_a_failure(self, queue: TriageQueue) -> None:
        broken = MagicMock()
        broken.analyze.side_effect = RuntimeError("boom")
        pipeline = PrefetchPipeline(broken, 1, sleep=lambda _: None)
        pipeline.start(queue)
        try:
            state = pipeline.wait_for("m1", WAIT)
        finally:
            pipeline.close()

        assert state.is_failed
        assert "boom" in state.reason
        assert broken.analyze.call_count == 2

    def test_answer_at_timeout_counts_as_timeout(
        self, analyzer: Any, queue: TriageQueue
    ) -> None:
        ticks = iter([0.0, 30.0, 100.0, 130.0])
        pipeline = PrefetchPipeline(
            analyzer, 1, analysis_timeout=30.0, sleep=lambda _: None, clock=lambda: next(ticks)
        )
        pipeline.start(queue)
        try:
            state = pipeline.wait_for("m1", WAIT)
        finally:
            pipeline.close()

        assert state.is_failed
        assert "timed out" in state.reason

    def test_answer_before_timeout_is_kept(self, analyzer: Any, queue: TriageQueue) -> None:
        ticks = iter([0.0, 29.9])
        pipeline = PrefetchPipeline(
            analyzer, 1, analysis_timeout=30.0, sleep=lambda _: None, clock=lambda: next(ticks)
        )
        pipeline.start(queue)
        try:
            state = pipeline.wait_for("m1", WAIT)
        finally:
            pipeline.close()

        assert state.status is AnalysisStatus.READY
