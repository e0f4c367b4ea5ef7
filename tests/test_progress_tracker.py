"""
Tests for progress accounting and ETA formatting.
"""

import logging
from concurrent.futures import Future

import pytest

from progress_tracker import ProgressSnapshot, ProgressTracker, format_duration_words


class FakeBar:
    def __init__(self):
        self.total = 0
        self.n = 0
        self.refreshed = 0

    def update(self, n):
        self.n += n

    def refresh(self):
        self.refreshed += 1


def _done(result=None, error=None):
    future = Future()
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)
    return future


class TestFormatDuration:
    @pytest.mark.parametrize("seconds, expected", [
        (None, "unknown"),
        (0, "0 seconds"),
        (1, "1 second"),
        (59, "59 seconds"),
        (60, "1 minute"),
        (3605, "1 hour 0 minutes 5 seconds"),
        (3720, "1 hour 2 minutes"),
        (90061, "1 day 1 hour 1 minute 1 second"),
    ])
    def test_words(self, seconds, expected):
        assert format_duration_words(seconds) == expected


class TestSnapshot:
    def test_eta_is_linear(self):
        snap = ProgressSnapshot(completed=25, total=100, elapsed_sec=10.0)
        assert snap.percentage == pytest.approx(25.0)
        assert snap.eta_sec == pytest.approx(30.0)

    def test_eta_unknown_before_first_completion(self):
        snap = ProgressSnapshot(completed=0, total=10, elapsed_sec=3.0)
        assert snap.eta_sec is None
        assert ProgressSnapshot(0, 0, 0.0).percentage == 0.0


class TestProgressTracker:
    def test_counts_and_eta(self, clock):
        tracker = ProgressTracker(clock=clock)
        for _ in range(4):
            tracker.task_submitted()
        clock.advance(2.0)
        tracker.task_done(_done("ok"))
        snap = tracker.task_done(_done("ok"))

        assert snap.completed == 2
        assert snap.total == 4
        assert snap.percentage == pytest.approx(50.0)
        assert snap.eta_sec == pytest.approx(2.0)

    def test_failures_and_cancellations_complete(self, clock):
        tracker = ProgressTracker(clock=clock)
        tracker.task_submitted()
        tracker.task_submitted()
        cancelled = Future()
        cancelled.cancel()

        tracker.task_done(_done(error=RuntimeError("boom")))
        tracker.task_done(cancelled)

        assert tracker.completed == 2
        assert tracker.failed == 2

    def test_logs_progress(self, clock, caplog):
        caplog.set_level(logging.INFO, logger="progress_tracker")
        tracker = ProgressTracker(clock=clock)
        tracker.task_submitted()
        tracker.task_submitted()
        clock.advance(5.0)
        tracker.task_done(_done("ok"))

        assert "1 resources processed of 2 (50.0%), eta: 5 seconds" in caplog.text

    def test_logs_failure(self, clock, caplog):
        caplog.set_level(logging.INFO, logger="progress_tracker")
        tracker = ProgressTracker(clock=clock)
        tracker.task_submitted()
        tracker.task_done(_done(error=ValueError("bad input")))

        assert "job 1 of 1 failed: bad input" in caplog.text

    def test_drives_progress_bar(self, clock):
        bar = FakeBar()
        tracker = ProgressTracker(clock=clock, progress_bar=bar)
        for _ in range(3):
            tracker.task_submitted()
        tracker.record()

        assert bar.total == 3
        assert bar.refreshed == 3
        assert bar.n == 1
        assert tracker.snapshot().completed == 1
