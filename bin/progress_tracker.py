#!/usr/bin/env python3
"""
AccessReplay Progress Tracker

Receives a completion event for every finished task (success, failure or
cancellation) and logs completed/total, percentage and a linear ETA:

    eta = (total - completed) * elapsed / completed
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressSnapshot:
    """Progress after a task finished."""
    completed: int
    total: int
    elapsed_sec: float

    @property
    def percentage(self) -> float:
        if self.total == 0:
            return 0.0
        return self.completed * 100.0 / self.total

    @property
    def eta_sec(self) -> Optional[float]:
        if self.completed == 0:
            return None
        return (self.total - self.completed) * self.elapsed_sec / self.completed


def format_duration_words(seconds: Optional[float]) -> str:
    """Human-readable duration, e.g. "1 hour 0 minutes 5 seconds"."""
    if seconds is None:
        return "unknown"
    secs = max(int(round(seconds)), 0)
    days, remainder = divmod(secs, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, secs = divmod(remainder, 60)

    parts = [(days, "day"), (hours, "hour"), (minutes, "minute"), (secs, "second")]
    while parts and parts[0][0] == 0:
        parts.pop(0)
    while parts and parts[-1][0] == 0:
        parts.pop()
    if not parts:
        return "0 seconds"
    return " ".join(f"{value} {unit}" + ("" if value == 1 else "s") for value, unit in parts)


class ProgressTracker:
    """Thread-safe completed/total counter fed by pool completion callbacks."""

    def __init__(self, clock: Callable[[], float] = time.monotonic, progress_bar=None):
        self._clock = clock
        self._started = clock()
        self._lock = threading.Lock()
        self._total = 0
        self._completed = 0
        self._failed = 0
        self._progress_bar = progress_bar

    @property
    def total(self) -> int:
        return self._total

    @property
    def completed(self) -> int:
        return self._completed

    @property
    def failed(self) -> int:
        return self._failed

    def task_submitted(self) -> None:
        with self._lock:
            self._total += 1
            if self._progress_bar is not None:
                self._progress_bar.total = self._total
                self._progress_bar.refresh()

    def task_done(self, future: Future) -> ProgressSnapshot:
        """Done-callback for a dispatched future."""
        if future.cancelled():
            return self.record(failed=True)
        error = future.exception()
        return self.record(failed=error is not None, error=error)

    def record(self, failed: bool = False, error: Optional[BaseException] = None) -> ProgressSnapshot:
        with self._lock:
            self._completed += 1
            if failed:
                self._failed += 1
            snap = ProgressSnapshot(
                completed=self._completed,
                total=self._total,
                elapsed_sec=self._clock() - self._started,
            )
            if self._progress_bar is not None:
                self._progress_bar.update(1)

        logger.info(
            "%d resources processed of %d (%.1f%%), eta: %s",
            snap.completed, snap.total, snap.percentage, format_duration_words(snap.eta_sec),
        )
        if failed:
            logger.error("job %d of %d failed: %s", snap.completed, snap.total, error or "cancelled")
        return snap

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            return ProgressSnapshot(
                completed=self._completed,
                total=self._total,
                elapsed_sec=self._clock() - self._started,
            )
