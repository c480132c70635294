"""
Watch mode.

Polls the source and test trees through the ChangeTracker and calls back
whenever something was added, removed or modified. The baseline is
re-taken after each callback so the files a run writes itself do not
trigger the next one.
"""

from __future__ import annotations

import threading
from typing import Callable

from loguru import logger

from aipair.changes import ChangeTracker, Snapshot
from aipair.state import ChangeSummary

ChangeCallback = Callable[[ChangeSummary], None]


class ChangeWatcher:
    def __init__(
        self,
        tracker: ChangeTracker,
        on_change: ChangeCallback,
        interval: float = 2.0,
        stop_event: threading.Event | None = None,
    ):
        self.tracker = tracker
        self.on_change = on_change
        self.interval = interval
        self.stop_event = stop_event or threading.Event()
        self._baseline: Snapshot | None = None

    def stop(self) -> None:
        self.stop_event.set()

    def poll(self) -> ChangeSummary | None:
        """Compare the trees against the baseline; fire the callback on changes."""
        if self._baseline is None:
            self._baseline = self.tracker.snapshot()
            logger.debug(f"[WATCH] Baseline: {len(self._baseline.files)} files")
            return None

        current = self.tracker.snapshot()
        summary = self.tracker.diff(self._baseline, current)
        if summary.is_empty:
            return None

        for path in sorted(summary.touched()):
            logger.debug(f"[WATCH] File changed: {path}")

        self.on_change(summary)
        self._baseline = self.tracker.snapshot()
        return summary

    def run(self, max_polls: int | None = None) -> None:
        """Poll until stopped (or `max_polls` polls have run)."""
        logger.info(f"[WATCH] Watching {', '.join(str(d) for d in self.tracker.watch_dirs)}")
        polls = 0
        self.poll()
        while not self.stop_event.is_set():
            if max_polls is not None and polls >= max_polls:
                break
            if self.stop_event.wait(self.interval):
                break
            self.poll()
            polls += 1
        logger.info("[WATCH] Stopped watching")
