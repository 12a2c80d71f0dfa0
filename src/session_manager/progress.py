"""In-memory progress store polled by clients while a submission runs."""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import Callable

from ..config import PROGRESS_MAX_ENTRIES, PROGRESS_TTL_SECONDS

DEFAULT_PROGRESS = {"progress": 0, "message": "Starting..."}


class ProgressTracker:
    """task_id -> (percentage, message), each entry expiring a fixed time after its last write.

    Entries outlive the browser work that produced them, so a crashed batch
    still leaves its last known state for a bounded time.
    """

    def __init__(
        self,
        ttl_seconds: float = PROGRESS_TTL_SECONDS,
        max_entries: int = PROGRESS_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[int, str, float]] = OrderedDict()

    def set_progress(self, task_id: str, progress: int, message: str):
        self._expire()
        self._entries.pop(task_id, None)
        self._entries[task_id] = (int(progress), message, self._clock() + self._ttl)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    def get_progress(self, task_id: str) -> dict:
        self._expire()
        entry = self._entries.get(task_id)
        if entry is None:
            return dict(DEFAULT_PROGRESS)
        return {"progress": entry[0], "message": entry[1]}

    def __contains__(self, task_id: str) -> bool:
        self._expire()
        return task_id in self._entries

    def __len__(self) -> int:
        self._expire()
        return len(self._entries)

    def _expire(self):
        now = self._clock()
        # Insertion order == write order, so expired entries are at the front.
        while self._entries:
            task_id, (_, _, deadline) = next(iter(self._entries.items()))
            if deadline > now:
                break
            del self._entries[task_id]


class TaskProgress:
    """Reports one task's progress, never letting the percentage go backwards."""

    def __init__(self, tracker: ProgressTracker, task_id: str):
        self._tracker = tracker
        self.task_id = task_id
        self.last = 0

    def report(self, progress: float, message: str):
        self.last = max(self.last, min(100, int(progress)))
        self._tracker.set_progress(self.task_id, self.last, message)
