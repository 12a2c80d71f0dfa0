"""Tests for the in-memory progress tracker."""

from __future__ import annotations

from src.session_manager.progress import DEFAULT_PROGRESS, ProgressTracker, TaskProgress


def test_unknown_task_reports_default():
    tracker = ProgressTracker()
    assert tracker.get_progress("nope") == {"progress": 0, "message": "Starting..."}
    assert tracker.get_progress("nope") == DEFAULT_PROGRESS


def test_set_then_get():
    tracker = ProgressTracker()
    tracker.set_progress("t1", 40, "Filling form")
    assert tracker.get_progress("t1") == {"progress": 40, "message": "Filling form"}
    assert "t1" in tracker


def test_entries_expire_after_last_write(clock):
    tracker = ProgressTracker(ttl_seconds=300, clock=clock)
    tracker.set_progress("t1", 10, "a")
    clock.advance(200)
    tracker.set_progress("t1", 20, "b")
    clock.advance(200)
    # 400s after the first write but only 200s after the last one
    assert tracker.get_progress("t1")["progress"] == 20
    clock.advance(101)
    assert "t1" not in tracker
    assert tracker.get_progress("t1") == DEFAULT_PROGRESS


def test_oldest_entries_evicted_beyond_capacity():
    tracker = ProgressTracker(max_entries=2)
    tracker.set_progress("a", 1, "")
    tracker.set_progress("b", 2, "")
    tracker.set_progress("c", 3, "")
    assert len(tracker) == 2
    assert "a" not in tracker


def test_task_progress_never_goes_backwards():
    tracker = ProgressTracker()
    progress = TaskProgress(tracker, "t1")
    progress.report(30, "thirty")
    progress.report(20, "late update")
    assert tracker.get_progress("t1") == {"progress": 30, "message": "late update"}


def test_task_progress_caps_at_100():
    tracker = ProgressTracker()
    progress = TaskProgress(tracker, "t1")
    progress.report(150, "done")
    assert tracker.get_progress("t1")["progress"] == 100
