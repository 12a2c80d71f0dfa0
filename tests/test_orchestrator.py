"""Tests for the batch orchestrator with fake browser, form and save steps."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from src.models.expense import BatchTask, ExpenseRecord
from src.models.result import StepResult
from src.session_manager.browser import BrowserLaunchError
from src.session_manager.navigation import NavigationDriver
from src.session_manager.orchestrator import NOT_ATTEMPTED, BatchOrchestrator
from src.session_manager.progress import ProgressTracker

from tests.helpers import make_page


class RecordingTracker(ProgressTracker):
    def __init__(self):
        super().__init__()
        self.history: list[tuple[int, str]] = []

    def set_progress(self, task_id, progress, message):
        self.history.append((progress, message))
        super().set_progress(task_id, progress, message)


def _record(path, temporary=False, **overrides) -> ExpenseRecord:
    data = {
        "date": "2024-03-05",
        "amount": 100,
        "merchant": "Uber",
        "description": "Cab",
        "categoryValue": "cat",
        "expenseTypeValue": "type",
        "filePath": str(path),
        "temporary": temporary,
    }
    data.update(overrides)
    return ExpenseRecord.model_validate(data)


@pytest.fixture
def receipts(tmp_path):
    paths = []
    for i in range(3):
        path = tmp_path / f"receipt-{i}.png"
        path.write_bytes(b"img")
        paths.append(path)
    return paths


@pytest.fixture
def page():
    page = MagicMock()
    page.is_closed = MagicMock(return_value=False)
    return page


@pytest.fixture
def browsers(page):
    handle = MagicMock()
    handle.get_page = AsyncMock(return_value=page)
    browsers = MagicMock()
    browsers.ensure_context = AsyncMock(return_value=handle)
    return browsers


@pytest.fixture
def navigator():
    navigator = MagicMock()
    navigator.navigate_to_expense_form = AsyncMock(return_value=StepResult.success())
    navigator.open_next_expense = AsyncMock(return_value=StepResult.success())
    return navigator


@pytest.fixture
def form():
    form = MagicMock()
    form.select_category_and_expense_type = AsyncMock(return_value=StepResult.success())
    form.fill_expense_form = AsyncMock(return_value=StepResult.success())
    return form


@pytest.fixture
def saver():
    saver = MagicMock()
    saver.submit = AsyncMock(return_value=StepResult.success())
    return saver


@pytest.fixture
def tracker():
    return RecordingTracker()


@pytest.fixture
def orchestrator(browsers, tracker, navigator, form, saver):
    return BatchOrchestrator(browsers, tracker, navigator=navigator, form=form, saver=saver)


def _task(records) -> BatchTask:
    return BatchTask(task_id="task-1", session_id="sess-1", records=records)


# ---------------------------------------------------------------------------
# Happy path and per-record failures
# ---------------------------------------------------------------------------

class TestSubmit:
    async def test_all_records_succeed(self, orchestrator, navigator, saver, receipts, tracker):
        summary = await orchestrator.submit(_task([_record(p) for p in receipts]))

        assert (summary.success_count, summary.failed_count, summary.total_count) == (3, 0, 3)
        assert [r.index for r in summary.results] == [0, 1, 2]
        assert not summary.aborted
        assert saver.submit.await_count == 3
        # No new form is opened after the last record.
        assert navigator.open_next_expense.await_count == 2
        assert tracker.get_progress("task-1") == {"progress": 100, "message": "All expenses processed!"}

    async def test_cookies_passed_to_browser(self, orchestrator, browsers, receipts):
        cookies = [{"name": "sid", "value": "1"}]
        await orchestrator.submit(_task([_record(receipts[0])]), cookies)
        browsers.ensure_context.assert_awaited_once_with("sess-1", cookies)

    async def test_failed_record_does_not_stop_the_batch(self, orchestrator, form, navigator, receipts):
        form.fill_expense_form = AsyncMock(
            side_effect=[
                StepResult.success(),
                StepResult.record_failed("File upload failed: detached", ["Merchant not filled: x"]),
                StepResult.success(),
            ]
        )

        summary = await orchestrator.submit(_task([_record(p) for p in receipts]))

        assert [r.success for r in summary.results] == [True, False, True]
        failed = summary.results[1]
        assert failed.error == "File upload failed: detached"
        assert failed.warnings == ["Merchant not filled: x"]
        assert not summary.aborted
        # Only successful records open a new form; the failed one leaves its form in place.
        assert navigator.open_next_expense.await_count == 1

    async def test_save_failure_is_a_record_failure(self, orchestrator, saver, receipts):
        saver.submit = AsyncMock(
            side_effect=[StepResult.record_failed("Save button not found"), StepResult.success()]
        )
        summary = await orchestrator.submit(_task([_record(p) for p in receipts[:2]]))
        assert [r.success for r in summary.results] == [False, True]
        assert summary.results[0].error == "Save button not found"

    async def test_retryable_selection_is_tried_again(self, orchestrator, form, receipts):
        form.select_category_and_expense_type = AsyncMock(
            side_effect=[StepResult.retryable("option not rendered"), StepResult.success()]
        )
        summary = await orchestrator.submit(_task([_record(receipts[0])]))
        assert summary.results[0].success
        assert form.select_category_and_expense_type.await_count == 2

    async def test_selection_retries_are_bounded(self, orchestrator, form, receipts):
        form.select_category_and_expense_type = AsyncMock(
            return_value=StepResult.retryable("option not rendered")
        )
        summary = await orchestrator.submit(_task([_record(receipts[0])]))
        assert not summary.results[0].success
        assert summary.results[0].error == "option not rendered"
        assert form.select_category_and_expense_type.await_count == 2

    async def test_unexpected_error_fails_only_that_record(self, orchestrator, form, receipts):
        form.fill_expense_form = AsyncMock(side_effect=[RuntimeError("boom"), StepResult.success()])
        summary = await orchestrator.submit(_task([_record(p) for p in receipts[:2]]))
        assert [r.success for r in summary.results] == [False, True]
        assert summary.results[0].error == "boom"


# ---------------------------------------------------------------------------
# Aborts
# ---------------------------------------------------------------------------

class TestAbort:
    async def test_navigation_failure_marks_everything_not_attempted(
        self, orchestrator, navigator, form, receipts
    ):
        navigator.navigate_to_expense_form = AsyncMock(
            return_value=StepResult.fatal("Not logged in to Darwinbox. Please log in again.")
        )

        summary = await orchestrator.submit(_task([_record(p) for p in receipts]))

        assert summary.aborted
        assert summary.error.startswith("Not logged in")
        assert summary.total_count == 3
        assert all(not r.attempted and r.error == NOT_ATTEMPTED for r in summary.results)
        form.select_category_and_expense_type.assert_not_awaited()

    async def test_advance_failure_stops_after_saved_record(self, orchestrator, navigator, saver, receipts):
        navigator.open_next_expense = AsyncMock(
            side_effect=[StepResult.success(), StepResult.fatal('Could not find the "+ Create Expense" button')]
        )

        summary = await orchestrator.submit(_task([_record(p) for p in receipts]))

        assert summary.aborted
        assert [r.success for r in summary.results] == [True, False, False]
        second, third = summary.results[1], summary.results[2]
        assert second.attempted
        assert second.error.startswith("Saved, but the next expense form could not be opened")
        assert not third.attempted
        assert saver.submit.await_count == 2

    async def test_advance_error_aborts_the_batch(self, orchestrator, navigator, form, receipts):
        navigator.open_next_expense = AsyncMock(side_effect=RuntimeError("Target closed"))

        summary = await orchestrator.submit(_task([_record(p) for p in receipts]))

        assert summary.aborted
        assert form.fill_expense_form.await_count == 1
        first, *rest = summary.results
        assert first.error.startswith("Saved, but the next expense form could not be opened")
        assert "Target closed" in first.error
        assert all(not r.attempted and r.error == NOT_ATTEMPTED for r in rest)

    async def test_blocked_create_expense_click_aborts(
        self, browsers, tracker, form, saver, receipts, fast_timings
    ):
        page = make_page()
        make = page.locator.side_effect

        def blocked(selector):
            locator = make(selector)
            locator.click = AsyncMock(side_effect=Exception("element intercepts pointer events"))
            return locator

        page.locator.side_effect = blocked
        browsers.ensure_context.return_value.get_page.return_value = page
        orchestrator = BatchOrchestrator(
            browsers, tracker, navigator=NavigationDriver(timings=fast_timings), form=form, saver=saver
        )

        summary = await orchestrator.submit(_task([_record(p) for p in receipts]))

        assert summary.aborted
        assert summary.success_count == 0
        assert form.fill_expense_form.await_count == 1
        assert [r.attempted for r in summary.results] == [True, False, False]
        assert "intercepts pointer events" in summary.results[0].error

    async def test_fatal_step_aborts_the_batch(self, orchestrator, form, receipts):
        form.select_category_and_expense_type = AsyncMock(return_value=StepResult.fatal("session gone"))
        summary = await orchestrator.submit(_task([_record(p) for p in receipts]))
        assert summary.aborted
        assert summary.results[0].attempted and summary.results[0].error == "session gone"
        assert [r.attempted for r in summary.results[1:]] == [False, False]

    async def test_closed_page_aborts_before_next_record(self, orchestrator, page, form, receipts):
        async def close_page(*args):
            page.is_closed.return_value = True
            return StepResult.success()

        form.fill_expense_form = AsyncMock(side_effect=close_page)
        summary = await orchestrator.submit(_task([_record(p) for p in receipts[:2]]))

        assert summary.aborted
        assert "closed" in summary.error
        assert [r.attempted for r in summary.results] == [True, False]

    async def test_error_on_closed_page_aborts(self, orchestrator, page, form, receipts):
        async def crash(*args):
            page.is_closed.return_value = True
            raise RuntimeError("Target closed")

        form.fill_expense_form = AsyncMock(side_effect=crash)
        summary = await orchestrator.submit(_task([_record(p) for p in receipts[:2]]))

        assert summary.aborted
        assert summary.results[0].error == "Target closed"
        assert not summary.results[1].attempted


# ---------------------------------------------------------------------------
# Scratch files and progress
# ---------------------------------------------------------------------------

class TestCleanupAndProgress:
    async def test_temporary_receipts_deleted_user_files_kept(self, orchestrator, receipts):
        task = _task([_record(receipts[0], temporary=True), _record(receipts[1])])
        await orchestrator.submit(task)
        assert not receipts[0].exists()
        assert receipts[1].exists()

    async def test_temporary_receipts_deleted_when_launch_fails(
        self, orchestrator, browsers, receipts, tracker
    ):
        browsers.ensure_context = AsyncMock(side_effect=BrowserLaunchError("no browser"))
        task = _task([_record(receipts[0], temporary=True)])

        with pytest.raises(BrowserLaunchError):
            await orchestrator.submit(task)

        assert not receipts[0].exists()
        progress = tracker.get_progress("task-1")
        assert progress["progress"] == 100
        assert "no browser" in progress["message"]

    async def test_already_deleted_receipt_is_ignored(self, orchestrator, receipts):
        task = _task([_record(receipts[0], temporary=True)])
        receipts[0].unlink()
        form_ok = await orchestrator.submit(task)
        assert form_ok.total_count == 1

    async def test_progress_never_goes_backwards(self, orchestrator, form, receipts, tracker):
        form.fill_expense_form = AsyncMock(
            side_effect=[StepResult.success(), StepResult.record_failed("x"), StepResult.success()]
        )
        await orchestrator.submit(_task([_record(p) for p in receipts]))

        values = [p for p, _ in tracker.history]
        assert values == sorted(values)
        assert values[0] == 5
        assert values[-1] == 100
