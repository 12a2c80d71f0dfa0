"""Run a batch of expense records through one browser session."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

from playwright.async_api import Page

from ..constants import DEFAULT_TIMINGS, Timings
from ..models.expense import BatchSummary, BatchTask, ExpenseRecord, RecordResult
from ..models.result import Outcome, StepResult
from .browser import BrowserContextManager
from .form import FormFillEngine
from .navigation import NavigationDriver
from .progress import ProgressTracker, TaskProgress
from .save import SaveController

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

# Progress milestones (percent). Records share the span between them.
PREPARING = 5
BROWSER_READY = 10
NAVIGATING = 15
RECORDS_START = 20
RECORDS_END = 90

# Position of each sub-step within one record's share.
SELECT_AT = 0.0
FILL_AT = 0.25
SAVE_AT = 0.5
ADVANCE_AT = 0.75

NOT_ATTEMPTED = "Not attempted"
SELECT_ATTEMPTS = 2


class _BatchAborted(Exception):
    """Stop the record loop; the message becomes the batch error.

    ``result`` is the outcome of the record that was in flight, if any.
    """

    def __init__(self, message: str, result: Optional[RecordResult] = None):
        super().__init__(message)
        self.result = result


class BatchOrchestrator:
    """Submits records in order on one page, deciding continue vs. abort per step.

    The caller must not run two batches for the same session at once.
    """

    def __init__(
        self,
        browsers: BrowserContextManager,
        tracker: ProgressTracker,
        navigator: Optional[NavigationDriver] = None,
        form: Optional[FormFillEngine] = None,
        saver: Optional[SaveController] = None,
        timings: Timings = DEFAULT_TIMINGS,
    ):
        self.browsers = browsers
        self.tracker = tracker
        self.navigator = navigator or NavigationDriver(timings=timings)
        self.form = form or FormFillEngine(timings)
        self.saver = saver or SaveController(timings)

    async def submit(self, task: BatchTask, cookies: Optional[list[dict]] = None) -> BatchSummary:
        """Submit every record of the task and return one result per record.

        Partial failures never raise. A browser that cannot be launched does
        (BrowserLaunchError), after the task's scratch files are removed.
        """
        progress = TaskProgress(self.tracker, task.task_id)
        total = len(task.records)
        results: list[RecordResult] = []
        error: Optional[str] = None

        try:
            progress.report(PREPARING, f"Preparing to submit {total} expense(s)...")
            handle = await self.browsers.ensure_context(task.session_id, cookies)
            page = await handle.get_page()
            progress.report(BROWSER_READY, "Browser ready")

            progress.report(NAVIGATING, "Navigating to expense form...")
            navigation = await self.navigator.navigate_to_expense_form(page)
            if not navigation.ok:
                raise _BatchAborted(navigation.message)

            for index, record in enumerate(task.records):
                results.append(await self._submit_record(page, index, record, total, progress))

        except _BatchAborted as e:
            if e.result is not None:
                results.append(e.result)
            error = str(e)
            logger.warning(f"Batch {task.task_id} stopped: {error}")
        except Exception as e:
            logger.error(f"Batch {task.task_id} failed: {e}", exc_info=True)
            progress.report(100, f"Submission failed: {e}")
            raise
        finally:
            remove_scratch_files(task.temporary_files())

        results.extend(not_attempted(len(results), total))
        summary = BatchSummary.from_results(task.task_id, results, error)
        progress.report(100, summary.message if error else "All expenses processed!")
        logger.info(f"Batch {task.task_id}: {summary.message}")
        return summary

    async def _submit_record(
        self,
        page: Page,
        index: int,
        record: ExpenseRecord,
        total: int,
        progress: TaskProgress,
    ) -> RecordResult:
        share = (RECORDS_END - RECORDS_START) / total
        base = RECORDS_START + index * share
        label = f"{index + 1}/{total}"

        def step(at: float, message: str):
            progress.report(base + share * at, f"{message} for expense {label}...")

        if page.is_closed():
            raise _BatchAborted("Browser page was closed")

        warnings: list[str] = []
        try:
            step(SELECT_AT, "Selecting category")
            for attempt in range(SELECT_ATTEMPTS):
                selected = await self.form.select_category_and_expense_type(
                    page, record.category_value, record.expense_type_value
                )
                if selected.outcome is not Outcome.RETRYABLE:
                    break
                logger.info(f"Retrying category selection ({attempt + 1}/{SELECT_ATTEMPTS}): {selected.message}")
            if not selected.ok:
                return self._failed(index, selected.outcome, selected.message, selected.warnings)

            step(FILL_AT, "Filling form fields")
            filled = await self.form.fill_expense_form(page, record)
            warnings.extend(filled.warnings)
            if not filled.ok:
                return self._failed(index, filled.outcome, filled.message, warnings)

            step(SAVE_AT, "Saving")
            saved = await self.saver.submit(page)
            if not saved.ok:
                return self._failed(index, saved.outcome, saved.message, warnings)

            if index < total - 1:
                step(ADVANCE_AT, "Opening next form")
                try:
                    advanced = await self.navigator.open_next_expense(page)
                except Exception as e:
                    advanced = StepResult.fatal(f"Could not open the next expense form: {e}")
                if not advanced.ok:
                    # The record is saved but nothing after it can be.
                    message = f"Saved, but the next expense form could not be opened: {advanced.message}"
                    raise _BatchAborted(
                        advanced.message,
                        RecordResult(index=index, success=False, error=message, warnings=warnings),
                    )
        except _BatchAborted:
            raise
        except Exception as e:
            logger.warning(f"Expense {label} failed: {e}")
            result = RecordResult(index=index, success=False, error=str(e), warnings=warnings)
            if page.is_closed():
                raise _BatchAborted(f"Browser page was closed: {e}", result) from e
            return result

        logger.info(f"Expense {label} submitted")
        return RecordResult(index=index, success=True, warnings=warnings)

    def _failed(self, index: int, outcome: Outcome, message: str, warnings: list[str]) -> RecordResult:
        logger.warning(f"Expense {index + 1} failed: {message}")
        result = RecordResult(index=index, success=False, error=message, warnings=warnings)
        if outcome is Outcome.FATAL:
            raise _BatchAborted(message, result)
        return result


def remove_scratch_files(paths: list[Path]):
    for path in paths:
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as e:
            logger.debug(f"Could not delete {path}: {e}")


def not_attempted(start: int, total: int) -> list[RecordResult]:
    return [
        RecordResult(index=i, success=False, attempted=False, error=NOT_ATTEMPTED)
        for i in range(start, total)
    ]


def skip_batch(task: BatchTask, tracker: ProgressTracker, reason: str) -> BatchSummary:
    """Close out a batch that never reached the browser, removing its scratch files."""
    remove_scratch_files(task.temporary_files())
    summary = BatchSummary.from_results(task.task_id, not_attempted(0, len(task.records)), reason)
    TaskProgress(tracker, task.task_id).report(100, summary.message)
    logger.warning(f"Batch {task.task_id} skipped: {reason}")
    return summary
