"""Tests for the pydantic record types."""

from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest
from pydantic import ValidationError

from src.models.expense import BatchSummary, BatchTask, ExpenseRecord, RecordResult
from src.models.result import Outcome, StepResult
from src.models.session import Session


def _record(**overrides) -> ExpenseRecord:
    data = {
        "date": "2024-03-05",
        "amount": "250.50",
        "merchant": "Uber",
        "description": "Ride to office",
        "categoryValue": "cat",
        "expenseTypeValue": "type",
        "filePath": "/tmp/receipt.png",
    }
    data.update(overrides)
    return ExpenseRecord.model_validate(data)


class TestExpenseRecord:
    def test_iso_and_darwinbox_dates_parse(self):
        assert _record(date="2024-03-05").date == dt.date(2024, 3, 5)
        assert _record(date="05-03-2024").date == dt.date(2024, 3, 5)
        assert _record(date="05/03/2024").date == dt.date(2024, 3, 5)

    def test_bad_date_rejected(self):
        with pytest.raises(ValidationError):
            _record(date="March 5th")

    def test_amount_must_be_positive(self):
        with pytest.raises(ValidationError):
            _record(amount="0")

    def test_picker_date_uses_zero_based_month(self):
        assert _record(date="2024-12-31").picker_date() == (31, 11, 2024)
        assert _record(date="2024-01-01").picker_date() == (1, 0, 2024)

    def test_amount_text_drops_trailing_zeros(self):
        assert _record(amount=Decimal("1500.00")).amount_text() == "1500"
        assert _record(amount="99.90").amount_text() == "99.9"

    def test_missing_invoice_number_is_blank(self):
        assert _record(invoiceNumber=None).invoice_number == ""

    def test_temporary_files_only_lists_scratch_copies(self):
        task = BatchTask(
            task_id="t",
            session_id="s",
            records=[_record(filePath="/tmp/a.png", temporary=True), _record(filePath="/tmp/b.png")],
        )
        assert [str(p) for p in task.temporary_files()] == ["/tmp/a.png"]


class TestBatchSummary:
    def test_counts_from_results(self):
        results = [
            RecordResult(index=0, success=True),
            RecordResult(index=1, success=False, error="boom"),
            RecordResult(index=2, success=False, attempted=False, error="Not attempted"),
        ]
        summary = BatchSummary.from_results("t", results, error="stopped")
        assert (summary.success_count, summary.failed_count, summary.total_count) == (1, 2, 3)
        assert summary.aborted
        assert "1 of 3" in summary.message

    def test_serialises_with_camel_case_keys(self):
        summary = BatchSummary.from_results("t", [RecordResult(index=0, success=True)])
        data = summary.model_dump(by_alias=True)
        assert data["successCount"] == 1
        assert data["taskId"] == "t"
        assert not data["aborted"]


class TestSession:
    def test_cookies_alone_do_not_mean_logged_in(self):
        session = Session.new("s", "a@example.com", ttl_seconds=60)
        session.cookies = [{"name": "sid", "value": "x"}]
        assert not session.is_logged_in(browser_live=False)
        assert session.is_logged_in(browser_live=True)

    def test_live_browser_without_cookies_is_not_logged_in(self):
        session = Session.new("s", "a@example.com", ttl_seconds=60)
        assert not session.is_logged_in(browser_live=True)


def test_step_result_tags():
    assert StepResult.success().ok
    assert StepResult.record_failed("x", ["w"]).warnings == ["w"]
    assert StepResult.fatal("x").outcome is Outcome.FATAL
    assert not StepResult.retryable("x").ok
