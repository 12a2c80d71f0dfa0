"""Pydantic models for expense claims and batch submissions."""

from __future__ import annotations

import datetime as dt
import re
from decimal import Decimal
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_DMY_DATE = re.compile(r"^\d{2}[-/]\d{2}[-/]\d{4}$")


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def parse_expense_date(value: str | dt.date) -> dt.date:
    """Accept YYYY-MM-DD (as extracted) or DD-MM-YYYY (as shown in Darwinbox)."""
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    text = str(value).strip()
    if _ISO_DATE.match(text):
        return dt.datetime.strptime(text, "%Y-%m-%d").date()
    if _DMY_DATE.match(text):
        return dt.datetime.strptime(text.replace("/", "-"), "%d-%m-%Y").date()
    raise ValueError(f"Unrecognised date format: {text!r} (expected YYYY-MM-DD or DD-MM-YYYY)")


class CategoryMapping(_CamelModel):
    """Darwinbox category id and the expense-type id that depends on it."""

    category_value: str
    expense_type_value: str


class ExpenseRecord(_CamelModel):
    """One expense claim, consumed once by the form-fill engine."""

    date: dt.date
    amount: Decimal = Field(gt=0)
    merchant: str
    invoice_number: str = ""
    description: str
    category_value: str
    expense_type_value: str
    file_path: Path
    # Scratch copies are deleted after the batch; user files never are.
    temporary: bool = False

    @field_validator("date", mode="before")
    @classmethod
    def _normalise_date(cls, value):
        return parse_expense_date(value)

    @field_validator("invoice_number", mode="before")
    @classmethod
    def _blank_invoice(cls, value):
        return value or ""

    def picker_date(self) -> tuple[int, int, int]:
        """(day, zero-based month, year) as the datepicker encodes its cells."""
        return self.date.day, self.date.month - 1, self.date.year

    def amount_text(self) -> str:
        return format(self.amount.normalize(), "f")


class RecordResult(_CamelModel):
    index: int
    success: bool
    attempted: bool = True
    error: Optional[str] = None
    warnings: list[str] = Field(default_factory=list)


class BatchTask(_CamelModel):
    task_id: str
    session_id: str
    records: list[ExpenseRecord]
    # Stored uploads consumed by this batch; their metadata goes with the files.
    upload_ids: list[str] = Field(default_factory=list)

    def temporary_files(self) -> list[Path]:
        return [r.file_path for r in self.records if r.temporary]


class BatchSummary(_CamelModel):
    task_id: str
    success_count: int = 0
    failed_count: int = 0
    total_count: int = 0
    results: list[RecordResult] = Field(default_factory=list)
    aborted: bool = False
    error: Optional[str] = None

    @classmethod
    def from_results(
        cls,
        task_id: str,
        results: list[RecordResult],
        error: Optional[str] = None,
    ) -> BatchSummary:
        success = sum(1 for r in results if r.success)
        return cls(
            task_id=task_id,
            success_count=success,
            failed_count=len(results) - success,
            total_count=len(results),
            results=results,
            aborted=error is not None,
            error=error,
        )

    @property
    def message(self) -> str:
        text = f"Submitted {self.success_count} of {self.total_count} expenses"
        if self.error:
            text += f" (stopped: {self.error})"
        return text


class ExtractedInvoice(_CamelModel):
    """Fields read off a receipt image by the extraction service."""

    date: str = ""
    amount: float = 0
    merchant: str = ""
    invoice_number: str = ""
    description: str = ""
    category: str = "Other"

    @field_validator("date", "merchant", "invoice_number", "description", mode="before")
    @classmethod
    def _none_to_blank(cls, value):
        return "" if value is None else str(value)

    @field_validator("category", mode="before")
    @classmethod
    def _default_category(cls, value):
        return str(value) if value else "Other"

    @field_validator("amount", mode="before")
    @classmethod
    def _parse_amount(cls, value):
        if value in (None, ""):
            return 0
        if isinstance(value, str):
            cleaned = re.sub(r"[^\d.\-]", "", value)
            return float(cleaned) if cleaned else 0
        return value
