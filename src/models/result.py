"""Tagged result returned by every step that touches the expense form."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class Outcome(str, Enum):
    OK = "ok"
    RETRYABLE = "retryable"          # transient; the same step may be tried again
    RECORD_FAILED = "record_failed"  # this record is lost, the batch goes on
    FATAL = "fatal"                  # nothing more can be done in this session


class StepResult(BaseModel):
    outcome: Outcome
    message: str = ""
    warnings: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.OK

    @classmethod
    def success(cls, message: str = "", warnings: list[str] | None = None) -> StepResult:
        return cls(outcome=Outcome.OK, message=message, warnings=warnings or [])

    @classmethod
    def retryable(cls, message: str) -> StepResult:
        return cls(outcome=Outcome.RETRYABLE, message=message)

    @classmethod
    def record_failed(cls, message: str, warnings: list[str] | None = None) -> StepResult:
        return cls(outcome=Outcome.RECORD_FAILED, message=message, warnings=warnings or [])

    @classmethod
    def fatal(cls, message: str) -> StepResult:
        return cls(outcome=Outcome.FATAL, message=message)
