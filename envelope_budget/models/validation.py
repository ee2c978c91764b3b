"""
Validation Models

Results of the reference checks run before a record is allowed into the
budget plan or the ledger. Errors block the record; warnings are reported
and the record goes through.
"""

from typing import Literal, Optional

from pydantic import BaseModel, Field


Severity = Literal["error", "warning", "info"]


class ValidationIssue(BaseModel):
    """One problem with one field."""

    field: str
    issue_type: str = Field(
        ...,
        description="Machine-readable kind, e.g. 'missing_envelope' or 'suspicious_value'"
    )
    message: str
    severity: Severity
    suggested_fix: Optional[str] = None


class ValidationResult(BaseModel):
    subject: str = Field(..., description="What was checked, e.g. 'transaction t1'")
    issues: list[ValidationIssue] = Field(default_factory=list)

    def _errors(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == "error"]

    @property
    def has_errors(self) -> bool:
        return bool(self._errors())

    @property
    def is_valid(self) -> bool:
        return not self.has_errors

    @property
    def error_count(self) -> int:
        return len(self._errors())

    @property
    def messages(self) -> list[str]:
        return [issue.message for issue in self.issues]
