"""
Reference Validation Gate

DESIGN DECISION: Every allocation and transaction passes through this
validator before it touches local state. It is the single choke point
that keeps records from pointing at envelopes that no longer exist
(ghost allocations and ghost transactions).

Checks come in two severities:
- ERROR: the envelope is missing, or is an inactive ordinary envelope.
  The record is dropped.
- WARNING: the amount looks implausible. The record goes through and the
  warning is logged.

IMPORTANT: Validation NEVER silently fixes issues.
It reports them; the caller decides what to drop.
"""

from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from envelope_budget.config import get_settings
from envelope_budget.models.budget import Transaction
from envelope_budget.models.validation import ValidationIssue, ValidationResult

if TYPE_CHECKING:
    from envelope_budget.planning.registry import EnvelopeRegistry


class ReferenceValidator:
    """
    Validates references against the live envelope registry.

    The registry is read at call time, so a record that was valid when
    queued is re-checked when it is applied.
    """

    def __init__(
        self,
        registry: "EnvelopeRegistry",
        max_amount: Optional[float] = None,
    ):
        """
        Initialize validator.

        Args:
            registry: The live envelope registry
            max_amount: Amount above which a warning is raised.
                        Defaults to the app setting.
        """
        self._registry = registry
        if max_amount is None:
            max_amount = get_settings().app.max_amount
        self._max_amount = Decimal(str(max_amount)) if max_amount is not None else None

    def _check_envelope(self, envelope_id: str) -> list[ValidationIssue]:
        issues = []
        envelope = self._registry.get(envelope_id)

        if envelope is None:
            issues.append(ValidationIssue(
                field="envelope_id",
                issue_type="missing_envelope",
                message=f"Envelope {envelope_id} does not exist",
                severity="error",
                suggested_fix="Pick an existing envelope",
            ))
        elif not envelope.is_active and not envelope.is_piggybank:
            issues.append(ValidationIssue(
                field="envelope_id",
                issue_type="inactive_envelope",
                message=f"Envelope {envelope.name} is no longer active",
                severity="error",
                suggested_fix="Reactivate the envelope or pick another one",
            ))

        return issues

    def _check_amount(self, amount: Decimal) -> list[ValidationIssue]:
        if amount < 0:
            return [ValidationIssue(
                field="amount",
                issue_type="invalid_value",
                message="Amount cannot be negative",
                severity="error",
                suggested_fix="Record money leaving an envelope as an Expense",
            )]
        if self._max_amount is not None and amount > self._max_amount:
            return [ValidationIssue(
                field="amount",
                issue_type="suspicious_value",
                message=f"Amount ({amount:,.2f}) seems unusually high",
                severity="warning",
                suggested_fix="Please verify this amount is correct",
            )]
        return []

    def validate_allocation(
        self,
        envelope_id: str,
        month: str,
        amount: Decimal,
    ) -> ValidationResult:
        """
        Validate an allocation before it is stored.

        Args:
            envelope_id: Envelope the allocation funds
            month: Month key the allocation belongs to
            amount: Budgeted amount

        Returns:
            ValidationResult with all issues found
        """
        issues = self._check_envelope(envelope_id)
        issues.extend(self._check_amount(amount))
        return ValidationResult(subject=f"allocation {envelope_id}@{month}", issues=issues)

    def validate_transaction(self, tx: Transaction) -> ValidationResult:
        """Validate a transaction before it is added to the ledger."""
        issues = self._check_envelope(tx.envelope_id)
        issues.extend(self._check_amount(tx.amount))
        return ValidationResult(subject=f"transaction {tx.id}", issues=issues)

    def validate_income(self, amount: Decimal) -> ValidationResult:
        return ValidationResult(subject="income source", issues=self._check_amount(amount))
