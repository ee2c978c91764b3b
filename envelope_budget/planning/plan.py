"""
Monthly Budget Plan

Per-month income sources and envelope allocations, and the
"available to budget" figure derived from them:

    available_to_budget(m) = total_income(m) - total_allocated(m)

DESIGN DECISION: set_allocation() is the only way an allocation enters
the plan, and it runs the reference validator against the live registry
every time. Totals additionally skip allocations whose envelope no longer
exists, so an orphan that slipped in from storage can never be counted.

Setting an allocation on an ordinary envelope keeps that month's funding
transaction (an automatic "Budgeted" Income dated the 1st) in step with
the budgeted amount, so the envelope's derived balance reflects the
budget immediately.
"""

from decimal import Decimal
from typing import Any, Callable, Iterable, Optional

import structlog

from envelope_budget.audit import AuditLogger
from envelope_budget.errors import NotFoundError
from envelope_budget.ledger import Ledger
from envelope_budget.models.budget import (
    DistributionResult,
    EnvelopeAllocation,
    IncomeSource,
    MonthlyBudgetSummary,
    Transaction,
    TransactionType,
    first_day_of,
    to_amount,
)
from envelope_budget.planning.registry import EnvelopeRegistry
from envelope_budget.sync.changes import ChangeSet
from envelope_budget.validation import ReferenceValidator


logger = structlog.get_logger(__name__)

ZERO = Decimal("0.00")

# Older data labelled funding transactions differently
LEGACY_FUNDING_DESCRIPTIONS = ("Monthly Budget Allocation",)


class MonthlyBudgetPlan:
    """
    Income sources and allocations for every month, keyed by local id.

    Mutating methods record what they did into the ChangeSet they are
    given; the caller owns confirmation and rollback.
    """

    def __init__(
        self,
        registry: EnvelopeRegistry,
        ledger: Ledger,
        validator: ReferenceValidator,
        new_id: Callable[[], str],
        funding_description: str = "Budgeted",
        audit: Optional[AuditLogger] = None,
    ):
        self._registry = registry
        self._ledger = ledger
        self._validator = validator
        self._new_id = new_id
        self._funding_description = funding_description
        self._audit = audit
        self._income: dict[str, IncomeSource] = {}
        self._allocations: dict[str, EnvelopeAllocation] = {}

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def income_sources(self, month: Optional[str] = None) -> list[IncomeSource]:
        return [s for s in self._income.values() if month is None or s.month == month]

    def get_income_source(self, source_id: str) -> Optional[IncomeSource]:
        return self._income.get(source_id)

    def allocations(self, month: Optional[str] = None) -> list[EnvelopeAllocation]:
        return [a for a in self._allocations.values() if month is None or a.month == month]

    def get_allocation(self, allocation_id: str) -> Optional[EnvelopeAllocation]:
        return self._allocations.get(allocation_id)

    def allocation_for(self, envelope_id: str, month: str) -> Optional[EnvelopeAllocation]:
        for allocation in self._allocations.values():
            if allocation.envelope_id == envelope_id and allocation.month == month:
                return allocation
        return None

    def funding_transaction(self, envelope_id: str, month: str) -> Optional[Transaction]:
        """
        The automatic Income that funds an ordinary envelope's allocation.

        Manual income and transfers are never treated as funding, even
        when their description matches.
        """
        labels = (self._funding_description, *LEGACY_FUNDING_DESCRIPTIONS)
        for tx in self._ledger.transactions(envelope_id=envelope_id, month=month):
            if (
                tx.type == TransactionType.INCOME
                and tx.is_automatic
                and tx.transfer_id is None
                and tx.description in labels
            ):
                return tx
        return None

    def total_income(self, month: str) -> Decimal:
        return sum((s.amount for s in self.income_sources(month)), ZERO)

    def live_allocations(self, month: str) -> list[EnvelopeAllocation]:
        """Allocations for month whose envelope currently exists."""
        return [a for a in self.allocations(month) if self._registry.exists(a.envelope_id)]

    def total_allocated(self, month: str) -> Decimal:
        return sum((a.budgeted_amount for a in self.live_allocations(month)), ZERO)

    def available_to_budget(self, month: str) -> Decimal:
        return self.total_income(month) - self.total_allocated(month)

    def summary(self, month: str) -> MonthlyBudgetSummary:
        total_income = self.total_income(month)
        total_allocated = self.total_allocated(month)
        return MonthlyBudgetSummary(
            month=month,
            total_income=total_income,
            total_allocated=total_allocated,
            available_to_budget=total_income - total_allocated,
            orphaned_allocations=len(self.allocations(month)) - len(self.live_allocations(month)),
        )

    # -------------------------------------------------------------------------
    # Income sources
    # -------------------------------------------------------------------------

    def set_income_source(self, source: IncomeSource, changes: ChangeSet) -> IncomeSource:
        """Insert or replace an income source."""
        for issue in self._validator.validate_income(source.amount).issues:
            logger.warning("income_source_warning", source_id=source.id, message=issue.message)

        previous = self._income.get(source.id)
        self._income[source.id] = source
        if previous is None:
            changes.created(source)
        else:
            changes.updated(previous, source)
        return source

    def remove_income_source(self, source_id: str, changes: ChangeSet) -> IncomeSource:
        source = self._income.pop(source_id, None)
        if source is None:
            raise NotFoundError("income_source", source_id)
        changes.deleted(source)
        return source

    # -------------------------------------------------------------------------
    # Allocations
    # -------------------------------------------------------------------------

    def set_allocation(
        self,
        envelope_id: str,
        month: str,
        amount,
        changes: ChangeSet,
    ) -> Optional[EnvelopeAllocation]:
        """
        Create or update the allocation for (envelope, month).

        Returns:
            The stored allocation, or None when the envelope is missing or
            inactive. Rejected calls change nothing and are never sent to
            storage.
        """
        amount = to_amount(amount)
        result = self._validator.validate_allocation(envelope_id, month, amount)
        if result.has_errors:
            logger.warning(
                "allocation_rejected",
                envelope_id=envelope_id,
                month=month,
                issues=result.messages,
            )
            if self._audit:
                self._audit.log_allocation_rejected(envelope_id, month, result.messages)
            return None
        for message in result.messages:
            logger.warning("allocation_warning", envelope_id=envelope_id, message=message)

        existing = self.allocation_for(envelope_id, month)
        if existing is None:
            allocation = EnvelopeAllocation(
                id=self._new_id(),
                envelope_id=envelope_id,
                month=month,
                budgeted_amount=amount,
            )
            self._allocations[allocation.id] = allocation
            changes.created(allocation)
        else:
            allocation = existing.model_copy(update={"budgeted_amount": amount})
            self._allocations[allocation.id] = allocation
            changes.updated(existing, allocation)

        envelope = self._registry.get(envelope_id)
        if not envelope.is_piggybank:
            self._sync_funding(envelope_id, month, amount, changes)
        return allocation

    def _sync_funding(self, envelope_id: str, month: str, amount: Decimal, changes: ChangeSet) -> None:
        funding = self.funding_transaction(envelope_id, month)
        if funding is None:
            if amount > 0:
                tx = Transaction(
                    id=self._new_id(),
                    envelope_id=envelope_id,
                    amount=amount,
                    date=first_day_of(month),
                    description=self._funding_description,
                    type=TransactionType.INCOME,
                    is_automatic=True,
                )
                self._ledger.add(tx)
                changes.created(tx)
        elif amount > 0:
            updated = funding.model_copy(update={
                "amount": amount,
                "description": self._funding_description,
            })
            self._ledger.update(updated)
            changes.updated(funding, updated)
        else:
            changes.deleted_all(self._ledger.delete(funding.id))

    def distribute(
        self,
        month: str,
        distributions: dict[str, Any],
        changes: ChangeSet,
    ) -> DistributionResult:
        """
        Add each amount to the envelope's allocation for month.

        Every entry goes through set_allocation(), so entries for missing
        or inactive envelopes are rejected and reported while the rest are
        applied. Zero amounts are skipped.
        """
        result = DistributionResult(month=month)
        for envelope_id, amount in distributions.items():
            amount = to_amount(amount)
            if amount == 0:
                continue
            existing = self.allocation_for(envelope_id, month)
            total = amount + (existing.budgeted_amount if existing is not None else ZERO)
            allocation = self.set_allocation(envelope_id, month, total, changes)
            if allocation is None:
                result.rejected_envelope_ids.append(envelope_id)
            else:
                result.allocated[envelope_id] = amount
        return result

    def repair_funding(self, month: str, changes: ChangeSet) -> list[str]:
        """
        Bring every ordinary envelope's funding transaction for month back
        in line with its allocation.

        Funding can go missing or drift when records were written by an
        older client or only partially synced.

        Returns:
            Ids of the envelopes whose funding was changed
        """
        repaired = []
        for allocation in self.live_allocations(month):
            envelope = self._registry.get(allocation.envelope_id)
            if envelope.is_piggybank:
                continue
            funding = self.funding_transaction(envelope.id, month)
            expected = allocation.budgeted_amount
            if funding is None and expected <= 0:
                continue
            if (
                funding is not None
                and funding.amount == expected
                and funding.description == self._funding_description
            ):
                continue
            self._sync_funding(envelope.id, month, expected, changes)
            repaired.append(envelope.id)

        if repaired:
            logger.info("funding_repaired", month=month, envelope_ids=repaired)
        return repaired

    def add_allocation(self, allocation: EnvelopeAllocation, changes: ChangeSet) -> Optional[EnvelopeAllocation]:
        """
        Insert a ready-made allocation without touching funding.

        Runs the same reference check as set_allocation().
        """
        result = self._validator.validate_allocation(
            allocation.envelope_id, allocation.month, allocation.budgeted_amount
        )
        if result.has_errors:
            logger.warning(
                "allocation_rejected",
                envelope_id=allocation.envelope_id,
                month=allocation.month,
                issues=result.messages,
            )
            if self._audit:
                self._audit.log_allocation_rejected(
                    allocation.envelope_id, allocation.month, result.messages
                )
            return None
        self._allocations[allocation.id] = allocation
        changes.created(allocation)
        return allocation

    def remove_allocation(self, allocation_id: str, changes: ChangeSet) -> EnvelopeAllocation:
        """Remove an allocation together with its funding transaction, if any."""
        allocation = self._allocations.pop(allocation_id, None)
        if allocation is None:
            raise NotFoundError("allocation", allocation_id)
        changes.deleted(allocation)

        envelope = self._registry.get(allocation.envelope_id)
        if envelope is not None and not envelope.is_piggybank:
            funding = self.funding_transaction(allocation.envelope_id, allocation.month)
            if funding is not None:
                changes.deleted_all(self._ledger.delete(funding.id))
        return allocation

    def remove_allocations_where(self, predicate, changes: ChangeSet) -> list[EnvelopeAllocation]:
        removed = [a for a in self._allocations.values() if predicate(a)]
        for allocation in removed:
            del self._allocations[allocation.id]
        changes.deleted_all(removed)
        return removed

    def remove_income_sources_where(self, predicate, changes: ChangeSet) -> list[IncomeSource]:
        removed = [s for s in self._income.values() if predicate(s)]
        for source in removed:
            del self._income[source.id]
        changes.deleted_all(removed)
        return removed

    # -------------------------------------------------------------------------
    # Rollback and hydration
    # -------------------------------------------------------------------------

    def restore_income_sources(self, sources: Iterable[IncomeSource]) -> None:
        for source in sources:
            self._income[source.id] = source

    def discard_income_sources(self, source_ids: Iterable[str]) -> None:
        for source_id in source_ids:
            self._income.pop(source_id, None)

    def restore_allocations(self, allocations: Iterable[EnvelopeAllocation]) -> None:
        for allocation in allocations:
            self._allocations[allocation.id] = allocation

    def discard_allocations(self, allocation_ids: Iterable[str]) -> None:
        for allocation_id in allocation_ids:
            self._allocations.pop(allocation_id, None)

    def clear(self) -> None:
        self._income.clear()
        self._allocations.clear()
