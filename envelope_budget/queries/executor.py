"""
Report Query Engine

DESIGN DECISION: Reports are DERIVED, never stored.
Every figure here is recomputed from the ledger and the plan at call
time, so a report can never disagree with the records it describes.

Balance scope:
- ordinary envelopes are budgeted month by month, so their balance is
  the month's income minus the month's expenses
- piggybanks accumulate across months, so their balance is all-time

This executor only reads. It never mutates the ledger or the plan.
"""

from decimal import Decimal
from typing import Callable, Optional

from envelope_budget.ledger import Ledger
from envelope_budget.models.budget import Envelope, TransactionType, parse_month
from envelope_budget.models.report import EnvelopeBalance, MonthReport
from envelope_budget.planning import EnvelopeRegistry, MonthlyBudgetPlan


ZERO = Decimal("0.00")
UNCATEGORIZED = "uncategorized"


class QueryExecutionError(Exception):
    """Error during query execution."""
    pass


class QueryExecutor:
    """
    Builds read-only views over the engine's local state.

    GUARANTEES:
    - Only reports records that exist locally
    - Allocations whose envelope is gone are never counted
    - Pending-sync flags come from the coordinator, not from guesses
    """

    def __init__(
        self,
        registry: EnvelopeRegistry,
        ledger: Ledger,
        plan: MonthlyBudgetPlan,
        is_pending: Optional[Callable[[str], bool]] = None,
    ):
        self._registry = registry
        self._ledger = ledger
        self._plan = plan
        self._is_pending = is_pending or (lambda _local_id: False)

    def balance_of(self, envelope_id: str, month: str) -> Decimal:
        """Derived balance with the scope rule applied."""
        envelope = self._registry.get(envelope_id)
        if envelope is not None and envelope.is_piggybank:
            return self._ledger.balance_of(envelope_id)
        return self._ledger.balance_of(envelope_id, month)

    def envelope_balance(self, envelope: Envelope, month: str) -> EnvelopeBalance:
        income = ZERO
        spent = ZERO
        for tx in self._ledger.transactions(envelope_id=envelope.id, month=month):
            if tx.type == TransactionType.INCOME:
                income += tx.amount
            elif tx.type == TransactionType.EXPENSE:
                spent += tx.amount

        allocation = self._plan.allocation_for(envelope.id, month)
        return EnvelopeBalance(
            envelope_id=envelope.id,
            name=envelope.name,
            is_piggybank=envelope.is_piggybank,
            category_id=envelope.category_id,
            allocated=allocation.budgeted_amount if allocation else ZERO,
            income=income,
            spent=spent,
            balance=self.balance_of(envelope.id, month),
            pending_sync=self._is_pending(envelope.id),
        )

    def envelope_balances(self, month: str) -> list[EnvelopeBalance]:
        """
        Balances for every envelope relevant to month.

        Inactive envelopes are only listed when they still have records in
        the month.
        """
        parse_month(month)
        active_in_month = {tx.envelope_id for tx in self._ledger.transactions(month=month)}
        return [
            self.envelope_balance(envelope, month)
            for envelope in self._registry.envelopes()
            if envelope.is_active or envelope.id in active_in_month
        ]

    def spending_breakdown(self, month: str, group_by: str = "envelope") -> dict[str, Decimal]:
        """
        Expenses of month grouped by envelope name or category name.

        Raises:
            QueryExecutionError: If group_by is not supported
        """
        if group_by not in ("envelope", "category"):
            raise QueryExecutionError(f"Cannot group spending by {group_by!r}")

        groups: dict[str, Decimal] = {}
        for tx in self._ledger.transactions(month=month):
            if tx.type != TransactionType.EXPENSE:
                continue
            envelope = self._registry.get(tx.envelope_id)
            if envelope is None:
                # Records of deleted envelopes are ghosts; never report them
                continue
            if group_by == "envelope":
                key = envelope.name
            else:
                category = self._registry.get_category(envelope.category_id) if envelope.category_id else None
                key = category.name if category else UNCATEGORIZED
            groups[key] = groups.get(key, ZERO) + tx.amount
        return groups

    def month_report(self, month: str) -> MonthReport:
        envelopes = self.envelope_balances(month)
        transactions = self._ledger.transactions(month=month)

        local_ids = [tx.id for tx in transactions]
        local_ids += [s.id for s in self._plan.income_sources(month)]
        local_ids += [a.id for a in self._plan.allocations(month)]

        return MonthReport(
            month=month,
            summary=self._plan.summary(month),
            envelopes=envelopes,
            total_spent=sum((e.spent for e in envelopes), ZERO),
            transaction_count=len(transactions),
            pending_count=sum(1 for local_id in local_ids if self._is_pending(local_id)),
        )
