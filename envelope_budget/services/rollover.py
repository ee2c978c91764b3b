"""
Month Rollover Service

Seeds a month's plan from another month, and clears a month for a fresh
start.

DESIGN DECISION: Rollover goes through the plan's own primitives
(set_income_source, set_allocation) rather than writing records directly,
so the reference gate and funding-transaction rules are exactly the ones
every other command gets. Envelopes are looked up at copy time: an
allocation whose envelope has been deleted since the source month was
planned is dropped and reported, never recreated.
"""

from typing import Callable, Optional

import structlog

from envelope_budget.audit import AuditLogger
from envelope_budget.ledger import Ledger
from envelope_budget.models.budget import IncomeSource, RolloverResult, parse_month
from envelope_budget.planning import EnvelopeRegistry, MonthlyBudgetPlan
from envelope_budget.sync.changes import ChangeSet


logger = structlog.get_logger(__name__)


class MonthRolloverService:
    def __init__(
        self,
        registry: EnvelopeRegistry,
        ledger: Ledger,
        plan: MonthlyBudgetPlan,
        new_id: Callable[[], str],
        audit: Optional[AuditLogger] = None,
    ):
        self._registry = registry
        self._ledger = ledger
        self._plan = plan
        self._new_id = new_id
        self._audit = audit

    def copy_previous_month(
        self,
        source_month: str,
        target_month: str,
        changes: ChangeSet,
    ) -> RolloverResult:
        """
        Copy source_month's income sources and allocations into target_month.

        - Income sources are copied unless target_month already has one
          with the same name.
        - Allocations are copied for envelopes that still exist (and, if
          ordinary, are still active). Ordinary envelopes with a positive
          amount also get their funding transaction; piggybanks do not.
        - Allocations for any other envelope are dropped.
        """
        parse_month(source_month)
        parse_month(target_month)
        result = RolloverResult(source_month=source_month, target_month=target_month)

        existing_names = {s.name for s in self._plan.income_sources(target_month)}
        for source in self._plan.income_sources(source_month):
            if source.name in existing_names:
                continue
            self._plan.set_income_source(
                IncomeSource(
                    id=self._new_id(),
                    month=target_month,
                    name=source.name,
                    amount=source.amount,
                    frequency=source.frequency,
                ),
                changes,
            )
            result.income_sources_copied += 1

        for allocation in self._plan.allocations(source_month):
            envelope = self._registry.get(allocation.envelope_id)
            if envelope is None or not self._registry.is_usable(envelope.id):
                logger.info(
                    "rollover_allocation_dropped",
                    envelope_id=allocation.envelope_id,
                    source_month=source_month,
                )
                result.dropped_envelope_ids.append(allocation.envelope_id)
                continue

            had_funding = self._plan.funding_transaction(envelope.id, target_month) is not None
            copied = self._plan.set_allocation(
                envelope.id, target_month, allocation.budgeted_amount, changes
            )
            if copied is None:
                result.dropped_envelope_ids.append(allocation.envelope_id)
                continue
            result.allocations_copied += 1
            if (
                not envelope.is_piggybank
                and not had_funding
                and allocation.budgeted_amount > 0
            ):
                result.funding_transactions_created += 1

        logger.info(
            "month_copied",
            source_month=source_month,
            target_month=target_month,
            income_sources=result.income_sources_copied,
            allocations=result.allocations_copied,
            dropped=len(result.dropped_envelope_ids),
        )
        if self._audit:
            self._audit.log_month_copied(
                source_month,
                target_month,
                result.allocations_copied,
                result.dropped_envelope_ids,
            )
        return result

    def start_fresh(self, month: str, changes: ChangeSet) -> dict[str, int]:
        """
        Remove every transaction, income source and allocation of month.

        Other months are untouched. The caller must have obtained the
        user's confirmation before calling this.

        Returns:
            Number of removed records per kind
        """
        parse_month(month)
        transactions = self._ledger.remove_where(lambda tx: tx.month == month)
        changes.deleted_all(transactions)
        income_sources = self._plan.remove_income_sources_where(lambda s: s.month == month, changes)
        allocations = self._plan.remove_allocations_where(lambda a: a.month == month, changes)

        counts = {
            "transactions": len(transactions),
            "income_sources": len(income_sources),
            "allocations": len(allocations),
        }
        logger.warning("month_cleared", month=month, **counts)
        return counts
