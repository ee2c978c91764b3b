"""
Piggybank Contribution Engine

Generates the recurring automatic contribution of every piggybank.

For a month m and each active piggybank:
- skip if paused or the monthly contribution is not positive
- skip if m is before the piggybank's created_month (no back-filling)
- skip if m is after the current real-world month (no future money)
- otherwise create one automatic Income of monthly_contribution dated the
  1st of m, unless an automatic contribution already exists for
  (envelope, m)

Running the engine twice for the same month therefore creates nothing the
second time. Goal progress is derived from the all-time balance and never
stored.
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional

import structlog

from envelope_budget.audit import AuditLogger
from envelope_budget.errors import NotFoundError
from envelope_budget.ledger import Ledger
from envelope_budget.models.budget import (
    Envelope,
    PiggybankConfig,
    PiggybankProgress,
    Transaction,
    TransactionType,
    first_day_of,
    month_key,
    parse_month,
    to_amount,
)
from envelope_budget.planning import EnvelopeRegistry
from envelope_budget.sync.changes import ChangeSet


logger = structlog.get_logger(__name__)

PROGRESS_PLACES = Decimal("0.0001")


class PiggybankContributionEngine:
    def __init__(
        self,
        registry: EnvelopeRegistry,
        ledger: Ledger,
        new_id: Callable[[], str],
        clock: Callable[[], datetime] = datetime.now,
        description: str = "Piggybank Contribution",
        audit: Optional[AuditLogger] = None,
    ):
        self._registry = registry
        self._ledger = ledger
        self._new_id = new_id
        self._clock = clock
        self._description = description
        self._audit = audit

    def contribution_for(self, envelope_id: str, month: str) -> Optional[Transaction]:
        """The automatic contribution already recorded for (envelope, month), if any."""
        for tx in self._ledger.transactions(envelope_id=envelope_id, month=month, automatic=True):
            if tx.type == TransactionType.INCOME:
                return tx
        return None

    def _skip_reason(self, envelope: Envelope, month: str, current_month: str) -> Optional[str]:
        config = envelope.piggybank_config
        if config.paused:
            return "paused"
        if config.monthly_contribution <= 0:
            return "no_contribution"
        # Month keys are zero-padded, so string order is chronological order
        if month < config.created_month:
            return "before_created_month"
        if month > current_month:
            return "future_month"
        if self.contribution_for(envelope.id, month) is not None:
            return "already_contributed"
        return None

    def run(
        self,
        month: str,
        changes: ChangeSet,
        today: Optional[datetime] = None,
    ) -> list[Transaction]:
        """
        Create the missing contributions for month.

        Args:
            month: Month key to contribute for
            changes: Records every created transaction
            today: Overrides the clock when deciding what "future" means

        Returns:
            The transactions created by this run
        """
        parse_month(month)
        current_month = month_key(today or self._clock())
        created = []

        for envelope in self._registry.piggybanks(active_only=True):
            reason = self._skip_reason(envelope, month, current_month)
            if reason is not None:
                logger.debug(
                    "piggybank_skipped",
                    envelope_id=envelope.id,
                    month=month,
                    reason=reason,
                )
                continue

            amount = envelope.piggybank_config.monthly_contribution
            tx = Transaction(
                id=self._new_id(),
                envelope_id=envelope.id,
                amount=amount,
                date=first_day_of(month),
                description=self._description,
                type=TransactionType.INCOME,
                is_automatic=True,
            )
            self._ledger.add(tx)
            changes.created(tx)
            created.append(tx)

            logger.info("piggybank_contribution_created", envelope_id=envelope.id, month=month)
            if self._audit:
                self._audit.log_piggybank_contribution(envelope.id, month, str(amount))

        return created

    def progress(self, envelope_id: str) -> PiggybankProgress:
        """
        Derived goal state of a piggybank.

        Raises:
            NotFoundError: If the envelope is unknown or not a piggybank
        """
        envelope = self._registry.get(envelope_id)
        if envelope is None or not envelope.is_piggybank:
            raise NotFoundError("piggybank", envelope_id)

        balance = self._ledger.balance_of(envelope_id)
        target = envelope.piggybank_config.target_amount
        progress = None
        if target is not None and target > 0:
            progress = (balance / target).quantize(PROGRESS_PLACES, rounding=ROUND_HALF_UP)

        return PiggybankProgress(
            envelope_id=envelope_id,
            balance=balance,
            target_amount=target,
            goal_reached=target is not None and balance >= target,
            progress=progress,
        )

    def update_contribution(self, envelope_id: str, amount, changes: ChangeSet) -> Envelope:
        """
        Change a piggybank's monthly contribution.

        Raises:
            NotFoundError: If the envelope is unknown or not a piggybank
        """
        envelope = self._registry.get(envelope_id)
        if envelope is None or not envelope.is_piggybank:
            raise NotFoundError("piggybank", envelope_id)

        # Validated copy: model_copy() would accept a negative amount
        config = PiggybankConfig.model_validate({
            **envelope.piggybank_config.model_dump(),
            "monthly_contribution": to_amount(amount),
        })
        updated = envelope.model_copy(update={"piggybank_config": config})
        previous = self._registry.update(updated)
        changes.updated(previous, updated)
        return updated
