"""
Transaction Ledger

In-memory collection of transactions keyed by local id.

DESIGN DECISION: Balance is never stored. balance_of() recomputes it from
the transaction set on every call, so add/update/delete never need
arithmetic bookkeeping and a balance can never drift from the records.

Transfers are an Expense/Income pair sharing a transfer_id. The ledger
removes both halves together whenever one is deleted.
"""

from decimal import Decimal
from typing import Callable, Iterable, Iterator, Optional

import structlog

from envelope_budget.errors import NotFoundError
from envelope_budget.models.budget import Transaction, TransactionType


logger = structlog.get_logger(__name__)

ZERO = Decimal("0.00")


class Ledger:
    """
    All transactions known locally, in insertion order.
    """

    def __init__(self, transactions: Iterable[Transaction] = ()):
        self._records: dict[str, Transaction] = {}
        for tx in transactions:
            self._records[tx.id] = tx

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[Transaction]:
        return iter(list(self._records.values()))

    def __contains__(self, tx_id: object) -> bool:
        return tx_id in self._records

    def get(self, tx_id: str) -> Optional[Transaction]:
        return self._records.get(tx_id)

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def add(self, tx: Transaction) -> Transaction:
        """
        Insert a transaction.

        Adding an id that is already present is a no-op and returns the
        stored record, so a retried add never produces a second copy.
        """
        existing = self._records.get(tx.id)
        if existing is not None:
            logger.debug("ledger_add_ignored_duplicate", tx_id=tx.id)
            return existing
        self._records[tx.id] = tx
        return tx

    def update(self, tx: Transaction) -> Transaction:
        """
        Replace a transaction.

        Returns:
            The record that was replaced

        Raises:
            NotFoundError: If no transaction has this id
        """
        previous = self._records.get(tx.id)
        if previous is None:
            raise NotFoundError("transaction", tx.id)
        self._records[tx.id] = tx
        return previous

    def delete(self, tx_id: str) -> list[Transaction]:
        """
        Remove a transaction and, for transfers, its sibling.

        Returns:
            Every removed record, the requested one first

        Raises:
            NotFoundError: If no transaction has this id
        """
        tx = self._records.get(tx_id)
        if tx is None:
            raise NotFoundError("transaction", tx_id)

        removed = [self._records.pop(tx_id)]
        sibling = self.sibling_of(tx)
        if sibling is not None:
            removed.append(self._records.pop(sibling.id))
        return removed

    def restore(self, transactions: Iterable[Transaction]) -> None:
        """Put records back exactly as they were (rollback and undo)."""
        for tx in transactions:
            self._records[tx.id] = tx

    def discard(self, tx_ids: Iterable[str]) -> list[Transaction]:
        """Remove the given ids only, ignoring ids that are not present."""
        removed = []
        for tx_id in tx_ids:
            tx = self._records.pop(tx_id, None)
            if tx is not None:
                removed.append(tx)
        return removed

    def remove_where(self, predicate: Callable[[Transaction], bool]) -> list[Transaction]:
        """
        Remove every record matching predicate, plus transfer siblings of
        the matches so no half-transfer is left behind.
        """
        doomed = {tx.id for tx in self._records.values() if predicate(tx)}
        for tx_id in list(doomed):
            sibling = self.sibling_of(self._records[tx_id])
            if sibling is not None:
                doomed.add(sibling.id)
        return [self._records.pop(tx_id) for tx_id in list(self._records) if tx_id in doomed]

    def clear(self) -> None:
        self._records.clear()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def sibling_of(self, tx: Transaction) -> Optional[Transaction]:
        """The other half of a transfer, or None."""
        if not tx.transfer_id:
            return None
        for other in self._records.values():
            if other.transfer_id == tx.transfer_id and other.id != tx.id:
                return other
        return None

    def transactions(
        self,
        envelope_id: Optional[str] = None,
        month: Optional[str] = None,
        automatic: Optional[bool] = None,
        description: Optional[str] = None,
    ) -> list[Transaction]:
        """Filter transactions; every argument left as None matches all."""
        result = []
        for tx in self._records.values():
            if envelope_id is not None and tx.envelope_id != envelope_id:
                continue
            if month is not None and tx.month != month:
                continue
            if automatic is not None and tx.is_automatic != automatic:
                continue
            if description is not None and tx.description != description:
                continue
            result.append(tx)
        return result

    def balance_of(self, envelope_id: str, month: Optional[str] = None) -> Decimal:
        """
        Sum of Income minus sum of Expense for an envelope.

        month=None means all months. Transfer-typed records never count;
        engine transfers are recorded as an Expense/Income pair instead.
        """
        balance = ZERO
        for tx in self._records.values():
            if tx.envelope_id != envelope_id:
                continue
            if month is not None and tx.month != month:
                continue
            if tx.type == TransactionType.INCOME:
                balance += tx.amount
            elif tx.type == TransactionType.EXPENSE:
                balance -= tx.amount
        return balance
