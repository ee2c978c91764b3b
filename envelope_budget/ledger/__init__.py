"""Transaction ledger package."""

from envelope_budget.ledger.ledger import Ledger

__all__ = ["Ledger"]
