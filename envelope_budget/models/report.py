"""
Report Models

Read-only views computed by the query executor. Like the budget summary,
none of these are ever stored; they are rebuilt from the ledger and the
plan every time they are asked for.
"""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from envelope_budget.models.budget import MonthKey, MonthlyBudgetSummary


class EnvelopeBalance(BaseModel):
    """One envelope's figures for one month."""

    envelope_id: str
    name: str
    is_piggybank: bool = False
    category_id: Optional[str] = None
    allocated: Decimal = Field(
        default=Decimal("0.00"),
        description="Budgeted amount for the month"
    )
    income: Decimal = Field(
        default=Decimal("0.00"),
        description="Income recorded in the month, funding included"
    )
    spent: Decimal = Field(
        default=Decimal("0.00"),
        description="Expenses recorded in the month"
    )
    balance: Decimal = Field(
        ...,
        description="Month-scoped for ordinary envelopes, all-time for piggybanks"
    )
    pending_sync: bool = False

    @property
    def is_overspent(self) -> bool:
        return self.balance < 0


class MonthReport(BaseModel):
    """Everything a month view needs in one object."""

    month: MonthKey
    summary: MonthlyBudgetSummary
    envelopes: list[EnvelopeBalance] = Field(default_factory=list)
    total_spent: Decimal = Decimal("0.00")
    transaction_count: int = 0
    pending_count: int = Field(
        default=0,
        description="Records of this month not yet confirmed by storage"
    )

    @property
    def overspent(self) -> list[EnvelopeBalance]:
        return [e for e in self.envelopes if e.is_overspent]
