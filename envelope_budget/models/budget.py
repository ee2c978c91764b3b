"""
Core Data Models for Envelope Budget

These models define the strict schemas for all data held by the engine.
They are designed to:
1. Enforce type safety at runtime
2. Keep derived values (month keys) impossible to get out of step
3. Be serializable for storage, backups and logging
4. Be immutable, so a snapshot taken before a command is a safe rollback point

DESIGN DECISION: Every record is a frozen Pydantic v2 model. A change is a new
record produced with model_copy(update=...). Amounts are Decimals quantized to
cents; dates are naive local wall-clock datetimes.
"""

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    computed_field,
    model_validator,
)


CENTS = Decimal("0.01")
MONTH_KEY_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"


# =============================================================================
# SCALAR COERCION - shared by the models and the wire boundary
# =============================================================================

def to_amount(value: Any) -> Decimal:
    """
    Coerce a loosely-typed amount into a Decimal quantized to cents.

    Accepts Decimal, int, float and numeric strings. Missing values
    (None or empty string) become zero.
    """
    if value is None or value == "":
        return Decimal("0.00")
    if isinstance(value, bool):
        raise ValueError("Amount must be a number, not a boolean")
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float)):
        # str() first so 0.1 becomes Decimal("0.1") and not its binary expansion
        amount = Decimal(str(value))
    elif isinstance(value, str):
        try:
            amount = Decimal(value.strip())
        except InvalidOperation:
            raise ValueError(f"Not a valid amount: {value!r}")
    else:
        raise ValueError(f"Unsupported amount type: {type(value).__name__}")

    if not amount.is_finite():
        raise ValueError(f"Amount must be finite: {value!r}")
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def to_local_instant(value: Any) -> datetime:
    """
    Coerce a loosely-typed date into a naive local datetime.

    Accepts datetime, date, ISO-8601 strings and epoch milliseconds.
    Timezone-aware values are converted to local wall-clock time so
    month keys follow the local calendar.
    """
    if isinstance(value, datetime):
        instant = value
    elif isinstance(value, date):
        instant = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        instant = datetime.fromtimestamp(value / 1000).astimezone()
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            instant = datetime.fromisoformat(text)
        except ValueError:
            raise ValueError(f"Not an ISO-8601 date: {value!r}")
    else:
        raise ValueError(f"Unsupported date type: {type(value).__name__}")

    if instant.tzinfo is not None:
        instant = instant.astimezone().replace(tzinfo=None)
    return instant


Amount = Annotated[Decimal, BeforeValidator(to_amount), Field(ge=0)]
LocalInstant = Annotated[datetime, BeforeValidator(to_local_instant)]
MonthKey = Annotated[str, Field(pattern=MONTH_KEY_PATTERN)]


# =============================================================================
# MONTH KEYS
# =============================================================================

def month_key(value: Any) -> str:
    """Return the "YYYY-MM" key for a date-like value (local calendar)."""
    instant = to_local_instant(value)
    return f"{instant.year:04d}-{instant.month:02d}"


def parse_month(key: str) -> tuple[int, int]:
    """Split a "YYYY-MM" key into (year, month), rejecting malformed keys."""
    try:
        year_text, month_text = key.split("-")
        year, month = int(year_text), int(month_text)
    except (AttributeError, ValueError):
        raise ValueError(f"Not a month key: {key!r}")
    if len(year_text) != 4 or len(month_text) != 2 or not 1 <= month <= 12:
        raise ValueError(f"Not a month key: {key!r}")
    return year, month


def previous_month(key: str) -> str:
    year, month = parse_month(key)
    if month == 1:
        return f"{year - 1:04d}-12"
    return f"{year:04d}-{month - 1:02d}"


def next_month(key: str) -> str:
    year, month = parse_month(key)
    if month == 12:
        return f"{year + 1:04d}-01"
    return f"{year:04d}-{month + 1:02d}"


def first_day_of(key: str) -> datetime:
    """Midnight on the first day of the month; generated transactions use it."""
    year, month = parse_month(key)
    return datetime(year, month, 1)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class TransactionType(str, Enum):
    """
    Transaction direction.

    Title-case in memory; the wire boundary lowercases it.
    TRANSFER exists for records imported from older data. Transfers made by
    the engine are an EXPENSE/INCOME pair sharing a transfer_id.
    """
    INCOME = "Income"
    EXPENSE = "Expense"
    TRANSFER = "Transfer"


class IncomeFrequency(str, Enum):
    """How often an income source pays out."""
    MONTHLY = "monthly"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"


# =============================================================================
# ENVELOPES
# =============================================================================

class PiggybankConfig(BaseModel):
    """
    Savings goal settings for a piggybank envelope.

    created_month bounds the contribution engine: no contributions are
    generated for months before it.
    """
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    target_amount: Optional[Amount] = Field(
        default=None,
        description="Savings goal; None means open-ended"
    )
    monthly_contribution: Amount = Field(
        default=Decimal("0.00"),
        description="Amount contributed automatically each month"
    )
    color: str = Field(
        default="#3B82F6",
        max_length=20,
        description="Display color"
    )
    paused: bool = Field(
        default=False,
        description="Paused piggybanks receive no automatic contributions"
    )
    created_month: MonthKey = Field(
        ...,
        description="First month eligible for contributions"
    )


class Envelope(BaseModel):
    """
    A named budget category that holds allocated funds.

    Ordinary envelopes are budgeted month by month. Piggybanks persist
    across months and accumulate toward a goal.
    """
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    id: str = Field(..., min_length=1)
    name: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Display name"
    )
    is_active: bool = True
    order_index: int = Field(default=0, ge=0)
    category_id: Optional[str] = None
    is_piggybank: bool = False
    piggybank_config: Optional[PiggybankConfig] = None
    created_at: datetime = Field(default_factory=datetime.now)

    @model_validator(mode='after')
    def validate_piggybank(self) -> 'Envelope':
        """A piggybank without a config cannot be scheduled."""
        if self.is_piggybank and self.piggybank_config is None:
            raise ValueError("Piggybank envelopes require a piggybank_config")
        return self


class Category(BaseModel):
    """Grouping for envelopes in the envelope list."""
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=100)
    order_index: int = Field(default=0, ge=0)
    is_archived: bool = False


# =============================================================================
# LEDGER
# =============================================================================

class Transaction(BaseModel):
    """
    A single movement of money into or out of an envelope.

    month is computed from date, so the two can never disagree.
    """
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    id: str = Field(..., min_length=1)
    envelope_id: str = Field(..., min_length=1)
    amount: Amount
    date: LocalInstant
    description: str = Field(default="", max_length=500)
    type: TransactionType
    reconciled: bool = False
    transfer_id: Optional[str] = None
    is_automatic: bool = False
    merchant: Optional[str] = Field(default=None, max_length=200)

    @computed_field
    @property
    def month(self) -> str:
        return f"{self.date.year:04d}-{self.date.month:02d}"

    @property
    def signed_amount(self) -> Decimal:
        """Contribution of this record to its envelope's balance."""
        if self.type == TransactionType.INCOME:
            return self.amount
        if self.type == TransactionType.EXPENSE:
            return -self.amount
        return Decimal("0.00")


# =============================================================================
# MONTHLY BUDGET PLAN
# =============================================================================

class IncomeSource(BaseModel):
    """A named income entry scoped to exactly one month."""
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    id: str = Field(..., min_length=1)
    month: MonthKey
    name: str = Field(..., min_length=1, max_length=100)
    amount: Amount
    frequency: IncomeFrequency = IncomeFrequency.MONTHLY


class EnvelopeAllocation(BaseModel):
    """The budgeted amount assigned to one envelope for one month."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    envelope_id: str = Field(..., min_length=1)
    month: MonthKey
    budgeted_amount: Amount


class MonthlyBudgetSummary(BaseModel):
    """
    Derived view of a month's plan. Never stored.

    total_allocated only counts allocations whose envelope currently
    exists; orphaned_allocations reports how many were skipped.
    """

    month: MonthKey
    total_income: Decimal
    total_allocated: Decimal
    available_to_budget: Decimal
    orphaned_allocations: int = Field(default=0, ge=0)

    @property
    def is_fully_budgeted(self) -> bool:
        """Zero-based budgeting goal: every unit of income has a job."""
        return self.available_to_budget == 0


class PiggybankProgress(BaseModel):
    """Derived savings-goal state for a piggybank."""

    envelope_id: str
    balance: Decimal
    target_amount: Optional[Decimal] = None
    goal_reached: bool = False
    progress: Optional[Decimal] = Field(
        default=None,
        description="balance / target_amount, None when there is no target"
    )


class RolloverResult(BaseModel):
    """What copy_previous_month carried into the target month."""

    source_month: MonthKey
    target_month: MonthKey
    income_sources_copied: int = 0
    allocations_copied: int = 0
    funding_transactions_created: int = 0
    dropped_envelope_ids: list[str] = Field(
        default_factory=list,
        description="Envelopes whose allocations were not carried over"
    )


# =============================================================================
# DISTRIBUTION TEMPLATES
# =============================================================================

class DistributionTemplate(BaseModel):
    """
    A saved split of funds across envelopes.

    distributions maps envelope ids to the amount each one receives when
    the template is applied. A template always names at least one envelope.
    """
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=100)
    note: str = Field(default="", max_length=500)
    distributions: dict[str, Amount] = Field(..., min_length=1)
    last_used: LocalInstant = Field(default_factory=datetime.now)

    @property
    def total(self) -> Decimal:
        return sum(self.distributions.values(), Decimal("0.00"))

    def without_envelope(self, envelope_id: str) -> Optional[dict[str, Decimal]]:
        """Distributions minus envelope_id; None when nothing would be left."""
        remaining = {k: v for k, v in self.distributions.items() if k != envelope_id}
        return remaining or None


class DistributionResult(BaseModel):
    """What distribute_funds budgeted, and what it had to drop."""

    month: MonthKey
    allocated: dict[str, Decimal] = Field(default_factory=dict)
    rejected_envelope_ids: list[str] = Field(default_factory=list)

    @property
    def total(self) -> Decimal:
        return sum(self.allocated.values(), Decimal("0.00"))
