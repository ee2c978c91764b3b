"""
Data Models Package

This package contains all Pydantic models used by the envelope budget engine.
All data held by the engine must conform to these schemas.
"""

from envelope_budget.models.budget import (
    Category,
    DistributionResult,
    DistributionTemplate,
    Envelope,
    EnvelopeAllocation,
    IncomeFrequency,
    IncomeSource,
    MonthlyBudgetSummary,
    PiggybankConfig,
    PiggybankProgress,
    RolloverResult,
    Transaction,
    TransactionType,
    first_day_of,
    month_key,
    next_month,
    parse_month,
    previous_month,
    to_amount,
    to_local_instant,
)
from envelope_budget.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)
from envelope_budget.models.report import EnvelopeBalance, MonthReport
from envelope_budget.models.sync import Collection, OperationKind, SyncState
from envelope_budget.models.validation import ValidationIssue, ValidationResult
from envelope_budget.models.wire import collection_of, from_wire, to_wire

__all__ = [
    # Budget models
    "Category",
    "DistributionResult",
    "DistributionTemplate",
    "Envelope",
    "EnvelopeAllocation",
    "IncomeFrequency",
    "IncomeSource",
    "MonthlyBudgetSummary",
    "PiggybankConfig",
    "PiggybankProgress",
    "RolloverResult",
    "Transaction",
    "TransactionType",
    # Month and scalar helpers
    "first_day_of",
    "month_key",
    "next_month",
    "parse_month",
    "previous_month",
    "to_amount",
    "to_local_instant",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
    # Reports
    "EnvelopeBalance",
    "MonthReport",
    # Sync vocabulary
    "Collection",
    "OperationKind",
    "SyncState",
    # Validation
    "ValidationIssue",
    "ValidationResult",
    # Wire boundary
    "collection_of",
    "from_wire",
    "to_wire",
]
