"""Shared fixtures: in-memory storage, a fixed clock and a ready engine."""

from datetime import datetime
from decimal import Decimal
from itertools import count

import pytest

from envelope_budget.audit import AuditLogger
from envelope_budget.config import SyncSettings
from envelope_budget.engine import BudgetEngine
from envelope_budget.ledger import Ledger
from envelope_budget.models.budget import Envelope, PiggybankConfig, Transaction, TransactionType
from envelope_budget.planning import EnvelopeRegistry, MonthlyBudgetPlan
from envelope_budget.services.storage import InMemoryAuditStorage, InMemoryDocumentStorage
from envelope_budget.sync import StaticConnectivityProbe
from envelope_budget.validation import ReferenceValidator


NOW = datetime(2026, 3, 15, 12, 0)


@pytest.fixture
def storage():
    return InMemoryDocumentStorage(namespace="test-user")


@pytest.fixture
def probe():
    return StaticConnectivityProbe(online=True)


@pytest.fixture
def sync_settings():
    return SyncSettings(confirm_timeout_seconds=0.05)


@pytest.fixture
def audit_storage():
    return InMemoryAuditStorage()


@pytest.fixture
def audit(audit_storage):
    return AuditLogger(audit_storage)


@pytest.fixture
def engine(storage, probe, sync_settings, audit):
    return BudgetEngine(
        storage,
        probe=probe,
        clock=lambda: NOW,
        audit=audit,
        sync_settings=sync_settings,
    )


@pytest.fixture
def new_id():
    """Deterministic local ids for component tests."""
    counter = count(1)
    return lambda: f"id-{next(counter)}"


@pytest.fixture
def registry():
    return EnvelopeRegistry([
        Envelope(id="groceries", name="Groceries", order_index=0),
        Envelope(id="rent", name="Rent", order_index=1),
        Envelope(id="old", name="Old Hobby", order_index=2, is_active=False),
        Envelope(
            id="emergency",
            name="Emergency Fund",
            order_index=3,
            is_piggybank=True,
            piggybank_config=PiggybankConfig(
                target_amount=Decimal("1000"),
                monthly_contribution=Decimal("100"),
                created_month="2026-01",
            ),
        ),
    ])


@pytest.fixture
def ledger():
    return Ledger()


@pytest.fixture
def validator(registry):
    return ReferenceValidator(registry, max_amount=10_000)


@pytest.fixture
def plan(registry, ledger, validator, new_id, audit):
    return MonthlyBudgetPlan(registry, ledger, validator, new_id, audit=audit)


def make_tx(
    tx_id: str,
    envelope_id: str,
    amount: str,
    tx_type: TransactionType = TransactionType.EXPENSE,
    date: datetime = NOW,
    **extra,
) -> Transaction:
    return Transaction(
        id=tx_id,
        envelope_id=envelope_id,
        amount=Decimal(amount),
        date=date,
        type=tx_type,
        **extra,
    )
