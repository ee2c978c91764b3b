"""
Wire Normalization Boundary

Every record that enters the engine from outside (storage documents,
backups) passes through from_wire(); every record that leaves it passes
through to_wire(). Nothing else in the codebase knows that the wire uses
camelCase keys, lowercase transaction types, float amounts and ISO dates.

DESIGN DECISION: Loosely-typed payloads (amount as string-or-number,
date as string-or-epoch) are normalized here exactly once. The ledger
never branches on representation.
"""

from typing import Any, Callable, Optional

import pydantic

from envelope_budget.errors import WireFormatError
from envelope_budget.models.budget import (
    Category,
    DistributionTemplate,
    Envelope,
    EnvelopeAllocation,
    IncomeSource,
    PiggybankConfig,
    Transaction,
    TransactionType,
    month_key,
)
from envelope_budget.models.sync import Collection


Resolver = Callable[[str], str]
Record = Any


def _same(local_id: str) -> str:
    return local_id


def _number(value) -> float:
    return float(value)


_TYPE_FROM_WIRE = {
    "income": TransactionType.INCOME,
    "expense": TransactionType.EXPENSE,
    "transfer": TransactionType.TRANSFER,
}


def _transaction_type(value: Any) -> TransactionType:
    try:
        return _TYPE_FROM_WIRE[str(value).strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown transaction type: {value!r}")


# =============================================================================
# OUTBOUND
# =============================================================================

def transaction_to_wire(tx: Transaction, resolve: Resolver = _same) -> dict:
    doc = {
        "id": resolve(tx.id),
        "envelopeId": resolve(tx.envelope_id),
        "amount": _number(tx.amount),
        "date": tx.date.isoformat(),
        "description": tx.description,
        "type": tx.type.value.lower(),
        "reconciled": tx.reconciled,
        "transferId": tx.transfer_id,
        "month": tx.month,
    }
    if tx.merchant:
        doc["merchant"] = tx.merchant
    # Only written when true, matching existing documents
    if tx.is_automatic:
        doc["isAutomatic"] = True
    return doc


def envelope_to_wire(envelope: Envelope, resolve: Resolver = _same) -> dict:
    doc = {
        "id": resolve(envelope.id),
        "name": envelope.name,
        "isActive": envelope.is_active,
        "orderIndex": envelope.order_index,
        "categoryId": resolve(envelope.category_id) if envelope.category_id else None,
        "isPiggybank": envelope.is_piggybank,
        "createdAt": envelope.created_at.isoformat(),
    }
    config = envelope.piggybank_config
    if config is not None:
        doc["piggybankConfig"] = {
            "targetAmount": _number(config.target_amount) if config.target_amount is not None else None,
            "monthlyContribution": _number(config.monthly_contribution),
            "color": config.color,
            "paused": config.paused,
            "createdMonth": config.created_month,
        }
    return doc


def income_source_to_wire(source: IncomeSource, resolve: Resolver = _same) -> dict:
    return {
        "id": resolve(source.id),
        "month": source.month,
        "name": source.name,
        "amount": _number(source.amount),
        "frequency": source.frequency.value,
    }


def allocation_to_wire(allocation: EnvelopeAllocation, resolve: Resolver = _same) -> dict:
    return {
        "id": resolve(allocation.id),
        "envelopeId": resolve(allocation.envelope_id),
        "month": allocation.month,
        "budgetedAmount": _number(allocation.budgeted_amount),
    }


def category_to_wire(category: Category, resolve: Resolver = _same) -> dict:
    return {
        "id": resolve(category.id),
        "name": category.name,
        "orderIndex": category.order_index,
        "isArchived": category.is_archived,
    }


def template_to_wire(template: DistributionTemplate, resolve: Resolver = _same) -> dict:
    return {
        "id": resolve(template.id),
        "name": template.name,
        "note": template.note,
        "distributions": {
            resolve(envelope_id): _number(amount)
            for envelope_id, amount in template.distributions.items()
        },
        "lastUsed": template.last_used.isoformat(),
    }


# =============================================================================
# INBOUND
# =============================================================================

def transaction_from_wire(doc: dict) -> Transaction:
    # "month" on the wire is ignored; it is recomputed from the date
    return Transaction(
        id=doc.get("id"),
        envelope_id=doc.get("envelopeId") or "",
        amount=doc.get("amount"),
        date=doc.get("date"),
        description=doc.get("description") or "",
        type=_transaction_type(doc.get("type")),
        reconciled=bool(doc.get("reconciled", False)),
        transfer_id=doc.get("transferId") or None,
        is_automatic=bool(doc.get("isAutomatic", False)),
        merchant=doc.get("merchant") or None,
    )


def envelope_from_wire(doc: dict) -> Envelope:
    created_at = doc.get("createdAt")
    fields = {
        "id": doc.get("id"),
        "name": doc.get("name") or "",
        "is_active": doc.get("isActive", True),
        "order_index": doc.get("orderIndex") or 0,
        "category_id": doc.get("categoryId") or None,
        "is_piggybank": bool(doc.get("isPiggybank", False)),
    }
    if created_at:
        fields["created_at"] = created_at

    raw_config = doc.get("piggybankConfig")
    if raw_config:
        created_month = raw_config.get("createdMonth")
        if not created_month:
            # Older documents only carry the envelope's creation date
            created_month = month_key(created_at) if created_at else None
        fields["piggybank_config"] = PiggybankConfig(
            target_amount=raw_config.get("targetAmount"),
            monthly_contribution=raw_config.get("monthlyContribution"),
            color=raw_config.get("color") or "#3B82F6",
            paused=bool(raw_config.get("paused", False)),
            created_month=created_month,
        )
    return Envelope(**fields)


def income_source_from_wire(doc: dict) -> IncomeSource:
    return IncomeSource(
        id=doc.get("id"),
        month=doc.get("month"),
        name=doc.get("name") or "",
        amount=doc.get("amount"),
        frequency=doc.get("frequency") or "monthly",
    )


def allocation_from_wire(doc: dict) -> EnvelopeAllocation:
    return EnvelopeAllocation(
        id=doc.get("id"),
        envelope_id=doc.get("envelopeId") or "",
        month=doc.get("month"),
        budgeted_amount=doc.get("budgetedAmount"),
    )


def category_from_wire(doc: dict) -> Category:
    return Category(
        id=doc.get("id"),
        name=doc.get("name") or "",
        order_index=doc.get("orderIndex") or 0,
        is_archived=bool(doc.get("isArchived", False)),
    )


def template_from_wire(doc: dict) -> DistributionTemplate:
    fields = {
        "id": doc.get("id"),
        "name": doc.get("name") or "",
        "note": doc.get("note") or "",
        "distributions": doc.get("distributions") or {},
    }
    if doc.get("lastUsed"):
        fields["last_used"] = doc["lastUsed"]
    return DistributionTemplate(**fields)


_OUTBOUND = {
    Transaction: (Collection.TRANSACTIONS, transaction_to_wire),
    Envelope: (Collection.ENVELOPES, envelope_to_wire),
    IncomeSource: (Collection.INCOME_SOURCES, income_source_to_wire),
    EnvelopeAllocation: (Collection.ALLOCATIONS, allocation_to_wire),
    Category: (Collection.CATEGORIES, category_to_wire),
    DistributionTemplate: (Collection.DISTRIBUTION_TEMPLATES, template_to_wire),
}

_INBOUND = {
    Collection.TRANSACTIONS: transaction_from_wire,
    Collection.ENVELOPES: envelope_from_wire,
    Collection.INCOME_SOURCES: income_source_from_wire,
    Collection.ALLOCATIONS: allocation_from_wire,
    Collection.CATEGORIES: category_from_wire,
    Collection.DISTRIBUTION_TEMPLATES: template_from_wire,
}


def collection_of(record: Record) -> Collection:
    """Collection a record is persisted in."""
    return _OUTBOUND[type(record)][0]


def to_wire(record: Record, resolve: Optional[Resolver] = None) -> dict:
    """
    Serialize any engine record to its wire document.

    resolve maps local ids (possibly temporary) to the ids the store knows.
    """
    _, encoder = _OUTBOUND[type(record)]
    return encoder(record, resolve or _same)


def from_wire(collection: Collection, doc: dict) -> Record:
    """
    Normalize one external document into its typed record.

    Raises:
        WireFormatError: If the document cannot be normalized
    """
    decoder = _INBOUND[Collection(collection)]
    try:
        return decoder(doc)
    except (pydantic.ValidationError, ValueError, TypeError, AttributeError) as e:
        raise WireFormatError(Collection(collection).value, str(e))
