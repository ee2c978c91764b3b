"""
Backup Export / Import

export_snapshot() produces a JSON-serialisable dict holding every
collection in wire shape. parse_snapshot() turns such a dict back into
typed records through the wire boundary.

Imported records are re-keyed onto fresh local ids (references remapped
to match) because the ids in a backup mean nothing to the store they are
being imported into. Records that reference an envelope missing from the
backup are dropped. Template entries for such envelopes are dropped too,
and a template left with none is skipped.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

import structlog

from envelope_budget.errors import WireFormatError
from envelope_budget.ledger import Ledger
from envelope_budget.models.budget import (
    Category,
    DistributionTemplate,
    Envelope,
    EnvelopeAllocation,
    IncomeSource,
    Transaction,
)
from envelope_budget.models.sync import Collection
from envelope_budget.models.wire import Resolver, from_wire, to_wire
from envelope_budget.planning import EnvelopeRegistry, MonthlyBudgetPlan, TemplateBook


logger = structlog.get_logger(__name__)

BACKUP_VERSION = 1
REQUIRED_KEYS = (Collection.ENVELOPES.value, Collection.TRANSACTIONS.value)


@dataclass
class Snapshot:
    """Typed contents of a backup, already re-keyed to local ids."""

    envelopes: list[Envelope] = field(default_factory=list)
    categories: list[Category] = field(default_factory=list)
    transactions: list[Transaction] = field(default_factory=list)
    income_sources: list[IncomeSource] = field(default_factory=list)
    allocations: list[EnvelopeAllocation] = field(default_factory=list)
    templates: list[DistributionTemplate] = field(default_factory=list)
    skipped: int = 0

    def counts(self) -> dict[str, int]:
        return {
            Collection.ENVELOPES.value: len(self.envelopes),
            Collection.CATEGORIES.value: len(self.categories),
            Collection.TRANSACTIONS.value: len(self.transactions),
            Collection.INCOME_SOURCES.value: len(self.income_sources),
            Collection.ALLOCATIONS.value: len(self.allocations),
            Collection.DISTRIBUTION_TEMPLATES.value: len(self.templates),
            "skipped": self.skipped,
        }


def export_snapshot(
    registry: EnvelopeRegistry,
    ledger: Ledger,
    plan: MonthlyBudgetPlan,
    templates: TemplateBook,
    resolve: Resolver,
    exported_at: datetime,
) -> dict[str, Any]:
    """Serialize every collection to wire shape."""
    return {
        "version": BACKUP_VERSION,
        "exportedAt": exported_at.isoformat(),
        Collection.ENVELOPES.value: [to_wire(e, resolve) for e in registry.envelopes()],
        Collection.CATEGORIES.value: [
            to_wire(c, resolve) for c in registry.categories(include_archived=True)
        ],
        Collection.TRANSACTIONS.value: [to_wire(tx, resolve) for tx in ledger],
        Collection.INCOME_SOURCES.value: [to_wire(s, resolve) for s in plan.income_sources()],
        Collection.ALLOCATIONS.value: [to_wire(a, resolve) for a in plan.allocations()],
        Collection.DISTRIBUTION_TEMPLATES.value: [
            to_wire(t, resolve) for t in templates.templates()
        ],
    }


def _decode_all(data: dict, collection: Collection) -> list:
    records = []
    for doc in data.get(collection.value) or []:
        records.append(from_wire(collection, doc))
    return records


def parse_snapshot(data: dict[str, Any], new_id: Callable[[], str]) -> Snapshot:
    """
    Normalize a backup dict into typed, re-keyed records.

    Raises:
        WireFormatError: If the backup is missing core data or a record
                         cannot be normalized
    """
    if not isinstance(data, dict):
        raise WireFormatError("backup", "expected a JSON object")
    missing = [key for key in REQUIRED_KEYS if key not in data]
    if missing:
        raise WireFormatError("backup", f"missing core data: {', '.join(missing)}")

    snapshot = Snapshot()
    ids: dict[str, str] = {}

    def rekey(old_id: str) -> str:
        ids[old_id] = new_id()
        return ids[old_id]

    for category in _decode_all(data, Collection.CATEGORIES):
        snapshot.categories.append(category.model_copy(update={"id": rekey(category.id)}))

    for envelope in _decode_all(data, Collection.ENVELOPES):
        snapshot.envelopes.append(envelope.model_copy(update={
            "id": rekey(envelope.id),
            "category_id": ids.get(envelope.category_id) if envelope.category_id else None,
        }))

    def remap_envelope(records: list) -> list:
        kept = []
        for record in records:
            envelope_id = ids.get(record.envelope_id)
            if envelope_id is None:
                snapshot.skipped += 1
                logger.warning(
                    "backup_record_skipped",
                    record_id=record.id,
                    envelope_id=record.envelope_id,
                )
                continue
            kept.append(record.model_copy(update={"id": new_id(), "envelope_id": envelope_id}))
        return kept

    snapshot.transactions = remap_envelope(_decode_all(data, Collection.TRANSACTIONS))
    snapshot.allocations = remap_envelope(_decode_all(data, Collection.ALLOCATIONS))
    snapshot.income_sources = [
        s.model_copy(update={"id": new_id()})
        for s in _decode_all(data, Collection.INCOME_SOURCES)
    ]

    for template in _decode_all(data, Collection.DISTRIBUTION_TEMPLATES):
        distributions = {
            ids[envelope_id]: amount
            for envelope_id, amount in template.distributions.items()
            if envelope_id in ids
        }
        if not distributions:
            snapshot.skipped += 1
            logger.warning("backup_template_skipped", template_id=template.id, name=template.name)
            continue
        snapshot.templates.append(
            template.model_copy(update={"id": new_id(), "distributions": distributions})
        )

    # A transfer half without exactly one sibling is kept as a plain record
    by_transfer: dict[str, list[Transaction]] = {}
    for tx in snapshot.transactions:
        if tx.transfer_id:
            by_transfer.setdefault(tx.transfer_id, []).append(tx)
    unpaired = {tx.id for group in by_transfer.values() if len(group) != 2 for tx in group}
    if unpaired:
        logger.warning("backup_transfers_unpaired", count=len(unpaired))
        snapshot.transactions = [
            tx.model_copy(update={"transfer_id": None}) if tx.id in unpaired else tx
            for tx in snapshot.transactions
        ]

    return snapshot
