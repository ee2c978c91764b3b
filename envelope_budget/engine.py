"""
Budget Engine

This module ties together all the components and defines the command
surface callers use:
1. Envelope, category and transaction commands
2. Monthly plan commands (income sources, allocations, fund distribution
   and its saved templates)
3. Month operations (copy previous month, start fresh, piggybank run)
4. Hydration and backup

DESIGN DECISION: Every mutating command follows the same shape:
- mutate local state synchronously, recording a ChangeSet
- hand the ChangeSet and an undo to the SyncCoordinator
- notify observers and return the SyncTicket immediately

The engine is an explicit instance with injected storage, probe, clock
and audit logger. There is no module-level store; two engines never
share state.

Destructive commands (start_fresh, delete_envelope) do not prompt. The
caller must have obtained the user's confirmation already.
"""

from datetime import datetime
from typing import Any, Callable, Optional
from uuid import UUID, uuid4

import structlog

from envelope_budget.audit import AuditLogger, create_correlation_id
from envelope_budget.config import Settings, SyncSettings, get_settings
from envelope_budget.errors import NotFoundError, PendingSyncError, WireFormatError
from envelope_budget.events import ALLOCATION_REJECTED, STATE_CHANGED, EventBus
from envelope_budget.ledger import Ledger
from envelope_budget.models.budget import (
    Category,
    DistributionResult,
    DistributionTemplate,
    Envelope,
    IncomeFrequency,
    IncomeSource,
    MonthlyBudgetSummary,
    PiggybankConfig,
    PiggybankProgress,
    RolloverResult,
    Transaction,
    TransactionType,
    month_key,
    previous_month,
)
from envelope_budget.models.report import EnvelopeBalance, MonthReport
from envelope_budget.models.sync import Collection, OperationKind
from envelope_budget.models.wire import from_wire
from envelope_budget.planning import EnvelopeRegistry, MonthlyBudgetPlan, TemplateBook
from envelope_budget.queries import QueryExecutor
from envelope_budget.services.backup import export_snapshot, parse_snapshot
from envelope_budget.services.piggybank import PiggybankContributionEngine
from envelope_budget.services.rollover import MonthRolloverService
from envelope_budget.services.storage import (
    DocumentStorageInterface,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsDocumentStorage,
    InMemoryDocumentStorage,
    StorageUnavailableError,
)
from envelope_budget.sync import (
    ChangeSet,
    ConnectivityProbe,
    HttpConnectivityProbe,
    PendingCommand,
    SyncCoordinator,
    SyncTicket,
    TempIdMap,
)
from envelope_budget.sync.coordinator import REFERENCE_FIELDS
from envelope_budget.validation import ReferenceValidator


logger = structlog.get_logger(__name__)

# Edits to one half of a transfer that are copied onto the other half
TRANSFER_MIRRORED_FIELDS = ("amount", "date", "description")


class BudgetEngine:
    """
    One user's budget: local state, the sync coordinator and the
    services that act on them.

    Command methods must be called from inside a running event loop.
    They return a SyncTicket, or None when the command was dropped
    (rejected by the reference check, or its target does not exist).
    """

    def __init__(
        self,
        storage: DocumentStorageInterface,
        probe: Optional[ConnectivityProbe] = None,
        clock: Callable[[], datetime] = datetime.now,
        audit: Optional[AuditLogger] = None,
        settings: Optional[Settings] = None,
        sync_settings: Optional[SyncSettings] = None,
    ):
        self._settings = settings or get_settings()
        app = self._settings.app
        sync_settings = sync_settings or self._settings.sync

        self._storage = storage
        self._clock = clock
        self.audit = audit or AuditLogger()
        self.events = EventBus()
        self.id_map = TempIdMap(sync_settings.temp_id_prefix)

        self.registry = EnvelopeRegistry()
        self.ledger = Ledger()
        self.templates = TemplateBook()
        self.validator = ReferenceValidator(self.registry, max_amount=app.max_amount)
        self.plan = MonthlyBudgetPlan(
            self.registry,
            self.ledger,
            self.validator,
            new_id=self.id_map.new_id,
            funding_description=app.funding_description,
            audit=self.audit,
        )
        self.rollover = MonthRolloverService(
            self.registry, self.ledger, self.plan, self.id_map.new_id, audit=self.audit
        )
        self.piggybanks = PiggybankContributionEngine(
            self.registry,
            self.ledger,
            self.id_map.new_id,
            clock=clock,
            description=app.contribution_description,
            audit=self.audit,
        )
        self.sync = SyncCoordinator(
            storage,
            id_map=self.id_map,
            probe=probe,
            settings=sync_settings,
            events=self.events,
            audit=self.audit,
        )
        self.queries = QueryExecutor(
            self.registry, self.ledger, self.plan, is_pending=self.sync.is_pending
        )

        # (get, restore, discard) per collection, used by undo
        self._stores = {
            Collection.TRANSACTIONS: (self.ledger.get, self.ledger.restore, self.ledger.discard),
            Collection.ENVELOPES: (self.registry.get, self.registry.restore, self.registry.discard),
            Collection.CATEGORIES: (
                self.registry.get_category,
                self.registry.restore_categories,
                self.registry.discard_categories,
            ),
            Collection.INCOME_SOURCES: (
                self.plan.get_income_source,
                self.plan.restore_income_sources,
                self.plan.discard_income_sources,
            ),
            Collection.ALLOCATIONS: (
                self.plan.get_allocation,
                self.plan.restore_allocations,
                self.plan.discard_allocations,
            ),
            Collection.DISTRIBUTION_TEMPLATES: (
                self.templates.get,
                self.templates.restore,
                self.templates.discard,
            ),
        }

    # -------------------------------------------------------------------------
    # Observers
    # -------------------------------------------------------------------------

    def subscribe(self, event_name: str, handler: Callable) -> Callable[[], None]:
        """Register an observer; returns a callable that unsubscribes it."""
        return self.events.subscribe(event_name, handler)

    # -------------------------------------------------------------------------
    # Command plumbing
    # -------------------------------------------------------------------------

    @property
    def current_month(self) -> str:
        return month_key(self._clock())

    def _submit(
        self,
        name: str,
        changes: ChangeSet,
        correlation_id: Optional[UUID] = None,
    ) -> SyncTicket:
        def undo() -> None:
            self._undo(changes)
            self.events.publish(STATE_CHANGED, {
                "command": name,
                "entity_ids": changes.entity_ids(),
                "reverted": True,
            })

        ticket = self.sync.submit(name, changes, undo, correlation_id)
        if changes:
            self.events.publish(STATE_CHANGED, {
                "command": name,
                "entity_ids": ticket.entity_ids,
                "reverted": False,
            })
        return ticket

    def _undo(self, changes: ChangeSet) -> None:
        """
        Put local state back to what it was before the command.

        Newest change first. An update is only reverted while the record
        still holds the value this command wrote.
        """
        for change in reversed(list(changes)):
            get, restore, discard = self._stores[change.collection]
            current = get(change.local_id)
            if change.kind == OperationKind.CREATE:
                discard([change.local_id])
            elif change.kind == OperationKind.UPDATE:
                if current == change.record:
                    restore([change.previous])
                else:
                    logger.warning(
                        "undo_skipped_superseded",
                        collection=change.collection.value,
                        local_id=change.local_id,
                    )
            elif current is None:
                restore([change.record])

    def _not_found(self, error: NotFoundError, command: str) -> None:
        logger.warning(
            "command_target_not_found",
            command=command,
            entity_type=error.entity_type,
            entity_id=error.entity_id,
        )
        self.audit.log_target_not_found(error.entity_type, error.entity_id, command)
        return None

    # -------------------------------------------------------------------------
    # Envelopes
    # -------------------------------------------------------------------------

    def add_envelope(
        self,
        name: str,
        category_id: Optional[str] = None,
        order_index: Optional[int] = None,
    ) -> Optional[SyncTicket]:
        if category_id and self.registry.get_category(category_id) is None:
            return self._not_found(NotFoundError("category", category_id), "add_envelope")

        envelope = Envelope(
            id=self.id_map.new_id(),
            name=name,
            category_id=category_id,
            order_index=self.registry.next_order_index() if order_index is None else order_index,
            created_at=self._clock(),
        )
        changes = ChangeSet()
        self.registry.add(envelope)
        changes.created(envelope)
        return self._submit("add_envelope", changes)

    def add_piggybank(
        self,
        name: str,
        monthly_contribution,
        target_amount=None,
        color: Optional[str] = None,
        category_id: Optional[str] = None,
        created_month: Optional[str] = None,
    ) -> Optional[SyncTicket]:
        """Create a savings envelope that receives an automatic monthly contribution."""
        if category_id and self.registry.get_category(category_id) is None:
            return self._not_found(NotFoundError("category", category_id), "add_piggybank")

        config = {
            "monthly_contribution": monthly_contribution,
            "target_amount": target_amount,
            "created_month": created_month or self.current_month,
        }
        if color:
            config["color"] = color
        envelope = Envelope(
            id=self.id_map.new_id(),
            name=name,
            category_id=category_id,
            order_index=self.registry.next_order_index(),
            is_piggybank=True,
            piggybank_config=PiggybankConfig.model_validate(config),
            created_at=self._clock(),
        )
        changes = ChangeSet()
        self.registry.add(envelope)
        changes.created(envelope)
        return self._submit("add_piggybank", changes)

    def update_envelope(self, envelope_id: str, **updates: Any) -> Optional[SyncTicket]:
        """Rename, recategorize, reorder or (de)activate an envelope."""
        envelope = self.registry.get(envelope_id)
        if envelope is None:
            return self._not_found(NotFoundError("envelope", envelope_id), "update_envelope")

        updates.pop("id", None)
        updated = Envelope.model_validate({**envelope.model_dump(), **updates})
        changes = ChangeSet()
        previous = self.registry.update(updated)
        changes.updated(previous, updated)
        return self._submit("update_envelope", changes)

    def reorder_envelopes(self, ordered_ids: list[str]) -> SyncTicket:
        """Give the listed envelopes order_index 0..n-1; only changed ones are written."""
        changes = ChangeSet()
        for index, envelope_id in enumerate(ordered_ids):
            envelope = self.registry.get(envelope_id)
            if envelope is None or envelope.order_index == index:
                continue
            updated = envelope.model_copy(update={"order_index": index})
            changes.updated(self.registry.update(updated), updated)
        return self._submit("reorder_envelopes", changes)

    def delete_envelope(self, envelope_id: str, month: Optional[str] = None) -> Optional[SyncTicket]:
        """
        Delete an envelope.

        Ordinary envelopes are removed together with every allocation and
        transaction that references them (transfer siblings included), and
        dropped from every distribution template; a template left empty is
        deleted. Piggybanks are only deactivated; their allocation and transactions
        for month (default: the current month) are removed and every other
        month is kept.
        """
        envelope = self.registry.get(envelope_id)
        if envelope is None:
            return self._not_found(NotFoundError("envelope", envelope_id), "delete_envelope")

        correlation_id = create_correlation_id()
        changes = ChangeSet()
        if envelope.is_piggybank:
            month = month or self.current_month
            transactions = self.ledger.remove_where(
                lambda tx: tx.envelope_id == envelope_id and tx.month == month
            )
            changes.deleted_all(transactions)
            allocations = self.plan.remove_allocations_where(
                lambda a: a.envelope_id == envelope_id and a.month == month, changes
            )
            if envelope.is_active:
                updated = envelope.model_copy(update={"is_active": False})
                changes.updated(self.registry.update(updated), updated)
        else:
            transactions = self.ledger.remove_where(lambda tx: tx.envelope_id == envelope_id)
            changes.deleted_all(transactions)
            allocations = self.plan.remove_allocations_where(
                lambda a: a.envelope_id == envelope_id, changes
            )
            emptied = self.templates.remove_envelope(envelope_id, changes)
            changes.deleted(self.registry.remove(envelope_id))

        cascaded = {"transactions": len(transactions), "allocations": len(allocations)}
        if not envelope.is_piggybank:
            cascaded["templates_deleted"] = len(emptied)
        logger.info(
            "envelope_deleted",
            envelope_id=envelope_id,
            piggybank=envelope.is_piggybank,
            **cascaded,
        )
        self.audit.log_envelope_deleted(
            envelope_id, envelope.name, envelope.is_piggybank, cascaded, correlation_id
        )
        return self._submit("delete_envelope", changes, correlation_id)

    def remove_envelope_from_month(self, envelope_id: str, month: str) -> SyncTicket:
        """Drop an envelope's allocation and transactions for one month; the envelope stays."""
        changes = ChangeSet()
        self.plan.remove_allocations_where(
            lambda a: a.envelope_id == envelope_id and a.month == month, changes
        )
        changes.deleted_all(self.ledger.remove_where(
            lambda tx: tx.envelope_id == envelope_id and tx.month == month
        ))
        return self._submit("remove_envelope_from_month", changes)

    # -------------------------------------------------------------------------
    # Categories
    # -------------------------------------------------------------------------

    def add_category(self, name: str, order_index: Optional[int] = None) -> SyncTicket:
        if order_index is None:
            order_index = len(self.registry.categories(include_archived=True))
        category = Category(id=self.id_map.new_id(), name=name, order_index=order_index)
        changes = ChangeSet()
        self.registry.add_category(category)
        changes.created(category)
        return self._submit("add_category", changes)

    def update_category(self, category_id: str, **updates: Any) -> Optional[SyncTicket]:
        category = self.registry.get_category(category_id)
        if category is None:
            return self._not_found(NotFoundError("category", category_id), "update_category")

        updates.pop("id", None)
        updated = Category.model_validate({**category.model_dump(), **updates})
        changes = ChangeSet()
        changes.updated(self.registry.update_category(updated), updated)
        return self._submit("update_category", changes)

    def delete_category(self, category_id: str) -> Optional[SyncTicket]:
        """Delete a category; its envelopes become uncategorized."""
        try:
            category, previous = self.registry.remove_category(category_id)
        except NotFoundError as e:
            return self._not_found(e, "delete_category")

        changes = ChangeSet()
        for envelope in previous:
            changes.updated(envelope, self.registry.get(envelope.id))
        changes.deleted(category)
        return self._submit("delete_category", changes)

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def _admit(self, tx: Transaction, command: str) -> bool:
        result = self.validator.validate_transaction(tx)
        if result.has_errors:
            logger.warning(
                "transaction_rejected",
                command=command,
                envelope_id=tx.envelope_id,
                issues=result.messages,
            )
            self.audit.log_transaction_rejected(tx.envelope_id, result.messages)
            return False
        for message in result.messages:
            logger.warning("transaction_warning", envelope_id=tx.envelope_id, message=message)
        return True

    def add_transaction(
        self,
        envelope_id: str,
        amount,
        type: TransactionType = TransactionType.EXPENSE,
        date: Optional[datetime] = None,
        description: str = "",
        merchant: Optional[str] = None,
        reconciled: bool = False,
    ) -> Optional[SyncTicket]:
        tx = Transaction(
            id=self.id_map.new_id(),
            envelope_id=envelope_id,
            amount=amount,
            date=date or self._clock(),
            description=description,
            type=TransactionType(type),
            merchant=merchant,
            reconciled=reconciled,
        )
        if not self._admit(tx, "add_transaction"):
            return None

        changes = ChangeSet()
        self.ledger.add(tx)
        changes.created(tx)
        return self._submit("add_transaction", changes)

    def update_transaction(self, transaction_id: str, **updates: Any) -> Optional[SyncTicket]:
        """
        Edit a transaction.

        Amount, date and description changes to one half of a transfer are
        mirrored on its sibling so the pair stays balanced.

        Raises:
            ValueError: If the update is invalid, or would break a transfer
                pair (new transfer_id or type, or moving a half into the
                envelope of its sibling)
        """
        current = self.ledger.get(transaction_id)
        if current is None:
            return self._not_found(NotFoundError("transaction", transaction_id), "update_transaction")

        updates.pop("id", None)
        updated = Transaction.model_validate({**current.model_dump(exclude={"month"}), **updates})
        sibling = self.ledger.sibling_of(current)
        self._check_pairing(current, updated, sibling)
        if not self._admit(updated, "update_transaction"):
            return None

        changes = ChangeSet()
        changes.updated(self.ledger.update(updated), updated)

        if sibling is not None:
            mirrored = {
                key: getattr(updated, key)
                for key in TRANSFER_MIRRORED_FIELDS
                if getattr(updated, key) != getattr(current, key)
            }
            if mirrored:
                new_sibling = sibling.model_copy(update=mirrored)
                changes.updated(self.ledger.update(new_sibling), new_sibling)
        return self._submit("update_transaction", changes)

    @staticmethod
    def _check_pairing(
        current: Transaction,
        updated: Transaction,
        sibling: Optional[Transaction],
    ) -> None:
        if updated.transfer_id != current.transfer_id:
            raise ValueError("transfer_id cannot be changed; delete and transfer again")
        if sibling is None:
            return
        if updated.type != current.type:
            raise ValueError("the type of a transfer half cannot be changed")
        if updated.envelope_id == sibling.envelope_id:
            raise ValueError("both halves of a transfer cannot use the same envelope")

    def delete_transaction(self, transaction_id: str) -> Optional[SyncTicket]:
        """Delete a transaction; both halves of a transfer go together."""
        try:
            removed = self.ledger.delete(transaction_id)
        except NotFoundError as e:
            return self._not_found(e, "delete_transaction")

        changes = ChangeSet()
        changes.deleted_all(removed)
        return self._submit("delete_transaction", changes)

    def transfer_funds(
        self,
        from_envelope_id: str,
        to_envelope_id: str,
        amount,
        date: Optional[datetime] = None,
        description: str = "Transfer",
    ) -> Optional[SyncTicket]:
        """Move money between envelopes as an Expense/Income pair sharing a transfer_id."""
        if from_envelope_id == to_envelope_id:
            logger.warning("transfer_rejected_same_envelope", envelope_id=from_envelope_id)
            return None

        transfer_id = uuid4().hex
        date = date or self._clock()
        expense = Transaction(
            id=self.id_map.new_id(),
            envelope_id=from_envelope_id,
            amount=amount,
            date=date,
            description=description,
            type=TransactionType.EXPENSE,
            transfer_id=transfer_id,
        )
        income = expense.model_copy(update={
            "id": self.id_map.new_id(),
            "envelope_id": to_envelope_id,
            "type": TransactionType.INCOME,
        })
        if not (self._admit(expense, "transfer_funds") and self._admit(income, "transfer_funds")):
            return None

        changes = ChangeSet()
        for tx in (expense, income):
            self.ledger.add(tx)
            changes.created(tx)
        return self._submit("transfer_funds", changes)

    # -------------------------------------------------------------------------
    # Monthly plan
    # -------------------------------------------------------------------------

    def add_income_source(
        self,
        month: str,
        name: str,
        amount,
        frequency: IncomeFrequency = IncomeFrequency.MONTHLY,
    ) -> SyncTicket:
        source = IncomeSource(
            id=self.id_map.new_id(),
            month=month,
            name=name,
            amount=amount,
            frequency=frequency,
        )
        changes = ChangeSet()
        self.plan.set_income_source(source, changes)
        return self._submit("add_income_source", changes)

    def update_income_source(self, source_id: str, **updates: Any) -> Optional[SyncTicket]:
        source = self.plan.get_income_source(source_id)
        if source is None:
            return self._not_found(NotFoundError("income_source", source_id), "update_income_source")

        updates.pop("id", None)
        updated = IncomeSource.model_validate({**source.model_dump(), **updates})
        changes = ChangeSet()
        self.plan.set_income_source(updated, changes)
        return self._submit("update_income_source", changes)

    def remove_income_source(self, source_id: str) -> Optional[SyncTicket]:
        changes = ChangeSet()
        try:
            self.plan.remove_income_source(source_id, changes)
        except NotFoundError as e:
            return self._not_found(e, "remove_income_source")
        return self._submit("remove_income_source", changes)

    def set_allocation(self, envelope_id: str, month: str, amount) -> Optional[SyncTicket]:
        """
        Budget amount to envelope_id for month.

        Returns None, and publishes allocation_rejected, when the envelope
        is missing or inactive. Nothing is sent to storage in that case.
        """
        changes = ChangeSet()
        allocation = self.plan.set_allocation(envelope_id, month, amount, changes)
        if allocation is None:
            self.events.publish(ALLOCATION_REJECTED, {"envelope_id": envelope_id, "month": month})
            return None
        return self._submit("set_allocation", changes)

    def remove_allocation(self, allocation_id: str) -> Optional[SyncTicket]:
        changes = ChangeSet()
        try:
            self.plan.remove_allocation(allocation_id, changes)
        except NotFoundError as e:
            return self._not_found(e, "remove_allocation")
        return self._submit("remove_allocation", changes)

    # -------------------------------------------------------------------------
    # Distribution templates
    # -------------------------------------------------------------------------

    def distribute_funds(
        self,
        month: str,
        distributions: dict[str, Any],
        template_id: Optional[str] = None,
    ) -> tuple[DistributionResult, Optional[SyncTicket]]:
        """
        Add each amount to the named envelope's allocation for month, as
        one command.

        Entries for deleted or inactive envelopes are dropped and each one
        publishes allocation_rejected; the others still go through. The
        ticket is None when nothing could be allocated.
        """
        changes = ChangeSet()
        result = self.plan.distribute(month, distributions, changes)
        for envelope_id in result.rejected_envelope_ids:
            self.events.publish(ALLOCATION_REJECTED, {"envelope_id": envelope_id, "month": month})

        template = self.templates.get(template_id) if template_id else None
        if template is not None and result.allocated:
            updated = template.model_copy(update={"last_used": self._clock()})
            self.templates.update(updated, changes)

        if not changes:
            return result, None
        logger.info(
            "funds_distributed",
            month=month,
            envelopes=len(result.allocated),
            rejected=len(result.rejected_envelope_ids),
            total=str(result.total),
        )
        self.audit.log_funds_distributed(
            month,
            {envelope_id: str(amount) for envelope_id, amount in result.allocated.items()},
            result.rejected_envelope_ids,
            template_id,
        )
        return result, self._submit("distribute_funds", changes)

    def apply_template(
        self,
        template_id: str,
        month: str,
    ) -> Optional[tuple[DistributionResult, Optional[SyncTicket]]]:
        """Distribute a saved template's amounts into month and mark it used."""
        template = self.templates.get(template_id)
        if template is None:
            return self._not_found(NotFoundError("template", template_id), "apply_template")
        return self.distribute_funds(month, template.distributions, template_id=template_id)

    def _usable_distributions(self, distributions: dict[str, Any], command: str) -> dict[str, Any]:
        kept = {}
        for envelope_id, amount in distributions.items():
            if self.registry.is_usable(envelope_id):
                kept[envelope_id] = amount
            else:
                logger.warning("template_entry_dropped", command=command, envelope_id=envelope_id)
        return kept

    def save_template(
        self,
        name: str,
        distributions: dict[str, Any],
        note: str = "",
    ) -> Optional[SyncTicket]:
        """
        Save a named split of funds for later distribute_funds() calls.

        Entries for unknown or inactive envelopes are left out. Returns
        None when no entry is left.
        """
        kept = self._usable_distributions(distributions, "save_template")
        if not kept:
            logger.warning("template_rejected_empty", name=name)
            return None

        template = DistributionTemplate(
            id=self.id_map.new_id(),
            name=name,
            note=note,
            distributions=kept,
            last_used=self._clock(),
        )
        changes = ChangeSet()
        self.templates.add(template, changes)
        return self._submit("save_template", changes)

    def update_template(self, template_id: str, **updates: Any) -> Optional[SyncTicket]:
        """Rename a template, change its note or replace its distributions."""
        template = self.templates.get(template_id)
        if template is None:
            return self._not_found(NotFoundError("template", template_id), "update_template")

        updates.pop("id", None)
        if "distributions" in updates:
            updates["distributions"] = self._usable_distributions(
                updates["distributions"], "update_template"
            )
        updated = DistributionTemplate.model_validate({**template.model_dump(), **updates})
        changes = ChangeSet()
        self.templates.update(updated, changes)
        return self._submit("update_template", changes)

    def delete_template(self, template_id: str) -> Optional[SyncTicket]:
        changes = ChangeSet()
        try:
            self.templates.remove(template_id, changes)
        except NotFoundError as e:
            return self._not_found(e, "delete_template")
        return self._submit("delete_template", changes)

    def distribution_templates(self) -> list[DistributionTemplate]:
        return self.templates.templates()

    # -------------------------------------------------------------------------
    # Month operations
    # -------------------------------------------------------------------------

    def copy_previous_month(
        self,
        source_month: str,
        target_month: str,
    ) -> tuple[RolloverResult, SyncTicket]:
        """Seed target_month with the income sources and allocations of source_month."""
        changes = ChangeSet()
        result = self.rollover.copy_previous_month(source_month, target_month, changes)
        return result, self._submit("copy_previous_month", changes)

    def copy_into(self, target_month: str) -> tuple[RolloverResult, SyncTicket]:
        """Seed target_month from the month before it."""
        return self.copy_previous_month(previous_month(target_month), target_month)

    def start_fresh(self, month: str) -> SyncTicket:
        """Clear every transaction, income source and allocation of month as one command."""
        correlation_id = create_correlation_id()
        changes = ChangeSet()
        counts = self.rollover.start_fresh(month, changes)
        self.audit.log_month_cleared(
            month,
            counts["transactions"],
            counts["income_sources"],
            counts["allocations"],
            correlation_id,
        )
        return self._submit("start_fresh", changes, correlation_id)

    def run_piggybank_contributions(
        self,
        month: Optional[str] = None,
        today: Optional[datetime] = None,
    ) -> SyncTicket:
        changes = ChangeSet()
        self.piggybanks.run(month or self.current_month, changes, today=today)
        return self._submit("run_piggybank_contributions", changes)

    def update_piggybank_contribution(self, envelope_id: str, amount) -> Optional[SyncTicket]:
        changes = ChangeSet()
        try:
            self.piggybanks.update_contribution(envelope_id, amount, changes)
        except NotFoundError as e:
            return self._not_found(e, "update_piggybank_contribution")
        return self._submit("update_piggybank_contribution", changes)

    def repair_funding(self, month: str) -> SyncTicket:
        """Recreate or correct funding transactions that no longer match their allocation."""
        changes = ChangeSet()
        self.plan.repair_funding(month, changes)
        return self._submit("repair_funding", changes)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def balance_of(self, envelope_id: str, month: Optional[str] = None) -> Any:
        """
        Derived balance.

        With a month, ordinary envelopes are month-scoped and piggybanks
        all-time. Without one, the all-time balance.
        """
        if month is None:
            return self.ledger.balance_of(envelope_id)
        return self.queries.balance_of(envelope_id, month)

    def available_to_budget(self, month: str):
        return self.plan.available_to_budget(month)

    def summary(self, month: str) -> MonthlyBudgetSummary:
        return self.plan.summary(month)

    def piggybank_progress(self, envelope_id: str) -> PiggybankProgress:
        return self.piggybanks.progress(envelope_id)

    def transactions(self, envelope_id: Optional[str] = None, month: Optional[str] = None) -> list[Transaction]:
        return self.ledger.transactions(envelope_id=envelope_id, month=month)

    def envelope_balances(self, month: str) -> list[EnvelopeBalance]:
        return self.queries.envelope_balances(month)

    def month_report(self, month: str) -> MonthReport:
        return self.queries.month_report(month)

    def is_pending(self, local_id: str) -> bool:
        return self.sync.is_pending(local_id)

    def pending_sync(self) -> list[PendingCommand]:
        return self.sync.pending_commands()

    @property
    def is_offline(self) -> bool:
        return self.sync.is_offline

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    async def flush_pending(self) -> dict[str, int]:
        return await self.sync.flush_pending()

    async def drain(self) -> None:
        """Wait for in-flight confirmations and audit writes."""
        await self.sync.drain()
        await self.audit.flush()

    # -------------------------------------------------------------------------
    # Hydration and backup
    # -------------------------------------------------------------------------

    def _local_records(self, collection: Collection) -> list:
        if collection == Collection.TRANSACTIONS:
            return list(self.ledger)
        if collection == Collection.ENVELOPES:
            return self.registry.envelopes()
        if collection == Collection.CATEGORIES:
            return self.registry.categories(include_archived=True)
        if collection == Collection.INCOME_SOURCES:
            return self.plan.income_sources()
        if collection == Collection.DISTRIBUTION_TEMPLATES:
            return self.templates.templates()
        return self.plan.allocations()

    @staticmethod
    def _relink(record: Any, local_of: dict[str, str]) -> Any:
        """Key a stored record by the local ids this engine already uses."""
        updates = {}
        for attr in ("id", *REFERENCE_FIELDS):
            value = getattr(record, attr, None)
            if value in local_of:
                updates[attr] = local_of[value]
        distributions = getattr(record, "distributions", None)
        if distributions and any(key in local_of for key in distributions):
            updates["distributions"] = {
                local_of.get(key, key): amount for key, amount in distributions.items()
            }
        return record.model_copy(update=updates) if updates else record

    def _replace_state(self, records: dict[Collection, list]) -> None:
        self.ledger.clear()
        self.registry.clear()
        self.plan.clear()
        self.templates.clear()
        self.registry.restore_categories(records.get(Collection.CATEGORIES, []))
        self.registry.restore(records.get(Collection.ENVELOPES, []))
        self.ledger.restore(records.get(Collection.TRANSACTIONS, []))
        self.plan.restore_income_sources(records.get(Collection.INCOME_SOURCES, []))
        self.plan.restore_allocations(records.get(Collection.ALLOCATIONS, []))
        self.templates.restore(records.get(Collection.DISTRIBUTION_TEMPLATES, []))

    async def load(self) -> dict[str, int]:
        """
        Replace local state with the store's contents.

        Records touched by commands that are still waiting for storage keep
        their local version. Records this engine created keep their local
        ids. Undecodable documents are skipped and counted.

        Returns:
            Number of loaded records per collection (empty when offline)
        """
        await self.sync.drain()
        pending_ids = {
            change.local_id
            for cmd in self.sync.pending_commands()
            for change in cmd.changes
        }
        local_of = {canonical: temp for temp, canonical in self.id_map.items()}

        records: dict[Collection, list] = {}
        skipped = 0
        try:
            for collection in Collection:
                docs = await self._storage.list_all(collection.value)
                kept = []
                for doc in docs:
                    try:
                        record = self._relink(from_wire(collection, doc), local_of)
                    except WireFormatError as e:
                        skipped += 1
                        logger.warning("load_record_skipped", collection=collection.value, error=str(e))
                        continue
                    if record.id not in pending_ids:
                        kept.append(record)
                kept.extend(r for r in self._local_records(collection) if r.id in pending_ids)
                records[collection] = kept
        except StorageUnavailableError as e:
            logger.warning("load_skipped_offline", error=str(e))
            return {}

        self._replace_state(records)
        counts = {collection.value: len(items) for collection, items in records.items()}
        counts["skipped"] = skipped
        logger.info("data_loaded", **counts)
        self.audit.log_data_loaded(counts)
        self.events.publish(STATE_CHANGED, {"command": "load", "entity_ids": [], "reverted": False})
        return counts

    def export_snapshot(self) -> dict[str, Any]:
        """Every collection in wire shape, keyed by the ids storage knows."""
        return export_snapshot(
            self.registry,
            self.ledger,
            self.plan,
            self.templates,
            self.id_map.resolve,
            self._clock(),
        )

    def import_snapshot(self, data: dict[str, Any]) -> SyncTicket:
        """
        Replace all local data with the contents of a backup.

        The replacement is one command: if storage rejects any part of it,
        the previous data comes back.

        Raises:
            PendingSyncError: If commands are still waiting for storage
            WireFormatError: If the backup cannot be normalized
        """
        if self.sync.has_pending:
            raise PendingSyncError(max(len(self.sync.pending_commands()), 1))
        snapshot = parse_snapshot(data, self.id_map.new_id)

        changes = ChangeSet()
        # Referencing records go first so nothing points at a deleted envelope
        changes.deleted_all(self.templates.templates())
        changes.deleted_all(self.ledger)
        changes.deleted_all(self.plan.allocations())
        changes.deleted_all(self.plan.income_sources())
        changes.deleted_all(self.registry.envelopes())
        changes.deleted_all(self.registry.categories(include_archived=True))

        imported = {
            Collection.CATEGORIES: snapshot.categories,
            Collection.ENVELOPES: snapshot.envelopes,
            Collection.TRANSACTIONS: snapshot.transactions,
            Collection.INCOME_SOURCES: snapshot.income_sources,
            Collection.ALLOCATIONS: snapshot.allocations,
            Collection.DISTRIBUTION_TEMPLATES: snapshot.templates,
        }
        self._replace_state(imported)
        for collection in imported:
            for record in imported[collection]:
                changes.created(record)

        counts = snapshot.counts()
        logger.info("data_imported", **counts)
        self.audit.log_data_imported(counts)
        return self._submit("import_snapshot", changes)


def create_engine(
    settings: Optional[Settings] = None,
    probe: Optional[ConnectivityProbe] = None,
) -> BudgetEngine:
    """
    Factory function to create an engine from configuration.

    AppSettings.storage_backend picks the persistence collaborator:
    "memory" keeps everything in process, "google_sheets" uses the
    configured spreadsheet and also persists audit events there.
    """
    settings = settings or get_settings()
    app = settings.app

    if app.storage_backend == "google_sheets":
        client = GoogleSheetsClient(settings.google_sheets)
        storage = GoogleSheetsDocumentStorage(app.user_namespace, client)
        audit = AuditLogger(GoogleSheetsAuditStorage(client))
    else:
        storage = InMemoryDocumentStorage(app.user_namespace)
        audit = AuditLogger()

    logger.info("engine_created", backend=app.storage_backend, namespace=app.user_namespace)
    return BudgetEngine(
        storage,
        probe=probe or HttpConnectivityProbe(settings.connectivity),
        audit=audit,
        settings=settings,
    )
