"""
End-to-end tests for BudgetEngine commands against in-memory storage.

Each test drives the public command surface, awaits the returned sync
tickets and then checks both local state and what reached storage.
"""

import asyncio
import pytest
from datetime import datetime
from decimal import Decimal

from envelope_budget.config import Settings
from envelope_budget.engine import create_engine
from envelope_budget.errors import PendingSyncError, RemoteWriteError
from envelope_budget.events import ALLOCATION_REJECTED, STATE_CHANGED
from envelope_budget.models.audit import AuditEventType
from envelope_budget.models.budget import TransactionType
from envelope_budget.models.sync import SyncState
from envelope_budget.queries import QueryExecutionError
from envelope_budget.services.storage import (
    InMemoryDocumentStorage,
    PermissionDeniedError,
)
from envelope_budget.sync import StaticConnectivityProbe


async def envelope(engine, name, **kwargs) -> str:
    ticket = engine.add_envelope(name, **kwargs)
    await ticket
    return ticket.entity_id


class TestTransfers:
    """Tests for paired transfers through the engine."""

    @pytest.mark.asyncio
    async def test_scenario_c_deleting_one_side_restores_balances(self, engine, storage):
        """Test that deleting the receiving half removes the whole transfer."""
        groceries = await envelope(engine, "Groceries")
        emergency = await envelope(engine, "Emergency")
        await engine.set_allocation(groceries, "2026-03", "500")
        before = (engine.balance_of(groceries, "2026-03"), engine.balance_of(emergency, "2026-03"))

        transfer = engine.transfer_funds(groceries, emergency, "50")
        await transfer
        expense_id, income_id = transfer.entity_ids
        assert engine.ledger.get(expense_id).type == TransactionType.EXPENSE
        assert engine.balance_of(groceries, "2026-03") == Decimal("450.00")
        assert engine.balance_of(emergency, "2026-03") == Decimal("50.00")

        await engine.delete_transaction(income_id)

        assert expense_id not in engine.ledger
        after = (engine.balance_of(groceries, "2026-03"), engine.balance_of(emergency, "2026-03"))
        assert after == before
        assert storage.count("transactions") == 1

    @pytest.mark.asyncio
    async def test_amount_edit_is_mirrored_on_sibling(self, engine):
        groceries = await envelope(engine, "Groceries")
        emergency = await envelope(engine, "Emergency")
        transfer = engine.transfer_funds(groceries, emergency, "50")
        await transfer

        await engine.update_transaction(transfer.entity_ids[0], amount="80")

        assert engine.balance_of(groceries) == Decimal("-80.00")
        assert engine.balance_of(emergency) == Decimal("80.00")

    @pytest.mark.asyncio
    async def test_description_edit_is_mirrored_on_sibling(self, engine):
        groceries = await envelope(engine, "Groceries")
        emergency = await envelope(engine, "Emergency")
        transfer = engine.transfer_funds(groceries, emergency, "50")
        await transfer
        expense_id, income_id = transfer.entity_ids

        await engine.update_transaction(income_id, description="Rainy day")

        assert engine.ledger.get(expense_id).description == "Rainy day"

    @pytest.mark.asyncio
    async def test_edits_that_break_the_pair_are_rejected(self, engine, storage):
        """Test that a transfer half cannot be re-keyed, retyped or moved onto its sibling."""
        groceries = await envelope(engine, "Groceries")
        emergency = await envelope(engine, "Emergency")
        transfer = engine.transfer_funds(groceries, emergency, "50")
        await transfer
        expense_id, income_id = transfer.entity_ids
        calls_before = len(storage.calls)

        with pytest.raises(ValueError):
            engine.update_transaction(expense_id, transfer_id="other")
        with pytest.raises(ValueError):
            engine.update_transaction(expense_id, envelope_id=emergency)
        with pytest.raises(ValueError):
            engine.update_transaction(income_id, type=TransactionType.EXPENSE)

        assert engine.ledger.sibling_of(engine.ledger.get(expense_id)).id == income_id
        assert engine.balance_of(groceries) == Decimal("-50.00")
        assert len(storage.calls) == calls_before

    @pytest.mark.asyncio
    async def test_plain_transaction_cannot_join_a_transfer(self, engine):
        groceries = await envelope(engine, "Groceries")
        ticket = engine.add_transaction(groceries, "10")
        await ticket
        with pytest.raises(ValueError):
            engine.update_transaction(ticket.entity_id, transfer_id="abc")

    @pytest.mark.asyncio
    async def test_transfer_to_same_envelope_is_rejected(self, engine):
        groceries = await envelope(engine, "Groceries")
        assert engine.transfer_funds(groceries, groceries, "10") is None
        assert len(engine.ledger) == 0


class TestStartFresh:
    """Tests for clearing a month through the engine."""

    @pytest.mark.asyncio
    async def test_scenario_d_other_months_untouched(self, engine, storage):
        """Test clearing 10 transactions, 3 income sources and 5 allocations."""
        envelope_ids = [await envelope(engine, f"Envelope {n}") for n in range(5)]
        for envelope_id in envelope_ids:
            # Each allocation also creates its funding transaction
            await engine.set_allocation(envelope_id, "2026-02", "100")
            await engine.add_transaction(envelope_id, "10", date=datetime(2026, 2, 10))
        for name in ("Salary", "Bonus", "Freelance"):
            await engine.add_income_source("2026-02", name, "1000")
        await engine.add_income_source("2026-01", "Salary", "900")
        await engine.add_transaction(envelope_ids[0], "5", date=datetime(2026, 1, 20))
        await engine.set_allocation(envelope_ids[0], "2026-03", "50")
        await engine.add_transaction(envelope_ids[0], "7", date=datetime(2026, 3, 2))
        assert len(engine.transactions(month="2026-02")) == 10

        ticket = engine.start_fresh("2026-02")
        assert await ticket == SyncState.CONFIRMED

        assert engine.transactions(month="2026-02") == []
        assert engine.plan.income_sources("2026-02") == []
        assert engine.plan.allocations("2026-02") == []
        assert len(engine.transactions(month="2026-01")) == 1
        assert len(engine.transactions(month="2026-03")) == 2
        assert len(engine.plan.income_sources("2026-01")) == 1
        assert len(engine.plan.allocations("2026-03")) == 1

        docs = await storage.list_all("transactions")
        assert sorted(d["month"] for d in docs) == ["2026-01", "2026-03", "2026-03"]
        assert storage.count("incomeSources") == 1
        assert storage.count("allocations") == 1

        (cleared,) = engine.audit.events_of_type(AuditEventType.MONTH_CLEARED)
        assert cleared.details["transactions"] == 10
        assert cleared.correlation_id == ticket.correlation_id


class TestRollover:
    """Tests for copying a month through the engine."""

    @pytest.mark.asyncio
    async def test_copies_source_month_into_target_month(self, engine, storage):
        groceries = await envelope(engine, "Groceries")
        await engine.add_income_source("2026-02", "Salary", "3000")
        await engine.set_allocation(groceries, "2026-02", "300")

        result, ticket = engine.copy_previous_month("2026-02", "2026-03")

        assert (result.source_month, result.target_month) == ("2026-02", "2026-03")
        assert await ticket == SyncState.CONFIRMED
        assert engine.plan.allocation_for(groceries, "2026-03").budgeted_amount == Decimal("300.00")
        assert engine.balance_of(groceries, "2026-03") == Decimal("300.00")
        assert engine.available_to_budget("2026-03") == Decimal("2700.00")
        assert len(engine.plan.allocations("2026-02")) == 1
        months = sorted(doc["month"] for doc in await storage.list_all("allocations"))
        assert months == ["2026-02", "2026-03"]

    @pytest.mark.asyncio
    async def test_copy_into_uses_the_previous_month(self, engine):
        groceries = await envelope(engine, "Groceries")
        await engine.set_allocation(groceries, "2026-12", "80")

        result, ticket = engine.copy_into("2027-01")
        await ticket

        assert result.source_month == "2026-12"
        assert engine.plan.allocation_for(groceries, "2027-01") is not None

    @pytest.mark.asyncio
    async def test_scenario_e_deleted_envelope_is_not_carried_over(self, engine, storage):
        """Test that nothing is created in the target month for a deleted envelope."""
        groceries = await envelope(engine, "Groceries")
        subscriptions = await envelope(engine, "Subscriptions")
        await engine.set_allocation(groceries, "2026-02", "300")
        await engine.set_allocation(subscriptions, "2026-02", "45")
        # A February allocation still pointing at the envelope, as left by older data
        stale = engine.plan.allocation_for(subscriptions, "2026-02")
        await engine.delete_envelope(subscriptions)
        engine.plan.restore_allocations([stale])

        result, ticket = engine.copy_previous_month("2026-02", "2026-03")
        await ticket

        assert subscriptions in result.dropped_envelope_ids
        assert engine.plan.allocation_for(subscriptions, "2026-03") is None
        assert engine.transactions(envelope_id=subscriptions, month="2026-03") == []
        canonical = engine.id_map.resolve(subscriptions)
        docs = [
            *await storage.list_all("allocations"),
            *await storage.list_all("transactions"),
        ]
        assert not [d for d in docs if d["envelopeId"] == canonical and d["month"] == "2026-03"]

    @pytest.mark.asyncio
    async def test_rejected_rollover_is_rolled_back_as_one_unit(self, engine, storage):
        groceries = await envelope(engine, "Groceries")
        await engine.add_income_source("2026-02", "Salary", "3000")
        await engine.set_allocation(groceries, "2026-02", "300")
        storage.fail_next(PermissionDeniedError("denied"), operation="create", collection="allocations")

        result, ticket = engine.copy_previous_month("2026-02", "2026-03")
        assert result.allocations_copied == 1
        with pytest.raises(RemoteWriteError):
            await ticket

        assert engine.plan.income_sources("2026-03") == []
        assert engine.plan.allocations("2026-03") == []
        assert engine.transactions(month="2026-03") == []
        assert storage.count("incomeSources") == 1
        assert storage.count("allocations") == 1


class TestDistribution:
    """Tests for distributing funds and saved distribution templates."""

    @pytest.mark.asyncio
    async def test_distribution_adds_to_allocations_in_one_command(self, engine, storage):
        groceries = await envelope(engine, "Groceries")
        rent = await envelope(engine, "Rent")
        await engine.set_allocation(groceries, "2026-03", "100")

        result, ticket = engine.distribute_funds("2026-03", {groceries: "50", rent: 900, "unused": 0})
        assert await ticket == SyncState.CONFIRMED

        assert result.allocated == {groceries: Decimal("50.00"), rent: Decimal("900.00")}
        assert result.total == Decimal("950.00")
        assert engine.plan.allocation_for(groceries, "2026-03").budgeted_amount == Decimal("150.00")
        assert engine.balance_of(rent, "2026-03") == Decimal("900.00")
        assert storage.count("allocations") == 2
        assert engine.audit.events_of_type(AuditEventType.FUNDS_DISTRIBUTED)

    @pytest.mark.asyncio
    async def test_deleted_and_inactive_envelopes_are_dropped(self, engine, storage):
        """Test that only entries for usable envelopes become allocations."""
        groceries = await envelope(engine, "Groceries")
        hobby = await envelope(engine, "Hobby")
        gone = await envelope(engine, "Subscriptions")
        await engine.update_envelope(hobby, is_active=False)
        await engine.delete_envelope(gone)
        rejected = []
        engine.subscribe(ALLOCATION_REJECTED, lambda event: rejected.append(event.payload["envelope_id"]))

        result, ticket = engine.distribute_funds("2026-03", {groceries: 200, hobby: 20, gone: 45})
        await ticket

        assert result.rejected_envelope_ids == [hobby, gone]
        assert rejected == [hobby, gone]
        assert [a.envelope_id for a in engine.plan.allocations("2026-03")] == [groceries]
        gone_id = engine.id_map.resolve(gone)
        docs = [*await storage.list_all("allocations"), *await storage.list_all("transactions")]
        assert not [d for d in docs if d["envelopeId"] == gone_id]

    @pytest.mark.asyncio
    async def test_nothing_to_allocate_sends_nothing(self, engine, storage):
        result, ticket = engine.distribute_funds("2026-03", {"ghost": 10})
        assert ticket is None
        assert result.rejected_envelope_ids == ["ghost"]
        assert storage.calls == []

    @pytest.mark.asyncio
    async def test_rejected_distribution_is_rolled_back(self, engine, storage):
        groceries = await envelope(engine, "Groceries")
        rent = await envelope(engine, "Rent")
        storage.fail_next(PermissionDeniedError("denied"), operation="create", collection="allocations")

        _, ticket = engine.distribute_funds("2026-03", {groceries: 200, rent: 900})
        with pytest.raises(RemoteWriteError):
            await ticket

        assert engine.plan.allocations("2026-03") == []
        assert engine.transactions(month="2026-03") == []
        assert storage.count("allocations") == 0
        assert storage.count("transactions") == 0

    @pytest.mark.asyncio
    async def test_save_and_apply_template(self, engine, storage):
        groceries = await envelope(engine, "Groceries")
        rent = await envelope(engine, "Rent")

        saved = engine.save_template("Payday", {groceries: "300", rent: 900, "ghost": 5}, note="1st")
        assert await saved == SyncState.CONFIRMED
        (template,) = engine.distribution_templates()
        assert template.distributions == {groceries: Decimal("300.00"), rent: Decimal("900.00")}
        (doc,) = await storage.list_all("distributionTemplates")
        assert set(doc["distributions"]) == {
            engine.id_map.resolve(groceries),
            engine.id_map.resolve(rent),
        }

        result, ticket = engine.apply_template(template.id, "2026-04")
        assert await ticket == SyncState.CONFIRMED
        assert result.total == Decimal("1200.00")
        assert engine.available_to_budget("2026-04") == Decimal("-1200.00")
        assert engine.balance_of(groceries, "2026-04") == Decimal("300.00")

    @pytest.mark.asyncio
    async def test_template_needs_a_usable_envelope(self, engine, storage):
        assert engine.save_template("Nothing", {"ghost": 5}) is None
        assert engine.apply_template("ghost", "2026-03") is None
        assert engine.delete_template("ghost") is None
        assert storage.calls == []

    @pytest.mark.asyncio
    async def test_update_and_delete_template(self, engine, storage):
        groceries = await envelope(engine, "Groceries")
        saved = engine.save_template("Payday", {groceries: 300})
        await saved

        await engine.update_template(saved.entity_id, name="Monthly", distributions={groceries: 250})
        template = engine.templates.get(saved.entity_id)
        assert template.name == "Monthly"
        assert template.total == Decimal("250.00")

        await engine.delete_template(saved.entity_id)
        assert engine.distribution_templates() == []
        assert storage.count("distributionTemplates") == 0

    @pytest.mark.asyncio
    async def test_deleting_envelope_prunes_templates(self, engine, storage):
        """Test that a deleted envelope leaves no template entry behind."""
        groceries = await envelope(engine, "Groceries")
        rent = await envelope(engine, "Rent")
        both = engine.save_template("Payday", {groceries: 300, rent: 900})
        only_rent = engine.save_template("Rent day", {rent: 900})
        await both
        await only_rent

        await engine.delete_envelope(rent)

        assert engine.templates.get(only_rent.entity_id) is None
        assert engine.templates.get(both.entity_id).distributions == {groceries: Decimal("300.00")}
        (doc,) = await storage.list_all("distributionTemplates")
        assert list(doc["distributions"]) == [engine.id_map.resolve(groceries)]
        (event,) = engine.audit.events_of_type(AuditEventType.ENVELOPE_DELETED)
        assert event.details["templates_deleted"] == 1

    @pytest.mark.asyncio
    async def test_template_waits_for_offline_envelope(self, engine, storage):
        """Test that a template naming an unconfirmed envelope is sent with its final id."""
        storage.offline = True
        groceries = engine.add_envelope("Groceries")
        assert await groceries == SyncState.OFFLINE_RETAINED

        saved = engine.save_template("Payday", {groceries.entity_id: 300})
        assert await asyncio.wait_for(saved, 1.0) == SyncState.OFFLINE_RETAINED

        storage.offline = False
        await engine.flush_pending()
        assert saved.state == SyncState.CONFIRMED
        (doc,) = await storage.list_all("distributionTemplates")
        assert list(doc["distributions"]) == [engine.id_map.resolve(groceries.entity_id)]


class TestDeleteEnvelope:
    """Tests for envelope deletion and its cascade."""

    @pytest.mark.asyncio
    async def test_ordinary_envelope_cascades(self, engine, storage):
        """Test that no record of a deleted envelope survives, transfer siblings included."""
        groceries = await envelope(engine, "Groceries")
        savings = await envelope(engine, "Savings")
        await engine.set_allocation(groceries, "2026-03", "500")
        await engine.add_transaction(groceries, "20")
        await engine.transfer_funds(groceries, savings, "50")

        await engine.delete_envelope(groceries)

        assert engine.registry.get(groceries) is None
        assert len(engine.ledger) == 0
        assert engine.plan.allocations() == []
        assert storage.count("envelopes") == 1
        assert storage.count("transactions") == 0
        assert storage.count("allocations") == 0
        assert engine.audit.events_of_type(AuditEventType.ENVELOPE_DELETED)

    @pytest.mark.asyncio
    async def test_piggybank_is_deactivated_and_keeps_history(self, engine):
        """Test that only the given month of a piggybank is removed."""
        ticket = engine.add_piggybank("Vacation", monthly_contribution=100, created_month="2026-01")
        await ticket
        vacation = ticket.entity_id
        await engine.run_piggybank_contributions("2026-02")
        await engine.run_piggybank_contributions("2026-03")
        await engine.set_allocation(vacation, "2026-03", "100")

        await engine.delete_envelope(vacation, "2026-03")

        assert not engine.registry.get(vacation).is_active
        assert [tx.month for tx in engine.transactions(envelope_id=vacation)] == ["2026-02"]
        assert engine.plan.allocation_for(vacation, "2026-03") is None
        assert engine.balance_of(vacation, "2026-03") == Decimal("100.00")
        # Deactivated piggybanks receive no new contributions
        await engine.run_piggybank_contributions("2026-03")
        assert len(engine.transactions(envelope_id=vacation)) == 1

    @pytest.mark.asyncio
    async def test_remove_from_month_keeps_envelope(self, engine):
        groceries = await envelope(engine, "Groceries")
        await engine.set_allocation(groceries, "2026-02", "200")
        await engine.set_allocation(groceries, "2026-03", "200")
        await engine.add_transaction(groceries, "10")

        await engine.remove_envelope_from_month(groceries, "2026-03")

        assert engine.registry.get(groceries) is not None
        assert [a.month for a in engine.plan.allocations()] == ["2026-02"]
        assert engine.transactions(month="2026-03") == []
        assert engine.balance_of(groceries, "2026-02") == Decimal("200.00")


class TestCommands:
    """Tests for the remaining commands and their rejection paths."""

    @pytest.mark.asyncio
    async def test_delete_category_uncategorizes_envelopes(self, engine, storage):
        category = engine.add_category("Home")
        await category
        rent = await envelope(engine, "Rent", category_id=category.entity_id)

        await engine.delete_category(category.entity_id)

        assert engine.registry.get(rent).category_id is None
        assert storage.count("categories") == 0
        (doc,) = await storage.list_all("envelopes")
        assert doc["categoryId"] is None

    @pytest.mark.asyncio
    async def test_missing_targets_are_no_ops(self, engine, storage):
        """Test that edits of unknown records are logged and never sent."""
        assert engine.update_transaction("ghost", amount="5") is None
        assert engine.delete_transaction("ghost") is None
        assert engine.remove_allocation("ghost") is None
        assert engine.update_envelope("ghost", name="Ghost") is None
        assert len(engine.audit.events_of_type(AuditEventType.TARGET_NOT_FOUND)) == 4
        assert storage.calls == []

    @pytest.mark.asyncio
    async def test_allocation_rejected_event(self, engine, storage):
        rejected = []
        engine.subscribe(ALLOCATION_REJECTED, lambda event: rejected.append(event.payload))

        assert engine.set_allocation("ghost", "2026-03", "100") is None
        assert rejected == [{"envelope_id": "ghost", "month": "2026-03"}]
        assert engine.plan.allocations() == []
        assert storage.calls == []

    @pytest.mark.asyncio
    async def test_transaction_for_missing_envelope_is_rejected(self, engine):
        assert engine.add_transaction("ghost", "10") is None
        assert len(engine.ledger) == 0
        assert engine.audit.events_of_type(AuditEventType.TRANSACTION_REJECTED)

    @pytest.mark.asyncio
    async def test_invalid_update_raises(self, engine):
        groceries = await envelope(engine, "Groceries")
        with pytest.raises(ValueError):
            engine.update_envelope(groceries, name="   ")
        assert engine.registry.get(groceries).name == "Groceries"

    @pytest.mark.asyncio
    async def test_reorder_envelopes(self, engine):
        first = await envelope(engine, "First")
        second = await envelope(engine, "Second")
        third = await envelope(engine, "Third")

        ticket = engine.reorder_envelopes([third, first, second])
        await ticket

        assert [e.name for e in engine.registry.envelopes()] == ["Third", "First", "Second"]
        assert len(ticket.entity_ids) == 3

    @pytest.mark.asyncio
    async def test_state_changed_on_apply_and_revert(self, engine, storage):
        reverted = []
        engine.subscribe(STATE_CHANGED, lambda event: reverted.append(event.payload["reverted"]))
        storage.fail_next(PermissionDeniedError("denied"), operation="create")

        with pytest.raises(RemoteWriteError):
            await engine.add_envelope("Groceries")
        assert reverted == [False, True]


class TestQueries:
    """Tests for derived reports."""

    @pytest.mark.asyncio
    async def test_month_report(self, engine, storage):
        groceries = await envelope(engine, "Groceries")
        rent = await envelope(engine, "Rent")
        await engine.add_income_source("2026-03", "Salary", "1000")
        await engine.set_allocation(groceries, "2026-03", "300")
        await engine.set_allocation(rent, "2026-03", "600")
        await engine.add_transaction(groceries, "350")

        report = engine.month_report("2026-03")

        assert report.summary.available_to_budget == Decimal("100.00")
        assert report.total_spent == Decimal("350.00")
        assert report.transaction_count == 3
        assert [e.name for e in report.overspent] == ["Groceries"]
        assert report.pending_count == 0

        storage.offline = True
        await engine.add_transaction(rent, "10")
        assert engine.month_report("2026-03").pending_count == 1

    @pytest.mark.asyncio
    async def test_spending_breakdown(self, engine):
        category = engine.add_category("Food")
        await category
        groceries = await envelope(engine, "Groceries", category_id=category.entity_id)
        fun = await envelope(engine, "Fun")
        await engine.add_transaction(groceries, "40")
        await engine.add_transaction(fun, "15")

        assert engine.queries.spending_breakdown("2026-03") == {
            "Groceries": Decimal("40.00"),
            "Fun": Decimal("15.00"),
        }
        assert engine.queries.spending_breakdown("2026-03", group_by="category") == {
            "Food": Decimal("40.00"),
            "uncategorized": Decimal("15.00"),
        }
        with pytest.raises(QueryExecutionError):
            engine.queries.spending_breakdown("2026-03", group_by="merchant")


class TestLoad:
    """Tests for hydrating from storage."""

    @pytest.mark.asyncio
    async def test_load_decodes_and_skips_bad_documents(self, engine, storage):
        envelope_id = await storage.create("envelopes", {"name": "Groceries", "orderIndex": 0})
        await storage.create("transactions", {
            "envelopeId": envelope_id, "amount": "12.5", "date": "2026-03-02", "type": "Expense",
        })
        await storage.create("transactions", {"envelopeId": envelope_id, "amount": "lots"})

        counts = await engine.load()

        assert counts["envelopes"] == 1
        assert counts["transactions"] == 1
        assert counts["skipped"] == 1
        assert engine.balance_of(envelope_id, "2026-03") == Decimal("-12.50")
        assert engine.audit.events_of_type(AuditEventType.DATA_LOADED)

    @pytest.mark.asyncio
    async def test_pending_local_records_survive_load(self, engine, storage):
        """Test that a reload keeps unconfirmed work and local ids."""
        groceries = await envelope(engine, "Groceries")
        storage.offline = True
        pending = engine.add_transaction(groceries, "20")
        assert await pending == SyncState.OFFLINE_RETAINED

        storage.offline = False
        # Written by another client
        await storage.create("transactions", {
            "envelopeId": engine.id_map.resolve(groceries),
            "amount": 5,
            "date": "2026-03-04",
            "type": "expense",
        })
        counts = await engine.load()

        assert counts["transactions"] == 2
        assert engine.registry.get(groceries) is not None
        assert engine.balance_of(groceries, "2026-03") == Decimal("-25.00")
        assert engine.is_pending(pending.entity_id)

    @pytest.mark.asyncio
    async def test_load_while_offline_keeps_state(self, engine, storage):
        groceries = await envelope(engine, "Groceries")
        storage.offline = True
        assert await engine.load() == {}
        assert engine.registry.get(groceries) is not None


class TestImport:
    """Tests for replacing local data from a backup."""

    @pytest.mark.asyncio
    async def test_import_refused_while_commands_are_pending(self, engine, storage):
        storage.offline = True
        await engine.add_envelope("Groceries")
        with pytest.raises(PendingSyncError) as excinfo:
            engine.import_snapshot({"envelopes": [], "transactions": []})
        assert excinfo.value.pending == 1

    @pytest.mark.asyncio
    async def test_rejected_import_restores_previous_data(self, engine, storage):
        """Test that the replacement is undone as a whole."""
        groceries = await envelope(engine, "Groceries")
        await engine.add_transaction(groceries, "10")
        storage.fail_next(PermissionDeniedError("denied"), operation="delete")

        ticket = engine.import_snapshot({
            "envelopes": [{"id": "E1", "name": "Imported"}],
            "transactions": [],
        })
        assert [e.name for e in engine.registry.envelopes()] == ["Imported"]
        with pytest.raises(RemoteWriteError):
            await ticket

        assert [e.name for e in engine.registry.envelopes()] == ["Groceries"]
        assert len(engine.ledger) == 1
        assert engine.audit.events_of_type(AuditEventType.DATA_IMPORTED)


class TestCreateEngine:
    """Tests for the factory."""

    @pytest.mark.asyncio
    async def test_memory_backend(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "memory")
        monkeypatch.setenv("USER_NAMESPACE", "alice")
        engine = create_engine(Settings(), probe=StaticConnectivityProbe())

        assert isinstance(engine._storage, InMemoryDocumentStorage)
        assert engine._storage.namespace == "alice"
        assert await engine.add_envelope("Groceries") == SyncState.CONFIRMED


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
