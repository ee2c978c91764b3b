"""
Tests for the synchronization coordinator.

Every command ends in one of three states:
- CONFIRMED: storage accepted it, temp ids are promoted
- OFFLINE_RETAINED: storage was unreachable, the local change is kept
- ROLLED_BACK: storage refused it, the local change is undone

Storage faults are injected through InMemoryDocumentStorage.
"""

import asyncio
import pytest
from decimal import Decimal

import httpx

from envelope_budget.config import ConnectivitySettings
from envelope_budget.errors import RemoteWriteError
from envelope_budget.events import SYNC_ERROR, SYNC_STATE_CHANGED
from envelope_budget.models.audit import AuditEventType
from envelope_budget.models.budget import TransactionType
from envelope_budget.models.sync import SyncState
from envelope_budget.services.storage import (
    DocumentNotFoundError,
    PermissionDeniedError,
    StorageUnavailableError,
)
from envelope_budget.sync import HttpConnectivityProbe, TempIdMap


async def confirmed_envelope(engine, name="Groceries") -> str:
    ticket = engine.add_envelope(name)
    assert await ticket == SyncState.CONFIRMED
    return ticket.entity_id


class TestTempIdMap:
    """Tests for the temp -> canonical promotion table."""

    def test_new_ids_are_temporary(self):
        id_map = TempIdMap("temp-")
        local_id = id_map.new_id()
        assert id_map.is_temporary(local_id)
        assert not id_map.is_confirmed(local_id)
        assert id_map.resolve(local_id) == local_id

    def test_promote(self):
        id_map = TempIdMap("temp-")
        local_id = id_map.new_id()
        id_map.promote(local_id, "abc")
        assert id_map.resolve(local_id) == "abc"
        assert id_map.is_confirmed(local_id)

    def test_canonical_ids_are_always_confirmed(self):
        id_map = TempIdMap("temp-")
        assert id_map.is_confirmed("abc")
        assert id_map.unconfirmed(["abc", None, "temp-x"]) == ["temp-x"]


class TestConfirm:
    """Tests for the happy path."""

    @pytest.mark.asyncio
    async def test_add_is_applied_before_confirmation(self, engine, storage):
        """Test that local state changes synchronously."""
        ticket = engine.add_envelope("Groceries")
        assert engine.registry.get(ticket.entity_id) is not None
        assert ticket.state == SyncState.LOCAL_PENDING
        assert storage.count("envelopes") == 0

        assert await ticket == SyncState.CONFIRMED
        assert storage.count("envelopes") == 1

    @pytest.mark.asyncio
    async def test_temp_id_is_promoted_not_rewritten(self, engine, storage):
        """Test that the local key stays while storage knows the canonical id."""
        envelope_id = await confirmed_envelope(engine)
        canonical = engine.id_map.resolve(envelope_id)

        assert envelope_id.startswith("temp-")
        assert canonical != envelope_id
        assert engine.registry.get(envelope_id) is not None
        doc = await storage.get("envelopes", canonical)
        assert doc["name"] == "Groceries"
        assert doc["clientId"] == envelope_id

    @pytest.mark.asyncio
    async def test_later_commands_use_canonical_ids(self, engine, storage):
        envelope_id = await confirmed_envelope(engine)
        ticket = engine.add_transaction(envelope_id, "12.50")
        await ticket

        (doc,) = await storage.list_all("transactions")
        assert doc["envelopeId"] == engine.id_map.resolve(envelope_id)

    @pytest.mark.asyncio
    async def test_state_events_are_published(self, engine):
        states = []
        engine.subscribe(SYNC_STATE_CHANGED, lambda event: states.append(event.payload["state"]))
        await engine.add_envelope("Groceries")
        assert states == ["confirmed"]

    @pytest.mark.asyncio
    async def test_empty_command_confirms_immediately(self, engine, storage):
        ticket = engine.remove_envelope_from_month("anything", "2026-03")
        assert ticket.done()
        assert await ticket == SyncState.CONFIRMED
        assert storage.calls == []


class TestOffline:
    """Tests for the OFFLINE_RETAINED path."""

    @pytest.mark.asyncio
    async def test_unreachable_storage_retains_state(self, engine, storage):
        """Test that an offline write keeps the optimistic change without error."""
        envelope_id = await confirmed_envelope(engine)
        storage.offline = True

        ticket = engine.add_transaction(envelope_id, "20")
        assert await ticket == SyncState.OFFLINE_RETAINED

        assert engine.is_offline
        assert engine.is_pending(ticket.entity_id)
        assert engine.balance_of(envelope_id) == Decimal("-20.00")
        assert engine.audit.events_of_type(AuditEventType.SYNC_OFFLINE_RETAINED)

    @pytest.mark.asyncio
    async def test_timeout_retains_state(self, engine, storage):
        """Test that a confirmation slower than the timeout counts as offline."""
        envelope_id = await confirmed_envelope(engine)
        storage.stall_next(1.0, operation="create", collection="transactions")

        ticket = engine.add_transaction(envelope_id, "20")
        assert await ticket == SyncState.OFFLINE_RETAINED
        assert len(engine.ledger) == 1

    @pytest.mark.asyncio
    async def test_known_offline_skips_the_network(self, engine, storage):
        """Test that commands issued while offline are retained without a send."""
        envelope_id = await confirmed_envelope(engine)
        storage.offline = True
        await engine.add_transaction(envelope_id, "1")
        calls_before = len(storage.calls)

        ticket = engine.add_transaction(envelope_id, "2")
        assert ticket.done()
        assert await ticket == SyncState.OFFLINE_RETAINED
        assert len(storage.calls) == calls_before

    @pytest.mark.asyncio
    async def test_probe_reporting_offline_retains_instead_of_rollback(self, engine, storage, probe):
        """Test that an ambiguous failure is not treated as a rejection."""
        envelope_id = await confirmed_envelope(engine)
        probe.online = False
        storage.fail_next(RuntimeError("connection reset"), operation="create")

        ticket = engine.add_transaction(envelope_id, "5")
        assert await ticket == SyncState.OFFLINE_RETAINED
        assert len(engine.ledger) == 1

    @pytest.mark.asyncio
    async def test_flush_resends_in_issuance_order(self, engine, storage):
        envelope_id = await confirmed_envelope(engine)
        storage.offline = True
        first = engine.add_transaction(envelope_id, "1", description="first")
        await first
        second = engine.add_transaction(envelope_id, "2", description="second")
        await second

        storage.offline = False
        outcome = await engine.flush_pending()

        assert outcome == {"confirmed": 2}
        assert first.state == SyncState.CONFIRMED
        assert second.state == SyncState.CONFIRMED
        assert not engine.is_offline
        assert engine.pending_sync() == []
        docs = await storage.list_all("transactions")
        assert [d["description"] for d in docs] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_flush_does_nothing_while_probe_is_offline(self, engine, storage, probe):
        envelope_id = await confirmed_envelope(engine)
        storage.offline = True
        await engine.add_transaction(envelope_id, "1")

        probe.online = False
        assert await engine.flush_pending() == {}
        assert len(engine.pending_sync()) == 1

    @pytest.mark.asyncio
    async def test_timed_out_add_yields_exactly_one_record(self, engine, storage):
        """Test that a create which landed before the timeout is adopted on retry."""
        envelope_id = await confirmed_envelope(engine)
        storage.stall_next(1.0, operation="create", collection="transactions")
        ticket = engine.add_transaction(envelope_id, "20")
        assert await ticket == SyncState.OFFLINE_RETAINED
        assert storage.count("transactions") == 1

        await engine.flush_pending()

        assert ticket.state == SyncState.CONFIRMED
        assert storage.count("transactions") == 1
        assert len(engine.ledger) == 1
        (doc,) = await storage.list_all("transactions")
        assert engine.id_map.resolve(ticket.entity_id) == doc["id"]


class TestRollback:
    """Tests for the ROLLED_BACK path."""

    @pytest.mark.asyncio
    async def test_rejected_add_is_removed(self, engine, storage):
        """Test that a refused create is undone and surfaced."""
        envelope_id = await confirmed_envelope(engine)
        storage.fail_next(PermissionDeniedError("denied"), operation="create")

        ticket = engine.add_transaction(envelope_id, "20")
        assert len(engine.ledger) == 1
        with pytest.raises(RemoteWriteError) as excinfo:
            await ticket

        assert excinfo.value.command == "add_transaction"
        assert isinstance(excinfo.value.cause, PermissionDeniedError)
        assert ticket.state == SyncState.ROLLED_BACK
        assert len(engine.ledger) == 0
        assert not engine.is_pending(ticket.entity_id)

    @pytest.mark.asyncio
    async def test_rejected_update_restores_previous(self, engine, storage):
        envelope_id = await confirmed_envelope(engine)
        ticket = engine.add_transaction(envelope_id, "20")
        await ticket
        storage.fail_next(PermissionDeniedError("denied"), operation="update")

        update = engine.update_transaction(ticket.entity_id, amount="99")
        assert engine.ledger.get(ticket.entity_id).amount == Decimal("99.00")
        with pytest.raises(RemoteWriteError):
            await update
        assert engine.ledger.get(ticket.entity_id).amount == Decimal("20.00")

    @pytest.mark.asyncio
    async def test_rejected_transfer_delete_restores_both_halves(self, engine, storage):
        """Test that rollback re-pairs a transfer sibling."""
        groceries = await confirmed_envelope(engine, "Groceries")
        emergency = await confirmed_envelope(engine, "Emergency")
        transfer = engine.transfer_funds(groceries, emergency, "50")
        await transfer
        storage.fail_next(DocumentNotFoundError("gone"), operation="delete")

        deletion = engine.delete_transaction(transfer.entity_ids[1])
        assert len(engine.ledger) == 0
        with pytest.raises(RemoteWriteError):
            await deletion

        assert len(engine.ledger) == 2
        restored = engine.ledger.get(transfer.entity_ids[1])
        assert engine.ledger.sibling_of(restored).id == transfer.entity_ids[0]
        assert engine.balance_of(groceries) == Decimal("-50.00")
        assert engine.balance_of(emergency) == Decimal("50.00")

    @pytest.mark.asyncio
    async def test_partial_command_is_compensated(self, engine, storage):
        """Test that remote writes of a half-confirmed command are undone."""
        envelope_id = await confirmed_envelope(engine)
        # The allocation is created, its funding transaction is refused
        storage.fail_next(PermissionDeniedError("quota"), operation="create", collection="transactions")

        ticket = engine.set_allocation(envelope_id, "2026-03", "400")
        with pytest.raises(RemoteWriteError):
            await ticket
        await engine.drain()

        assert ("delete", "allocations") in storage.calls
        assert storage.count("allocations") == 0
        assert storage.count("transactions") == 0
        assert engine.plan.allocations() == []
        assert len(engine.ledger) == 0

    @pytest.mark.asyncio
    async def test_sync_error_event(self, engine, storage):
        errors = []
        engine.subscribe(SYNC_ERROR, lambda event: errors.append(event.payload))
        storage.fail_next(PermissionDeniedError("denied"), operation="create")

        with pytest.raises(RemoteWriteError):
            await engine.add_envelope("Groceries")
        assert errors[0]["command"] == "add_envelope"
        assert engine.audit.events_of_type(AuditEventType.SYNC_ROLLED_BACK)


class TestDependencies:
    """Tests for commands that reference unconfirmed temp ids."""

    @pytest.mark.asyncio
    async def test_dependent_waits_for_promotion(self, engine, storage):
        """Test that a command on a fresh envelope is sent after the envelope."""
        envelope = engine.add_envelope("Groceries")
        tx = engine.add_transaction(envelope.entity_id, "10")
        assert engine.is_pending(tx.entity_id)
        assert engine.audit.events_of_type(AuditEventType.COMMAND_QUEUED)

        assert await envelope == SyncState.CONFIRMED
        assert await tx == SyncState.CONFIRMED
        (doc,) = await storage.list_all("transactions")
        assert doc["envelopeId"] == engine.id_map.resolve(envelope.entity_id)

    @pytest.mark.asyncio
    async def test_rollback_cascades_to_dependents(self, engine, storage):
        """Test that commands waiting on a rejected create are rolled back too."""
        storage.fail_next(PermissionDeniedError("denied"), operation="create", collection="envelopes")
        envelope = engine.add_envelope("Groceries")
        tx = engine.add_transaction(envelope.entity_id, "10")
        allocation = engine.set_allocation(envelope.entity_id, "2026-03", "200")

        for ticket in (envelope, tx, allocation):
            with pytest.raises(RemoteWriteError):
                await ticket

        assert engine.registry.envelopes() == []
        assert len(engine.ledger) == 0
        assert engine.plan.allocations() == []
        assert storage.count("transactions") == 0
        assert storage.count("allocations") == 0

    @pytest.mark.asyncio
    async def test_dependents_of_retained_create_flush_after_it(self, engine, storage):
        storage.offline = True
        envelope = engine.add_envelope("Groceries")
        await envelope
        tx = engine.add_transaction(envelope.entity_id, "10")

        storage.offline = False
        await engine.flush_pending()

        assert envelope.state == SyncState.CONFIRMED
        assert tx.state == SyncState.CONFIRMED
        assert storage.count("transactions") == 1

    @pytest.mark.asyncio
    async def test_dependent_of_offline_create_settles_as_retained(self, engine, storage):
        """Test that awaiting a command queued behind an offline create does not hang."""
        storage.offline = True
        envelope = engine.add_envelope("Groceries")
        assert await envelope == SyncState.OFFLINE_RETAINED

        tx = engine.add_transaction(envelope.entity_id, "10")
        assert await asyncio.wait_for(tx, 1.0) == SyncState.OFFLINE_RETAINED
        assert engine.is_pending(tx.entity_id)
        assert engine.balance_of(envelope.entity_id) == Decimal("-10.00")

        storage.offline = False
        assert await engine.flush_pending() == {"confirmed": 1}
        assert tx.state == SyncState.CONFIRMED
        assert not engine.is_pending(tx.entity_id)
        (doc,) = await storage.list_all("transactions")
        assert doc["envelopeId"] == engine.id_map.resolve(envelope.entity_id)

    @pytest.mark.asyncio
    async def test_dependent_settles_when_its_dependency_times_out(self, engine, storage):
        """Test that a queued command settles once the create it waits on is retained."""
        storage.stall_next(1.0, operation="create", collection="envelopes")
        envelope = engine.add_envelope("Groceries")
        tx = engine.add_transaction(envelope.entity_id, "10")
        assert not tx.done()

        assert await asyncio.wait_for(tx, 1.0) == SyncState.OFFLINE_RETAINED
        assert envelope.state == SyncState.OFFLINE_RETAINED
        assert storage.count("transactions") == 0

        await engine.flush_pending()
        assert tx.state == SyncState.CONFIRMED
        assert storage.count("envelopes") == 1
        assert storage.count("transactions") == 1


class TestConnectivityProbe:
    """Tests for the HTTP probe."""

    @pytest.mark.asyncio
    async def test_any_response_is_online(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(404))
        async with httpx.AsyncClient(transport=transport) as client:
            probe = HttpConnectivityProbe(ConnectivitySettings(), client=client)
            assert await probe.is_online()

    @pytest.mark.asyncio
    async def test_transport_failure_is_offline(self):
        def refuse(request):
            raise httpx.ConnectError("unreachable", request=request)

        transport = httpx.MockTransport(refuse)
        async with httpx.AsyncClient(transport=transport) as client:
            probe = HttpConnectivityProbe(ConnectivitySettings(), client=client)
            assert not await probe.is_online()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
