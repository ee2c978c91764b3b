"""
Synchronization Coordinator

Every mutating engine command goes through the same state machine:

    LOCAL_PENDING -> CONFIRMED | OFFLINE_RETAINED | ROLLED_BACK

1. APPLY: the engine mutates local state synchronously and hands the
   coordinator the command's ChangeSet plus an undo callable. The caller
   gets a SyncTicket back immediately.
2. CONFIRM: each remote operation is raced against the confirm timeout.
3. RECONCILE:
   - success: temp ids are promoted in the TempIdMap
   - timeout, unreachable storage, or a probe reporting offline:
     the local state is kept and the command is retained for flush_pending()
   - any other failure: the local state is undone, remote writes the
     command already made are compensated, and RemoteWriteError is raised
     from the ticket
4. Commands that reference a temp id storage has not confirmed yet are
   queued and released when the id is promoted. While the command that
   owns the id is retained offline, queued commands settle as
   OFFLINE_RETAINED too, and stay queued. If the command that owns
   the id rolls back, the queued commands roll back with it.

The coordinator is the only place that decides offline vs. rollback.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Generator, Optional
from uuid import UUID

import structlog

from envelope_budget.audit import AuditLogger, create_correlation_id
from envelope_budget.config import SyncSettings, get_settings
from envelope_budget.errors import RemoteWriteError
from envelope_budget.events import SYNC_ERROR, SYNC_STATE_CHANGED, EventBus
from envelope_budget.models.sync import OperationKind, SyncState
from envelope_budget.models.wire import to_wire
from envelope_budget.services.storage import (
    DocumentStorageInterface,
    StorageUnavailableError,
)
from envelope_budget.sync.changes import Change, ChangeSet
from envelope_budget.sync.connectivity import ConnectivityProbe, StaticConnectivityProbe
from envelope_budget.sync.id_map import TempIdMap


logger = structlog.get_logger(__name__)

# Record attributes that hold references to other records
REFERENCE_FIELDS = ("envelope_id", "category_id")


class _Offline(Exception):
    """Internal signal: the attempt could not reach storage."""


class SyncTicket:
    """
    Awaitable handle for one command.

    Awaiting it returns the state the first send attempt ended in
    (CONFIRMED or OFFLINE_RETAINED), or raises RemoteWriteError when the
    command was rolled back. .state always reflects the latest state,
    including a later confirmation by flush_pending().
    """

    def __init__(self, command: str, correlation_id: UUID):
        self.command = command
        self.correlation_id = correlation_id
        self.state = SyncState.LOCAL_PENDING
        self.entity_ids: list[str] = []
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()
        # Mark failures as retrieved; callers are not obliged to await
        self._future.add_done_callback(lambda f: f.cancelled() or f.exception())

    def __await__(self) -> Generator[Any, None, SyncState]:
        return self._future.__await__()

    @property
    def entity_id(self) -> Optional[str]:
        """Local id of the first record the command touched (the new record, for adds)."""
        return self.entity_ids[0] if self.entity_ids else None

    def done(self) -> bool:
        return self._future.done()

    def _settle(self, state: SyncState) -> None:
        self.state = state
        if not self._future.done():
            self._future.set_result(state)

    def _fail(self, error: RemoteWriteError) -> None:
        self.state = SyncState.ROLLED_BACK
        if not self._future.done():
            self._future.set_exception(error)

    def __repr__(self) -> str:
        return f"SyncTicket({self.command!r}, {self.state.value})"


@dataclass
class PendingCommand:
    """A command the coordinator is still responsible for."""

    correlation_id: UUID
    name: str
    changes: ChangeSet
    undo: Callable[[], None]
    ticket: SyncTicket
    state: SyncState = SyncState.LOCAL_PENDING
    depends_on: set[str] = field(default_factory=set)
    waiting_on: set[str] = field(default_factory=set)
    completed: list[Change] = field(default_factory=list)
    attempts: int = 0

    def created_ids(self) -> set[str]:
        return {c.local_id for c in self.changes.of_kind(OperationKind.CREATE)}

    def touches(self, local_id: str) -> bool:
        return any(c.local_id == local_id for c in self.changes)


class SyncCoordinator:
    """
    Confirms locally applied commands with storage.

    All remote work runs in tasks on the running event loop; drain()
    waits for it.
    """

    def __init__(
        self,
        storage: DocumentStorageInterface,
        id_map: Optional[TempIdMap] = None,
        probe: Optional[ConnectivityProbe] = None,
        settings: Optional[SyncSettings] = None,
        events: Optional[EventBus] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self._storage = storage
        self._settings = settings or get_settings().sync
        self.id_map = id_map or TempIdMap(self._settings.temp_id_prefix)
        self._probe = probe or StaticConnectivityProbe(online=True)
        self._events = events or EventBus()
        self._audit = audit or AuditLogger()

        self._offline = False
        self._retained: list[PendingCommand] = []
        self._waiting: list[PendingCommand] = []
        self._creators: dict[str, PendingCommand] = {}
        self._tasks: set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def is_offline(self) -> bool:
        return self._offline

    @property
    def has_pending(self) -> bool:
        """True while any command has not been confirmed by storage."""
        in_flight = any(not task.done() for task in self._tasks)
        return bool(self._retained or self._waiting or in_flight)

    def pending_commands(self) -> list[PendingCommand]:
        return [*self._retained, *self._waiting]

    def is_pending(self, local_id: str) -> bool:
        """Pending-sync flag for one entity."""
        return any(cmd.touches(local_id) for cmd in self.pending_commands())

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def submit(
        self,
        name: str,
        changes: ChangeSet,
        undo: Callable[[], None],
        correlation_id: Optional[UUID] = None,
    ) -> SyncTicket:
        """
        Take over confirmation of a command already applied locally.

        Must be called from inside a running event loop.
        """
        correlation_id = correlation_id or create_correlation_id()
        ticket = SyncTicket(name, correlation_id)
        ticket.entity_ids = changes.entity_ids()

        if not changes:
            ticket._settle(SyncState.CONFIRMED)
            return ticket

        cmd = PendingCommand(
            correlation_id=correlation_id,
            name=name,
            changes=changes,
            undo=undo,
            ticket=ticket,
        )
        self._audit.log_command_applied(name, ticket.entity_ids, correlation_id)
        for temp_id in cmd.created_ids():
            if self.id_map.is_temporary(temp_id):
                self._creators[temp_id] = cmd

        cmd.depends_on = set(self._unconfirmed_references(cmd))
        cmd.waiting_on = set(cmd.depends_on)
        if cmd.waiting_on:
            self._waiting.append(cmd)
            logger.info("command_queued", command=name, waiting_on=sorted(cmd.waiting_on))
            self._audit.log_command_queued(name, sorted(cmd.waiting_on), correlation_id)
            if self._offline or any(self._creator_retained(i) for i in cmd.waiting_on):
                self._hold(cmd, "waiting on a command retained offline")
            return ticket

        self._dispatch(cmd)
        return ticket

    def _unconfirmed_references(self, cmd: PendingCommand) -> list[str]:
        """Temp ids this command needs resolved that it does not create itself."""
        own = cmd.created_ids()
        referenced = set()
        for change in cmd.changes:
            if change.kind != OperationKind.CREATE:
                referenced.add(change.local_id)
            records = [change.record, change.previous]
            for record in records:
                for attr in REFERENCE_FIELDS:
                    value = getattr(record, attr, None)
                    if value:
                        referenced.add(value)
                # Template distributions are keyed by envelope id
                referenced.update(getattr(record, "distributions", None) or ())
        return self.id_map.unconfirmed(sorted(referenced - own))

    def _creator_retained(self, temp_id: str) -> bool:
        creator = self._creators.get(temp_id)
        return creator is None or creator.state == SyncState.OFFLINE_RETAINED

    def _dispatch(self, cmd: PendingCommand) -> None:
        if self._offline:
            # Known offline: keep it without trying
            self._retain(cmd, "offline")
            return
        task = asyncio.get_running_loop().create_task(self._run(cmd))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # -------------------------------------------------------------------------
    # Confirm and reconcile
    # -------------------------------------------------------------------------

    async def _run(self, cmd: PendingCommand) -> None:
        try:
            await self._attempt(cmd)
        except _Offline as e:
            self._set_offline(True)
            self._retain(cmd, str(e))
        except Exception as e:
            if await self._probe_online():
                await self._rollback(cmd, e)
            else:
                self._set_offline(True)
                self._retain(cmd, f"probe reports offline after: {e}")
        else:
            self._confirm(cmd)

    async def _attempt(self, cmd: PendingCommand) -> None:
        cmd.attempts += 1
        # Completed operations are always a prefix; a retry resumes after them
        for change in list(cmd.changes)[len(cmd.completed):]:
            try:
                await asyncio.wait_for(
                    self._send(change, retry=cmd.attempts > 1),
                    timeout=self._settings.confirm_timeout_seconds,
                )
            except asyncio.TimeoutError:
                raise _Offline(f"no confirmation within {self._settings.confirm_timeout_seconds}s")
            except StorageUnavailableError as e:
                raise _Offline(str(e))
            cmd.completed.append(change)

    def _payload(self, record: Any) -> dict:
        doc = to_wire(record, self.id_map.resolve)
        doc.pop("id", None)
        return doc

    async def _send(self, change: Change, retry: bool) -> None:
        collection = change.collection.value
        local_id = change.local_id

        if change.kind == OperationKind.CREATE:
            if retry:
                # A create that timed out may have landed; adopt it instead of duplicating
                existing = await self._storage.query_by_equality(collection, "clientId", local_id)
                if existing:
                    self.id_map.promote(local_id, existing[0]["id"])
                    logger.info("create_adopted", collection=collection, local_id=local_id)
                    return
            doc = self._payload(change.record)
            doc["clientId"] = local_id
            canonical_id = await self._storage.create(collection, doc)
            self.id_map.promote(local_id, canonical_id)

        elif change.kind == OperationKind.UPDATE:
            await self._storage.update(
                collection, self.id_map.resolve(local_id), self._payload(change.record)
            )

        else:
            await self._storage.delete(collection, self.id_map.resolve(local_id))

    def _confirm(self, cmd: PendingCommand) -> None:
        cmd.state = SyncState.CONFIRMED
        if cmd in self._retained:
            self._retained.remove(cmd)
        promoted = {
            temp_id: self.id_map.resolve(temp_id)
            for temp_id in cmd.created_ids()
            if self.id_map.is_temporary(temp_id)
        }
        for temp_id in promoted:
            self._creators.pop(temp_id, None)
        if self._offline:
            self._set_offline(False)

        cmd.ticket._settle(SyncState.CONFIRMED)
        logger.info("command_confirmed", command=cmd.name, promoted=promoted)
        self._audit.log_sync_confirmed(cmd.name, promoted, cmd.correlation_id)
        self._publish_state(cmd)
        self._release(set(promoted))

    def _retain(self, cmd: PendingCommand, reason: str) -> None:
        cmd.state = SyncState.OFFLINE_RETAINED
        if cmd not in self._retained:
            self._retained.append(cmd)
        cmd.ticket._settle(SyncState.OFFLINE_RETAINED)
        logger.info("command_retained_offline", command=cmd.name, reason=reason)
        self._audit.log_sync_offline_retained(cmd.name, reason, cmd.correlation_id)
        self._publish_state(cmd)
        for dependent in self._dependents_of(cmd):
            self._hold(dependent, f"waiting on {cmd.name}, retained offline")

    def _hold(self, cmd: PendingCommand, reason: str) -> None:
        """Settle a queued command as retained; it stays queued until its dependencies are promoted."""
        if cmd.state == SyncState.OFFLINE_RETAINED:
            return
        cmd.state = SyncState.OFFLINE_RETAINED
        cmd.ticket._settle(SyncState.OFFLINE_RETAINED)
        logger.info("queued_command_retained_offline", command=cmd.name, reason=reason)
        self._audit.log_sync_offline_retained(cmd.name, reason, cmd.correlation_id)
        self._publish_state(cmd)

    def _release(self, promoted_ids: set[str]) -> None:
        """Send queued commands whose last missing dependency was just promoted."""
        if not promoted_ids:
            return
        for cmd in list(self._waiting):
            cmd.waiting_on -= promoted_ids
            if not cmd.waiting_on:
                self._waiting.remove(cmd)
                logger.info("command_released", command=cmd.name)
                self._dispatch(cmd)

    # -------------------------------------------------------------------------
    # Rollback
    # -------------------------------------------------------------------------

    def _dependents_of(self, cmd: PendingCommand) -> list[PendingCommand]:
        """Queued commands that need ids created by cmd, transitively, in issuance order."""
        created = cmd.created_ids()
        dependents = []
        for waiting in self._waiting:
            if waiting.depends_on & created:
                dependents.append(waiting)
                created |= waiting.created_ids()
        return dependents

    async def _rollback(self, cmd: PendingCommand, error: Exception) -> None:
        # Later commands first, so each undo sees the state it produced
        for dependent in reversed(self._dependents_of(cmd)):
            self._waiting.remove(dependent)
            self._revert(dependent, f"depends on {cmd.name}, which was rolled back")

        if self._settings.compensate_on_rollback and cmd.completed:
            await self._compensate(cmd)
        self._revert(cmd, str(error), cause=error)

    def _revert(self, cmd: PendingCommand, message: str, cause: Optional[Exception] = None) -> None:
        cmd.state = SyncState.ROLLED_BACK
        if cmd in self._retained:
            self._retained.remove(cmd)
        cmd.undo()
        for temp_id in cmd.created_ids():
            self._creators.pop(temp_id, None)
            if self.id_map.is_temporary(temp_id):
                self.id_map.forget(temp_id)

        error = RemoteWriteError(cmd.name, message, cause=cause)
        cmd.ticket._fail(error)
        logger.warning("command_rolled_back", command=cmd.name, error=message)
        self._audit.log_sync_rolled_back(cmd.name, message, cmd.correlation_id)
        self._publish_state(cmd)
        self._events.publish(SYNC_ERROR, {
            "command": cmd.name,
            "correlation_id": str(cmd.correlation_id),
            "message": str(error),
        })

    async def _compensate(self, cmd: PendingCommand) -> None:
        """Undo the remote writes of a partially confirmed command, newest first."""
        for change in reversed(cmd.completed):
            collection = change.collection.value
            try:
                if change.kind == OperationKind.CREATE:
                    await asyncio.wait_for(
                        self._storage.delete(collection, self.id_map.resolve(change.local_id)),
                        timeout=self._settings.confirm_timeout_seconds,
                    )
                elif change.kind == OperationKind.UPDATE:
                    await asyncio.wait_for(
                        self._storage.update(
                            collection,
                            self.id_map.resolve(change.local_id),
                            self._payload(change.previous),
                        ),
                        timeout=self._settings.confirm_timeout_seconds,
                    )
                else:
                    doc = self._payload(change.record)
                    doc["clientId"] = change.local_id
                    canonical_id = await asyncio.wait_for(
                        self._storage.create(collection, doc),
                        timeout=self._settings.confirm_timeout_seconds,
                    )
                    self.id_map.promote(change.local_id, canonical_id)
            except Exception as e:
                logger.error(
                    "compensation_failed",
                    command=cmd.name,
                    collection=collection,
                    local_id=change.local_id,
                    error=str(e),
                )
                self._audit.log_compensation_failed(cmd.name, str(e), cmd.correlation_id)

    # -------------------------------------------------------------------------
    # Connectivity
    # -------------------------------------------------------------------------

    async def _probe_online(self) -> bool:
        try:
            return await asyncio.wait_for(
                self._probe.is_online(),
                timeout=self._settings.confirm_timeout_seconds,
            )
        except Exception as e:
            logger.info("connectivity_probe_error", error=str(e))
            return False

    def _set_offline(self, offline: bool) -> None:
        if offline == self._offline:
            return
        self._offline = offline
        logger.warning("connectivity_changed", online=not offline)
        self._audit.log_connectivity_changed(online=not offline)

    def _publish_state(self, cmd: PendingCommand) -> None:
        self._events.publish(SYNC_STATE_CHANGED, {
            "command": cmd.name,
            "correlation_id": str(cmd.correlation_id),
            "state": cmd.state.value,
            "entity_ids": cmd.ticket.entity_ids,
        })

    async def flush_pending(self) -> dict[str, int]:
        """
        Resend retained commands in issuance order.

        Does nothing while the probe reports offline.

        Returns:
            Number of previously retained commands per resulting state
        """
        if not await self._probe_online():
            logger.info("flush_skipped_offline", retained=len(self._retained))
            return {}
        self._set_offline(False)

        attempted = list(self._retained)
        for cmd in attempted:
            if cmd.state != SyncState.OFFLINE_RETAINED:
                continue
            await self._run(cmd)
            if self._offline:
                break
        await self.drain()

        outcome: dict[str, int] = {}
        for cmd in attempted:
            outcome[cmd.state.value] = outcome.get(cmd.state.value, 0) + 1
        return outcome

    async def drain(self) -> None:
        """Wait until no confirmation is in flight."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def reset(self) -> None:
        """Forget every retained and queued command (used when local state is replaced)."""
        self._retained.clear()
        self._waiting.clear()
        self._creators.clear()
