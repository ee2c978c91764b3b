"""
Audit Logger

DESIGN DECISION: Every command outcome in the engine is logged.
This provides:
1. Traceability from an optimistic mutation to its final sync state
2. Debugging capability when a rollback happens
3. A history of destructive operations (start fresh, envelope deletion)

The audit logger:
- Never blocks the command that produced the event (persistence is scheduled)
- Gracefully handles failures (doesn't crash the engine if logging fails)
- Supports correlation IDs to trace all events of one command
"""

import asyncio
from collections import deque
from typing import Optional
from uuid import UUID, uuid4

import structlog

from envelope_budget.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from envelope_budget.services.storage import AuditStorageInterface


LOG_PROCESSORS = [
    structlog.stdlib.filter_by_level,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.format_exc_info,
]


def configure_logging(json_output: bool = True) -> None:
    """Route structlog through the stdlib logging tree; JSON lines by default."""
    renderer = (
        structlog.processors.JSONRenderer(default=str) if json_output
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[*LOG_PROCESSORS, renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


_LEVELS = {
    AuditSeverity.DEBUG: "debug",
    AuditSeverity.WARNING: "warning",
    AuditSeverity.ERROR: "error",
    AuditSeverity.CRITICAL: "critical",
}


class AuditLogger:
    """
    Writes every audit event to the structlog stream and a bounded
    in-memory window, then persists it when a storage backend is given.
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
        history_size: int = 1000,
    ):
        """
        Args:
            storage: Audit backend; None keeps events local only
            history_size: Length of recent_events
        """
        self._storage = storage
        self._logger = structlog.get_logger(__name__)
        self._pending: set[asyncio.Task] = set()
        self.recent_events: deque[AuditEvent] = deque(maxlen=history_size)

    def _log_locally(self, event: AuditEvent) -> None:
        level = _LEVELS.get(event.severity, "info")
        getattr(self._logger, level)("audit_event", **event.to_log_dict())

        self.recent_events.append(event)

    async def _persist(self, event: AuditEvent) -> bool:
        try:
            return await self._storage.append_event(event)
        except Exception as e:
            self._logger.error(
                "audit_storage_failed",
                error=str(e),
                event_id=str(event.event_id),
            )
            return False

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event and wait for it to be persisted.

        Returns True if storage write succeeded (or no storage configured).
        """
        self._log_locally(event)
        if self._storage:
            return await self._persist(event)
        return True

    def emit(self, event: AuditEvent) -> None:
        """
        Log an audit event without waiting.

        Safe to call from synchronous engine commands. Persistence runs
        as a background task when an event loop is running.
        """
        self._log_locally(event)
        if not self._storage:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._logger.debug("audit_persist_skipped_no_loop", event_id=str(event.event_id))
            return
        task = loop.create_task(self._persist(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def flush(self) -> None:
        """Wait until every scheduled audit write has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    def events_of_type(self, event_type) -> list[AuditEvent]:
        return [e for e in self.recent_events if e.event_type == event_type]

    # -------------------------------------------------------------------------
    # Command lifecycle
    # -------------------------------------------------------------------------

    def log_command_applied(
        self,
        command: str,
        entity_ids: list[str],
        correlation_id: UUID,
    ) -> None:
        """Log a command applied to local state."""
        self.emit(AuditEventBuilder.command_applied(
            command=command,
            entity_ids=entity_ids,
            correlation_id=correlation_id,
        ))

    def log_command_queued(
        self,
        command: str,
        waiting_on: list[str],
        correlation_id: UUID,
    ) -> None:
        self.emit(AuditEventBuilder.command_queued(
            command=command,
            waiting_on=waiting_on,
            correlation_id=correlation_id,
        ))

    def log_sync_confirmed(
        self,
        command: str,
        promoted: dict[str, str],
        correlation_id: UUID,
    ) -> None:
        self.emit(AuditEventBuilder.sync_confirmed(
            command=command,
            promoted=promoted,
            correlation_id=correlation_id,
        ))

    def log_sync_offline_retained(
        self,
        command: str,
        reason: str,
        correlation_id: UUID,
    ) -> None:
        """Log a command kept locally because storage was unreachable."""
        self.emit(AuditEventBuilder.sync_offline_retained(
            command=command,
            reason=reason,
            correlation_id=correlation_id,
        ))

    def log_sync_rolled_back(
        self,
        command: str,
        error_message: str,
        correlation_id: UUID,
    ) -> None:
        """Log a command reverted after storage rejected it."""
        self.emit(AuditEventBuilder.sync_rolled_back(
            command=command,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    def log_compensation_failed(
        self,
        command: str,
        error_message: str,
        correlation_id: UUID,
    ) -> None:
        self.emit(AuditEventBuilder.compensation_failed(
            command=command,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    # -------------------------------------------------------------------------
    # Validation gate
    # -------------------------------------------------------------------------

    def log_allocation_rejected(
        self,
        envelope_id: str,
        month: str,
        issues: list[str],
    ) -> None:
        """Log an allocation dropped by the reference check."""
        self.emit(AuditEventBuilder.allocation_rejected(
            envelope_id=envelope_id,
            month=month,
            issues=issues,
        ))

    def log_transaction_rejected(
        self,
        envelope_id: str,
        issues: list[str],
    ) -> None:
        self.emit(AuditEventBuilder.transaction_rejected(
            envelope_id=envelope_id,
            issues=issues,
        ))

    def log_target_not_found(
        self,
        entity_type: str,
        entity_id: str,
        command: str,
    ) -> None:
        self.emit(AuditEventBuilder.target_not_found(
            entity_type=entity_type,
            entity_id=entity_id,
            command=command,
        ))

    # -------------------------------------------------------------------------
    # Month operations
    # -------------------------------------------------------------------------

    def log_month_copied(
        self,
        source_month: str,
        target_month: str,
        allocations: int,
        dropped: list[str],
    ) -> None:
        self.emit(AuditEventBuilder.month_copied(
            source_month=source_month,
            target_month=target_month,
            allocations=allocations,
            dropped=dropped,
        ))

    def log_month_cleared(
        self,
        month: str,
        transactions: int,
        income_sources: int,
        allocations: int,
        correlation_id: UUID,
    ) -> None:
        self.emit(AuditEventBuilder.month_cleared(
            month=month,
            transactions=transactions,
            income_sources=income_sources,
            allocations=allocations,
            correlation_id=correlation_id,
        ))

    def log_piggybank_contribution(
        self,
        envelope_id: str,
        month: str,
        amount: str,
    ) -> None:
        self.emit(AuditEventBuilder.piggybank_contribution_created(
            envelope_id=envelope_id,
            month=month,
            amount=amount,
        ))

    def log_funds_distributed(
        self,
        month: str,
        allocated: dict[str, str],
        rejected: list[str],
        template_id: Optional[str] = None,
    ) -> None:
        self.emit(AuditEventBuilder.funds_distributed(
            month=month,
            allocated=allocated,
            rejected=rejected,
            template_id=template_id,
        ))

    def log_envelope_deleted(
        self,
        envelope_id: str,
        name: str,
        piggybank: bool,
        cascaded: dict[str, int],
        correlation_id: UUID,
    ) -> None:
        self.emit(AuditEventBuilder.envelope_deleted(
            envelope_id=envelope_id,
            name=name,
            piggybank=piggybank,
            cascaded=cascaded,
            correlation_id=correlation_id,
        ))

    # -------------------------------------------------------------------------
    # Data management and system
    # -------------------------------------------------------------------------

    def log_data_loaded(self, counts: dict[str, int]) -> None:
        self.emit(AuditEventBuilder.data_loaded(counts=counts))

    def log_data_imported(self, counts: dict[str, int]) -> None:
        self.emit(AuditEventBuilder.data_imported(counts=counts))

    def log_connectivity_changed(self, online: bool) -> None:
        self.emit(AuditEventBuilder.connectivity_changed(online=online))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    One is created per engine command and passed through every
    event that command produces.
    """
    return uuid4()
