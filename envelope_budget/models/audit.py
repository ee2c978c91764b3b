"""
Audit Models for Envelope Budget

Every command and every reconciliation outcome is logged for audit purposes.
This provides:
1. Traceability of each optimistic mutation to its final sync state
2. Debugging information when a rollback happens
3. A record of destructive operations (start fresh, envelope deletion)

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Every stage a command passes through has its own event type.
    """
    # Command lifecycle
    COMMAND_APPLIED = "command_applied"
    COMMAND_QUEUED = "command_queued"
    SYNC_CONFIRMED = "sync_confirmed"
    SYNC_OFFLINE_RETAINED = "sync_offline_retained"
    SYNC_ROLLED_BACK = "sync_rolled_back"
    COMPENSATION_FAILED = "compensation_failed"

    # Validation gate
    ALLOCATION_REJECTED = "allocation_rejected"
    TRANSACTION_REJECTED = "transaction_rejected"
    TARGET_NOT_FOUND = "target_not_found"

    # Month operations
    MONTH_COPIED = "month_copied"
    MONTH_CLEARED = "month_cleared"
    PIGGYBANK_CONTRIBUTION_CREATED = "piggybank_contribution_created"
    FUNDS_DISTRIBUTED = "funds_distributed"
    ENVELOPE_DELETED = "envelope_deleted"

    # Data management
    DATA_LOADED = "data_loaded"
    DATA_IMPORTED = "data_imported"

    # Connectivity
    CONNECTIVITY_CHANGED = "connectivity_changed"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _cell(value: Any) -> str:
    return "" if value is None else str(value)


class AuditEvent(BaseModel):
    """
    One entry in the audit trail.

    entity_type/entity_id say what the event is about ("command",
    "allocation", "month", "envelope", "dataset"); correlation_id ties
    together every event one engine command produced, from
    COMMAND_APPLIED to its final sync outcome.
    """

    event_id: UUID = Field(default_factory=uuid4)
    timestamp: datetime = Field(default_factory=_utc_now)

    event_type: AuditEventType
    severity: AuditSeverity = AuditSeverity.INFO

    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    correlation_id: Optional[UUID] = None

    description: str = Field(..., max_length=500)
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Event-specific data, JSON-serialisable"
    )
    error_message: Optional[str] = None
    is_user_action: bool = Field(
        default=False,
        description="Directly requested by the user rather than a consequence of sync"
    )

    def to_log_dict(self) -> dict:
        """Flat dict for structlog; UUIDs and timestamps as strings."""
        return self.model_dump(mode="json")

    def to_sheets_row(self) -> list:
        """
        One audit worksheet row.

        Column order matches AUDIT_COLUMNS in the Sheets adapter; empty
        values are written as "" so the row stays aligned.
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            _cell(self.entity_type),
            _cell(self.entity_id),
            _cell(self.correlation_id),
            self.description,
            json.dumps(self.details, default=str) if self.details else "",
            _cell(self.error_message),
            str(self.is_user_action),
        ]


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.command_applied("add_transaction", tx.id, command_id)
        event = AuditEventBuilder.sync_rolled_back("add_transaction", command_id, str(exc))
    """

    @staticmethod
    def command_applied(
        command: str,
        entity_ids: list[str],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.COMMAND_APPLIED,
            entity_type="command",
            entity_id=entity_ids[0] if entity_ids else None,
            correlation_id=correlation_id,
            description=f"Applied locally: {command}",
            details={
                "command": command,
                "entity_ids": entity_ids,
            },
            is_user_action=True,
        )

    @staticmethod
    def command_queued(
        command: str,
        waiting_on: list[str],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.COMMAND_QUEUED,
            entity_type="command",
            correlation_id=correlation_id,
            description=f"Queued until dependencies are confirmed: {command}",
            details={
                "command": command,
                "waiting_on": waiting_on,
            },
        )

    @staticmethod
    def sync_confirmed(
        command: str,
        promoted: dict[str, str],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_CONFIRMED,
            entity_type="command",
            correlation_id=correlation_id,
            description=f"Confirmed by storage: {command}",
            details={
                "command": command,
                "promoted_ids": promoted,
            },
        )

    @staticmethod
    def sync_offline_retained(
        command: str,
        reason: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_OFFLINE_RETAINED,
            severity=AuditSeverity.WARNING,
            entity_type="command",
            correlation_id=correlation_id,
            description=f"Offline, kept locally: {command}",
            details={
                "command": command,
                "reason": reason,
            },
        )

    @staticmethod
    def sync_rolled_back(
        command: str,
        error_message: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_ROLLED_BACK,
            severity=AuditSeverity.ERROR,
            entity_type="command",
            correlation_id=correlation_id,
            description=f"Storage rejected, reverted locally: {command}",
            error_message=error_message,
            details={
                "command": command,
            },
        )

    @staticmethod
    def compensation_failed(
        command: str,
        error_message: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.COMPENSATION_FAILED,
            severity=AuditSeverity.CRITICAL,
            entity_type="command",
            correlation_id=correlation_id,
            description=f"Could not undo partial remote writes: {command}",
            error_message=error_message,
            details={
                "command": command,
            },
        )

    @staticmethod
    def allocation_rejected(
        envelope_id: str,
        month: str,
        issues: list[str],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ALLOCATION_REJECTED,
            severity=AuditSeverity.WARNING,
            entity_type="allocation",
            entity_id=envelope_id,
            description=f"Allocation for {month} rejected: unknown or inactive envelope",
            details={
                "envelope_id": envelope_id,
                "month": month,
                "issues": issues,
            },
            is_user_action=True,
        )

    @staticmethod
    def transaction_rejected(
        envelope_id: str,
        issues: list[str],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_REJECTED,
            severity=AuditSeverity.WARNING,
            entity_type="transaction",
            entity_id=envelope_id,
            description="Transaction rejected: unknown or inactive envelope",
            details={
                "envelope_id": envelope_id,
                "issues": issues,
            },
            is_user_action=True,
        )

    @staticmethod
    def target_not_found(
        entity_type: str,
        entity_id: str,
        command: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TARGET_NOT_FOUND,
            severity=AuditSeverity.WARNING,
            entity_type=entity_type,
            entity_id=entity_id,
            description=f"{command} ignored: {entity_type} not found",
            details={
                "command": command,
            },
        )

    @staticmethod
    def month_copied(
        source_month: str,
        target_month: str,
        allocations: int,
        dropped: list[str],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MONTH_COPIED,
            entity_type="month",
            entity_id=target_month,
            description=f"Copied plan from {source_month} to {target_month}",
            details={
                "source_month": source_month,
                "allocations_copied": allocations,
                "dropped_envelope_ids": dropped,
            },
            is_user_action=True,
        )

    @staticmethod
    def month_cleared(
        month: str,
        transactions: int,
        income_sources: int,
        allocations: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MONTH_CLEARED,
            severity=AuditSeverity.WARNING,
            entity_type="month",
            entity_id=month,
            correlation_id=correlation_id,
            description=f"Started fresh: cleared {month}",
            details={
                "transactions": transactions,
                "income_sources": income_sources,
                "allocations": allocations,
            },
            is_user_action=True,
        )

    @staticmethod
    def piggybank_contribution_created(
        envelope_id: str,
        month: str,
        amount: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PIGGYBANK_CONTRIBUTION_CREATED,
            entity_type="envelope",
            entity_id=envelope_id,
            description=f"Automatic contribution for {month}: {amount}",
            details={
                "month": month,
                "amount": amount,
            },
        )

    @staticmethod
    def funds_distributed(
        month: str,
        allocated: dict[str, str],
        rejected: list[str],
        template_id: Optional[str] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.FUNDS_DISTRIBUTED,
            entity_type="month",
            entity_id=month,
            description=f"Distributed funds to {len(allocated)} envelope(s) for {month}",
            details={
                "allocated": allocated,
                "rejected_envelope_ids": rejected,
                "template_id": template_id,
            },
            is_user_action=True,
        )

    @staticmethod
    def envelope_deleted(
        envelope_id: str,
        name: str,
        piggybank: bool,
        cascaded: dict[str, int],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ENVELOPE_DELETED,
            severity=AuditSeverity.WARNING,
            entity_type="envelope",
            entity_id=envelope_id,
            correlation_id=correlation_id,
            description=(
                f"Piggybank deactivated: {name}" if piggybank
                else f"Envelope deleted: {name}"
            ),
            details=cascaded,
            is_user_action=True,
        )

    @staticmethod
    def data_loaded(
        counts: dict[str, int],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DATA_LOADED,
            entity_type="dataset",
            description="Loaded data from storage",
            details=counts,
        )

    @staticmethod
    def data_imported(
        counts: dict[str, int],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DATA_IMPORTED,
            severity=AuditSeverity.WARNING,
            entity_type="dataset",
            description="Replaced local data from a backup",
            details=counts,
            is_user_action=True,
        )

    @staticmethod
    def connectivity_changed(
        online: bool,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CONNECTIVITY_CHANGED,
            severity=AuditSeverity.INFO if online else AuditSeverity.WARNING,
            description="Back online" if online else "Connection lost",
            details={
                "online": online,
            },
        )

