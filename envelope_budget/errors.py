"""
Error Taxonomy

Propagation policy:
- ValidationError and the offline family are absorbed by the engine.
- RemoteWriteError reaches the caller (awaited sync ticket, sync_error event).
- NotFoundError is logged and the command becomes a no-op.
"""

from typing import Optional


class BudgetError(Exception):
    """Base exception for the budget engine."""
    pass


class ValidationError(BudgetError):
    """A record references an envelope that is missing or inactive."""

    def __init__(self, message: str, issues: Optional[list[str]] = None):
        super().__init__(message)
        self.issues = issues or []


class NotFoundError(BudgetError):
    """Update or delete target does not exist locally."""

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(f"{entity_type} not found: {entity_id}")
        self.entity_type = entity_type
        self.entity_id = entity_id


class OfflineError(BudgetError):
    """The store could not be reached; the mutation stays local."""
    pass


class NetworkTimeoutError(OfflineError):
    """A remote confirmation did not complete within the timeout."""
    pass


class RemoteWriteError(BudgetError):
    """
    The store answered and refused the write.

    The local mutation has already been rolled back when this is raised.
    """

    def __init__(self, command: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"{command} failed: {message}")
        self.command = command
        self.cause = cause


class WireFormatError(BudgetError):
    """An external record could not be normalized."""

    def __init__(self, collection: str, message: str):
        super().__init__(f"Invalid {collection} record: {message}")
        self.collection = collection


class PendingSyncError(BudgetError):
    """Local state cannot be replaced while commands await confirmation."""

    def __init__(self, pending: int):
        super().__init__(f"{pending} command(s) are still waiting for storage")
        self.pending = pending
