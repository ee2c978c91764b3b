"""
Synchronization Models

Vocabulary shared by the coordinator, the engine and the audit trail.
"""

from enum import Enum


class SyncState(str, Enum):
    """
    Lifecycle of one mutating command.

    LOCAL_PENDING is the only non-terminal state. OFFLINE_RETAINED is
    terminal for the attempt but the command is resent by flush_pending().
    """
    LOCAL_PENDING = "local_pending"
    CONFIRMED = "confirmed"
    OFFLINE_RETAINED = "offline_retained"
    ROLLED_BACK = "rolled_back"


class OperationKind(str, Enum):
    """Remote write issued on behalf of a command."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class Collection(str, Enum):
    """Document collections the engine persists, named as on the wire."""
    ENVELOPES = "envelopes"
    TRANSACTIONS = "transactions"
    INCOME_SOURCES = "incomeSources"
    ALLOCATIONS = "allocations"
    CATEGORIES = "categories"
    DISTRIBUTION_TEMPLATES = "distributionTemplates"
