"""Optimistic-update synchronization: change sets, temp ids, connectivity, coordinator."""

from envelope_budget.sync.changes import Change, ChangeSet
from envelope_budget.sync.connectivity import (
    ConnectivityProbe,
    HttpConnectivityProbe,
    StaticConnectivityProbe,
)
from envelope_budget.sync.coordinator import PendingCommand, SyncCoordinator, SyncTicket
from envelope_budget.sync.id_map import TempIdMap

__all__ = [
    "Change",
    "ChangeSet",
    "ConnectivityProbe",
    "HttpConnectivityProbe",
    "PendingCommand",
    "StaticConnectivityProbe",
    "SyncCoordinator",
    "SyncTicket",
    "TempIdMap",
]
