"""Client library: session supervisor, reconciliation store and transports."""

from .reconciliation import (
    CONFIRMED,
    Confirmed,
    DeliveryState,
    Entry,
    Failed,
    Pending,
    ReconciliationStore,
    ThreadView,
    merge_message,
)
from .supervisor import SessionSupervisor, SupervisorState
from .transport import RestClient, Transport, WebSocketTransport

__all__ = [
    "CONFIRMED",
    "Confirmed",
    "DeliveryState",
    "Entry",
    "Failed",
    "Pending",
    "ReconciliationStore",
    "ThreadView",
    "merge_message",
    "SessionSupervisor",
    "SupervisorState",
    "RestClient",
    "Transport",
    "WebSocketTransport",
]
