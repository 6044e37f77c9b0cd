"""Access to the kubernetes cluster reconciled by the controllers."""

from .client import (
    ClusterClient,
    ClusterEvent,
    EventType,
    WatchEvent,
    WatchEventType,
)
from .in_memory import InMemoryClusterClient, resource_id_for

__all__ = [
    "ClusterClient",
    "ClusterEvent",
    "EventType",
    "WatchEvent",
    "WatchEventType",
    "InMemoryClusterClient",
    "resource_id_for",
]
