"""Cluster state access."""

from .interfaces import ClusterStore, EventType, ResourceKind, StoreEvent
from .memory import InMemoryClusterStore

__all__ = ["ClusterStore", "EventType", "InMemoryClusterStore", "ResourceKind", "StoreEvent"]
