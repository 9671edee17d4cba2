"""Protocols and event types for the cluster store."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, TypeAlias

from kubebind.datastructures.bound_endpoint import (
    BoundEndpoint,
    KubernetesOperator,
    Service,
)
from kubebind.datastructures.type_aliases import (
    LabelMap,
    NamespaceName,
    ObjectName,
)


class ResourceKind(Enum):
    BOUND_ENDPOINT = "BoundEndpoint"
    SERVICE = "Service"
    NAMESPACE = "Namespace"


class EventType(Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


WatchedObject: TypeAlias = BoundEndpoint | Service | NamespaceName


@dataclass(frozen=True, slots=True)
class StoreEvent:
    """A change to a watched object.

    ``old`` is the previous version for MODIFIED events when the store knows
    it. Namespace events carry the namespace name as ``obj``.
    """

    kind: ResourceKind
    type: EventType
    obj: WatchedObject
    old: WatchedObject | None = None


class ClusterStore(Protocol):
    """Typed CRUD and watch access to the cluster.

    Reads raise ``NotFoundError``; creates raise ``AlreadyExistsError``;
    writes carrying a stale ``resource_version`` raise ``ConflictError``.
    """

    async def list_bound_endpoints(self, namespace: NamespaceName) -> list[BoundEndpoint]: ...

    async def get_bound_endpoint(
        self, namespace: NamespaceName, name: ObjectName
    ) -> BoundEndpoint: ...

    async def create_bound_endpoint(self, be: BoundEndpoint) -> BoundEndpoint: ...

    async def update_bound_endpoint(self, be: BoundEndpoint) -> BoundEndpoint: ...

    async def update_bound_endpoint_status(self, be: BoundEndpoint) -> BoundEndpoint: ...

    async def delete_bound_endpoint(self, namespace: NamespaceName, name: ObjectName) -> None: ...

    async def get_service(self, namespace: NamespaceName, name: ObjectName) -> Service: ...

    async def create_service(self, service: Service) -> Service: ...

    async def update_service(self, service: Service) -> Service: ...

    async def delete_service(self, namespace: NamespaceName, name: ObjectName) -> None: ...

    async def list_services(
        self, labels: LabelMap, namespace: NamespaceName | None = None
    ) -> list[Service]: ...

    async def namespace_exists(self, name: NamespaceName) -> bool: ...

    async def get_secret(self, namespace: NamespaceName, name: ObjectName) -> dict[str, bytes]: ...

    async def get_operator(
        self, namespace: NamespaceName, name: ObjectName
    ) -> KubernetesOperator: ...

    def subscribe(self) -> asyncio.Queue[StoreEvent]: ...

    def unsubscribe(self, queue: asyncio.Queue[StoreEvent]) -> None: ...
