"""
In-memory cluster store.

Behaves like a small API server: objects are copied on the way in and out,
every write bumps a store-wide resource version, spec changes bump the
BoundEndpoint generation, stale writes are rejected, and every change is
fanned out to subscribers as a ``StoreEvent``.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
from collections import defaultdict
from dataclasses import dataclass

from loguru import logger

from kubebind.core.errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    StoreError,
)
from kubebind.datastructures.bound_endpoint import (
    BoundEndpoint,
    KubernetesOperator,
    Service,
    object_key,
)
from kubebind.datastructures.type_aliases import (
    LabelMap,
    NamespaceName,
    ObjectKey,
    ObjectName,
)
from kubebind.store.interfaces import EventType, ResourceKind, StoreEvent

store_log = logger


@dataclass(slots=True)
class _InjectedFailure:
    error: Exception
    remaining: int


class InMemoryClusterStore:
    """A ``ClusterStore`` backed by dicts; used by tests and the CLI demo."""

    def __init__(self, namespaces: list[NamespaceName] | None = None) -> None:
        self._bound_endpoints: dict[ObjectKey, BoundEndpoint] = {}
        self._services: dict[ObjectKey, Service] = {}
        self._secrets: dict[ObjectKey, dict[str, bytes]] = {}
        self._operators: dict[ObjectKey, KubernetesOperator] = {}
        self._namespaces: set[NamespaceName] = set(namespaces or [])
        self._versions = itertools.count(1)
        self._subscribers: list[asyncio.Queue[StoreEvent]] = []
        self._failures: dict[str, _InjectedFailure] = {}
        self.calls: defaultdict[str, int] = defaultdict(int)

    # test hooks

    def inject_failure(self, operation: str, error: Exception, times: int = 1) -> None:
        """Make the next ``times`` calls to ``operation`` raise ``error``."""
        self._failures[operation] = _InjectedFailure(error, times)

    def clear_failures(self) -> None:
        self._failures.clear()

    def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        failure = self._failures.get(operation)
        if failure is None:
            return
        failure.remaining -= 1
        if failure.remaining <= 0:
            del self._failures[operation]
        raise failure.error

    def _next_version(self) -> str:
        return str(next(self._versions))

    # events

    def subscribe(self) -> asyncio.Queue[StoreEvent]:
        queue: asyncio.Queue[StoreEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[StoreEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _emit(self, event: StoreEvent) -> None:
        for queue in self._subscribers:
            queue.put_nowait(event)

    # namespaces, secrets, operator

    def add_namespace(self, name: NamespaceName) -> None:
        if name not in self._namespaces:
            self._namespaces.add(name)
            self._emit(StoreEvent(ResourceKind.NAMESPACE, EventType.ADDED, name))

    def remove_namespace(self, name: NamespaceName) -> None:
        """Drop a namespace together with every Service in it."""
        if name not in self._namespaces:
            return
        for key in [k for k, svc in self._services.items() if svc.namespace == name]:
            removed = self._services.pop(key)
            self._emit(StoreEvent(ResourceKind.SERVICE, EventType.DELETED, removed))
        self._namespaces.discard(name)
        self._emit(StoreEvent(ResourceKind.NAMESPACE, EventType.DELETED, name))

    async def namespace_exists(self, name: NamespaceName) -> bool:
        self._enter("namespace_exists")
        return name in self._namespaces

    def put_secret(self, namespace: NamespaceName, name: ObjectName, data: dict[str, bytes]) -> None:
        self._secrets[object_key(namespace, name)] = dict(data)

    async def get_secret(self, namespace: NamespaceName, name: ObjectName) -> dict[str, bytes]:
        self._enter("get_secret")
        try:
            return dict(self._secrets[object_key(namespace, name)])
        except KeyError:
            raise NotFoundError(f"secret {namespace}/{name} not found") from None

    def put_operator(self, operator: KubernetesOperator) -> None:
        self._operators[object_key(operator.namespace, operator.name)] = copy.deepcopy(operator)

    async def get_operator(self, namespace: NamespaceName, name: ObjectName) -> KubernetesOperator:
        self._enter("get_operator")
        try:
            return copy.deepcopy(self._operators[object_key(namespace, name)])
        except KeyError:
            raise NotFoundError(f"operator {namespace}/{name} not found") from None

    # BoundEndpoints

    async def list_bound_endpoints(self, namespace: NamespaceName) -> list[BoundEndpoint]:
        self._enter("list_bound_endpoints")
        return [be.deepcopy() for be in self._bound_endpoints.values() if be.namespace == namespace]

    async def get_bound_endpoint(self, namespace: NamespaceName, name: ObjectName) -> BoundEndpoint:
        self._enter("get_bound_endpoint")
        try:
            return self._bound_endpoints[object_key(namespace, name)].deepcopy()
        except KeyError:
            raise NotFoundError(f"BoundEndpoint {namespace}/{name} not found") from None

    async def create_bound_endpoint(self, be: BoundEndpoint) -> BoundEndpoint:
        self._enter("create_bound_endpoint")
        if not be.name or not be.namespace:
            raise StoreError("BoundEndpoint needs a name and a namespace")
        if be.key in self._bound_endpoints:
            raise AlreadyExistsError(f"BoundEndpoint {be.key} already exists")

        stored = be.deepcopy()
        stored.metadata.generation = 1
        stored.metadata.resource_version = self._next_version()
        self._bound_endpoints[stored.key] = stored
        store_log.debug("Created BoundEndpoint {}", stored.key)
        self._emit(StoreEvent(ResourceKind.BOUND_ENDPOINT, EventType.ADDED, stored.deepcopy()))
        return stored.deepcopy()

    def _current(self, be: BoundEndpoint) -> BoundEndpoint:
        current = self._bound_endpoints.get(be.key)
        if current is None:
            raise NotFoundError(f"BoundEndpoint {be.key} not found")
        if (
            be.metadata.resource_version
            and be.metadata.resource_version != current.metadata.resource_version
        ):
            raise ConflictError(
                f"BoundEndpoint {be.key} was modified (have {be.metadata.resource_version}, "
                f"stored {current.metadata.resource_version})"
            )
        return current

    def _replace(self, old: BoundEndpoint, new: BoundEndpoint) -> BoundEndpoint:
        new.metadata.resource_version = self._next_version()
        self._bound_endpoints[new.key] = new
        self._emit(
            StoreEvent(
                ResourceKind.BOUND_ENDPOINT, EventType.MODIFIED, new.deepcopy(), old.deepcopy()
            )
        )
        return new.deepcopy()

    async def update_bound_endpoint(self, be: BoundEndpoint) -> BoundEndpoint:
        """Write metadata and spec; status is left as stored."""
        self._enter("update_bound_endpoint")
        current = self._current(be)
        updated = current.deepcopy()
        updated.spec = copy.deepcopy(be.spec)
        updated.metadata.labels = dict(be.metadata.labels)
        updated.metadata.annotations = dict(be.metadata.annotations)
        if updated.spec.to_dict() != current.spec.to_dict():
            updated.metadata.generation += 1
        return self._replace(current, updated)

    async def update_bound_endpoint_status(self, be: BoundEndpoint) -> BoundEndpoint:
        """Write status only."""
        self._enter("update_bound_endpoint_status")
        current = self._current(be)
        updated = current.deepcopy()
        updated.status = copy.deepcopy(be.status)
        return self._replace(current, updated)

    async def delete_bound_endpoint(self, namespace: NamespaceName, name: ObjectName) -> None:
        self._enter("delete_bound_endpoint")
        removed = self._bound_endpoints.pop(object_key(namespace, name), None)
        if removed is None:
            raise NotFoundError(f"BoundEndpoint {namespace}/{name} not found")
        store_log.debug("Deleted BoundEndpoint {}", removed.key)
        self._emit(StoreEvent(ResourceKind.BOUND_ENDPOINT, EventType.DELETED, removed))

    # Services

    async def get_service(self, namespace: NamespaceName, name: ObjectName) -> Service:
        self._enter("get_service")
        try:
            return copy.deepcopy(self._services[object_key(namespace, name)])
        except KeyError:
            raise NotFoundError(f"Service {namespace}/{name} not found") from None

    async def create_service(self, service: Service) -> Service:
        self._enter("create_service")
        if service.namespace not in self._namespaces:
            raise NotFoundError(f"namespace {service.namespace} not found")
        if service.key in self._services:
            raise AlreadyExistsError(f"Service {service.key} already exists")
        stored = copy.deepcopy(service)
        stored.metadata.resource_version = self._next_version()
        self._services[stored.key] = stored
        self._emit(StoreEvent(ResourceKind.SERVICE, EventType.ADDED, copy.deepcopy(stored)))
        return copy.deepcopy(stored)

    async def update_service(self, service: Service) -> Service:
        self._enter("update_service")
        current = self._services.get(service.key)
        if current is None:
            raise NotFoundError(f"Service {service.key} not found")
        if (
            service.metadata.resource_version
            and service.metadata.resource_version != current.metadata.resource_version
        ):
            raise ConflictError(f"Service {service.key} was modified")
        stored = copy.deepcopy(service)
        stored.metadata.resource_version = self._next_version()
        self._services[stored.key] = stored
        self._emit(
            StoreEvent(
                ResourceKind.SERVICE, EventType.MODIFIED, copy.deepcopy(stored), current
            )
        )
        return copy.deepcopy(stored)

    async def delete_service(self, namespace: NamespaceName, name: ObjectName) -> None:
        self._enter("delete_service")
        removed = self._services.pop(object_key(namespace, name), None)
        if removed is None:
            raise NotFoundError(f"Service {namespace}/{name} not found")
        self._emit(StoreEvent(ResourceKind.SERVICE, EventType.DELETED, removed))

    async def list_services(
        self, labels: LabelMap, namespace: NamespaceName | None = None
    ) -> list[Service]:
        self._enter("list_services")
        return [
            copy.deepcopy(svc)
            for svc in self._services.values()
            if (namespace is None or svc.namespace == namespace)
            and all(svc.metadata.labels.get(k) == v for k, v in labels.items())
        ]
