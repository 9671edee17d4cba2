"""
Cluster store backed by the official ``kubernetes`` client.

The client is synchronous; every call runs in a worker thread via
``asyncio.to_thread``. Watches run on daemon threads and hand events back to
the event loop with ``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import base64
import threading
from collections.abc import Callable, Iterator
from typing import Any

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from loguru import logger

from kubebind.core.errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    StoreError,
)
from kubebind.datastructures.bound_endpoint import (
    BINDINGS_GROUP,
    BINDINGS_VERSION,
    BOUND_ENDPOINT_PLURAL,
    OPERATOR_GROUP,
    OPERATOR_PLURAL,
    OPERATOR_VERSION,
    BoundEndpoint,
    KubernetesOperator,
    Service,
)
from kubebind.datastructures.type_aliases import (
    JsonDict,
    LabelMap,
    NamespaceName,
    ObjectKey,
    ObjectName,
)
from kubebind.store.interfaces import EventType, ResourceKind, StoreEvent

k8s_log = logger

WATCH_TIMEOUT_SECONDS = 300
WATCH_RESTART_BACKOFF = 1.0


def _label_selector(labels: LabelMap) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def _translate(e: ApiException, what: str) -> StoreError:
    if e.status == 404:
        return NotFoundError(f"{what} not found")
    if e.status == 409:
        if "AlreadyExists" in (e.body or "") or e.reason == "AlreadyExists":
            return AlreadyExistsError(f"{what} already exists")
        return ConflictError(f"{what} was modified: {e.reason}")
    return StoreError(f"{what}: {e.status} {e.reason}")


def load_kube_config() -> None:
    """Load in-cluster config, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
    except ConfigException:
        config.load_kube_config()


class KubernetesClusterStore:
    """A ``ClusterStore`` talking to the Kubernetes API server."""

    def __init__(
        self,
        namespace: NamespaceName,
        service_labels: LabelMap,
        api_client: client.ApiClient | None = None,
    ) -> None:
        self.namespace = namespace
        self.service_labels = dict(service_labels)
        self.api_client = api_client or client.ApiClient()
        self.core = client.CoreV1Api(self.api_client)
        self.custom = client.CustomObjectsApi(self.api_client)
        self._watchers: dict[int, threading.Event] = {}
        self.watch_backoff = WATCH_RESTART_BACKOFF

    async def _call(self, what: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ApiException as e:
            raise _translate(e, what) from e

    def _to_dict(self, obj: Any) -> JsonDict:
        return self.api_client.sanitize_for_serialization(obj)

    # BoundEndpoints

    def _be_args(self, namespace: NamespaceName) -> dict[str, str]:
        return {
            "group": BINDINGS_GROUP,
            "version": BINDINGS_VERSION,
            "namespace": namespace,
            "plural": BOUND_ENDPOINT_PLURAL,
        }

    async def list_bound_endpoints(self, namespace: NamespaceName) -> list[BoundEndpoint]:
        result = await self._call(
            f"BoundEndpoints in {namespace}",
            self.custom.list_namespaced_custom_object,
            **self._be_args(namespace),
        )
        return [BoundEndpoint.from_dict(item) for item in result.get("items", [])]

    async def get_bound_endpoint(self, namespace: NamespaceName, name: ObjectName) -> BoundEndpoint:
        result = await self._call(
            f"BoundEndpoint {namespace}/{name}",
            self.custom.get_namespaced_custom_object,
            name=name,
            **self._be_args(namespace),
        )
        return BoundEndpoint.from_dict(result)

    async def create_bound_endpoint(self, be: BoundEndpoint) -> BoundEndpoint:
        body = be.to_dict()
        body.pop("status", None)
        result = await self._call(
            f"BoundEndpoint {be.key}",
            self.custom.create_namespaced_custom_object,
            body=body,
            **self._be_args(be.namespace),
        )
        return BoundEndpoint.from_dict(result)

    async def update_bound_endpoint(self, be: BoundEndpoint) -> BoundEndpoint:
        result = await self._call(
            f"BoundEndpoint {be.key}",
            self.custom.replace_namespaced_custom_object,
            name=be.name,
            body=be.to_dict(),
            **self._be_args(be.namespace),
        )
        return BoundEndpoint.from_dict(result)

    async def update_bound_endpoint_status(self, be: BoundEndpoint) -> BoundEndpoint:
        result = await self._call(
            f"BoundEndpoint {be.key} status",
            self.custom.replace_namespaced_custom_object_status,
            name=be.name,
            body=be.to_dict(),
            **self._be_args(be.namespace),
        )
        return BoundEndpoint.from_dict(result)

    async def delete_bound_endpoint(self, namespace: NamespaceName, name: ObjectName) -> None:
        await self._call(
            f"BoundEndpoint {namespace}/{name}",
            self.custom.delete_namespaced_custom_object,
            name=name,
            **self._be_args(namespace),
        )

    # Services

    async def get_service(self, namespace: NamespaceName, name: ObjectName) -> Service:
        result = await self._call(
            f"Service {namespace}/{name}", self.core.read_namespaced_service, name, namespace
        )
        return Service.from_dict(self._to_dict(result))

    async def create_service(self, service: Service) -> Service:
        result = await self._call(
            f"Service {service.key}",
            self.core.create_namespaced_service,
            service.namespace,
            service.to_dict(),
        )
        return Service.from_dict(self._to_dict(result))

    async def update_service(self, service: Service) -> Service:
        # patch rather than replace: clusterIP and friends are immutable
        body = {
            "metadata": {
                "labels": service.metadata.labels,
                "annotations": service.metadata.annotations,
            },
            "spec": service.spec_dict(),
        }
        result = await self._call(
            f"Service {service.key}",
            self.core.patch_namespaced_service,
            service.name,
            service.namespace,
            body,
        )
        return Service.from_dict(self._to_dict(result))

    async def delete_service(self, namespace: NamespaceName, name: ObjectName) -> None:
        await self._call(
            f"Service {namespace}/{name}", self.core.delete_namespaced_service, name, namespace
        )

    async def list_services(
        self, labels: LabelMap, namespace: NamespaceName | None = None
    ) -> list[Service]:
        selector = _label_selector(labels)
        if namespace is None:
            result = await self._call(
                "Services",
                self.core.list_service_for_all_namespaces,
                label_selector=selector,
            )
        else:
            result = await self._call(
                f"Services in {namespace}",
                self.core.list_namespaced_service,
                namespace,
                label_selector=selector,
            )
        return [Service.from_dict(self._to_dict(item)) for item in result.items]

    # namespaces, secrets, operator

    async def namespace_exists(self, name: NamespaceName) -> bool:
        try:
            await self._call(f"namespace {name}", self.core.read_namespace, name)
        except NotFoundError:
            return False
        return True

    async def get_secret(self, namespace: NamespaceName, name: ObjectName) -> dict[str, bytes]:
        result = await self._call(
            f"secret {namespace}/{name}", self.core.read_namespaced_secret, name, namespace
        )
        return {key: base64.b64decode(value) for key, value in (result.data or {}).items()}

    async def get_operator(self, namespace: NamespaceName, name: ObjectName) -> KubernetesOperator:
        result = await self._call(
            f"operator {namespace}/{name}",
            self.custom.get_namespaced_custom_object,
            group=OPERATOR_GROUP,
            version=OPERATOR_VERSION,
            namespace=namespace,
            plural=OPERATOR_PLURAL,
            name=name,
        )
        return KubernetesOperator.from_dict(result)

    # watches

    def subscribe(self) -> asyncio.Queue[StoreEvent]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[StoreEvent] = asyncio.Queue()
        stop = threading.Event()
        self._watchers[id(queue)] = stop

        sources: list[tuple[str, Callable[[], Iterator[StoreEvent]]]] = [
            ("boundendpoints", lambda: self._watch_bound_endpoints(stop)),
            ("services", lambda: self._watch_services(stop)),
            ("namespaces", lambda: self._watch_namespaces(stop)),
        ]
        for name, source in sources:
            thread = threading.Thread(
                target=self._pump,
                args=(name, source, loop, queue, stop),
                name=f"kubebind-watch-{name}",
                daemon=True,
            )
            thread.start()
        return queue

    def unsubscribe(self, queue: asyncio.Queue[StoreEvent]) -> None:
        stop = self._watchers.pop(id(queue), None)
        if stop is not None:
            stop.set()

    def _pump(
        self,
        name: str,
        source: Callable[[], Iterator[StoreEvent]],
        loop: asyncio.AbstractEventLoop,
        queue: asyncio.Queue[StoreEvent],
        stop: threading.Event,
    ) -> None:
        while not stop.is_set():
            try:
                for event in source():
                    if stop.is_set():
                        return
                    loop.call_soon_threadsafe(queue.put_nowait, event)
            except ApiException as e:
                k8s_log.warning("Watch {} failed: {} {}, restarting", name, e.status, e.reason)
                stop.wait(self.watch_backoff)
            except Exception:
                if loop.is_closed():
                    return
                # dropped streams (urllib3 ProtocolError and friends) restart the watch
                k8s_log.exception("Watch {} broke, restarting in {}s", name, self.watch_backoff)
                stop.wait(self.watch_backoff)

    def _stream(self, stop: threading.Event, fn: Callable[..., Any], **kwargs: Any) -> Iterator[dict[str, Any]]:
        w = watch.Watch()
        try:
            for event in w.stream(fn, timeout_seconds=WATCH_TIMEOUT_SECONDS, **kwargs):
                if stop.is_set():
                    return
                yield event
        finally:
            w.stop()

    def _watch_bound_endpoints(self, stop: threading.Event) -> Iterator[StoreEvent]:
        seen: dict[ObjectKey, BoundEndpoint] = {}
        for raw in self._stream(
            stop, self.custom.list_namespaced_custom_object, **self._be_args(self.namespace)
        ):
            if raw["type"] not in EventType.__members__:
                continue
            event_type = EventType(raw["type"])
            be = BoundEndpoint.from_dict(raw["object"])
            old = seen.get(be.key)
            if event_type is EventType.DELETED:
                seen.pop(be.key, None)
            else:
                seen[be.key] = be
            yield StoreEvent(ResourceKind.BOUND_ENDPOINT, event_type, be, old)

    def _watch_services(self, stop: threading.Event) -> Iterator[StoreEvent]:
        for raw in self._stream(
            stop,
            self.core.list_service_for_all_namespaces,
            label_selector=_label_selector(self.service_labels),
        ):
            if raw["type"] not in EventType.__members__:
                continue
            service = Service.from_dict(self._to_dict(raw["object"]))
            yield StoreEvent(ResourceKind.SERVICE, EventType(raw["type"]), service)

    def _watch_namespaces(self, stop: threading.Event) -> Iterator[StoreEvent]:
        for raw in self._stream(stop, self.core.list_namespace):
            if raw["type"] not in EventType.__members__:
                continue
            name = raw["object"].metadata.name
            yield StoreEvent(ResourceKind.NAMESPACE, EventType(raw["type"]), name)

    def __repr__(self) -> str:
        return f"KubernetesClusterStore(namespace={self.namespace!r})"
