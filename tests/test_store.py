"""Tests for the in-memory cluster store and the Kubernetes store adapter."""

import asyncio
import threading

import pytest
from kubernetes.client import ApiClient
from kubernetes.client.rest import ApiException
from urllib3.exceptions import ProtocolError

from kubebind.core.errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    StoreError,
)
from kubebind.datastructures.bound_endpoint import (
    BoundEndpoint,
    BoundEndpointSpec,
    EndpointTarget,
    ObjectMeta,
    Service,
    ServicePort,
    ServiceType,
)
from kubebind.store.interfaces import EventType, ResourceKind, StoreEvent
from kubebind.store.kubernetes import KubernetesClusterStore, _label_selector, _translate

from .helpers import OPERATOR_NAMESPACE, TARGET_NAMESPACE


def make_be(name: str = "bound-a") -> BoundEndpoint:
    return BoundEndpoint(
        metadata=ObjectMeta(name=name, namespace=OPERATOR_NAMESPACE),
        spec=BoundEndpointSpec(
            endpoint_uri="http://web.ns:80",
            scheme="http",
            port=10000,
            target=EndpointTarget(service="web", namespace=TARGET_NAMESPACE, port=80),
        ),
    )


def make_service(namespace: str = TARGET_NAMESPACE) -> Service:
    return Service(
        metadata=ObjectMeta(name="web", namespace=namespace, labels={"a": "1", "b": "2"}),
        type=ServiceType.CLUSTER_IP,
        ports=[ServicePort(name="http", port=80, target_port=8080)],
    )


def drain(queue: asyncio.Queue) -> list:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


class TestInMemoryBoundEndpoints:
    @pytest.mark.asyncio
    async def test_generation_tracks_spec_changes(self, store):
        created = await store.create_bound_endpoint(make_be())
        assert created.metadata.generation == 1
        assert created.metadata.resource_version

        created.status.hashed_name = "bound-a"
        after_status = await store.update_bound_endpoint_status(created)
        assert after_status.metadata.generation == 1

        after_status.spec.allowed = False
        after_spec = await store.update_bound_endpoint(after_status)
        assert after_spec.metadata.generation == 2
        # spec writes keep the stored status
        assert after_spec.status.hashed_name == "bound-a"

    @pytest.mark.asyncio
    async def test_stale_write_conflicts(self, store):
        created = await store.create_bound_endpoint(make_be())
        stale = created.deepcopy()
        created.status.hashed_name = "x"
        await store.update_bound_endpoint_status(created)

        with pytest.raises(ConflictError):
            await store.update_bound_endpoint_status(stale)

    @pytest.mark.asyncio
    async def test_create_twice_and_missing(self, store):
        await store.create_bound_endpoint(make_be())
        with pytest.raises(AlreadyExistsError):
            await store.create_bound_endpoint(make_be())
        with pytest.raises(NotFoundError):
            await store.get_bound_endpoint(OPERATOR_NAMESPACE, "nope")
        with pytest.raises(NotFoundError):
            await store.delete_bound_endpoint(OPERATOR_NAMESPACE, "nope")

    @pytest.mark.asyncio
    async def test_returned_objects_are_copies(self, store):
        created = await store.create_bound_endpoint(make_be())
        created.spec.port = 1
        assert (await store.get_bound_endpoint(OPERATOR_NAMESPACE, "bound-a")).spec.port == 10000

    @pytest.mark.asyncio
    async def test_events(self, store):
        events = store.subscribe()
        created = await store.create_bound_endpoint(make_be())
        created.spec.port = 10001
        await store.update_bound_endpoint(created)
        await store.delete_bound_endpoint(OPERATOR_NAMESPACE, "bound-a")

        seen = drain(events)
        assert [e.type for e in seen] == [EventType.ADDED, EventType.MODIFIED, EventType.DELETED]
        assert all(e.kind is ResourceKind.BOUND_ENDPOINT for e in seen)
        assert seen[1].old.spec.port == 10000
        assert seen[1].obj.spec.port == 10001

        store.unsubscribe(events)
        await store.create_bound_endpoint(make_be())
        assert events.empty()

    @pytest.mark.asyncio
    async def test_injected_failure(self, store):
        store.inject_failure("list_bound_endpoints", StoreError("boom"), times=2)
        for _ in range(2):
            with pytest.raises(StoreError):
                await store.list_bound_endpoints(OPERATOR_NAMESPACE)
        assert await store.list_bound_endpoints(OPERATOR_NAMESPACE) == []
        assert store.calls["list_bound_endpoints"] == 3


class TestInMemoryServices:
    @pytest.mark.asyncio
    async def test_namespace_must_exist(self, store):
        with pytest.raises(NotFoundError):
            await store.create_service(make_service("nowhere"))

    @pytest.mark.asyncio
    async def test_list_by_labels(self, store):
        await store.create_service(make_service())
        assert len(await store.list_services({"a": "1"})) == 1
        assert len(await store.list_services({"a": "1"}, namespace=OPERATOR_NAMESPACE)) == 0
        assert await store.list_services({"a": "2"}) == []

    @pytest.mark.asyncio
    async def test_remove_namespace_drops_services(self, store):
        events = store.subscribe()
        await store.create_service(make_service())
        store.remove_namespace(TARGET_NAMESPACE)

        assert not await store.namespace_exists(TARGET_NAMESPACE)
        with pytest.raises(NotFoundError):
            await store.get_service(TARGET_NAMESPACE, "web")
        kinds = [(e.kind, e.type) for e in drain(events)]
        assert kinds == [
            (ResourceKind.SERVICE, EventType.ADDED),
            (ResourceKind.SERVICE, EventType.DELETED),
            (ResourceKind.NAMESPACE, EventType.DELETED),
        ]

    @pytest.mark.asyncio
    async def test_secret_and_operator_lookups(self, store):
        with pytest.raises(NotFoundError):
            await store.get_secret(OPERATOR_NAMESPACE, "tls")
        with pytest.raises(NotFoundError):
            await store.get_operator(OPERATOR_NAMESPACE, "op")
        store.put_secret(OPERATOR_NAMESPACE, "tls", {"tls.crt": b"c"})
        assert await store.get_secret(OPERATOR_NAMESPACE, "tls") == {"tls.crt": b"c"}


class TestKubernetesTranslation:
    @pytest.mark.parametrize(
        ("status", "reason", "expected"),
        [
            (404, "Not Found", NotFoundError),
            (409, "AlreadyExists", AlreadyExistsError),
            (409, "Conflict", ConflictError),
            (500, "Internal Server Error", StoreError),
        ],
    )
    def test_translate(self, status, reason, expected):
        error = _translate(ApiException(status=status, reason=reason), "BoundEndpoint a/b")
        assert type(error) is expected
        assert "BoundEndpoint a/b" in str(error)

    def test_label_selector_is_sorted(self):
        assert _label_selector({"b": "2", "a": "1"}) == "a=1,b=2"


class TestKubernetesWatchPump:
    @pytest.mark.asyncio
    async def test_dropped_stream_is_restarted(self):
        store = KubernetesClusterStore(OPERATOR_NAMESPACE, {}, api_client=ApiClient())
        store.watch_backoff = 0.01
        queue: asyncio.Queue = asyncio.Queue()
        stop = threading.Event()
        calls = []

        def source():
            calls.append(1)
            if len(calls) == 1:
                raise ProtocolError("Connection broken: IncompleteRead")
            yield StoreEvent(ResourceKind.NAMESPACE, EventType.ADDED, TARGET_NAMESPACE)
            stop.wait()

        thread = threading.Thread(
            target=store._pump,
            args=("namespaces", source, asyncio.get_running_loop(), queue, stop),
            daemon=True,
        )
        thread.start()
        try:
            event = await asyncio.wait_for(queue.get(), timeout=2.0)
        finally:
            stop.set()
            await asyncio.to_thread(thread.join, 2.0)

        assert event.kind is ResourceKind.NAMESPACE
        assert event.obj == TARGET_NAMESPACE
        assert len(calls) == 2
        assert not thread.is_alive()
