"""Tests for the event-driven BoundEndpoint reconciler."""

import asyncio

import pytest
import pytest_asyncio

from kubebind.bindings.identity import hash_uri
from kubebind.bindings.reconciler import BoundEndpointReconciler
from kubebind.bindings.services import (
    ANNOTATION_ENDPOINT_URL,
    LABEL_BOUND_ENDPOINT_NAME,
    LABEL_BOUND_ENDPOINT_NAMESPACE,
    LABEL_MANAGED_BY,
    owner_labels,
)
from kubebind.core.errors import StoreError
from kubebind.datastructures.bound_endpoint import (
    BindingEndpoint,
    BindingEndpointStatus,
    BoundEndpoint,
    BoundEndpointSpec,
    ConditionStatus,
    EndpointRef,
    EndpointTarget,
    ObjectMeta,
    Service,
    ServicePort,
    ServiceType,
)
from kubebind.datastructures.conditions import (
    CONDITION_CONNECTIVITY_VERIFIED,
    CONDITION_READY,
    CONDITION_SERVICES_CREATED,
    REASON_CONNECTIVITY_FAILED,
    REASON_DENIED,
    REASON_SERVICE_CREATION_FAILED,
    find_condition,
)
from kubebind.store.interfaces import EventType, ResourceKind, StoreEvent

from .helpers import OPERATOR_NAMESPACE, TARGET_NAMESPACE, wait_for


def make_bound_endpoint(
    uri: str = "http://web.ns:80",
    port: int = 10000,
    allowed: bool = True,
    service: str = "web",
    namespace: str = TARGET_NAMESPACE,
    target_port: int = 80,
) -> BoundEndpoint:
    return BoundEndpoint(
        metadata=ObjectMeta(name=hash_uri(uri), namespace=OPERATOR_NAMESPACE),
        spec=BoundEndpointSpec(
            endpoint_uri=uri,
            scheme=uri.split("://")[0],
            port=port,
            allowed=allowed,
            target=EndpointTarget(service=service, namespace=namespace, port=target_port),
        ),
    )


async def create_with_refs(store, be: BoundEndpoint, *ids: str) -> BoundEndpoint:
    created = await store.create_bound_endpoint(be)
    created.status.endpoints = [
        BindingEndpoint(ref=EndpointRef(id=i), status=BindingEndpointStatus.PROVISIONING)
        for i in ids
    ]
    created.status.hashed_name = created.name
    return await store.update_bound_endpoint_status(created)


def condition_status(be: BoundEndpoint, condition_type: str) -> ConditionStatus | None:
    condition = find_condition(be.status.conditions, condition_type)
    return condition.status if condition is not None else None


class Dialer:
    """Records every dial and either connects to ``address`` or refuses."""

    def __init__(self, address: tuple[str, int] | None = None) -> None:
        self.address = address
        self.dials: list[tuple[str, int]] = []

    async def __call__(self, host: str, port: int):
        self.dials.append((host, port))
        if self.address is None:
            raise ConnectionRefusedError(f"connect to {host}:{port} refused")
        return await asyncio.open_connection(*self.address)


@pytest.fixture
def dialer(echo_server):
    return Dialer(echo_server)


@pytest_asyncio.fixture
async def reconciler(settings, store, dialer):
    r = BoundEndpointReconciler(settings, store, dialer=dialer)
    yield r
    await r.stop()


class TestReconcile:
    @pytest.mark.asyncio
    async def test_provisions_services_and_binds(self, reconciler, store, dialer):
        be = await create_with_refs(store, make_bound_endpoint(), "ep_1", "ep_2")

        await reconciler.reconcile(be.key)

        target = await store.get_service(TARGET_NAMESPACE, "web")
        assert target.type is ServiceType.EXTERNAL_NAME
        assert target.external_name == f"{be.name}.{OPERATOR_NAMESPACE}.svc.cluster.local"
        assert target.ports == [ServicePort(name="http", port=80, target_port=80)]
        assert target.metadata.labels[LABEL_MANAGED_BY] == "kubebind"
        assert target.metadata.labels[LABEL_BOUND_ENDPOINT_NAME] == be.name
        assert target.metadata.labels[LABEL_BOUND_ENDPOINT_NAMESPACE] == OPERATOR_NAMESPACE

        upstream = await store.get_service(OPERATOR_NAMESPACE, be.name)
        assert upstream.type is ServiceType.CLUSTER_IP
        assert upstream.ports == [ServicePort(name="http", port=80, target_port=10000)]
        assert upstream.selector == {"app.kubernetes.io/component": "bindings-forwarder"}
        assert upstream.metadata.annotations[ANNOTATION_ENDPOINT_URL] == target.external_name

        assert dialer.dials == [("web.ns", 80)]

        stored = await store.get_bound_endpoint(OPERATOR_NAMESPACE, be.name)
        assert condition_status(stored, CONDITION_SERVICES_CREATED) is ConditionStatus.TRUE
        assert condition_status(stored, CONDITION_CONNECTIVITY_VERIFIED) is ConditionStatus.TRUE
        assert condition_status(stored, CONDITION_READY) is ConditionStatus.TRUE
        assert [e.status for e in stored.status.endpoints] == [BindingEndpointStatus.BOUND] * 2
        assert all(e.error_code == "" for e in stored.status.endpoints)
        assert stored.status.target_service_ref.name == "web"
        assert stored.status.target_service_ref.namespace == TARGET_NAMESPACE
        assert stored.status.upstream_service_ref.name == be.name
        # refs and summary are left alone
        assert [e.ref.id for e in stored.status.endpoints] == ["ep_1", "ep_2"]
        assert stored.status.hashed_name == be.name

    @pytest.mark.asyncio
    async def test_second_reconcile_does_not_touch_services(self, reconciler, store):
        be = await create_with_refs(store, make_bound_endpoint(), "ep_1")
        await reconciler.reconcile(be.key)
        await reconciler.reconcile(be.key)

        assert store.calls["create_service"] == 2
        assert store.calls["update_service"] == 0

    @pytest.mark.asyncio
    async def test_drifted_service_is_restored(self, reconciler, store):
        be = await create_with_refs(store, make_bound_endpoint(), "ep_1")
        await reconciler.reconcile(be.key)

        target = await store.get_service(TARGET_NAMESPACE, "web")
        target.external_name = "somewhere.else"
        await store.update_service(target)

        await reconciler.reconcile(be.key)

        restored = await store.get_service(TARGET_NAMESPACE, "web")
        assert restored.external_name == f"{be.name}.{OPERATOR_NAMESPACE}.svc.cluster.local"

    @pytest.mark.asyncio
    async def test_connectivity_failure(self, settings, store):
        dialer = Dialer()
        reconciler = BoundEndpointReconciler(settings, store, dialer=dialer)
        try:
            be = await create_with_refs(store, make_bound_endpoint(), "ep_1")
            await reconciler.reconcile(be.key)
        finally:
            await reconciler.stop()

        assert len(dialer.dials) == settings.connectivity_attempts
        stored = await store.get_bound_endpoint(OPERATOR_NAMESPACE, be.name)
        assert condition_status(stored, CONDITION_SERVICES_CREATED) is ConditionStatus.TRUE
        assert condition_status(stored, CONDITION_CONNECTIVITY_VERIFIED) is ConditionStatus.FALSE
        ready = find_condition(stored.status.conditions, CONDITION_READY)
        assert ready.status is ConditionStatus.FALSE
        assert ready.reason == REASON_CONNECTIVITY_FAILED
        endpoint = stored.status.endpoints[0]
        assert endpoint.status is BindingEndpointStatus.ERROR
        assert endpoint.error_code == "ERR_NGROK_20004"
        assert "\n" not in endpoint.error_message
        # Services stay in place for the next attempt
        await store.get_service(TARGET_NAMESPACE, "web")

    @pytest.mark.asyncio
    async def test_upstream_service_failure(self, reconciler, store, dialer):
        store.inject_failure("create_service", StoreError("quota exceeded"))
        be = await create_with_refs(store, make_bound_endpoint(), "ep_1")

        await reconciler.reconcile(be.key)

        stored = await store.get_bound_endpoint(OPERATOR_NAMESPACE, be.name)
        services = find_condition(stored.status.conditions, CONDITION_SERVICES_CREATED)
        assert services.status is ConditionStatus.FALSE
        assert services.reason == REASON_SERVICE_CREATION_FAILED
        assert "quota exceeded" in services.message
        assert stored.status.endpoints[0].status is BindingEndpointStatus.ERROR
        assert stored.status.endpoints[0].error_code == "ERR_NGROK_20002"
        assert dialer.dials == []

        await reconciler.reconcile(be.key)
        stored = await store.get_bound_endpoint(OPERATOR_NAMESPACE, be.name)
        assert condition_status(stored, CONDITION_READY) is ConditionStatus.TRUE

    @pytest.mark.asyncio
    async def test_missing_target_namespace(self, reconciler, store):
        be = await create_with_refs(
            store, make_bound_endpoint("http://web.missing:80", namespace="missing"), "ep_1"
        )

        await reconciler.reconcile(be.key)

        stored = await store.get_bound_endpoint(OPERATOR_NAMESPACE, be.name)
        assert stored.status.endpoints[0].error_code == "ERR_NGROK_20003"
        assert condition_status(stored, CONDITION_READY) is ConditionStatus.FALSE
        # the upstream half was created already
        await store.get_service(OPERATOR_NAMESPACE, be.name)

    @pytest.mark.asyncio
    async def test_denied_endpoint(self, reconciler, store, dialer):
        be = await create_with_refs(store, make_bound_endpoint(), "ep_1")
        await reconciler.reconcile(be.key)

        be = await store.get_bound_endpoint(OPERATOR_NAMESPACE, be.name)
        be.spec.allowed = False
        await store.update_bound_endpoint(be)
        dials = len(dialer.dials)

        await reconciler.reconcile(be.key)

        assert await store.list_services({LABEL_BOUND_ENDPOINT_NAME: be.name}) == []
        assert len(dialer.dials) == dials
        stored = await store.get_bound_endpoint(OPERATOR_NAMESPACE, be.name)
        endpoint = stored.status.endpoints[0]
        assert endpoint.status is BindingEndpointStatus.DENIED
        assert endpoint.error_code == "ERR_NGROK_20005"
        ready = find_condition(stored.status.conditions, CONDITION_READY)
        assert ready.status is ConditionStatus.FALSE
        assert ready.reason == REASON_DENIED
        assert stored.status.target_service_ref is None
        assert stored.status.upstream_service_ref is None

    @pytest.mark.asyncio
    async def test_missing_record_is_a_noop(self, reconciler, store):
        await reconciler.reconcile(f"{OPERATOR_NAMESPACE}/does-not-exist")
        assert reconciler.reconciles == 0
        assert store.calls["create_service"] == 0


class TestDeleteServices:
    @pytest.mark.asyncio
    async def test_foreign_service_is_left_alone(self, reconciler, store):
        be = await create_with_refs(store, make_bound_endpoint(), "ep_1")
        await store.create_service(
            Service(
                metadata=ObjectMeta(name="web", namespace=TARGET_NAMESPACE, labels={"app": "web"}),
                type=ServiceType.CLUSTER_IP,
                ports=[ServicePort(name="http", port=80, target_port=8080)],
            )
        )

        await reconciler.delete_services(be)

        foreign = await store.get_service(TARGET_NAMESPACE, "web")
        assert foreign.metadata.labels == {"app": "web"}

    @pytest.mark.asyncio
    async def test_missing_target_namespace_is_tolerated(self, reconciler, store):
        be = await create_with_refs(store, make_bound_endpoint(), "ep_1")
        await reconciler.reconcile(be.key)
        store.remove_namespace(TARGET_NAMESPACE)

        await reconciler.delete_services(be)

        with pytest.raises(StoreError):
            await store.get_service(OPERATOR_NAMESPACE, be.name)

    @pytest.mark.asyncio
    async def test_indexed_service_is_deleted_when_listing_fails(self, reconciler, store):
        be = await create_with_refs(store, make_bound_endpoint(), "ep_1")
        await reconciler.reconcile(be.key)
        # a Service from a previous target, known only through the index
        stale = Service(
            metadata=ObjectMeta(name="old-web", namespace=TARGET_NAMESPACE, labels=owner_labels(be)),
            type=ServiceType.EXTERNAL_NAME,
            ports=[ServicePort(name="http", port=80, target_port=80)],
        )
        await store.create_service(stale)
        reconciler.index.observe_service(stale)
        store.inject_failure("list_services", StoreError("list failed"))

        await reconciler.delete_services(be)

        assert await store.list_services(owner_labels(be)) == []


class TestEventDriven:
    @pytest.mark.asyncio
    async def test_lifecycle(self, reconciler, store):
        await reconciler.start()

        be = await create_with_refs(store, make_bound_endpoint(), "ep_1")

        async def ready():
            current = await store.get_bound_endpoint(OPERATOR_NAMESPACE, be.name)
            return condition_status(current, CONDITION_READY) is ConditionStatus.TRUE

        await wait_for(ready)

        # an externally deleted Service is recreated
        await store.delete_service(TARGET_NAMESPACE, "web")

        async def target_exists():
            try:
                await store.get_service(TARGET_NAMESPACE, "web")
            except StoreError:
                return False
            return True

        await wait_for(target_exists)

        # deleting the record removes both Services
        await store.delete_bound_endpoint(OPERATOR_NAMESPACE, be.name)

        async def services_gone():
            return await store.list_services({LABEL_BOUND_ENDPOINT_NAME: be.name}) == []

        await wait_for(services_gone)

    @pytest.mark.asyncio
    async def test_namespace_creation_unblocks_target(self, reconciler, store):
        await reconciler.start()
        be = await create_with_refs(
            store, make_bound_endpoint("http://web.late:80", namespace="late"), "ep_1"
        )

        async def error_code():
            current = await store.get_bound_endpoint(OPERATOR_NAMESPACE, be.name)
            return current.status.endpoints and current.status.endpoints[0].error_code

        assert await wait_for(error_code) == "ERR_NGROK_20003"

        store.add_namespace("late")

        async def bound():
            current = await store.get_bound_endpoint(OPERATOR_NAMESPACE, be.name)
            return current.status.endpoints[0].status is BindingEndpointStatus.BOUND

        await wait_for(bound)
        await store.get_service("late", "web")

    @pytest.mark.asyncio
    async def test_status_writes_do_not_requeue(self, reconciler, store):
        await reconciler.start()
        be = await create_with_refs(store, make_bound_endpoint(), "ep_1")

        async def ready():
            current = await store.get_bound_endpoint(OPERATOR_NAMESPACE, be.name)
            return condition_status(current, CONDITION_READY) is ConditionStatus.TRUE

        await wait_for(ready)
        await asyncio.sleep(0.2)
        settled = reconciler.reconciles
        await asyncio.sleep(0.2)
        assert reconciler.reconciles == settled

    @pytest.mark.asyncio
    async def test_late_endpoint_refs_are_reconciled(self, reconciler, store):
        await reconciler.start()
        created = await store.create_bound_endpoint(make_bound_endpoint())

        async def ready():
            current = await store.get_bound_endpoint(OPERATOR_NAMESPACE, created.name)
            return condition_status(current, CONDITION_READY) is ConditionStatus.TRUE

        await wait_for(ready)
        await asyncio.sleep(0.2)

        # refs written after the reconciler already bound the record
        current = await store.get_bound_endpoint(OPERATOR_NAMESPACE, created.name)
        current.status.hashed_name = current.name
        current.status.endpoints = [
            BindingEndpoint(ref=EndpointRef(id="ep_1"), status=BindingEndpointStatus.PROVISIONING)
        ]
        await store.update_bound_endpoint_status(current)

        async def bound():
            latest = await store.get_bound_endpoint(OPERATOR_NAMESPACE, created.name)
            return [e.status for e in latest.status.endpoints] == [BindingEndpointStatus.BOUND]

        await wait_for(bound)


class TestEventMapping:
    def test_event_with_wrong_object_is_rejected(self, settings, store):
        reconciler = BoundEndpointReconciler(settings, store)
        with pytest.raises(TypeError):
            reconciler.handle_event(
                StoreEvent(ResourceKind.BOUND_ENDPOINT, EventType.ADDED, "not-a-record")
            )
        with pytest.raises(TypeError):
            reconciler.handle_event(
                StoreEvent(ResourceKind.NAMESPACE, EventType.ADDED, make_bound_endpoint())
            )
        assert len(reconciler.queue) == 0
