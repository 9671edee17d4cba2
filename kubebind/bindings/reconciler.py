"""
Event-driven BoundEndpoint reconciler.

Each BoundEndpoint is projected into a target ``ExternalName`` Service and an
upstream ``ClusterIP`` Service, then probed end to end through cluster DNS.
The outcome is recorded as the ``ServicesCreated`` and
``ConnectivityVerified`` conditions, the shared per-endpoint status, and the
derived ``Ready`` condition.

Work arrives through a deduplicating queue fed by store events:

* BoundEndpoint added, or modified with a new generation or annotations
* BoundEndpoint deleted: its Services are removed directly
* Service events: mapped to the owner through the owner labels
* Namespace events: mapped to every BoundEndpoint targeting the namespace
"""

from __future__ import annotations

import asyncio

from loguru import logger

from kubebind.bindings.connectivity import Dialer, probe_connectivity
from kubebind.bindings.owner_index import OwnerIndex
from kubebind.bindings.services import (
    COMMON_LABELS,
    convert_bound_endpoint_to_services,
    owner_key_from_labels,
    owner_labels,
)
from kubebind.bindings.work_queue import WorkQueue
from kubebind.core.config import BindingsSettings
from kubebind.core.errors import (
    ERR_ENDPOINT_DENIED,
    ERR_FAILED_TO_CONNECT_SERVICES,
    ERR_FAILED_TO_CREATE_TARGET_SERVICE,
    ERR_FAILED_TO_CREATE_UPSTREAM_SERVICE,
    BindingStatusError,
    ConnectivityError,
    NotFoundError,
    StoreError,
)
from kubebind.core.task_manager import ManagedObject
from kubebind.datastructures.bound_endpoint import (
    BindingEndpointStatus,
    BoundEndpoint,
    Service,
    ServiceRef,
    object_key,
    split_object_key,
)
from kubebind.datastructures.conditions import (
    CONDITION_CONNECTIVITY_VERIFIED,
    REASON_SERVICE_CREATION_FAILED,
    REASON_SERVICES_CREATED,
    calculate_ready_condition,
    find_condition,
    set_connectivity_verified_condition,
    set_denied_conditions,
    set_services_created_condition,
)
from kubebind.datastructures.type_aliases import ObjectKey
from kubebind.store.interfaces import (
    ClusterStore,
    EventType,
    ResourceKind,
    StoreEvent,
)

reconcile_log = logger


def _endpoint_refs(be: BoundEndpoint) -> tuple[str, tuple[str, ...]]:
    """The poller-owned part of the status; a change to it needs a fresh reconcile."""
    return be.status.hashed_name, tuple(e.ref.id for e in be.status.endpoints)


class BoundEndpointReconciler(ManagedObject):
    def __init__(
        self,
        settings: BindingsSettings,
        store: ClusterStore,
        dialer: Dialer | None = None,
    ) -> None:
        super().__init__("BoundEndpointReconciler")
        self.settings = settings
        self.store = store
        self.dialer = dialer
        self.queue = WorkQueue()
        self.index = OwnerIndex()
        self.reconciles = 0
        self._events: asyncio.Queue[StoreEvent] | None = None

    # lifecycle

    async def start(self) -> None:
        self._events = self.store.subscribe()
        await self.resync()
        self.create_task(self._event_loop(self._events), name="reconciler-events")
        for i in range(self.settings.reconcile_workers):
            self.create_task(self._worker(i), name=f"reconciler-worker-{i}")

    async def stop(self) -> None:
        if self._events is not None:
            self.store.unsubscribe(self._events)
            self._events = None
        self.queue.shutdown()
        await self.shutdown()

    async def resync(self) -> None:
        """Index the current Services and enqueue every BoundEndpoint."""
        for service in await self.store.list_services(COMMON_LABELS):
            self.index.observe_service(service)
        for be in await self.store.list_bound_endpoints(self.settings.namespace):
            self.index.observe_bound_endpoint(be)
            self.queue.add(be.key)

    # event mapping

    async def _event_loop(self, events: asyncio.Queue[StoreEvent]) -> None:
        while True:
            event = await events.get()
            try:
                self.handle_event(event)
            except Exception as e:
                reconcile_log.error("Failed to handle {} {} event: {}", event.type.value, event.kind.value, e)

    def handle_event(self, event: StoreEvent) -> None:
        match event.kind:
            case ResourceKind.BOUND_ENDPOINT:
                self._handle_bound_endpoint_event(event)
            case ResourceKind.SERVICE:
                self._handle_service_event(event)
            case ResourceKind.NAMESPACE:
                if not isinstance(event.obj, str):
                    raise TypeError(f"namespace event without a namespace name: {event.obj!r}")
                for owner in sorted(self.index.owners_in_namespace(event.obj)):
                    reconcile_log.debug(
                        "Namespace {} {}, requeueing {}", event.obj, event.type.value, owner
                    )
                    self.queue.add(owner)

    def _handle_bound_endpoint_event(self, event: StoreEvent) -> None:
        be = event.obj
        if not isinstance(be, BoundEndpoint):
            raise TypeError(f"BoundEndpoint event carries {type(be).__name__}")
        if be.namespace != self.settings.namespace:
            return

        if event.type is EventType.DELETED:
            self.index.forget_bound_endpoint(be.key)
            self.create_task(self.delete_services(be), name=f"delete-services-{be.name}")
            return

        self.index.observe_bound_endpoint(be)
        old = event.old
        if event.type is EventType.MODIFIED and isinstance(old, BoundEndpoint):
            if (
                old.metadata.generation == be.metadata.generation
                and old.metadata.annotations == be.metadata.annotations
                and _endpoint_refs(old) == _endpoint_refs(be)
            ):
                # our own status write
                return
        self.queue.add(be.key)

    def _handle_service_event(self, event: StoreEvent) -> None:
        service = event.obj
        if not isinstance(service, Service):
            raise TypeError(f"Service event carries {type(service).__name__}")
        if event.type is EventType.DELETED:
            owner = self.index.forget_service(service)
        else:
            owner = self.index.observe_service(service)
        if owner is not None and split_object_key(owner)[0] == self.settings.namespace:
            self.queue.add(owner)

    # workers

    async def _worker(self, worker_id: int) -> None:
        while True:
            key = await self.queue.get()
            try:
                await self.reconcile(key)
            except Exception as e:
                reconcile_log.error("[worker {}] Reconcile of {} failed: {}", worker_id, key, e)
                self.queue.add_after(key, self.settings.action_retry_interval)
            finally:
                self.queue.done(key)

    async def reconcile(self, key: ObjectKey) -> None:
        """Bring the Services and status of BoundEndpoint ``key`` up to date."""
        namespace, name = split_object_key(key)
        try:
            be = await self.store.get_bound_endpoint(namespace, name)
        except NotFoundError:
            reconcile_log.debug("BoundEndpoint {} is gone, nothing to reconcile", key)
            return

        self.reconciles += 1
        self.index.observe_bound_endpoint(be)

        if not be.spec.allowed:
            await self.deny(be)
            return

        target, upstream = convert_bound_endpoint_to_services(
            be, self.settings.cluster_domain, self.settings.upstream_service_selector
        )

        try:
            await self._apply_service(upstream)
        except StoreError as e:
            await self._record_service_failure(
                be,
                BindingStatusError(
                    e, ERR_FAILED_TO_CREATE_UPSTREAM_SERVICE, "Failed to create Upstream Service"
                ),
            )
            return

        try:
            await self._apply_service(target)
        except StoreError as e:
            await self._record_service_failure(
                be,
                BindingStatusError(
                    e, ERR_FAILED_TO_CREATE_TARGET_SERVICE, "Failed to create Target Service"
                ),
            )
            return

        set_services_created_condition(
            be, True, REASON_SERVICES_CREATED, "Target and Upstream services created"
        )
        be.status.target_service_ref = ServiceRef(name=target.name, namespace=target.namespace)
        be.status.upstream_service_ref = ServiceRef(name=upstream.name)

        status_error: BindingStatusError | None = None
        try:
            attempt = await probe_connectivity(
                f"{be.spec.target.service}.{be.spec.target.namespace}",
                be.spec.target.port,
                attempts=self.settings.connectivity_attempts,
                backoff=self.settings.connectivity_backoff,
                dial_timeout=self.settings.connectivity_dial_timeout,
                dialer=self.dialer,
            )
            reconcile_log.info(
                "BoundEndpoint {} ({}) reachable after {} attempts",
                be.name,
                be.spec.endpoint_uri,
                attempt,
            )
            set_connectivity_verified_condition(be, True)
        except ConnectivityError as e:
            status_error = BindingStatusError(
                e, ERR_FAILED_TO_CONNECT_SERVICES, "failed to bind BoundEndpoint"
            )
            reconcile_log.warning(
                "BoundEndpoint {} ({}) unreachable: {}", be.name, be.spec.endpoint_uri, status_error
            )
            set_connectivity_verified_condition(be, False, status_error.message)

        await self.update_status(be, status_error)
        self.queue.add_after(be.key, self.settings.refresh_interval)

    async def deny(self, be: BoundEndpoint) -> None:
        """Terminal policy denial: no Services, endpoints marked denied."""
        message = f"endpoint {be.spec.endpoint_uri} is not allowed by the allowed url patterns"
        reconcile_log.info("BoundEndpoint {} ({}) denied", be.name, be.spec.endpoint_uri)
        await self.delete_services(be)
        set_denied_conditions(be, message)
        be.status.target_service_ref = None
        be.status.upstream_service_ref = None
        await self.update_status(
            be, BindingStatusError(None, ERR_ENDPOINT_DENIED, message), denied=True
        )

    async def _record_service_failure(self, be: BoundEndpoint, error: BindingStatusError) -> None:
        reconcile_log.error(
            "BoundEndpoint {} ({}): {}", be.name, be.spec.endpoint_uri, error.message
        )
        set_services_created_condition(be, False, REASON_SERVICE_CREATION_FAILED, error.message)
        await self.update_status(be, error)
        self.queue.add_after(be.key, self.settings.action_retry_interval)

    async def _apply_service(self, desired: Service) -> Service:
        """Create ``desired`` or update the existing Service in place."""
        try:
            existing = await self.store.get_service(desired.namespace, desired.name)
        except NotFoundError:
            created = await self.store.create_service(desired)
            reconcile_log.info("Created {} Service {}", desired.type.value, desired.key)
            return created

        if (
            existing.spec_dict() == desired.spec_dict()
            and existing.metadata.labels == desired.metadata.labels
            and existing.metadata.annotations == desired.metadata.annotations
        ):
            return existing

        existing.type = desired.type
        existing.ports = desired.ports
        existing.external_name = desired.external_name
        existing.selector = desired.selector
        existing.session_affinity = desired.session_affinity
        existing.internal_traffic_policy = desired.internal_traffic_policy
        existing.metadata.labels = dict(desired.metadata.labels)
        existing.metadata.annotations = dict(desired.metadata.annotations)
        updated = await self.store.update_service(existing)
        reconcile_log.info("Updated {} Service {}", desired.type.value, desired.key)
        return updated

    async def update_status(
        self,
        be: BoundEndpoint,
        status_error: BindingStatusError | None,
        *,
        denied: bool = False,
    ) -> BoundEndpoint:
        """Write the controller-owned status fields onto the freshest copy.

        Endpoint refs and the summary belong to the poller and are kept; only
        the shared per-endpoint status is rewritten here.
        """
        current = await self.store.get_bound_endpoint(be.namespace, be.name)
        current.status.conditions = be.status.conditions
        current.status.target_service_ref = be.status.target_service_ref
        current.status.upstream_service_ref = be.status.upstream_service_ref

        if denied:
            shared = BindingEndpointStatus.DENIED
        elif status_error is not None:
            shared = BindingEndpointStatus.ERROR
        else:
            connectivity = find_condition(current.status.conditions, CONDITION_CONNECTIVITY_VERIFIED)
            shared = (
                BindingEndpointStatus.BOUND
                if connectivity is not None and connectivity.is_true
                else BindingEndpointStatus.PROVISIONING
            )

        for endpoint in current.status.endpoints:
            endpoint.status = shared
            endpoint.error_code = status_error.error_code if status_error is not None else ""
            endpoint.error_message = status_error.message if status_error is not None else ""

        ready = calculate_ready_condition(current)
        written = await self.store.update_bound_endpoint_status(current)
        reconcile_log.info(
            "BoundEndpoint {} ({}) status {}: Ready={} ({})",
            current.name,
            current.spec.endpoint_uri,
            shared.value,
            ready.status.value,
            ready.reason,
        )
        return written

    async def delete_services(self, be: BoundEndpoint) -> None:
        """Best-effort removal of the Services owned by ``be``."""
        target_namespace = be.spec.target.namespace
        if target_namespace and await self.store.namespace_exists(target_namespace):
            await self._delete_owned_service(be, target_namespace, be.spec.target.service)
        await self._delete_owned_service(be, be.namespace, be.name)
        done = {object_key(target_namespace, be.spec.target.service), be.key}

        # Services indexed for this owner from events, e.g. left behind by a target move
        for key in sorted(self.index.services_for(be.key) - done):
            await self._delete_owned_service(be, *split_object_key(key))
            done.add(key)

        # and anything labelled for it that was never seen as an event
        try:
            leftovers = await self.store.list_services(owner_labels(be))
        except StoreError as e:
            reconcile_log.error("Failed to list Services of {}: {}", be.key, e)
            return
        for service in leftovers:
            if service.key not in done:
                await self._delete_owned_service(be, service.namespace, service.name)

    async def _delete_owned_service(self, be: BoundEndpoint, namespace: str, name: str) -> None:
        try:
            service = await self.store.get_service(namespace, name)
            if owner_key_from_labels(service.metadata.labels) != be.key:
                reconcile_log.warning(
                    "Service {}/{} is not owned by {}, leaving it alone", namespace, name, be.key
                )
                return
            await self.store.delete_service(namespace, name)
            reconcile_log.info("Deleted Service {}/{} of {}", namespace, name, be.key)
        except NotFoundError:
            pass
        except StoreError as e:
            reconcile_log.error("Failed to delete Service {}/{} of {}: {}", namespace, name, be.key, e)
