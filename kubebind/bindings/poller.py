"""
BoundEndpoint reconciliation poller.

Every ``polling_interval`` seconds the poller fetches the remote endpoint
records, aggregates them into desired BoundEndpoints, diffs them against the
cluster and applies the resulting actions. Each action class runs in its own
retry loop that keeps re-attempting only the records that failed, until the
loop drains or the next pass cancels it.

The port bitmap is rebuilt from the live BoundEndpoints at the start of every
pass; in-memory allocations never outlive a pass.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeAlias

from loguru import logger

from kubebind.bindings.aggregator import aggregate_bound_endpoints
from kubebind.bindings.diff import (
    BoundEndpointActions,
    bound_endpoint_needs_update,
    filter_bound_endpoint_actions,
)
from kubebind.bindings.identity import hash_uri
from kubebind.bindings.policy import AllowedURLPolicy
from kubebind.core.config import BindingsSettings
from kubebind.core.errors import (
    AlreadyExistsError,
    NotFoundError,
    PortAllocationError,
    StoreError,
)
from kubebind.core.task_manager import ManagedObject, TaskManager
from kubebind.datastructures.bound_endpoint import (
    BindingEndpoint,
    BindingEndpointStatus,
    BoundEndpoint,
    BoundEndpointSpec,
    EndpointTarget,
    ObjectMeta,
    TargetMetadata,
    endpoints_summary,
)
from kubebind.datastructures.port_allocator import PortBitmap
from kubebind.datastructures.type_aliases import ErrorCode, ErrorMessage, IdentityName
from kubebind.remote.client import RemoteEndpointSource
from kubebind.store.interfaces import ClusterStore

poller_log = logger

BoundEndpointAction: TypeAlias = Callable[[BoundEndpoint], Awaitable[None]]

OPERATOR_ID_FIRST_CHECK = 1.0


class BoundEndpointPoller(ManagedObject):
    def __init__(
        self,
        settings: BindingsSettings,
        store: ClusterStore,
        source: RemoteEndpointSource,
        policy: AllowedURLPolicy | None = None,
    ) -> None:
        super().__init__("BoundEndpointPoller")
        self.settings = settings
        self.store = store
        self.source = source
        self.policy = policy or AllowedURLPolicy(settings.allowed_urls)
        self.namespace = settings.namespace
        self.port_allocator = PortBitmap(settings.port_range_min, settings.port_range_max)
        self.operator_id = ""
        self.passes = 0
        self._pass_tasks: TaskManager | None = None

    # lifecycle

    def start(self) -> asyncio.Task[None]:
        return self.create_task(self._run(), name="bound-endpoint-poller")

    async def stop(self) -> None:
        if self._pass_tasks is not None:
            await self._pass_tasks.shutdown()
        await self.shutdown()

    async def wait_for_operator_id(self) -> str:
        """Block until the operator object reports a registration id."""
        delay = min(OPERATOR_ID_FIRST_CHECK, self.settings.operator_id_retry_interval)
        while True:
            await asyncio.sleep(delay)
            delay = self.settings.operator_id_retry_interval
            try:
                operator = await self.store.get_operator(self.namespace, self.settings.operator_name)
            except StoreError as e:
                poller_log.info(
                    "Operator {}/{} not readable yet: {}",
                    self.namespace,
                    self.settings.operator_name,
                    e,
                )
                continue
            if operator.registered:
                poller_log.info("Operator registered with id {}", operator.id)
                return operator.id
            poller_log.info(
                "Operator {}/{} not registered yet, waiting {}s",
                self.namespace,
                self.settings.operator_name,
                delay,
            )

    async def _run(self) -> None:
        self.operator_id = await self.wait_for_operator_id()
        while True:
            try:
                await self.reconcile_once()
            except Exception as e:
                poller_log.error("BoundEndpoint poll pass failed: {}", e)
            await asyncio.sleep(self.settings.polling_interval)

    # one pass

    async def reconcile_once(self) -> BoundEndpointActions | None:
        """Run one poll pass and start its action loops.

        Returns the computed actions, or ``None`` when no operator id is known
        yet. Errors before the action loops start abort the pass without
        touching the cluster.
        """
        if self._pass_tasks is not None:
            # the previous pass's appliers must not race this one
            self._pass_tasks.cancel()
            self._pass_tasks = None

        if not self.operator_id:
            return None

        self.passes += 1
        records = await self.source.list_bound_endpoints(self.operator_id)
        desired = aggregate_bound_endpoints(records)
        for desired_be in desired.values():
            desired_be.spec.allowed = self.policy.is_allowed(desired_be.spec.endpoint_uri)

        existing = await self.store.list_bound_endpoints(self.namespace)
        self.port_allocator = self._rebuild_port_allocator(existing)

        actions = filter_bound_endpoint_actions(existing, desired)
        poller_log.info(
            "Poll pass {}: {} remote records, create={} update={} delete={}",
            self.passes,
            len(records),
            len(actions.to_create),
            len(actions.to_update),
            len(actions.to_delete),
        )

        pass_tasks = TaskManager(f"poller-pass-{self.passes}")
        self._pass_tasks = pass_tasks
        for action_name, items, action in (
            ("create", actions.to_create, self.create_binding),
            ("update", actions.to_update, self.update_binding),
            ("delete", actions.to_delete, self.delete_binding),
        ):
            if items:
                pass_tasks.create_task(
                    self._action_loop(action_name, list(items), action),
                    name=f"poller-{action_name}-{self.passes}",
                )
        return actions

    async def wait_for_actions(self) -> None:
        """Wait for the current pass's action loops to drain."""
        if self._pass_tasks is not None and self._pass_tasks.tasks:
            await asyncio.gather(*self._pass_tasks.tasks, return_exceptions=True)

    def _rebuild_port_allocator(self, existing: list[BoundEndpoint]) -> PortBitmap:
        bitmap = PortBitmap(self.settings.port_range_min, self.settings.port_range_max)
        for be in existing:
            try:
                bitmap.set(be.spec.port)
            except PortAllocationError as e:
                poller_log.error(
                    "Failed to refresh port allocation for {} ({}): {}",
                    be.name,
                    be.spec.endpoint_uri,
                    e,
                )
                raise
        return bitmap

    async def _action_loop(
        self, action_name: str, remaining: list[BoundEndpoint], action: BoundEndpointAction
    ) -> None:
        while remaining:
            failed: list[BoundEndpoint] = []
            for be in remaining:
                try:
                    await action(be)
                except Exception as e:
                    poller_log.error(
                        "Failed to {} BoundEndpoint {} ({}): {}",
                        action_name,
                        hash_uri(be.spec.endpoint_uri),
                        be.spec.endpoint_uri,
                        e,
                    )
                    failed.append(be)
            remaining = failed
            if remaining:
                poller_log.debug(
                    "{} BoundEndpoints left to {}, retrying in {}s",
                    len(remaining),
                    action_name,
                    self.settings.action_retry_interval,
                )
                await asyncio.sleep(self.settings.action_retry_interval)

    # actions

    def _target_metadata(self) -> TargetMetadata:
        return TargetMetadata(
            labels=dict(self.settings.target_service_labels) or None,
            annotations=dict(self.settings.target_service_annotations) or None,
        )

    async def create_binding(self, desired: BoundEndpoint) -> None:
        name = hash_uri(desired.spec.endpoint_uri)
        port = self.port_allocator.set_any()

        to_create = BoundEndpoint(
            metadata=ObjectMeta(name=name, namespace=self.namespace),
            spec=BoundEndpointSpec(
                endpoint_uri=desired.spec.endpoint_uri,
                scheme=desired.spec.scheme,
                port=port,
                allowed=desired.spec.allowed,
                target=EndpointTarget(
                    service=desired.spec.target.service,
                    namespace=desired.spec.target.namespace,
                    protocol=desired.spec.target.protocol,
                    port=desired.spec.target.port,
                    metadata=self._target_metadata(),
                ),
            ),
        )

        poller_log.info("Creating BoundEndpoint {} ({}) on port {}", name, desired.spec.endpoint_uri, port)
        try:
            await self.store.create_bound_endpoint(to_create)
        except AlreadyExistsError:
            self.port_allocator.unset(port)
            stored = await self.store.get_bound_endpoint(self.namespace, name)
            if stored.status.hashed_name and stored.status.endpoints:
                poller_log.info(
                    "BoundEndpoint {} ({}) already exists, skipping create",
                    name,
                    desired.spec.endpoint_uri,
                )
                return
            poller_log.info(
                "BoundEndpoint {} ({}) already exists with empty status, filling it in",
                name,
                desired.spec.endpoint_uri,
            )
        except StoreError:
            self.port_allocator.unset(port)
            raise

        await self._write_endpoint_status(name, desired.status.endpoints, inherit=False)

    async def update_binding(self, desired: BoundEndpoint) -> None:
        name = hash_uri(desired.spec.endpoint_uri)
        desired.spec.target.metadata = self._target_metadata()

        try:
            existing = await self.store.get_bound_endpoint(self.namespace, name)
        except NotFoundError:
            # picked up as a create by the next pass
            poller_log.info(
                "BoundEndpoint {} ({}) not found, skipping update", name, desired.spec.endpoint_uri
            )
            return

        if not bound_endpoint_needs_update(existing, desired):
            poller_log.debug(
                "BoundEndpoint {} ({}) already up to date", name, desired.spec.endpoint_uri
            )
            return

        # the allocated port is never reassigned
        existing.spec.endpoint_uri = desired.spec.endpoint_uri
        existing.spec.scheme = desired.spec.scheme
        existing.spec.target = desired.spec.target
        existing.spec.allowed = desired.spec.allowed

        poller_log.info("Updating BoundEndpoint {} ({})", name, existing.spec.endpoint_uri)
        await self.store.update_bound_endpoint(existing)
        await self._write_endpoint_status(name, desired.status.endpoints, inherit=True)

    async def delete_binding(self, be: BoundEndpoint) -> None:
        try:
            await self.store.delete_bound_endpoint(be.namespace, be.name)
            poller_log.info("Deleted BoundEndpoint {} ({})", be.name, be.spec.endpoint_uri)
        except NotFoundError:
            poller_log.info("BoundEndpoint {} ({}) already gone", be.name, be.spec.endpoint_uri)
        self.port_allocator.unset(be.spec.port)

    async def _write_endpoint_status(
        self, name: IdentityName, refs: list[BindingEndpoint], *, inherit: bool
    ) -> None:
        """Replace the endpoint refs on the freshest stored copy.

        New records start ``provisioning``; with ``inherit`` the refs take
        over the record's current shared status instead.
        """
        current = await self.store.get_bound_endpoint(self.namespace, name)

        status = BindingEndpointStatus.PROVISIONING
        error_code: ErrorCode = ""
        error_message: ErrorMessage = ""
        if inherit and current.status.endpoints:
            shared = current.status.endpoints[0]
            status, error_code, error_message = (
                shared.status,
                shared.error_code,
                shared.error_message,
            )
            if status is BindingEndpointStatus.UNKNOWN:
                status = BindingEndpointStatus.PROVISIONING

        current.status.hashed_name = name
        current.status.endpoints = [
            BindingEndpoint(
                ref=ref.ref, status=status, error_code=error_code, error_message=error_message
            )
            for ref in refs
        ]
        current.status.endpoints_summary = endpoints_summary(len(refs))
        await self.store.update_bound_endpoint_status(current)
        poller_log.info(
            "Updated BoundEndpoint {} ({}) status: {}",
            name,
            current.spec.endpoint_uri,
            current.status.endpoints_summary,
        )
