"""
Forwarder side of the bindings: one listener per BoundEndpoint port.

Every accepted connection is dialed out to the operator's ingress endpoint
over mutual TLS, upgraded with the binding handshake, and then spliced to
the client. The handshake names the endpoint (``service.namespace`` and its
port), not the local listener.
"""

from __future__ import annotations

import asyncio
import ssl
import tempfile
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TypeAlias

from google.protobuf.message import Message
from loguru import logger

from kubebind.bindings.hostport import parse_hostport
from kubebind.core.config import BindingsSettings
from kubebind.core.errors import ForwarderConfigError, StoreError
from kubebind.core.task_manager import ManagedObject
from kubebind.datastructures.bound_endpoint import BoundEndpoint, split_object_key
from kubebind.datastructures.type_aliases import HostAddress, ObjectKey, PortNumber
from kubebind.store.interfaces import ClusterStore, EventType, ResourceKind, StoreEvent
from kubebind.transport.listener import BindingsDriver
from kubebind.transport.mux import make_pod_identity, upgrade_to_binding_connection
from kubebind.transport.splice import HostHeaderRewriter, StreamPair, join_connections

forwarder_log = logger

TunnelDialer: TypeAlias = Callable[
    [HostAddress, PortNumber, ssl.SSLContext | None],
    Awaitable[tuple[asyncio.StreamReader, asyncio.StreamWriter]],
]

TLS_CERT_KEY = "tls.crt"
TLS_KEY_KEY = "tls.key"
DEFAULT_INGRESS_PORT = 443
HOST_REWRITE_SCHEMES = frozenset({"http", "https"})


@dataclass(frozen=True, slots=True)
class TunnelConfig:
    host: HostAddress
    port: PortNumber
    ssl_context: ssl.SSLContext | None


async def open_tunnel_connection(
    host: HostAddress, port: PortNumber, ssl_context: ssl.SSLContext | None
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    return await asyncio.open_connection(
        host, port, ssl=ssl_context, server_hostname=host if ssl_context else None
    )


def split_ingress_endpoint(endpoint: str) -> tuple[HostAddress, PortNumber]:
    """Split ``host[:port]``; the port defaults to 443."""
    host, sep, port_text = endpoint.rpartition(":")
    if not sep:
        return endpoint, DEFAULT_INGRESS_PORT
    if not host or not port_text.isdigit() or not 1 <= int(port_text) <= 65535:
        raise ForwarderConfigError(f"invalid ingress endpoint {endpoint!r}")
    return host, int(port_text)


def build_client_ssl_context(cert_pem: bytes, key_pem: bytes) -> ssl.SSLContext:
    """Build a client context that presents ``cert_pem``/``key_pem``."""
    context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
    # load_cert_chain only takes paths
    with tempfile.TemporaryDirectory(prefix="kubebind-tls-") as tmp:
        cert_path = Path(tmp) / TLS_CERT_KEY
        key_path = Path(tmp) / TLS_KEY_KEY
        cert_path.write_bytes(cert_pem)
        key_path.write_bytes(key_pem)
        key_path.chmod(0o600)
        try:
            context.load_cert_chain(cert_path, key_path)
        except ssl.SSLError as e:
            raise ForwarderConfigError(f"invalid client certificate: {e}") from e
    return context


class ForwarderReconciler(ManagedObject):
    """Keeps one ``BindingsDriver`` listener open per BoundEndpoint."""

    def __init__(
        self,
        settings: BindingsSettings,
        store: ClusterStore,
        driver: BindingsDriver | None = None,
        *,
        ssl_context: ssl.SSLContext | None = None,
        dialer: TunnelDialer | None = None,
    ) -> None:
        super().__init__("ForwarderReconciler")
        self.settings = settings
        self.store = store
        self.driver = driver or BindingsDriver(settings.forwarder_bind_host)
        self.dialer = dialer or open_tunnel_connection
        self.tunnel: TunnelConfig | None = None
        self._ssl_override = ssl_context
        self._bindings: dict[ObjectKey, BoundEndpoint] = {}
        self._events: asyncio.Queue[StoreEvent] | None = None

    # lifecycle

    async def start(self) -> None:
        self._events = self.store.subscribe()
        for be in await self.store.list_bound_endpoints(self.settings.namespace):
            await self._bind_or_retry(be)
        self.create_task(self._event_loop(self._events), name="forwarder-events")

    async def stop(self) -> None:
        if self._events is not None:
            self.store.unsubscribe(self._events)
            self._events = None
        await self.shutdown()
        await self.driver.close_all()
        self._bindings.clear()

    def binding(self, key: ObjectKey) -> BoundEndpoint | None:
        return self._bindings.get(key)

    # events

    async def _event_loop(self, events: asyncio.Queue[StoreEvent]) -> None:
        while True:
            event = await events.get()
            if event.kind is not ResourceKind.BOUND_ENDPOINT:
                continue
            be = event.obj
            if not isinstance(be, BoundEndpoint):
                forwarder_log.error("BoundEndpoint event carries {}, skipping", type(be).__name__)
                continue
            if be.namespace != self.settings.namespace:
                continue
            try:
                await self.handle_event(event.type, be, event.old)
            except Exception as e:
                forwarder_log.error(
                    "Failed to handle {} for BoundEndpoint {} ({}): {}",
                    event.type.value,
                    be.name,
                    be.spec.endpoint_uri,
                    e,
                )

    async def handle_event(
        self, event_type: EventType, be: BoundEndpoint, old: object = None
    ) -> None:
        match event_type:
            case EventType.DELETED:
                await self.unbind(be)
            case EventType.ADDED:
                await self._bind_or_retry(be)
            case EventType.MODIFIED:
                if isinstance(old, BoundEndpoint) and not self._changed(old, be):
                    return
                await self._bind_or_retry(be)

    @staticmethod
    def _changed(old: BoundEndpoint, new: BoundEndpoint) -> bool:
        return (
            old.metadata.generation != new.metadata.generation
            or old.metadata.annotations != new.metadata.annotations
            or old.spec.port != new.spec.port
        )

    async def _bind_or_retry(self, be: BoundEndpoint) -> None:
        try:
            await self.bind(be)
        except (ForwarderConfigError, StoreError, OSError) as e:
            forwarder_log.error(
                "Failed to bind BoundEndpoint {} ({}) on port {}: {}, retrying in {}s",
                be.name,
                be.spec.endpoint_uri,
                be.spec.port,
                e,
                self.settings.action_retry_interval,
            )
            self.create_task(self._retry_bind(be.key), name=f"forwarder-retry-{be.name}")

    async def _retry_bind(self, key: ObjectKey) -> None:
        await asyncio.sleep(self.settings.action_retry_interval)
        namespace, name = split_object_key(key)
        try:
            be = await self.store.get_bound_endpoint(namespace, name)
        except StoreError as e:
            forwarder_log.info("BoundEndpoint {} gone before retry: {}", key, e)
            return
        await self._bind_or_retry(be)

    # binding

    async def load_tunnel_config(self) -> TunnelConfig:
        """Read the ingress endpoint and client certificate from the operator."""
        operator = await self.store.get_operator(self.settings.namespace, self.settings.operator_name)
        if not operator.binding_configured:
            raise ForwarderConfigError(
                f"operator {operator.namespace}/{operator.name} has no binding configuration"
            )
        if not operator.ingress_endpoint:
            raise ForwarderConfigError(
                f"operator {operator.namespace}/{operator.name} has no ingress endpoint"
            )
        host, port = split_ingress_endpoint(operator.ingress_endpoint)

        if self._ssl_override is not None:
            return TunnelConfig(host, port, self._ssl_override)

        if not operator.tls_secret_name:
            raise ForwarderConfigError(
                f"operator {operator.namespace}/{operator.name} has no TLS secret"
            )
        secret = await self.store.get_secret(self.settings.namespace, operator.tls_secret_name)
        try:
            cert_pem, key_pem = secret[TLS_CERT_KEY], secret[TLS_KEY_KEY]
        except KeyError as e:
            raise ForwarderConfigError(
                f"secret {operator.tls_secret_name} is missing {e.args[0]}"
            ) from None
        return TunnelConfig(host, port, build_client_ssl_context(cert_pem, key_pem))

    async def bind(self, be: BoundEndpoint) -> None:
        self.tunnel = await self.load_tunnel_config()

        previous = self._bindings.get(be.key)
        if previous is not None and previous.spec.port != be.spec.port:
            await self.driver.close(previous.spec.port)

        self._bindings[be.key] = be.deepcopy()
        key = be.key

        async def handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            await self.handle_connection(key, reader, writer)

        await self.driver.listen(be.spec.port, handler)
        forwarder_log.info(
            "Forwarding port {} for BoundEndpoint {} ({})", be.spec.port, be.name, be.spec.endpoint_uri
        )

    async def unbind(self, be: BoundEndpoint) -> None:
        previous = self._bindings.pop(be.key, None)
        port = previous.spec.port if previous is not None else be.spec.port
        await self.driver.close(port)
        forwarder_log.info(
            "Stopped forwarding port {} for BoundEndpoint {} ({})", port, be.name, be.spec.endpoint_uri
        )

    # connections

    def _pod_identity(self) -> Message | None:
        if not (self.settings.pod_uid or self.settings.pod_name or self.settings.pod_namespace):
            return None
        return make_pod_identity(
            self.settings.pod_uid, self.settings.pod_name, self.settings.pod_namespace
        )

    async def handle_connection(
        self, key: ObjectKey, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        be = self._bindings.get(key)
        tunnel = self.tunnel
        if be is None or tunnel is None:
            raise ForwarderConfigError(f"no binding for {key}")

        target = parse_hostport("", be.spec.endpoint_uri)
        host = f"{target.service_name}.{target.namespace}"
        client = StreamPair(reader, writer)

        up_reader, up_writer = await self.dialer(tunnel.host, tunnel.port, tunnel.ssl_context)
        upstream = StreamPair(up_reader, up_writer)
        try:
            await upgrade_to_binding_connection(
                up_reader, up_writer, host, target.port, self._pod_identity()
            )
        except BaseException:
            upstream.close()
            raise

        forwarder_log.debug(
            "Joining {} to {} for BoundEndpoint {}", client.peer, be.spec.endpoint_uri, be.name
        )
        rewriter = HostHeaderRewriter(host) if target.scheme in HOST_REWRITE_SCHEMES else None
        await join_connections(client, upstream, rewriter)
