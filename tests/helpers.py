"""Shared helpers for kubebind tests: record builders, polling and a fake tunnel."""

import asyncio
import socket
from collections.abc import Awaitable, Callable
from typing import Any

from kubebind.core.errors import MuxProtocolError
from kubebind.datastructures.bound_endpoint import KubernetesOperator
from kubebind.remote.models import RemoteEndpoint
from kubebind.transport.mux import (
    ConnRequest,
    ConnResponse,
    read_proxy_message,
    write_proxy_message,
)

OPERATOR_NAMESPACE = "kubebind-system"
OPERATOR_NAME = "kubebind-operator"
OPERATOR_ID = "k8sop_2abc"
TARGET_NAMESPACE = "ns"


def remote_endpoint(endpoint_id: str, public_url: str, proto: str = "") -> RemoteEndpoint:
    return RemoteEndpoint(
        id=endpoint_id,
        uri=f"/endpoints/{endpoint_id}",
        proto=proto,
        public_url=public_url,
    )


def registered_operator(
    ingress_endpoint: str | None = "127.0.0.1:443", tls_secret_name: str = "kubebind-tls"
) -> KubernetesOperator:
    return KubernetesOperator(
        name=OPERATOR_NAME,
        namespace=OPERATOR_NAMESPACE,
        id=OPERATOR_ID,
        registration_status="registered",
        ingress_endpoint=ingress_endpoint,
        tls_secret_name=tls_secret_name,
        binding_configured=True,
    )


def free_port() -> int:
    """Ask the OS for a currently unused TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


async def wait_for(
    predicate: Callable[[], Any | Awaitable[Any]],
    timeout: float = 3.0,
    interval: float = 0.01,
) -> Any:
    """Poll ``predicate`` until it returns something truthy."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return result
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"condition not met within {timeout}s")
        await asyncio.sleep(interval)


class FakeTunnel:
    """A plain-TCP stand-in for the tunnel ingress.

    Reads one ``ConnRequest``, answers with a ``ConnResponse`` (carrying
    ``error_code``/``error_message`` when set), then echoes the rest of the
    connection back prefixed with ``echo_prefix``.
    """

    def __init__(self, error_code: str = "", error_message: str = "") -> None:
        self.error_code = error_code
        self.error_message = error_message
        self.echo_prefix = b""
        self.requests: list[Any] = []
        self.received = bytearray()
        self.host = "127.0.0.1"
        self.port = 0
        self._server: asyncio.Server | None = None
        self._writers: set[asyncio.StreamWriter] = set()

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, self.host, 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        for writer in self._writers:
            writer.close()
        await self._server.wait_closed()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writers.add(writer)
        try:
            request = await read_proxy_message(reader, ConnRequest)
            self.requests.append(request)
            await write_proxy_message(
                writer,
                ConnResponse(
                    endpoint_id="ep_1",
                    proto="http",
                    error_code=self.error_code,
                    error_message=self.error_message,
                ),
            )
            if self.error_code or self.error_message:
                return
            while data := await reader.read(4096):
                self.received.extend(data)
                writer.write(self.echo_prefix + data)
                await writer.drain()
        except (MuxProtocolError, ConnectionError):
            pass
        finally:
            writer.close()
