"""Pytest configuration and shared fixtures for kubebind tests.

Fixtures build settings with short intervals, an in-memory cluster store with
the operator namespace and a target namespace, and local TCP servers for the
connectivity and forwarding tests.
"""

import asyncio
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio

from kubebind.core.config import BindingsSettings
from kubebind.store.memory import InMemoryClusterStore

from .helpers import OPERATOR_NAME, OPERATOR_NAMESPACE, TARGET_NAMESPACE, FakeTunnel


@pytest.fixture
def settings() -> BindingsSettings:
    return BindingsSettings(
        namespace=OPERATOR_NAMESPACE,
        operator_name=OPERATOR_NAME,
        polling_interval=0.05,
        action_retry_interval=0.02,
        operator_id_retry_interval=0.01,
        port_range_min=10000,
        port_range_max=10010,
        connectivity_attempts=2,
        connectivity_backoff=0.0,
        connectivity_dial_timeout=0.5,
        refresh_interval=60.0,
        reconcile_workers=1,
        forwarder_bind_host="127.0.0.1",
    )


@pytest.fixture
def store() -> InMemoryClusterStore:
    return InMemoryClusterStore(namespaces=[OPERATOR_NAMESPACE, TARGET_NAMESPACE])


@pytest_asyncio.fixture
async def echo_server() -> AsyncGenerator[tuple[str, int], None]:
    """A local server echoing everything back until the client closes."""
    writers: set[asyncio.StreamWriter] = set()

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        writers.add(writer)
        try:
            while data := await reader.read(4096):
                writer.write(data)
                await writer.drain()
        except ConnectionError:
            pass
        finally:
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    host, port = server.sockets[0].getsockname()[:2]
    try:
        yield host, port
    finally:
        server.close()
        for writer in writers:
            writer.close()
        await server.wait_closed()


@pytest_asyncio.fixture
async def fake_tunnel() -> AsyncGenerator[FakeTunnel, None]:
    tunnel = FakeTunnel()
    await tunnel.start()
    try:
        yield tunnel
    finally:
        await tunnel.stop()
