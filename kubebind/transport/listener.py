"""
Per-port TCP listeners for the bindings forwarder.

``BindingsDriver`` owns one ``BindingsListener`` per allocated port. Listening
twice on a port keeps the first listener; closing an unknown or already
closed port does nothing. A failing connection handler is logged and only
ends its own connection.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from typing import Any, TypeAlias

from loguru import logger

from kubebind.datastructures.type_aliases import HostAddress, PortNumber

listener_log = logger

ConnectionHandler: TypeAlias = Callable[[asyncio.StreamReader, asyncio.StreamWriter], Awaitable[None]]


class BindingsListener:
    def __init__(
        self, port: PortNumber, handler: ConnectionHandler, host: HostAddress = "0.0.0.0"
    ) -> None:
        self.port = port
        self.host = host
        self.handler = handler
        self.connections_handled = 0
        self._server: asyncio.Server | None = None
        self._connections: set[asyncio.Task[Any]] = set()
        self._stopped = False

    @property
    def serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    @property
    def active_connections(self) -> int:
        return len(self._connections)

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._on_connection, self.host, self.port)
        listener_log.info("Listening on {}:{}", self.host, self.port)

    async def _on_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._connections.add(task)
        peer = writer.get_extra_info("peername")
        self.connections_handled += 1
        try:
            await self.handler(reader, writer)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            listener_log.error("Connection from {} on port {} failed: {!r}", peer, self.port, e)
        finally:
            if not writer.is_closing():
                writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()
            if task is not None:
                self._connections.discard(task)

    async def stop(self) -> None:
        """Stop accepting, drop in-flight connections and close the socket."""
        if self._stopped:
            return
        self._stopped = True

        server, self._server = self._server, None
        if server is None:
            return
        server.close()
        for task in list(self._connections):
            task.cancel()
        if self._connections:
            await asyncio.gather(*self._connections, return_exceptions=True)
        await server.wait_closed()
        listener_log.info("Stopped listening on {}:{}", self.host, self.port)


class BindingsDriver:
    def __init__(self, host: HostAddress = "0.0.0.0") -> None:
        self.host = host
        self._listeners: dict[PortNumber, BindingsListener] = {}
        self._lock = asyncio.Lock()

    async def listen(self, port: PortNumber, handler: ConnectionHandler) -> BindingsListener:
        async with self._lock:
            existing = self._listeners.get(port)
            if existing is not None:
                listener_log.debug("Already listening on port {}", port)
                return existing
            listener = BindingsListener(port, handler, self.host)
            await listener.start()
            self._listeners[port] = listener
            return listener

    async def close(self, port: PortNumber) -> None:
        async with self._lock:
            listener = self._listeners.pop(port, None)
        if listener is not None:
            await listener.stop()

    async def close_all(self) -> None:
        async with self._lock:
            listeners = list(self._listeners.values())
            self._listeners.clear()
        for listener in listeners:
            await listener.stop()

    def get(self, port: PortNumber) -> BindingsListener | None:
        return self._listeners.get(port)

    def ports(self) -> list[PortNumber]:
        return sorted(self._listeners)

    def __contains__(self, port: object) -> bool:
        return port in self._listeners

    def __len__(self) -> int:
        return len(self._listeners)
