"""Connectivity probe for provisioned BoundEndpoint Services."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeAlias

from loguru import logger

from kubebind.core.errors import ConnectivityError
from kubebind.datastructures.type_aliases import HostAddress, PortNumber

probe_log = logger

Dialer: TypeAlias = Callable[
    [HostAddress, PortNumber], Awaitable[tuple[asyncio.StreamReader, asyncio.StreamWriter]]
]


async def probe_connectivity(
    host: HostAddress,
    port: PortNumber,
    *,
    attempts: int = 5,
    backoff: float = 3.0,
    dial_timeout: float = 1.0,
    dialer: Dialer | None = None,
) -> int:
    """Dial ``host:port`` until a connection opens and closes cleanly.

    The first attempt is immediate and attempt ``n`` waits ``n * backoff``
    seconds first. Returns the 1-based number of the successful attempt and
    raises ``ConnectivityError`` carrying the last dial error otherwise.
    """
    dial = dialer or asyncio.open_connection
    last_error: BaseException | None = None

    for attempt in range(attempts):
        if attempt:
            await asyncio.sleep(attempt * backoff)
        try:
            _, writer = await asyncio.wait_for(dial(host, port), timeout=dial_timeout)
        except (OSError, TimeoutError) as e:
            last_error = e
            probe_log.debug(
                "Dial {}:{} failed on attempt {}/{}: {!r}", host, port, attempt + 1, attempts, e
            )
            continue

        try:
            writer.close()
            await writer.wait_closed()
        except OSError as e:
            last_error = e
            probe_log.debug("Closing {}:{} failed on attempt {}: {!r}", host, port, attempt + 1, e)
            continue

        probe_log.debug("Dialed {}:{} on attempt {}", host, port, attempt + 1)
        return attempt + 1

    raise ConnectivityError(
        f"failed to connect to {host}:{port} after {attempts} attempts: {last_error}"
    ) from last_error
