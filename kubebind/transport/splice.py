"""Full-duplex splicing of two stream connections."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass

from loguru import logger

splice_log = logger

COPY_BUFFER_SIZE = 32 * 1024
MAX_HEADER_BYTES = 64 * 1024


@dataclass(slots=True)
class StreamPair:
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter

    @property
    def peer(self) -> str:
        peername = self.writer.get_extra_info("peername")
        if isinstance(peername, tuple) and len(peername) >= 2:
            return f"{peername[0]}:{peername[1]}"
        return str(peername)

    def close(self) -> None:
        if not self.writer.is_closing():
            self.writer.close()


class HostHeaderRewriter:
    """
    Rewrites the first ``Host:`` header line of an HTTP/1 request stream.

    Bytes before the header pass through untouched and everything after it
    is copied verbatim. Rewriting gives up at the end of the header block or
    after ``MAX_HEADER_BYTES`` without finding the header.
    """

    def __init__(self, host: str) -> None:
        self.replacement = f"Host: {host}\r\n".encode()
        self._pending = b""
        self._scanned = 0
        self.done = False

    def feed(self, data: bytes) -> bytes:
        if self.done:
            return data

        buf = self._pending + data
        out = bytearray()
        start = 0
        while True:
            end = buf.find(b"\n", start)
            if end < 0:
                break
            line = buf[start : end + 1]
            start = end + 1
            if line[:5].lower() == b"host:":
                out += self.replacement
                self.done = True
                break
            out += line
            if line in (b"\r\n", b"\n"):
                # end of headers without a Host line
                self.done = True
                break

        self._scanned += start
        rest = buf[start:]
        if self.done or self._scanned + len(rest) > MAX_HEADER_BYTES:
            self.done = True
            self._pending = b""
            out += rest
        else:
            self._pending = rest
        return bytes(out)

    def flush(self) -> bytes:
        pending, self._pending = self._pending, b""
        self.done = True
        return pending


async def _copy(
    src: StreamPair, dst: StreamPair, rewriter: HostHeaderRewriter | None = None
) -> int:
    total = 0
    try:
        while True:
            data = await src.reader.read(COPY_BUFFER_SIZE)
            if not data:
                break
            if rewriter is not None:
                data = rewriter.feed(data)
            if data:
                dst.writer.write(data)
                await dst.writer.drain()
                total += len(data)
        if rewriter is not None and (tail := rewriter.flush()):
            dst.writer.write(tail)
            await dst.writer.drain()
            total += len(tail)
    finally:
        dst.close()
    return total


async def join_connections(
    client: StreamPair, upstream: StreamPair, rewriter: HostHeaderRewriter | None = None
) -> None:
    """Copy bytes both ways until either side closes or fails.

    Whichever direction finishes first closes both connections; the first
    error raised by a direction is re-raised once both copies are done.
    ``rewriter`` applies to the client-to-upstream direction.
    """
    to_upstream = asyncio.create_task(_copy(client, upstream, rewriter), name="splice-up")
    to_client = asyncio.create_task(_copy(upstream, client), name="splice-down")
    tasks = [to_upstream, to_client]

    first_error: BaseException | None = None
    closed = False
    try:
        for finished in asyncio.as_completed(tasks):
            try:
                await finished
            except (OSError, asyncio.IncompleteReadError) as e:
                # errors caused by our own close below do not count
                if not closed:
                    first_error = e
            if not closed:
                closed = True
                client.close()
                upstream.close()
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        for pair in (client, upstream):
            with contextlib.suppress(OSError):
                await pair.writer.wait_closed()

    if first_error is not None:
        splice_log.debug("Splice between {} and {} ended with {!r}", client.peer, upstream.peer, first_error)
        raise first_error
