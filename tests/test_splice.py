"""Tests for connection splicing and Host header rewriting."""

import asyncio

import pytest

from kubebind.transport.splice import (
    MAX_HEADER_BYTES,
    HostHeaderRewriter,
    StreamPair,
    join_connections,
)

REQUEST = b"GET /path HTTP/1.1\r\nHost: public.example.com\r\nAccept: */*\r\n\r\nbody"
REWRITTEN = b"GET /path HTTP/1.1\r\nHost: web.prod\r\nAccept: */*\r\n\r\nbody"


class TestHostHeaderRewriter:
    def test_single_chunk(self):
        rewriter = HostHeaderRewriter("web.prod")
        assert rewriter.feed(REQUEST) + rewriter.flush() == REWRITTEN
        assert rewriter.done

    @pytest.mark.parametrize("chunk_size", [1, 3, 7, 16])
    def test_split_chunks(self, chunk_size):
        rewriter = HostHeaderRewriter("web.prod")
        out = b"".join(
            rewriter.feed(REQUEST[i : i + chunk_size]) for i in range(0, len(REQUEST), chunk_size)
        )
        assert out + rewriter.flush() == REWRITTEN

    def test_case_insensitive(self):
        rewriter = HostHeaderRewriter("web.prod")
        out = rewriter.feed(b"GET / HTTP/1.1\r\nhOsT: other\r\n\r\n")
        assert out == b"GET / HTTP/1.1\r\nHost: web.prod\r\n\r\n"

    def test_only_first_host_line(self):
        rewriter = HostHeaderRewriter("web.prod")
        out = rewriter.feed(b"GET / HTTP/1.1\r\nHost: a\r\n\r\nHost: b\r\n")
        assert out == b"GET / HTTP/1.1\r\nHost: web.prod\r\n\r\nHost: b\r\n"

    def test_no_host_header(self):
        rewriter = HostHeaderRewriter("web.prod")
        data = b"GET / HTTP/1.0\r\nAccept: */*\r\n\r\nHost: in-body\r\n"
        assert rewriter.feed(data) == data

    def test_gives_up_on_oversized_headers(self):
        rewriter = HostHeaderRewriter("web.prod")
        blob = b"x" * (MAX_HEADER_BYTES + 1)
        assert rewriter.feed(blob) == blob
        assert rewriter.done
        assert rewriter.feed(b"Host: a\r\n") == b"Host: a\r\n"


async def start_front(upstream_addr, rewriter_host=None, results=None):
    """A listener that splices every client to ``upstream_addr``."""

    async def handle(reader, writer):
        up_reader, up_writer = await asyncio.open_connection(*upstream_addr)
        rewriter = HostHeaderRewriter(rewriter_host) if rewriter_host else None
        try:
            await join_connections(
                StreamPair(reader, writer), StreamPair(up_reader, up_writer), rewriter
            )
            outcome = None
        except Exception as e:
            outcome = e
        if results is not None:
            results.append(outcome)

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    return server, server.sockets[0].getsockname()[1]


class TestJoinConnections:
    @pytest.mark.asyncio
    async def test_bytes_flow_both_ways(self, echo_server):
        results: list = []
        server, port = await start_front(echo_server, results=results)
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            writer.write(b"hello")
            await writer.drain()
            assert await reader.readexactly(5) == b"hello"

            payload = bytes(range(256)) * 512
            writer.write(payload)
            await writer.drain()
            assert await reader.readexactly(len(payload)) == payload

            writer.close()
            await writer.wait_closed()
            await asyncio.wait_for(_until(lambda: results), timeout=2)
            assert results == [None]
        finally:
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_upstream_close_closes_client(self):
        async def close_after_greeting(reader, writer):
            writer.write(b"bye")
            await writer.drain()
            writer.close()

        upstream = await asyncio.start_server(close_after_greeting, "127.0.0.1", 0)
        upstream_addr = upstream.sockets[0].getsockname()[:2]
        server, port = await start_front(upstream_addr)
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            assert await asyncio.wait_for(reader.read(), timeout=2) == b"bye"
            writer.close()
        finally:
            server.close()
            upstream.close()
            await server.wait_closed()
            await upstream.wait_closed()

    @pytest.mark.asyncio
    async def test_host_header_rewritten_upstream(self):
        received = bytearray()
        done = asyncio.Event()

        async def capture(reader, writer):
            while data := await reader.read(4096):
                received.extend(data)
                if received.endswith(b"body"):
                    done.set()
            writer.close()

        upstream = await asyncio.start_server(capture, "127.0.0.1", 0)
        upstream_addr = upstream.sockets[0].getsockname()[:2]
        server, port = await start_front(upstream_addr, rewriter_host="web.prod")
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            for i in range(0, len(REQUEST), 10):
                writer.write(REQUEST[i : i + 10])
                await writer.drain()
            await asyncio.wait_for(done.wait(), timeout=2)
            assert bytes(received) == REWRITTEN
            writer.close()
            await writer.wait_closed()
        finally:
            server.close()
            upstream.close()
            await server.wait_closed()
            await upstream.wait_closed()


async def _until(predicate):
    while not predicate():
        await asyncio.sleep(0.01)
