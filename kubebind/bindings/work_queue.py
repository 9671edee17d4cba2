"""Deduplicating work queue of object keys."""

from __future__ import annotations

import asyncio

from kubebind.datastructures.type_aliases import ObjectKey


class WorkQueue:
    """
    An asyncio queue that holds each key at most once.

    A key added while it is being processed is re-queued when ``done`` is
    called for it, so no change is lost and no key is processed by two
    workers at the same time.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[ObjectKey] = asyncio.Queue()
        self._queued: set[ObjectKey] = set()
        self._processing: set[ObjectKey] = set()
        self._dirty: set[ObjectKey] = set()
        self._delayed: dict[ObjectKey, asyncio.TimerHandle] = {}
        self._shutdown = False

    def add(self, key: ObjectKey) -> None:
        if self._shutdown:
            return
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.put_nowait(key)

    def add_after(self, key: ObjectKey, delay: float) -> None:
        """Add ``key`` after ``delay`` seconds; a later call replaces an earlier one."""
        if self._shutdown:
            return
        handle = self._delayed.pop(key, None)
        if handle is not None:
            handle.cancel()
        loop = asyncio.get_running_loop()
        self._delayed[key] = loop.call_later(delay, self._fire_delayed, key)

    def _fire_delayed(self, key: ObjectKey) -> None:
        self._delayed.pop(key, None)
        self.add(key)

    async def get(self) -> ObjectKey:
        key = await self._queue.get()
        self._queued.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: ObjectKey) -> None:
        self._processing.discard(key)
        self._queue.task_done()
        if key in self._dirty:
            self._dirty.discard(key)
            self.add(key)

    async def join(self) -> None:
        await self._queue.join()

    def shutdown(self) -> None:
        self._shutdown = True
        for handle in self._delayed.values():
            handle.cancel()
        self._delayed.clear()

    def __len__(self) -> int:
        return len(self._queued)

    def __contains__(self, key: object) -> bool:
        return key in self._queued
