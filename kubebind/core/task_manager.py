"""
Task lifecycle management for background asyncio work.

The poller gives each reconciliation pass its own ``TaskManager``; cancelling
that manager is the cancellation boundary for the pass's action loops.
"""

import asyncio
from collections.abc import Coroutine
from typing import Any

from loguru import logger

task_log = logger


class TaskManager:
    """Tracks background tasks and cancels them together."""

    def __init__(self, name: str = "TaskManager") -> None:
        self.name = name
        self.tasks: set[asyncio.Task[Any]] = set()
        self._shutdown_requested = False

    @property
    def cancelled(self) -> bool:
        return self._shutdown_requested

    def create_task(
        self, coro: Coroutine[Any, Any, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a background task."""
        if self._shutdown_requested:
            coro.close()
            raise RuntimeError(f"[{self.name}] Cannot create tasks after shutdown requested")

        task = asyncio.create_task(coro, name=name)
        self.tasks.add(task)
        task.add_done_callback(self._task_completed)

        task_log.debug("[{}] Created task {}", self.name, task.get_name())
        return task

    def _task_completed(self, task: asyncio.Task[Any]) -> None:
        self.tasks.discard(task)

        if task.cancelled():
            task_log.debug("[{}] Task {} was cancelled", self.name, task.get_name())
        elif task.exception():
            task_log.error(
                "[{}] Task {} failed: {}", self.name, task.get_name(), task.exception()
            )
        else:
            task_log.debug("[{}] Task {} completed", self.name, task.get_name())

    def cancel(self) -> None:
        """Request cancellation of every tracked task without waiting."""
        self._shutdown_requested = True
        for task in self.tasks:
            if not task.done():
                task.cancel()

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Cancel all managed tasks and wait for them to finish."""
        self.cancel()

        pending_tasks = [task for task in self.tasks if not task.done()]
        if not pending_tasks:
            return

        task_log.debug("[{}] Waiting on {} cancelled tasks", self.name, len(pending_tasks))
        _, pending = await asyncio.wait(pending_tasks, timeout=timeout)
        for task in pending:
            task_log.warning("[{}] Task {} did not stop in time", self.name, task.get_name())

        self.tasks.clear()

    def __len__(self) -> int:
        return len(self.tasks)

    def __bool__(self) -> bool:
        return bool(self.tasks)


class ManagedObject:
    """Base class for objects that own long-running background tasks."""

    def __init__(self, name: str | None = None) -> None:
        self._task_manager = TaskManager(name or self.__class__.__name__)

    def create_task(
        self, coro: Coroutine[Any, Any, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create a managed background task."""
        return self._task_manager.create_task(coro, name)

    async def shutdown(self) -> None:
        """Shutdown the object and all its background tasks."""
        await self._task_manager.shutdown()
