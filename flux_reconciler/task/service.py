"""Task tracking service for flux-reconciler.

This service tracks asynchronous tasks so they can be awaited or cancelled as
a group, and runs keyed tasks with mutual exclusion: while a task for a key is
in flight, starting another one for the same key returns the running task.
"""

import asyncio
from collections.abc import Callable, Coroutine
from functools import partial
import logging
from typing import Any
from abc import ABC, abstractmethod

_LOGGER = logging.getLogger(__name__)

__all__: list[str] = []


class TaskService(ABC):
    """Service for tracking and waiting for asynchronous tasks."""

    @abstractmethod
    def create_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new short lived task."""

    @abstractmethod
    def create_background_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new long running background task."""

    @abstractmethod
    def create_keyed_task(
        self, key: str, factory: Callable[[], Coroutine[None, None, Any]]
    ) -> tuple[asyncio.Task[Any], bool]:
        """Run the coroutine from `factory` unless a task for `key` is in flight.

        The factory is only called when a new task is started.

        Returns:
            The task for the key and whether it was newly created.
        """

    @abstractmethod
    def get_keyed_task(self, key: str) -> asyncio.Task[Any] | None:
        """Return the in flight task for the key, if any."""

    @abstractmethod
    async def block_till_done(self) -> None:
        """Wait for all active short lived tasks to complete."""

    @abstractmethod
    def get_num_active_tasks(self) -> int:
        """Get the number of active short lived tasks."""

    @abstractmethod
    async def close(self) -> None:
        """Cancel every tracked task and wait for them to finish."""


class TaskServiceImpl(TaskService):
    """Service for tracking and waiting for asynchronous tasks."""

    def __init__(self) -> None:
        """Initialize the task service."""
        self._active_tasks: set[asyncio.Task[Any]] = set()
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._keyed_tasks: dict[str, asyncio.Task[Any]] = {}

    def create_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._active_tasks.add(task)
        task.add_done_callback(partial(self._task_done, self._active_tasks))
        return task

    def create_background_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(partial(self._task_done, self._background_tasks))
        return task

    def create_keyed_task(
        self, key: str, factory: Callable[[], Coroutine[None, None, Any]]
    ) -> tuple[asyncio.Task[Any], bool]:
        if (existing := self._keyed_tasks.get(key)) is not None and not existing.done():
            _LOGGER.debug("Task for %s already in flight", key)
            return existing, False
        task = self.create_background_task(factory(), name=key)
        self._keyed_tasks[key] = task
        task.add_done_callback(partial(self._keyed_task_done, key))
        return task, True

    def get_keyed_task(self, key: str) -> asyncio.Task[Any] | None:
        if (task := self._keyed_tasks.get(key)) is not None and not task.done():
            return task
        return None

    def _keyed_task_done(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._keyed_tasks.get(key) is task:
            del self._keyed_tasks[key]

    def _task_done(
        self, task_set: set[asyncio.Task[Any]], task: asyncio.Task[Any]
    ) -> None:
        """Callback when a task is done."""
        try:
            # This will raise any exception that occurred in the task
            task.result()
        except asyncio.CancelledError:
            pass
        except Exception as e:
            _LOGGER.error("Task %s failed: %s", task.get_name(), e)
        finally:
            task_set.discard(task)

    async def block_till_done(self) -> None:
        """Wait for all active tasks to complete.

        This method creates a copy of the current active tasks and waits
        for them to complete. It's safe to call even if new tasks are created
        while waiting.
        """
        active_tasks = list(self._active_tasks)
        if active_tasks:
            _LOGGER.debug("Waiting for %d tasks to complete", len(active_tasks))
            await asyncio.gather(*active_tasks, return_exceptions=True)
        else:
            await asyncio.sleep(0)

    def get_num_active_tasks(self) -> int:
        return len(self._active_tasks)

    async def close(self) -> None:
        tasks = list(self._active_tasks | self._background_tasks)
        if not tasks:
            return
        _LOGGER.debug("Cancelling %d tasks", len(tasks))
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._keyed_tasks.clear()
