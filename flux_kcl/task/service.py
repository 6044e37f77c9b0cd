"""Task tracking service for flux-kcl.

Controllers create their watch loops and reconcile workers through this
service so the orchestrator can wait for outstanding work and shut everything
down in one place.
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
        """Create and track a new short lived task.

        Args:
            coro: The coroutine to run as a task
            name: Optional name of the task for debugging

        Returns:
            The created task
        """

    @abstractmethod
    def create_background_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new long running background task.

        Background tasks are not awaited by `block_till_done`.
        """

    @abstractmethod
    def start_workers(
        self,
        count: int,
        worker: Callable[[int], Coroutine[None, None, Any]],
        name: str,
    ) -> list[asyncio.Task[Any]]:
        """Start a bounded pool of `count` background worker tasks.

        Args:
            count: The number of workers in the pool
            worker: Factory returning the worker coroutine for a worker index
            name: Prefix for the task names
        """

    @abstractmethod
    async def block_till_done(self) -> None:
        """Wait for all active non-background tasks to complete."""

    @abstractmethod
    async def cancel_background_tasks(self) -> None:
        """Cancel all background tasks and wait for them to exit."""

    @abstractmethod
    def get_num_active_tasks(self) -> int:
        """Get the number of active non-background tasks."""


class TaskServiceImpl(TaskService):
    """asyncio based implementation of the TaskService."""

    def __init__(self) -> None:
        """Initialize the task service."""
        self._active_tasks: set[asyncio.Task[Any]] = set()
        self._background_tasks: set[asyncio.Task[Any]] = set()

    def create_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new short lived task."""
        task = asyncio.create_task(coro, name=name)
        self._active_tasks.add(task)
        task.add_done_callback(partial(self._task_done, self._active_tasks))
        return task

    def create_background_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new long running background task."""
        task = asyncio.create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(partial(self._task_done, self._background_tasks))
        return task

    def start_workers(
        self,
        count: int,
        worker: Callable[[int], Coroutine[None, None, Any]],
        name: str,
    ) -> list[asyncio.Task[Any]]:
        """Start a bounded pool of background worker tasks."""
        if count < 1:
            raise ValueError(f"Worker pool size must be positive, got {count}")
        _LOGGER.debug("Starting %d %s workers", count, name)
        return [
            self.create_background_task(worker(index), name=f"{name}-{index}")
            for index in range(count)
        ]

    def _task_done(
        self, task_set: set[asyncio.Task[Any]], task: asyncio.Task[Any]
    ) -> None:
        """Callback when a task is done, logging any failure."""
        try:
            task.result()
        except asyncio.CancelledError:
            pass
        except Exception as e:
            _LOGGER.error("Task %s failed: %s", task.get_name(), e)
        finally:
            task_set.discard(task)

    async def block_till_done(self) -> None:
        """Wait for all active tasks to complete.

        A snapshot of the active tasks is awaited, so tasks created while
        waiting are not included.
        """
        active_tasks = list(self._active_tasks)
        if active_tasks:
            _LOGGER.debug("Waiting for %d tasks to complete", len(active_tasks))
            await asyncio.gather(*active_tasks, return_exceptions=True)
        else:
            await asyncio.sleep(0)

    async def cancel_background_tasks(self) -> None:
        """Cancel all background tasks and wait for them to exit."""
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            _LOGGER.debug("Cancelling %d background tasks", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)

    def get_num_active_tasks(self) -> int:
        """Get the number of active tasks."""
        return len(self._active_tasks)
