"""Context variable holding the TaskService of the running controllers."""

import contextvars
import contextlib
from collections.abc import Generator

from .service import TaskService, TaskServiceImpl

__all__: list[str] = []

_task_service_ctx: contextvars.ContextVar[TaskService | None] = contextvars.ContextVar(
    "_task_service_ctx", default=None
)


def get_task_service() -> TaskService:
    """Return the TaskService of the current context, creating one if unset."""
    if (instance := _task_service_ctx.get()) is None:
        instance = TaskServiceImpl()
        _task_service_ctx.set(instance)
    return instance


@contextlib.contextmanager
def task_service_context(
    service: TaskService | None = None,
) -> Generator[TaskService, None, None]:
    """Install a TaskService for the duration of the context.

    The previous service, if any, is restored on exit.
    """
    token = _task_service_ctx.set(service or TaskServiceImpl())
    try:
        yield _task_service_ctx.get()  # type: ignore[misc]
    finally:
        _task_service_ctx.reset(token)
