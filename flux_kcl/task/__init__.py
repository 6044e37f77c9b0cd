"""Task scheduling for the flux-kcl controllers.

The `TaskService` tracks the watch loops and worker tasks started by the
controllers, and the `KeyedWorkQueue` serializes reconciliation per object
identity while letting distinct identities proceed in parallel.
"""

from .context import task_service_context, get_task_service
from .queue import KeyedWorkQueue, QueueShutDown
from .service import TaskService

__all__ = [
    "get_task_service",
    "task_service_context",
    "TaskService",
    "KeyedWorkQueue",
    "QueueShutDown",
]
