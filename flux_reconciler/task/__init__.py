"""Task tracking for the controllers.

Controllers create their tasks through a shared `TaskService` so they can be
awaited or cancelled together. Keyed tasks give each Kustomization a single
scheduling loop.
"""

from .context import task_service_context, get_task_service
from .service import TaskService, TaskServiceImpl

__all__ = [
    "get_task_service",
    "task_service_context",
    "TaskService",
    "TaskServiceImpl",
]
