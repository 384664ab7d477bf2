"""Context management for the TaskService shared by controllers."""

import contextvars
import contextlib
import logging
from collections.abc import AsyncGenerator

from .service import TaskService, TaskServiceImpl

__all__: list[str] = []

_LOGGER = logging.getLogger(__name__)

_task_service_ctx: contextvars.ContextVar[TaskService | None] = contextvars.ContextVar(
    "_task_service_ctx", default=None
)


def get_task_service() -> TaskService:
    """Get the current task service instance, creating one if needed."""
    if (instance := _task_service_ctx.get()) is None:
        instance = TaskServiceImpl()
        _task_service_ctx.set(instance)
    return instance


@contextlib.asynccontextmanager
async def task_service_context(
    service: TaskService | None = None,
) -> AsyncGenerator[TaskService, None]:
    """Install a TaskService for the duration of the context.

    Any tasks still running when the context exits are cancelled, which stops
    the per Kustomization scheduling loops.
    """
    service = service or TaskServiceImpl()
    _task_service_ctx.set(service)
    try:
        yield service
    finally:
        await service.close()
        _task_service_ctx.set(None)
