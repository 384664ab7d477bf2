"""
Kustomization Controller implementation.

This controller schedules the reconciliation of Kustomization resources held
in the store. Each Kustomization gets its own scheduling loop:

    - Reconcile now, then sleep for `interval` on success or `retryInterval`
      on failure, and repeat.
    - A change to the spec, or a deletion request, wakes the loop early.
      Triggers that arrive while an attempt is in flight are coalesced into
      a single follow up attempt.
    - A suspended Kustomization parks until its spec changes.
    - A Kustomization marked for deletion runs a final prune only pass and is
      then removed from the store.

At most one loop, and so at most one attempt, exists per Kustomization. The
loops are tracked by the task service under the key of the Kustomization.

Dependencies:
    - flux_reconciler.store.Store: Source of Kustomizations and sink of status.
    - flux_reconciler.kustomize_controller.reconciler.Reconciler: Runs attempts.
"""

import asyncio
import logging
from datetime import timedelta

from flux_reconciler import conditions
from flux_reconciler.config import KustomizationControllerConfig
from flux_reconciler.exceptions import FluxException, ObjectNotFoundError
from flux_reconciler.manifest import (
    KUSTOMIZE_KIND,
    Kustomization,
    KustomizationStatus,
    NamedResource,
)
from flux_reconciler.store import Store, StoreEvent
from flux_reconciler.task import TaskService, get_task_service

from .reconciler import Reconciler

__all__ = ["KustomizationController"]

_LOGGER = logging.getLogger(__name__)


def _task_key(resource_id: NamedResource) -> str:
    return f"reconcile/{resource_id}"


class KustomizationController:
    """Controller for reconciling Kustomization resources.

    This controller watches for Kustomization objects in the store and runs a
    scheduling loop for each of them.
    """

    def __init__(
        self,
        store: Store,
        config: KustomizationControllerConfig,
        reconciler: Reconciler,
        task_service: TaskService | None = None,
    ) -> None:
        """Initialize the controller and start watching the store.

        Args:
            store: The central store for Kustomizations and their status
            config: The configuration for the controller
            reconciler: Runs the reconciliation attempts
            task_service: Tracks the scheduling loops, defaults to the
                current task service
        """
        self._store = store
        self._config = config
        self._reconciler = reconciler
        self._task_service = task_service or get_task_service()
        self._wake: dict[NamedResource, asyncio.Event] = {}
        self._watch_task = self._task_service.create_background_task(
            self._watch_kustomizations(), name="watch/kustomizations"
        )
        self._remove_listener = store.add_listener(
            StoreEvent.STATUS_UPDATED, self._on_status_updated
        )

    async def close(self) -> None:
        """Stop watching the store and cancel every scheduling loop."""
        _LOGGER.info("Closing KustomizationController, cancelling tasks")
        self._remove_listener()
        tasks = [self._watch_task]
        for resource_id in list(self._wake):
            task = self._task_service.get_keyed_task(_task_key(resource_id))
            if task is not None:
                tasks.append(task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._wake.clear()

    async def _watch_kustomizations(self) -> None:
        """Watch for Kustomization objects in the store and trigger their loops."""
        _LOGGER.info("Watching for Kustomization objects in the store")
        async for resource_id, obj in self._store.watch_added(KUSTOMIZE_KIND):
            if not isinstance(obj, Kustomization):
                _LOGGER.warning("Received non-Kustomization object %s, skipping", obj)
                continue
            self.trigger(resource_id)
        _LOGGER.info("Stopped watching for Kustomization objects")

    def _on_status_updated(
        self, resource_id: NamedResource, status: KustomizationStatus
    ) -> None:
        """Wake the dependents of a Kustomization that became ready."""
        if resource_id.kind != KUSTOMIZE_KIND or not conditions.is_ready(status):
            return
        for ks in self._store.kustomizations():
            if resource_id not in ks.get_depends_on()[1]:
                continue
            ready = ks.status.conditions.get(conditions.READY_CONDITION)
            if ready is not None and ready.reason == conditions.DEPENDENCY_NOT_READY_REASON:
                _LOGGER.debug("%s is ready, waking %s", resource_id, ks.resource_id)
                self.trigger(ks.resource_id)

    def trigger(self, resource_id: NamedResource) -> None:
        """Request a reconciliation of the Kustomization as soon as possible."""
        wake = self._wake.setdefault(resource_id, asyncio.Event())
        wake.set()
        _, created = self._task_service.create_keyed_task(
            _task_key(resource_id), lambda: self._run_loop(resource_id, wake)
        )
        if created:
            _LOGGER.debug("Started scheduling loop for %s", resource_id)

    async def _run_loop(self, resource_id: NamedResource, wake: asyncio.Event) -> None:
        """Scheduling loop for a single Kustomization."""
        try:
            while True:
                wake.clear()
                ks = self._store.get_object(resource_id, Kustomization)
                if ks is None:
                    _LOGGER.debug("%s no longer exists", resource_id)
                    return
                if ks.deletion_requested:
                    if await self._finalize(ks):
                        return
                    requeue = ks.get_retry_interval()
                elif ks.spec.suspend:
                    _LOGGER.info("Reconciliation is suspended for %s", ks.namespaced_name)
                    await wake.wait()
                    continue
                else:
                    requeue = await self._reconciler.reconcile(ks)
                await self._sleep(wake, requeue)
        finally:
            if self._wake.get(resource_id) is wake:
                del self._wake[resource_id]

    async def _finalize(self, ks: Kustomization) -> bool:
        """Garbage collect and remove the Kustomization, return True when done."""
        try:
            await self._reconciler.finalize(ks)
        except FluxException as err:
            _LOGGER.error("Finalizer for %s failed: %s", ks.namespaced_name, err)
            return False
        try:
            self._store.remove_object(ks.resource_id)
        except ObjectNotFoundError:
            pass
        _LOGGER.info("Removed %s", ks.namespaced_name)
        return True

    async def _sleep(self, wake: asyncio.Event, requeue: timedelta) -> None:
        """Sleep until the requeue interval elapses or the loop is woken."""
        try:
            async with asyncio.timeout(requeue.total_seconds()):
                await wake.wait()
        except TimeoutError:
            pass
