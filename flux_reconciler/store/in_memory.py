"""Module for in memory object store."""

import asyncio
import copy
from collections import defaultdict
from collections.abc import Callable, AsyncGenerator
from typing import Any, TypeVar, DefaultDict

import logging

from flux_reconciler.conditions import READY_CONDITION
from flux_reconciler.exceptions import ObjectNotFoundError
from flux_reconciler.manifest import (
    BaseManifest,
    ConditionStatus,
    Kustomization,
    KustomizationStatus,
    NamedResource,
)

from .artifact import Artifact
from .store import Store, StoreEvent


_LOGGER = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseManifest)
S = TypeVar("S", bound=Artifact)


def _resource_id(obj: BaseManifest) -> NamedResource:
    if not hasattr(obj, "kind") or not hasattr(obj, "name"):
        raise ValueError("Object must have kind, namespace, and name attributes")
    return NamedResource(obj.kind, getattr(obj, "namespace", None), obj.name)


class InMemoryStore(Store):
    """In-memory implementation of the Store interface.

    Stores manifest objects and artifacts keyed by NamedResource. Objects are
    copied on the way in and out so callers never share state with the store.
    Supports event listeners for object, status, and artifact changes.
    """

    def __init__(self) -> None:
        """Initialize the InMemoryStore."""
        self._objects: dict[NamedResource, BaseManifest] = {}
        self._artifacts: dict[NamedResource, Artifact] = {}
        self._listeners: DefaultDict[StoreEvent, list[Callable[..., None]]] = (
            defaultdict(list)
        )

    def add_object(self, obj: BaseManifest) -> None:
        """Add a manifest object to the store."""
        resource_id = _resource_id(obj)
        obj = copy.deepcopy(obj)
        existing = self._objects.get(resource_id)
        if isinstance(obj, Kustomization) and isinstance(existing, Kustomization):
            if existing.spec == obj.spec:
                _LOGGER.debug(
                    "Object %s already exists in store, skipping", resource_id
                )
                return
            # The spec is user owned, the status is carried over from the
            # previous version and the generation moves forward.
            obj.generation = existing.generation + 1
            obj.status = existing.status
            obj.deletion_requested = existing.deletion_requested
            _LOGGER.debug(
                "Updating %s in store to generation %d", resource_id, obj.generation
            )
        elif existing is not None and existing == obj:
            _LOGGER.debug("Object %s already exists in store, skipping", resource_id)
            return

        self._objects[resource_id] = obj
        self._fire_event(StoreEvent.OBJECT_ADDED, resource_id, copy.deepcopy(obj))

    def get_object(self, resource_id: NamedResource, cls: type[T]) -> T | None:
        """Retrieve a manifest object by resource identity and type."""
        obj = self._objects.get(resource_id)
        if obj is not None:
            if isinstance(obj, cls):
                return copy.deepcopy(obj)
            raise ValueError(
                f"Object {resource_id.namespaced_name} is not of type {cls.__name__} (was {obj.__class__.__name__})"
            )
        return None

    def list_objects(self, kind: str | None = None) -> list[BaseManifest]:
        """List all manifest objects in the store, optionally filtered by kind."""
        return [
            copy.deepcopy(obj)
            for obj in self._objects.values()
            if kind is None or getattr(obj, "kind", None) == kind
        ]

    def request_deletion(self, resource_id: NamedResource) -> None:
        """Mark a Kustomization for deletion."""
        obj = self._objects.get(resource_id)
        if not isinstance(obj, Kustomization):
            raise ObjectNotFoundError(f"Kustomization {resource_id} not found")
        if obj.deletion_requested:
            return
        _LOGGER.info("Deletion requested for %s", resource_id)
        obj.deletion_requested = True
        self._fire_event(StoreEvent.OBJECT_ADDED, resource_id, copy.deepcopy(obj))

    def remove_object(self, resource_id: NamedResource) -> None:
        """Remove an object from the store."""
        if (obj := self._objects.pop(resource_id, None)) is None:
            raise ObjectNotFoundError(f"Object {resource_id} not found")
        _LOGGER.debug("Removed %s from store", resource_id)
        self._artifacts.pop(resource_id, None)
        self._fire_event(StoreEvent.OBJECT_DELETED, resource_id, obj)

    def update_status(
        self, resource_id: NamedResource, status: KustomizationStatus
    ) -> None:
        """Persist the status of a Kustomization."""
        obj = self._objects.get(resource_id)
        if not isinstance(obj, Kustomization):
            raise ObjectNotFoundError(
                f"Kustomization {resource_id} not found, can't update status"
            )
        ready = status.conditions.get(READY_CONDITION)
        if ready is not None and ready.status == ConditionStatus.FALSE:
            _LOGGER.error(
                "Resource %s not ready (%s): %s",
                resource_id.namespaced_name,
                ready.reason,
                ready.message,
            )
        else:
            _LOGGER.debug(
                "Updating status for resource %s (%s)",
                resource_id.namespaced_name,
                ready.reason if ready else None,
            )
        obj.status = copy.deepcopy(status)
        self._fire_event(
            StoreEvent.STATUS_UPDATED, resource_id, copy.deepcopy(obj.status)
        )

    def get_status(self, resource_id: NamedResource) -> KustomizationStatus | None:
        """Retrieve the processing status for a resource."""
        obj = self._objects.get(resource_id)
        if not isinstance(obj, Kustomization):
            return None
        return copy.deepcopy(obj.status)

    def set_artifact(self, resource_id: NamedResource, artifact: Artifact) -> None:
        """Store artifact information for a resource."""
        if not isinstance(artifact, Artifact):
            raise ValueError(
                f"Artifact/set {resource_id.namespaced_name} is not of type {Artifact.__name__} (was {artifact.__class__.__name__})"
            )
        self._artifacts[resource_id] = artifact
        self._fire_event(StoreEvent.ARTIFACT_UPDATED, resource_id, artifact)

    def get_artifact(self, resource_id: NamedResource, cls: type[S]) -> S | None:
        """Retrieve artifact information for a resource."""
        artifact = self._artifacts.get(resource_id)
        if artifact is not None:
            if not isinstance(artifact, cls):
                raise ValueError(
                    f"Artifact/get {resource_id.namespaced_name} is not of type {cls.__name__} (was {artifact.__class__.__name__})"
                )
            return artifact
        return None

    def has_failed_resources(self) -> bool:
        """Check if any Kustomization in the store is not ready."""
        for obj in self._objects.values():
            if not isinstance(obj, Kustomization):
                continue
            ready = obj.status.conditions.get(READY_CONDITION)
            if ready is not None and ready.status == ConditionStatus.FALSE:
                return True
        return False

    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[NamedResource, Any], None],
    ) -> Callable[[], None]:
        """Register a callback for a specific event."""

        def remove() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        self._listeners[event].append(callback)
        return remove

    def _fire_event(self, event: StoreEvent, *args: Any) -> None:
        for cb in list(self._listeners[event]):  # Iterate over a copy for safe removal
            try:
                cb(*args)
            except Exception:
                _LOGGER.exception("Store listener callback failed for event %s", event)

    async def watch_added(
        self, kind: str
    ) -> AsyncGenerator[tuple[NamedResource, BaseManifest]]:
        """
        Watch for objects of a specific kind being added or updated.

        Existing objects of the kind are yielded first.
        """
        queue: asyncio.Queue[tuple[NamedResource, BaseManifest]] = asyncio.Queue()

        def callback(added_resource_id: NamedResource, added_obj: BaseManifest) -> None:
            if getattr(added_obj, "kind", None) == kind:
                queue.put_nowait((added_resource_id, added_obj))

        # Register before yielding existing objects so no update is missed
        remove_listener = self.add_listener(StoreEvent.OBJECT_ADDED, callback)
        try:
            for resource_id, obj in list(self._objects.items()):
                if getattr(obj, "kind", None) == kind:
                    yield resource_id, copy.deepcopy(obj)
            while True:
                resource_id, obj = await queue.get()
                yield resource_id, obj
                queue.task_done()
        except asyncio.CancelledError:
            _LOGGER.debug("watch_added for kind '%s' cancelled.", kind)
            raise
        finally:
            _LOGGER.debug("Cleaning up listener for watch_added (kind: %s)", kind)
            remove_listener()
