"""Store module for holding objects, status and artifacts."""

from abc import ABC, abstractmethod
from collections.abc import Callable, AsyncGenerator
from enum import Enum
from typing import Any, TypeVar, TYPE_CHECKING

from flux_reconciler.manifest import (
    BaseManifest,
    Kustomization,
    KustomizationStatus,
    NamedResource,
)

from .artifact import Artifact

T = TypeVar("T", bound=BaseManifest)
S = TypeVar("S", bound=Artifact)


class StoreEvent(str, Enum):
    """Enum for store events."""

    OBJECT_ADDED = "object_added"
    """An object was added or its spec changed."""

    OBJECT_DELETED = "object_deleted"
    STATUS_UPDATED = "status_updated"
    ARTIFACT_UPDATED = "artifact_updated"


class Store(ABC):
    """Abstract base class for the central object type-safe object store with listener support."""

    @abstractmethod
    def add_object(self, obj: BaseManifest) -> None:
        """Add or update a manifest object in the store.

        Updating the spec of a Kustomization bumps its generation and keeps
        its status.
        """

    @abstractmethod
    def get_object(self, resource_id: NamedResource, cls: type[T]) -> T | None:
        """Retrieve a copy of a manifest object by resource identity and type."""

    @abstractmethod
    def list_objects(self, kind: str | None = None) -> list[BaseManifest]:
        """List all manifest objects in the store, optionally filtered by kind."""

    @abstractmethod
    def request_deletion(self, resource_id: NamedResource) -> None:
        """Mark a Kustomization for deletion, the finalizer must complete it."""

    @abstractmethod
    def remove_object(self, resource_id: NamedResource) -> None:
        """Remove an object from the store."""

    @abstractmethod
    def update_status(
        self, resource_id: NamedResource, status: KustomizationStatus
    ) -> None:
        """Persist the status of a Kustomization."""

    @abstractmethod
    def get_status(self, resource_id: NamedResource) -> KustomizationStatus | None:
        """Retrieve a copy of the persisted status of a Kustomization."""

    @abstractmethod
    def set_artifact(self, resource_id: NamedResource, artifact: Artifact) -> None:
        """Store artifact information (e.g., source path and revision) for a resource."""

    @abstractmethod
    def get_artifact(self, resource_id: NamedResource, cls: type[S]) -> S | None:
        """Retrieve artifact information for a resource."""

    @abstractmethod
    def has_failed_resources(self) -> bool:
        """Check if any Kustomization in the store is not ready.

        Returns:
            bool: True if any Kustomization has a Ready=False condition.
        """

    @abstractmethod
    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[NamedResource, Any], None],
    ) -> Callable[[], None]:
        """Register a callback for a specific event.

        Returns a callable that can be called to remove the listener.
        """

    @abstractmethod
    async def watch_added(
        self, kind: str
    ) -> AsyncGenerator[tuple[NamedResource, BaseManifest]]:
        """
        Watch for objects of a specific kind being added or updated.

        This is an asynchronous iterator that first yields the existing objects
        of the kind and then yields tuples of (NamedResource, BaseManifest) as
        objects are added, updated, or marked for deletion.

        Args:
            kind: The kind of resource to watch for (e.g., "Kustomization").
        """
        if TYPE_CHECKING:
            yield None, None  # type: ignore[misc]

    def kustomizations(self) -> list[Kustomization]:
        """Return all Kustomizations in the store."""
        return [
            obj
            for obj in self.list_objects(Kustomization.kind)
            if isinstance(obj, Kustomization)
        ]
