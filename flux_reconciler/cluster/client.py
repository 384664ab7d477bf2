"""Capability surface of the cluster API consumed by the controller.

The transport (networking, authentication, server side apply) lives outside
of this library. The controller only needs to apply an object, delete an
object, read an object back and list objects by label.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from flux_reconciler.inventory import ObjMetadata

__all__ = [
    "ApplyAction",
    "AppliedObject",
    "ClusterClient",
    "Credential",
]


@dataclass(frozen=True)
class Credential:
    """Opaque handle for the identity used to talk to the cluster.

    Attributes:
        namespace: The namespace of the Kustomization the credential is for.
        service_account: Service account to impersonate, if any.
        kube_config: Contents of a kubeconfig for a remote cluster, if any.
    """

    namespace: str
    service_account: str | None = None
    kube_config: str | None = None

    def __str__(self) -> str:
        if self.kube_config is not None:
            return f"kubeconfig({self.namespace})"
        if self.service_account:
            return f"serviceaccount({self.namespace}/{self.service_account})"
        return "controller"


class ApplyAction(StrEnum):
    """The change made to an object by an apply."""

    CREATED = "created"
    CONFIGURED = "configured"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class AppliedObject:
    """The result of applying a single object."""

    ref: ObjMetadata
    action: ApplyAction

    def __str__(self) -> str:
        return f"{self.ref} {self.action}"


class ClusterClient(ABC):
    """Interface for the cluster API transport."""

    @abstractmethod
    async def apply(self, obj: dict[str, Any], credential: Credential) -> AppliedObject:
        """Create or update the object.

        Raises:
            ImmutableFieldError: The update changes an immutable field.
            ClusterException: The object could not be applied.
        """

    @abstractmethod
    async def delete(self, ref: ObjMetadata, credential: Credential) -> None:
        """Delete the object.

        Raises:
            ObjectNotFoundError: The object does not exist.
            ClusterException: The object could not be deleted.
        """

    @abstractmethod
    async def get(
        self, ref: ObjMetadata, credential: Credential
    ) -> dict[str, Any] | None:
        """Return the live object including its status, or None if missing."""

    @abstractmethod
    async def list_by_label(
        self, selector: dict[str, str], credential: Credential
    ) -> list[dict[str, Any]]:
        """Return all objects whose labels contain every entry of the selector."""
