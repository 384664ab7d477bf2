"""Source artifacts consumed by the Kustomization controller.

Fetching sources (git clones, OCI pulls) is handled by an external source
controller which publishes a content addressed artifact for each source
object. The Kustomization controller only consumes `(path, revision)`.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
import logging

from .exceptions import SourceNotReadyError
from .manifest import NamedResource, SourceReference
from .store import Artifact, Store

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "SourceArtifact",
    "SourceProvider",
    "StoreSourceProvider",
]


@dataclass(frozen=True, kw_only=True)
class SourceArtifact(Artifact):
    """A fetched source.

    Attributes:
        path: Local path of the extracted artifact contents.
        revision: Revision of the artifact e.g. `main@sha1:<commit>`.
    """

    path: str
    revision: str


class SourceProvider(ABC):
    """Supplies the fetched artifact for a source reference."""

    @abstractmethod
    async def fetch(self, source_ref: SourceReference) -> SourceArtifact:
        """Return the artifact for the source.

        Raises SourceNotReadyError if the artifact is not available.
        """


class StoreSourceProvider(SourceProvider):
    """Reads the artifacts a source controller published to the store."""

    def __init__(self, store: Store) -> None:
        self._store = store

    async def fetch(self, source_ref: SourceReference) -> SourceArtifact:
        resource_id = NamedResource(
            source_ref.kind, source_ref.namespace, source_ref.name
        )
        if (artifact := self._store.get_artifact(resource_id, SourceArtifact)) is None:
            raise SourceNotReadyError(
                f"Source artifact {resource_id} not found"
            )
        _LOGGER.debug("Resolved %s to revision %s", resource_id, artifact.revision)
        return artifact
