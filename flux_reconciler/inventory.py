"""The record of objects applied by a Kustomization.

The inventory is the sole source of truth for garbage collection: objects in
the previous inventory that are absent from the current render are stale.
Entries use the same id format as Flux, `<namespace>_<name>_<group>_<kind>`,
with the version stored alongside.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
import logging
from typing import Any

from mashumaro import DataClassDictMixin
from mashumaro.config import BaseConfig

from .exceptions import InventoryException

__all__ = [
    "ObjMetadata",
    "ResourceRef",
    "ResourceInventory",
]

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class ObjMetadata:
    """Identity of a cluster object."""

    group: str
    version: str
    kind: str
    namespace: str
    name: str

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> "ObjMetadata":
        """Return the identity of a raw kubernetes object."""
        if not (api_version := obj.get("apiVersion")):
            raise InventoryException(f"Object missing apiVersion: {obj}")
        if not (kind := obj.get("kind")):
            raise InventoryException(f"Object missing kind: {obj}")
        metadata = obj.get("metadata") or {}
        if not (name := metadata.get("name")):
            raise InventoryException(f"Object missing metadata.name: {obj}")
        group, version = split_api_version(api_version)
        return cls(
            group=group,
            version=version,
            kind=kind,
            namespace=metadata.get("namespace") or "",
            name=name,
        )

    @classmethod
    def parse_id(cls, object_id: str, version: str) -> "ObjMetadata":
        """Parse an inventory id of the form `<namespace>_<name>_<group>_<kind>`."""
        parts = object_id.split("_")
        if len(parts) != 4 or not parts[1] or not parts[3]:
            raise InventoryException(f"Malformed inventory entry id '{object_id}'")
        namespace, name, group, kind = parts
        return cls(group=group, version=version, kind=kind, namespace=namespace, name=name)

    @property
    def id(self) -> str:
        return f"{self.namespace}_{self.name}_{self.group}_{self.kind}"

    @property
    def api_version(self) -> str:
        if self.group:
            return f"{self.group}/{self.version}"
        return self.version

    @property
    def sort_key(self) -> tuple[str, str, str, str]:
        """Stable key independent of version used for diagnostics."""
        return (self.group, self.kind, self.namespace, self.name)

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"


def split_api_version(api_version: str) -> tuple[str, str]:
    """Split an apiVersion into group and version, core objects have no group."""
    if "/" in api_version:
        group, version = api_version.split("/", 1)
        return group, version
    return "", api_version


@dataclass
class ResourceRef(DataClassDictMixin):
    """A serialized inventory entry."""

    id: str
    v: str


@dataclass
class ResourceInventory(DataClassDictMixin):
    """Ordered set of the objects applied by the last reconciliation."""

    entries: list[ResourceRef] = field(default_factory=list)

    class Config(BaseConfig):
        omit_none = True

    @classmethod
    def from_objects(cls, objects: Iterable[ObjMetadata]) -> "ResourceInventory":
        """Create an inventory preserving order and dropping duplicates."""
        seen: set[str] = set()
        entries = []
        for obj in objects:
            if obj.id in seen:
                continue
            seen.add(obj.id)
            entries.append(ResourceRef(id=obj.id, v=obj.version))
        return cls(entries=entries)

    def objects(self) -> list[ObjMetadata]:
        """Return the object identities in inventory order.

        Raises InventoryException if any entry is malformed.
        """
        return [ObjMetadata.parse_id(entry.id, entry.v) for entry in self.entries]

    def ids(self) -> set[str]:
        return {entry.id for entry in self.entries}

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, obj: object) -> bool:
        if not isinstance(obj, ObjMetadata):
            return False
        return obj.id in self.ids()


def diff(
    previous: ResourceInventory | None, current: Iterable[ObjMetadata]
) -> list[ObjMetadata]:
    """Return the objects in `previous` that are absent from `current`.

    Stale objects are returned in the order they appear in the previous inventory.
    Identity ignores the version so that an apiVersion upgrade is not pruned.
    """
    if previous is None:
        return []
    current_ids = {obj.id for obj in current}
    stale = [obj for obj in previous.objects() if obj.id not in current_ids]
    _LOGGER.debug("Inventory diff found %d stale objects", len(stale))
    return stale
