"""In memory cluster used for local reconciliation and tests."""

import copy
import logging
from typing import Any

from flux_reconciler.exceptions import ImmutableFieldError, ObjectNotFoundError
from flux_reconciler.inventory import ObjMetadata

from .client import ApplyAction, AppliedObject, ClusterClient, Credential

__all__ = ["InMemoryCluster"]

_LOGGER = logging.getLogger(__name__)

# Fields that can't be changed once an object is created, by kind.
IMMUTABLE_FIELDS: dict[str, list[tuple[str, ...]]] = {
    "Deployment": [("spec", "selector")],
    "StatefulSet": [("spec", "selector"), ("spec", "serviceName")],
    "DaemonSet": [("spec", "selector")],
    "Job": [("spec", "selector"), ("spec", "template")],
    "Service": [("spec", "clusterIP")],
    "PersistentVolumeClaim": [("spec", "storageClassName")],
}


def _lookup(obj: dict[str, Any], path: tuple[str, ...]) -> Any:
    value: Any = obj
    for key in path:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def _without_status(obj: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in obj.items() if k != "status"}


class InMemoryCluster(ClusterClient):
    """A cluster that keeps objects in a dictionary.

    Objects are keyed by their identity without the version, the same way the
    API server serves an object under every version of its group. Applies are
    upserts that keep the live status of an object. Every create, update or
    delete increments `mutations`.
    """

    def __init__(self) -> None:
        """Initialize InMemoryCluster."""
        self._objects: dict[str, dict[str, Any]] = {}
        self.mutations = 0

    async def apply(self, obj: dict[str, Any], credential: Credential) -> AppliedObject:
        ref = ObjMetadata.from_object(obj)
        desired = copy.deepcopy(_without_status(obj))
        existing = self._objects.get(ref.id)
        if existing is None:
            self._objects[ref.id] = desired
            self.mutations += 1
            _LOGGER.debug("Created %s as %s", ref, credential)
            return AppliedObject(ref, ApplyAction.CREATED)

        if _without_status(existing) == desired:
            return AppliedObject(ref, ApplyAction.UNCHANGED)

        changed = [
            ".".join(path)
            for path in IMMUTABLE_FIELDS.get(ref.kind, ())
            if (current := _lookup(existing, path)) is not None
            and current != _lookup(desired, path)
        ]
        if changed:
            raise ImmutableFieldError(str(ref), changed)

        if "status" in existing:
            desired["status"] = existing["status"]
        self._objects[ref.id] = desired
        self.mutations += 1
        _LOGGER.debug("Configured %s as %s", ref, credential)
        return AppliedObject(ref, ApplyAction.CONFIGURED)

    async def delete(self, ref: ObjMetadata, credential: Credential) -> None:
        if self._objects.pop(ref.id, None) is None:
            raise ObjectNotFoundError(f"{ref} not found")
        self.mutations += 1
        _LOGGER.debug("Deleted %s as %s", ref, credential)

    async def get(
        self, ref: ObjMetadata, credential: Credential
    ) -> dict[str, Any] | None:
        if (obj := self._objects.get(ref.id)) is None:
            return None
        return copy.deepcopy(obj)

    async def list_by_label(
        self, selector: dict[str, str], credential: Credential
    ) -> list[dict[str, Any]]:
        result = []
        for obj in self._objects.values():
            labels = (obj.get("metadata") or {}).get("labels") or {}
            if all(labels.get(key) == value for key, value in selector.items()):
                result.append(copy.deepcopy(obj))
        return result

    def set_status(self, ref: ObjMetadata, status: dict[str, Any]) -> None:
        """Replace the live status of an object, as a workload controller would."""
        if (obj := self._objects.get(ref.id)) is None:
            raise ObjectNotFoundError(f"{ref} not found")
        obj["status"] = copy.deepcopy(status)

    def objects(self) -> list[dict[str, Any]]:
        """Return a copy of every object in the cluster."""
        return [copy.deepcopy(obj) for obj in self._objects.values()]

    def __contains__(self, ref: object) -> bool:
        return isinstance(ref, ObjMetadata) and ref.id in self._objects
