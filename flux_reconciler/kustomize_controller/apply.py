"""Apply and prune engine for the objects of a Kustomization.

Objects are applied one at a time and failures are recorded per object, so a
single bad object does not block the rest of the set. The new inventory holds
the objects that were applied successfully. Objects recorded in the previous
inventory that are absent from the current render are stale, and are deleted
when pruning is enabled. A stale object that could not be deleted is kept in
the new inventory until a later attempt deletes it.
"""

import copy
from dataclasses import dataclass, field
import logging
from typing import Any

from flux_reconciler.cluster import (
    ApplyAction,
    AppliedObject,
    ClusterClient,
    Credential,
)
from flux_reconciler.exceptions import (
    ClusterException,
    ImmutableFieldError,
    ObjectNotFoundError,
)
from flux_reconciler.inventory import ObjMetadata, ResourceInventory, diff
from flux_reconciler.manifest import (
    DISABLED_VALUE,
    OWNER_NAME_LABEL,
    OWNER_NAMESPACE_LABEL,
    PRUNE_ANNOTATION,
    Kustomization,
)

__all__ = [
    "ApplyEngine",
    "ApplyResult",
    "apply_order",
    "owner_labels",
]

_LOGGER = logging.getLogger(__name__)

# Kinds other objects depend on are applied first, in this order.
_KIND_ORDER = {
    "CustomResourceDefinition": 0,
    "Namespace": 1,
    "ClusterRole": 2,
    "ClusterRoleBinding": 2,
    "StorageClass": 2,
    "PriorityClass": 2,
    "IngressClass": 2,
    "RuntimeClass": 2,
}
_DEFAULT_ORDER = 3


def apply_order(objects: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Sort objects into apply order, keeping render order within a group."""
    return sorted(
        objects, key=lambda obj: _KIND_ORDER.get(obj.get("kind", ""), _DEFAULT_ORDER)
    )


def owner_labels(ks: Kustomization) -> dict[str, str]:
    """Return the labels that mark an object as owned by the Kustomization."""
    return {
        OWNER_NAME_LABEL: ks.name,
        OWNER_NAMESPACE_LABEL: ks.namespace,
    }


def _with_labels(obj: dict[str, Any], labels: dict[str, str]) -> dict[str, Any]:
    obj = copy.deepcopy(obj)
    metadata = obj.setdefault("metadata", {})
    metadata["labels"] = {**(metadata.get("labels") or {}), **labels}
    return obj


def _prune_disabled(obj: dict[str, Any]) -> bool:
    metadata = obj.get("metadata") or {}
    for attr in ("annotations", "labels"):
        if (metadata.get(attr) or {}).get(PRUNE_ANNOTATION) == DISABLED_VALUE:
            return True
    return False


@dataclass
class ApplyResult:
    """The outcome of applying a set of objects."""

    inventory: ResourceInventory
    """The objects successfully applied in apply order, followed by the stale
    objects that could not be pruned."""

    revision: str
    """The revision the objects were rendered from."""

    applied: list[AppliedObject] = field(default_factory=list)

    errors: dict[ObjMetadata, str] = field(default_factory=dict)
    """Apply errors keyed by object, in apply order."""

    pruned: list[ObjMetadata] = field(default_factory=list)

    prune_errors: dict[ObjMetadata, str] = field(default_factory=dict)

    @property
    def changed(self) -> list[AppliedObject]:
        return [obj for obj in self.applied if obj.action != ApplyAction.UNCHANGED]

    def summary(self) -> str:
        """Return a one line description of the changes made."""
        parts = [f"{len(self.applied)} applied", f"{len(self.changed)} changed"]
        if self.errors:
            parts.append(f"{len(self.errors)} failed")
        if self.pruned:
            parts.append(f"{len(self.pruned)} pruned")
        if self.prune_errors:
            parts.append(f"{len(self.prune_errors)} prune failed")
        return ", ".join(parts)


class ApplyEngine:
    """Applies rendered objects and garbage collects stale ones."""

    def __init__(self, client: ClusterClient) -> None:
        self._client = client

    async def apply(
        self,
        ks: Kustomization,
        objects: list[dict[str, Any]],
        revision: str,
        credential: Credential,
    ) -> ApplyResult:
        """Apply the objects and prune what is no longer rendered.

        The previous inventory is read from the status of the Kustomization.

        Raises:
            InventoryException: An object or an inventory entry is malformed,
                which aborts the attempt before anything is changed.
        """
        labels = owner_labels(ks)
        ordered = apply_order([_with_labels(obj, labels) for obj in objects])
        rendered = [ObjMetadata.from_object(obj) for obj in ordered]
        previous = None
        if ks.spec.prune:
            previous = await self._previous_inventory(ks, credential)

        result = ApplyResult(inventory=ResourceInventory(), revision=revision)
        for obj, ref in zip(ordered, rendered):
            try:
                result.applied.append(
                    await self._apply_one(obj, ref, ks.spec.force, credential)
                )
            except ClusterException as err:
                _LOGGER.debug("Failed to apply %s: %s", ref, err)
                result.errors[ref] = str(err)
        result.inventory = ResourceInventory.from_objects(
            applied.ref for applied in result.applied
        )
        _LOGGER.info(
            "Applied revision %s for %s: %s",
            revision,
            ks.namespaced_name,
            result.summary(),
        )

        if previous is not None:
            stale = diff(previous, rendered)
            await self._prune(stale, credential, result)
        return result

    async def prune_all(self, ks: Kustomization, credential: Credential) -> ApplyResult:
        """Delete every object recorded for the Kustomization."""
        previous = await self._previous_inventory(ks, credential)
        result = ApplyResult(
            inventory=ResourceInventory(),
            revision=ks.status.last_applied_revision or "",
        )
        await self._prune(previous.objects(), credential, result)
        return result

    async def _previous_inventory(
        self, ks: Kustomization, credential: Credential
    ) -> ResourceInventory:
        if ks.status.inventory is not None:
            # Parse now so a malformed entry aborts before any change is made
            ks.status.inventory.objects()
            return ks.status.inventory
        _LOGGER.info(
            "No inventory recorded for %s, listing owned objects", ks.namespaced_name
        )
        owned = await self._client.list_by_label(owner_labels(ks), credential)
        return ResourceInventory.from_objects(
            ObjMetadata.from_object(obj) for obj in owned
        )

    async def _apply_one(
        self,
        obj: dict[str, Any],
        ref: ObjMetadata,
        force: bool,
        credential: Credential,
    ) -> AppliedObject:
        try:
            return await self._client.apply(obj, credential)
        except ImmutableFieldError:
            if not force:
                raise
        _LOGGER.info("Recreating %s to change immutable fields", ref)
        try:
            await self._client.delete(ref, credential)
        except ObjectNotFoundError:
            pass
        applied = await self._client.apply(obj, credential)
        return AppliedObject(applied.ref, ApplyAction.CREATED)

    async def _prune(
        self,
        stale: list[ObjMetadata],
        credential: Credential,
        result: ApplyResult,
    ) -> None:
        for ref in reversed(stale):
            try:
                live = await self._client.get(ref, credential)
                if live is None:
                    continue
                if _prune_disabled(live):
                    _LOGGER.info("Skipping prune of %s, pruning is disabled", ref)
                    continue
                await self._client.delete(ref, credential)
            except ObjectNotFoundError:
                continue
            except ClusterException as err:
                _LOGGER.debug("Failed to prune %s: %s", ref, err)
                result.prune_errors[ref] = str(err)
                continue
            _LOGGER.debug("Pruned %s", ref)
            result.pruned.append(ref)
        if result.pruned:
            _LOGGER.info("Pruned %d stale objects", len(result.pruned))
        if result.prune_errors:
            # Objects that could not be deleted stay in the inventory so the
            # next attempt retries them.
            result.inventory = ResourceInventory.from_objects(
                [
                    *result.inventory.objects(),
                    *(ref for ref in stale if ref in result.prune_errors),
                ]
            )
