"""Dependency gate for Kustomizations.

Before a Kustomization is built, every entry of `spec.dependsOn` must refer to
a Kustomization that exists, has reconciled its latest generation, and is
Ready. A dependency built from the same source must also have applied the
revision that is about to be built, so that units sharing a source move
forward together.

Cycles in the dependency graph are a configuration error. The graph over all
Kustomizations is checked once per pass and the result is cached until a
Kustomization is added, changed or removed.
"""

import logging
from typing import Any

from .conditions import is_ready
from .exceptions import DependencyCycleError, DependencyNotReadyError
from .manifest import KUSTOMIZE_KIND, Kustomization, NamedResource
from .store import Store, StoreEvent

__all__ = [
    "DependencyGraph",
    "DependencyGate",
]

_LOGGER = logging.getLogger(__name__)


def find_cycles(
    edges: dict[NamedResource, list[NamedResource]],
) -> dict[NamedResource, list[NamedResource]]:
    """Return the cycle each node is part of, using a depth first search.

    The cycle of a node starts and ends with that node.
    """
    cycles: dict[NamedResource, list[NamedResource]] = {}
    visited: set[NamedResource] = set()
    stack: list[NamedResource] = []
    on_stack: set[NamedResource] = set()

    def visit(node: NamedResource) -> None:
        visited.add(node)
        stack.append(node)
        on_stack.add(node)
        for dep in edges.get(node, ()):
            if dep in on_stack:
                loop = stack[stack.index(dep) :]
                for i, member in enumerate(loop):
                    if member not in cycles:
                        rotated = loop[i:] + loop[:i]
                        cycles[member] = rotated + [member]
            elif dep not in visited:
                visit(dep)
        stack.pop()
        on_stack.discard(node)

    for node in sorted(edges):
        if node not in visited:
            visit(node)
    return cycles


class DependencyGraph:
    """The dependsOn edges between all Kustomizations in the store."""

    def __init__(self, store: Store) -> None:
        self._store = store
        self._cycles: dict[NamedResource, list[NamedResource]] | None = None
        self._remove_listeners = [
            store.add_listener(StoreEvent.OBJECT_ADDED, self._on_change),
            store.add_listener(StoreEvent.OBJECT_DELETED, self._on_change),
        ]

    def _on_change(self, resource_id: NamedResource, obj: Any) -> None:
        if resource_id.kind == KUSTOMIZE_KIND:
            self.invalidate()

    def invalidate(self) -> None:
        """Drop the cached cycle detection result."""
        self._cycles = None

    def cycle(self, resource_id: NamedResource) -> list[NamedResource] | None:
        """Return the dependency cycle through the Kustomization, if any."""
        if self._cycles is None:
            edges = {}
            for ks in self._store.kustomizations():
                node, deps = ks.get_depends_on()
                edges[node] = deps
            self._cycles = find_cycles(edges)
            if self._cycles:
                _LOGGER.warning(
                    "Dependency cycles detected for: %s",
                    ", ".join(str(node) for node in sorted(self._cycles)),
                )
        return self._cycles.get(resource_id)

    def close(self) -> None:
        for remove in self._remove_listeners:
            remove()
        self._remove_listeners.clear()


class DependencyGate:
    """Checks that the dependencies of a Kustomization are ready."""

    def __init__(self, store: Store, graph: DependencyGraph | None = None) -> None:
        self._store = store
        self._graph = graph or DependencyGraph(store)

    def check(self, ks: Kustomization, revision: str) -> None:
        """Pass if every dependency is ready for the revision about to be built.

        Dependencies are checked in declaration order and the first unmet one
        is reported.

        Raises:
            DependencyCycleError: The Kustomization is part of a cycle.
            DependencyNotReadyError: A dependency is missing or not ready.
        """
        if not ks.spec.depends_on:
            return
        if (cycle := self._graph.cycle(ks.resource_id)) is not None:
            raise DependencyCycleError([node.namespaced_name for node in cycle])

        for dep_id in ks.get_depends_on()[1]:
            dep_name = dep_id.namespaced_name
            if (dep := self._store.get_object(dep_id, Kustomization)) is None:
                raise DependencyNotReadyError(dep_name, "not found")
            if dep.status.observed_generation < dep.generation or not is_ready(
                dep.status
            ):
                raise DependencyNotReadyError(dep_name, "is not ready")
            if (
                dep.spec.source_ref.resource_id == ks.spec.source_ref.resource_id
                and dep.status.last_applied_revision != revision
            ):
                raise DependencyNotReadyError(
                    dep_name, f"is not up to date with revision '{revision}'"
                )
        _LOGGER.debug("All dependencies of %s are ready", ks.namespaced_name)
