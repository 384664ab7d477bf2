"""Orchestrator for flux-reconciler.

This module wires the store, the cluster and the collaborators of the
Kustomization controller together, and runs a reconciliation of a set of
Kustomizations loaded from disk.
"""

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

from flux_reconciler import conditions
from flux_reconciler.cluster import (
    ClusterClient,
    InMemoryCluster,
    SecretCredentialResolver,
)
from flux_reconciler.config import OrchestratorConfig
from flux_reconciler.decryption import Decryptor
from flux_reconciler.exceptions import FluxException
from flux_reconciler.health import HealthAssessor
from flux_reconciler.kustomize import KustomizeRenderer, OverlayRenderer
from flux_reconciler.kustomize_controller import (
    ApplyEngine,
    KustomizationController,
    Reconciler,
)
from flux_reconciler.manifest import (
    CONFIG_MAP_KIND,
    SECRET_KIND,
    ConditionStatus,
    ConfigMap,
    Kustomization,
    NamedResource,
    Secret,
)
from flux_reconciler.pipeline import PostBuildPipeline
from flux_reconciler.source import SourceArtifact, SourceProvider, StoreSourceProvider
from flux_reconciler.store import Store, StoreEvent
from flux_reconciler.task import TaskService, get_task_service
from flux_reconciler import values

from .loader import LoadOptions, ResourceLoader

_LOGGER = logging.getLogger(__name__)

DEFAULT_REVISION = "local"


@dataclass
class BootstrapOptions:
    """Options for configuring the bootstrap process.

    Attributes:
        path: The path to load Kustomizations, ConfigMaps and Secrets from.
        source_path: The root of the source artifact every sourceRef resolves
            to, defaults to `path`.
        revision: The revision reported for the source artifact.
    """

    path: Path
    source_path: Path | None = None
    revision: str = DEFAULT_REVISION


def cluster_config_store(store: Store) -> values.ClusterConfig:
    """Create a ClusterConfig from the store's secrets and configmaps."""
    return values.ClusterConfig(
        lambda: cast(list[Secret], store.list_objects(SECRET_KIND)),
        lambda: cast(list[ConfigMap], store.list_objects(CONFIG_MAP_KIND)),
    )


def is_settled(
    ks: Kustomization,
    units: Mapping[NamedResource, Kustomization],
    visiting: frozenset[NamedResource] = frozenset(),
) -> bool:
    """Return True if no further progress is expected for the Kustomization.

    A Kustomization waiting on a dependency is settled once that dependency
    has settled without becoming ready.
    """
    if ks.spec.suspend:
        return True
    if ks.status.observed_generation < ks.generation:
        return False
    ready = ks.status.conditions.get(conditions.READY_CONDITION)
    if ready is None or ready.status == ConditionStatus.UNKNOWN:
        return False
    if ready.reason != conditions.DEPENDENCY_NOT_READY_REASON:
        return True
    visiting = visiting | {ks.resource_id}
    for dep_id in ks.get_depends_on()[1]:
        if (dep := units.get(dep_id)) is None:
            return True
        if dep_id in visiting:
            continue
        if is_settled(dep, units, visiting) and not conditions.is_ready(dep.status):
            return True
    return False


class Orchestrator:
    """Orchestrator for coordinating the Kustomization controller.

    The orchestrator is responsible for:
    - Creating the controller and its collaborators
    - Loading the initial resources into the store
    - Waiting until every Kustomization has settled
    """

    def __init__(
        self,
        store: Store,
        config: OrchestratorConfig | None = None,
        cluster: ClusterClient | None = None,
        renderer: OverlayRenderer | None = None,
        source_provider: SourceProvider | None = None,
        decryptors: Mapping[str, Decryptor] | None = None,
        task_service: TaskService | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Collaborators that are not given default to the in memory cluster,
        the kustomize binary, the artifacts in the store and sops.
        """
        self.store = store
        self.config = config or OrchestratorConfig()
        self.cluster = cluster or InMemoryCluster()
        self._renderer = renderer or KustomizeRenderer()
        self._source_provider = source_provider or StoreSourceProvider(store)
        self._decryptors = decryptors
        self._task_service = task_service or get_task_service()
        self.controller: KustomizationController | None = None

    def _create_controller(self) -> KustomizationController:
        ks_config = self.config.kustomization_controller_config
        cluster_config = cluster_config_store(self.store)
        reconciler = Reconciler(
            store=self.store,
            config=ks_config,
            source_provider=self._source_provider,
            renderer=self._renderer,
            pipeline=PostBuildPipeline(
                cluster_config,
                decryptors=self._decryptors,
                strict=ks_config.strict_substitution,
            ),
            credentials=SecretCredentialResolver(
                cluster_config, ks_config.default_service_account
            ),
            engine=ApplyEngine(self.cluster),
            assessor=HealthAssessor(
                self.cluster,
                poll_interval=ks_config.health_poll_interval,
                max_reported=ks_config.max_reported_unready,
            ),
        )
        return KustomizationController(
            self.store, ks_config, reconciler, self._task_service
        )

    async def start(self) -> None:
        """Start the controller."""
        if self.controller is not None:
            return
        _LOGGER.info("Starting orchestrator")
        self.controller = self._create_controller()

    async def stop(self) -> None:
        """Stop the controller and wait for outstanding tasks."""
        if self.controller is None:
            return
        _LOGGER.info("Stopping orchestrator")
        await self.controller.close()
        await self._task_service.block_till_done()
        self.controller = None
        _LOGGER.info("Orchestrator stopped")

    def has_failed_resources(self) -> bool:
        """Return True if any Kustomization is not ready or not healthy."""
        if self.store.has_failed_resources():
            return True
        for ks in self.store.kustomizations():
            healthy = ks.status.conditions.get(conditions.HEALTHY_CONDITION)
            if healthy is not None and healthy.status == ConditionStatus.FALSE:
                return True
        return False

    def is_complete(self) -> bool:
        """Return True once every Kustomization has settled."""
        units = {ks.resource_id: ks for ks in self.store.kustomizations()}
        return all(is_settled(ks, units) for ks in units.values())

    async def bootstrap(self, options: BootstrapOptions) -> bool:
        """Load resources from disk, reconcile them and stop.

        Returns:
            bool: True if every Kustomization was reconciled successfully.
        """
        _LOGGER.info("Starting bootstrap from path: %s", options.path)
        loader = ResourceLoader(self.config.read_action_config)
        kustomizations: list[Kustomization] = []
        try:
            async for resource in loader.load(LoadOptions(path=options.path)):
                if isinstance(resource, Kustomization):
                    kustomizations.append(resource)
                else:
                    self.store.add_object(resource)
        except FluxException as err:
            _LOGGER.error("Failed to load initial resources: %s", err)
            return False

        source_path = (options.source_path or options.path).expanduser().resolve()
        if source_path.is_file():
            source_path = source_path.parent
        for ks in kustomizations:
            source_id = ks.spec.source_ref.resource_id
            if self.store.get_artifact(source_id, SourceArtifact) is None:
                _LOGGER.info("Serving %s from %s", source_id, source_path)
                self.store.set_artifact(
                    source_id,
                    SourceArtifact(path=str(source_path), revision=options.revision),
                )
        for ks in kustomizations:
            self.store.add_object(ks)

        await self.start()
        try:
            return await self.run()
        finally:
            await self.stop()

    async def run(self) -> bool:
        """Run until every Kustomization has settled.

        Returns:
            bool: True if all work completed successfully, False if any
                resources failed or did not settle in time.
        """
        await self.start()
        changed = asyncio.Event()
        remove_listener = self.store.add_listener(
            StoreEvent.STATUS_UPDATED, lambda *_: changed.set()
        )
        try:
            async with asyncio.timeout(self.config.wait_timeout.total_seconds()):
                while True:
                    changed.clear()
                    if self.is_complete():
                        break
                    await changed.wait()
        except TimeoutError:
            _LOGGER.error("Timed out waiting for Kustomizations to settle")
            return False
        finally:
            remove_listener()

        if self.has_failed_resources():
            _LOGGER.error("One or more resources have failed")
            return False
        _LOGGER.info("All work completed successfully")
        return True
