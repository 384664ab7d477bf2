"""Helpers for the kustomize controller tests."""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from datetime import timedelta
from pathlib import Path
from typing import Any

from flux_reconciler.cluster import ClusterClient, Credential, SecretCredentialResolver
from flux_reconciler.config import KustomizationControllerConfig
from flux_reconciler.health import HealthAssessor, HealthResult
from flux_reconciler.inventory import ObjMetadata
from flux_reconciler.kustomize import OverlayRenderer, dump_manifests
from flux_reconciler.kustomize_controller import ApplyEngine, Reconciler
from flux_reconciler.manifest import Image, Kustomization, NamedResource, Patch
from flux_reconciler.orchestrator.orchestrator import cluster_config_store
from flux_reconciler.pipeline import PostBuildPipeline
from flux_reconciler.source import StoreSourceProvider
from flux_reconciler.store import Store, StoreEvent

NAMESPACE = "flux-system"
SOURCE_ID = NamedResource("GitRepository", NAMESPACE, "flux-system")
SOURCE_PATH = "/srv/artifacts/flux-system"
REVISION = "main@sha1:4f1c2d3e"
CREDENTIAL = Credential(namespace=NAMESPACE)


def kustomization(name: str = "app", **spec: Any) -> Kustomization:
    """Return a Kustomization for the path `./<name>` of the test source."""
    return Kustomization.parse_doc(
        {
            "apiVersion": "kustomize.toolkit.fluxcd.io/v1",
            "kind": "Kustomization",
            "metadata": {"name": name, "namespace": NAMESPACE},
            "spec": {
                "interval": "10m",
                "sourceRef": {"kind": "GitRepository", "name": "flux-system"},
                "path": f"./{name}",
                **spec,
            },
        }
    )


def config_map(name: str, namespace: str = "default", **data: str) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name, "namespace": namespace},
        "data": data or {"key": "value"},
    }


def deployment(
    name: str, namespace: str = "default", replicas: int = 1
) -> dict[str, Any]:
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": {"app": name}},
            "template": {
                "metadata": {"labels": {"app": name}},
                "spec": {"containers": [{"name": name, "image": "nginx:1.27"}]},
            },
        },
    }


def service(name: str, cluster_ip: str, namespace: str = "default") -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"clusterIP": cluster_ip, "ports": [{"port": 80}]},
    }


READY_DEPLOYMENT_STATUS = {
    "replicas": 1,
    "updatedReplicas": 1,
    "readyReplicas": 1,
    "availableReplicas": 1,
}


class StaticRenderer(OverlayRenderer):
    """Renders the objects registered for the name of the overlay directory."""

    def __init__(self) -> None:
        self.objects: dict[str, list[dict[str, Any]]] = {}
        self.calls: list[Path] = []
        self.hook: Callable[[], Awaitable[None]] | None = None

    async def render(
        self,
        path: Path,
        patches: Sequence[Patch],
        images: Sequence[Image],
        target_namespace: str | None,
    ) -> bytes:
        self.calls.append(path)
        if self.hook is not None:
            await self.hook()
        return dump_manifests(self.objects.get(path.name, []))


class StaticAssessor(HealthAssessor):
    """Reports every tracked object as not ready without polling."""

    def __init__(self, client: ClusterClient) -> None:
        super().__init__(client)
        self.assessed: list[ObjMetadata] = []

    async def assess(
        self,
        refs: Sequence[ObjMetadata],
        credential: Credential,
        deadline: float | None = None,
    ) -> HealthResult:
        self.assessed = list(refs)
        names = ", ".join(str(ref) for ref in refs)
        return HealthResult(
            not_ready=list(refs),
            message=f"health check failed after 0s: timeout waiting for: [{names}]",
        )


def build_reconciler(
    store: Store,
    cluster: ClusterClient,
    renderer: OverlayRenderer,
    config: KustomizationControllerConfig,
    assessor: HealthAssessor | None = None,
) -> Reconciler:
    """Wire a Reconciler against the store and cluster with empty decryptors."""
    cluster_config = cluster_config_store(store)
    return Reconciler(
        store=store,
        config=config,
        source_provider=StoreSourceProvider(store),
        renderer=renderer,
        pipeline=PostBuildPipeline(
            cluster_config, decryptors={}, strict=config.strict_substitution
        ),
        credentials=SecretCredentialResolver(cluster_config),
        engine=ApplyEngine(cluster),
        assessor=assessor
        or HealthAssessor(cluster, poll_interval=config.health_poll_interval),
    )


async def wait_for(
    store: Store, predicate: Callable[[], bool], timeout: float = 5.0
) -> None:
    """Wait until the predicate holds, checking after every store change."""
    changed = asyncio.Event()
    removers = [
        store.add_listener(event, lambda *_: changed.set())
        for event in (
            StoreEvent.STATUS_UPDATED,
            StoreEvent.OBJECT_ADDED,
            StoreEvent.OBJECT_DELETED,
        )
    ]
    try:
        async with asyncio.timeout(timeout):
            while not predicate():
                changed.clear()
                await changed.wait()
    finally:
        for remove in removers:
            remove()


TEST_CONFIG = KustomizationControllerConfig(
    dependency_requeue_interval=timedelta(seconds=1),
    health_poll_interval=timedelta(milliseconds=10),
)
