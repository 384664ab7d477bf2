"""Test fixtures for the kustomize controller."""

from collections.abc import AsyncGenerator

import pytest

from flux_reconciler.cluster import InMemoryCluster
from flux_reconciler.config import KustomizationControllerConfig
from flux_reconciler.kustomize_controller import KustomizationController, Reconciler
from flux_reconciler.source import SourceArtifact
from flux_reconciler.store import InMemoryStore
from flux_reconciler.task import TaskService, task_service_context

from . import (
    REVISION,
    SOURCE_ID,
    SOURCE_PATH,
    TEST_CONFIG,
    StaticRenderer,
    build_reconciler,
)


@pytest.fixture(name="store")
def store_fixture() -> InMemoryStore:
    """Create an in-memory store holding the artifact of the test source."""
    store = InMemoryStore()
    store.set_artifact(SOURCE_ID, SourceArtifact(path=SOURCE_PATH, revision=REVISION))
    return store


@pytest.fixture(name="cluster")
def cluster_fixture() -> InMemoryCluster:
    return InMemoryCluster()


@pytest.fixture(name="renderer")
def renderer_fixture() -> StaticRenderer:
    return StaticRenderer()


@pytest.fixture(name="config")
def config_fixture() -> KustomizationControllerConfig:
    return TEST_CONFIG


@pytest.fixture(name="reconciler")
def reconciler_fixture(
    store: InMemoryStore,
    cluster: InMemoryCluster,
    renderer: StaticRenderer,
    config: KustomizationControllerConfig,
) -> Reconciler:
    return build_reconciler(store, cluster, renderer, config)


@pytest.fixture(name="task_service")
async def task_service_fixture() -> AsyncGenerator[TaskService, None]:
    """Create a task service that cancels leftover tasks on teardown."""
    async with task_service_context() as service:
        yield service


@pytest.fixture(name="controller")
async def controller_fixture(
    store: InMemoryStore,
    config: KustomizationControllerConfig,
    reconciler: Reconciler,
    task_service: TaskService,
) -> AsyncGenerator[KustomizationController, None]:
    """Create a KustomizationController with an in-memory store."""
    controller = KustomizationController(store, config, reconciler, task_service)
    yield controller
    await controller.close()
