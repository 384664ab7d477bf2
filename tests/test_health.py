"""Tests for the health assessment of applied objects."""

import asyncio
from datetime import timedelta
from typing import Any

import pytest

from flux_reconciler.cluster import Credential, InMemoryCluster
from flux_reconciler.health import (
    HealthAssessor,
    ReadinessRegistry,
    daemon_set_ready,
    deployment_ready,
    job_ready,
    pod_ready,
    ready_condition,
    stateful_set_ready,
    tracked_objects,
)
from flux_reconciler.inventory import ObjMetadata
from flux_reconciler.manifest import Kustomization

CREDENTIAL = Credential(namespace="flux-system")
POLL_INTERVAL = timedelta(milliseconds=10)


def _obj(
    kind: str,
    spec: dict[str, Any] | None = None,
    status: dict[str, Any] | None = None,
    generation: int | None = None,
    name: str = "podinfo",
) -> dict[str, Any]:
    obj: dict[str, Any] = {
        "apiVersion": "apps/v1",
        "kind": kind,
        "metadata": {"name": name, "namespace": "default"},
        "spec": spec or {},
    }
    if generation is not None:
        obj["metadata"]["generation"] = generation
    if status is not None:
        obj["status"] = status
    return obj


@pytest.mark.parametrize(
    ("obj", "expected"),
    [
        (_obj("Deployment", {"replicas": 2}), False),
        (
            _obj(
                "Deployment",
                {"replicas": 2},
                {"updatedReplicas": 2, "readyReplicas": 2, "availableReplicas": 2},
            ),
            True,
        ),
        (
            _obj(
                "Deployment",
                {"replicas": 2},
                {"updatedReplicas": 2, "readyReplicas": 1, "availableReplicas": 1},
            ),
            False,
        ),
        (
            _obj(
                "Deployment",
                {},
                {
                    "observedGeneration": 1,
                    "updatedReplicas": 1,
                    "readyReplicas": 1,
                    "availableReplicas": 1,
                },
                generation=2,
            ),
            False,
        ),
        (
            _obj(
                "Deployment",
                {"replicas": 1},
                {
                    "updatedReplicas": 1,
                    "readyReplicas": 1,
                    "availableReplicas": 1,
                    "conditions": [{"type": "Available", "status": "False"}],
                },
            ),
            False,
        ),
    ],
)
def test_deployment_ready(obj: dict[str, Any], expected: bool) -> None:
    assert deployment_ready(obj) == expected


def test_stateful_set_ready() -> None:
    status = {"readyReplicas": 3, "currentRevision": "web-1", "updateRevision": "web-2"}
    assert not stateful_set_ready(_obj("StatefulSet", {"replicas": 3}, status))
    status["currentRevision"] = "web-2"
    assert stateful_set_ready(_obj("StatefulSet", {"replicas": 3}, status))


def test_daemon_set_ready() -> None:
    status = {
        "desiredNumberScheduled": 3,
        "numberReady": 3,
        "updatedNumberScheduled": 2,
        "numberAvailable": 3,
    }
    assert not daemon_set_ready(_obj("DaemonSet", status=status))
    status["updatedNumberScheduled"] = 3
    assert daemon_set_ready(_obj("DaemonSet", status=status))
    assert not daemon_set_ready(_obj("DaemonSet", status={}))


def test_job_ready() -> None:
    assert not job_ready(_obj("Job", status={}))
    assert job_ready(_obj("Job", status={"succeeded": 1}))
    assert job_ready(
        _obj("Job", status={"conditions": [{"type": "Complete", "status": "True"}]})
    )
    assert not job_ready(
        _obj("Job", status={"conditions": [{"type": "Failed", "status": "True"}]})
    )


def test_pod_ready() -> None:
    assert pod_ready(_obj("Pod", status={"phase": "Succeeded"}))
    assert pod_ready(
        _obj("Pod", status={"conditions": [{"type": "Ready", "status": "True"}]})
    )
    assert not pod_ready(_obj("Pod", status={"phase": "Pending"}))


def test_ready_condition() -> None:
    """Test the generic check for kinds without a registered check."""
    assert ready_condition(_obj("ConfigMap"))
    assert not ready_condition(
        _obj("Widget", status={"conditions": [{"type": "Ready", "status": "False"}]})
    )
    assert ready_condition(
        _obj("Widget", status={"conditions": [{"type": "Ready", "status": "True"}]})
    )
    assert not ready_condition(
        _obj(
            "Widget",
            status={
                "observedGeneration": 1,
                "conditions": [{"type": "Ready", "status": "True"}],
            },
            generation=2,
        )
    )


def test_registry() -> None:
    """Test registering a check for a custom kind."""
    registry = ReadinessRegistry()
    assert "Deployment" in registry
    assert "Widget" not in registry
    widget = _obj("Widget", status={"phase": "Pending"})
    assert registry.is_ready(widget)

    registry.register("Widget", lambda obj: obj["status"]["phase"] == "Running")
    assert "Widget" in registry
    assert not registry.is_ready(widget)


def test_tracked_objects() -> None:
    """Test which objects are assessed for a Kustomization."""
    applied = [
        ObjMetadata(
            group="", version="v1", kind="ConfigMap", namespace="default", name="a"
        )
    ]
    doc = {
        "apiVersion": "kustomize.toolkit.fluxcd.io/v1",
        "kind": "Kustomization",
        "metadata": {"name": "apps", "namespace": "flux-system"},
        "spec": {
            "interval": "10m",
            "sourceRef": {"kind": "GitRepository", "name": "flux-system"},
            "healthChecks": [
                {
                    "apiVersion": "helm.toolkit.fluxcd.io/v2",
                    "kind": "HelmRelease",
                    "name": "podinfo",
                    "namespace": "podinfo",
                }
            ],
        },
    }
    ks = Kustomization.parse_doc(doc)
    assert tracked_objects(ks, applied) == [
        ObjMetadata(
            group="helm.toolkit.fluxcd.io",
            version="v2",
            kind="HelmRelease",
            namespace="podinfo",
            name="podinfo",
        )
    ]
    ks.spec.wait = True
    assert tracked_objects(ks, applied) == applied


async def _apply(cluster: InMemoryCluster, obj: dict[str, Any]) -> ObjMetadata:
    applied = await cluster.apply(obj, CREDENTIAL)
    return applied.ref


async def test_assess_becomes_ready() -> None:
    """Test that the assessor polls until every object is ready."""
    cluster = InMemoryCluster()
    ref = await _apply(cluster, _obj("Deployment", {"replicas": 1}))
    assessor = HealthAssessor(cluster, poll_interval=POLL_INTERVAL)

    async def roll_out() -> None:
        await asyncio.sleep(0.05)
        cluster.set_status(
            ref, {"updatedReplicas": 1, "readyReplicas": 1, "availableReplicas": 1}
        )

    task = asyncio.create_task(roll_out())
    deadline = asyncio.get_running_loop().time() + 5
    result = await assessor.assess([ref], CREDENTIAL, deadline)
    await task
    assert result.healthy
    assert result.message == ""


async def test_assess_nothing() -> None:
    assessor = HealthAssessor(InMemoryCluster())
    result = await assessor.assess([], CREDENTIAL)
    assert result.healthy


async def test_assess_timeout() -> None:
    """Test that objects still not ready are reported in a stable order."""
    cluster = InMemoryCluster()
    refs = [
        await _apply(cluster, _obj("Deployment", name=name))
        for name in ("c", "a", "b")
    ]
    missing = ObjMetadata(
        group="", version="v1", kind="Service", namespace="default", name="web"
    )
    assessor = HealthAssessor(cluster, poll_interval=POLL_INTERVAL, max_reported=2)

    deadline = asyncio.get_running_loop().time() + 0.1
    result = await assessor.assess([*refs, missing, refs[0]], CREDENTIAL, deadline)
    assert not result.healthy
    assert [str(ref) for ref in result.not_ready] == [
        "Service/default/web",
        "Deployment/default/a",
        "Deployment/default/b",
        "Deployment/default/c",
    ]
    assert result.message == (
        "health check failed after 0s: timeout waiting for: "
        "[Service/default/web, Deployment/default/a, and 2 more]"
    )
