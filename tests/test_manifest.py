"""Tests for manifest library."""

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from flux_reconciler.conditions import ready_inventory
from flux_reconciler.exceptions import InputException
from flux_reconciler.inventory import ResourceInventory
from flux_reconciler.manifest import (
    ConfigMap,
    Kustomization,
    NamedResource,
    Secret,
    format_duration,
    parse_duration,
    parse_raw_obj,
)


def _doc(**spec: Any) -> dict[str, Any]:
    return {
        "apiVersion": "kustomize.toolkit.fluxcd.io/v1",
        "kind": "Kustomization",
        "metadata": {"name": "apps", "namespace": "flux-system"},
        "spec": {
            "interval": "10m",
            "sourceRef": {"kind": "GitRepository", "name": "flux-system"},
            "path": "./apps",
            **spec,
        },
    }


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("10m", timedelta(minutes=10)),
        ("1h30m", timedelta(hours=1, minutes=30)),
        ("1m30s", timedelta(minutes=1, seconds=30)),
        ("1.5s", timedelta(seconds=1.5)),
        ("250ms", timedelta(milliseconds=250)),
        (60, timedelta(minutes=1)),
    ],
)
def test_parse_duration(value: str | int, expected: timedelta) -> None:
    """Test parsing Go style durations."""
    assert parse_duration(value) == expected


@pytest.mark.parametrize("value", ["", "10", "10x", "m10", "1m 30s"])
def test_parse_invalid_duration(value: str) -> None:
    """Test that malformed durations are rejected."""
    with pytest.raises(InputException):
        parse_duration(value)


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (timedelta(minutes=4, seconds=30), "4m30s"),
        (timedelta(hours=2), "2h"),
        (timedelta(milliseconds=50), "50ms"),
        (timedelta(), "0s"),
    ],
)
def test_format_duration(value: timedelta, expected: str) -> None:
    assert format_duration(value) == expected


def test_parse_kustomization() -> None:
    """Test parsing a Kustomization with defaults applied."""
    ks = Kustomization.parse_doc(
        _doc(
            dependsOn=[{"name": "infra"}, {"name": "crds", "namespace": "kube-system"}],
            healthChecks=[
                {"apiVersion": "apps/v1", "kind": "Deployment", "name": "podinfo"}
            ],
            retryInterval="2m",
            prune=True,
        )
    )
    assert ks.name == "apps"
    assert ks.namespace == "flux-system"
    assert ks.generation == 1
    assert ks.spec.interval == timedelta(minutes=10)
    assert ks.spec.retry_interval == timedelta(minutes=2)
    assert ks.spec.prune
    assert not ks.spec.wait
    assert ks.spec.source_ref.namespace == "flux-system"
    assert ks.get_depends_on() == (
        NamedResource("Kustomization", "flux-system", "apps"),
        [
            NamedResource("Kustomization", "flux-system", "infra"),
            NamedResource("Kustomization", "kube-system", "crds"),
        ],
    )
    assert ks.spec.health_checks[0].namespace == "flux-system"
    assert ks.health_required
    assert ks.status.observed_generation == -1
    assert ks.status.conditions == {}


@pytest.mark.parametrize(
    ("doc", "match"),
    [
        ({"apiVersion": "v1", "kind": "Kustomization"}, "expected"),
        ({**_doc(), "metadata": {"namespace": "x"}}, "metadata.name"),
        ({**_doc(), "spec": {"sourceRef": {"name": "x"}}}, "spec.interval"),
        ({**_doc(), "spec": {"interval": "1m"}}, "spec.sourceRef"),
        (_doc(dependsOn=[{"namespace": "x"}]), "dependsOn.name"),
        (_doc(interval="often"), "often"),
    ],
)
def test_parse_invalid_kustomization(doc: dict[str, Any], match: str) -> None:
    """Test that invalid Kustomizations are rejected."""
    with pytest.raises(InputException, match=match):
        Kustomization.parse_doc(doc)


@pytest.mark.parametrize(
    ("spec", "expected"),
    [
        ({"interval": "5m"}, timedelta(minutes=4, seconds=30)),
        ({"interval": "40s"}, timedelta(seconds=30)),
        ({"interval": "5m", "timeout": "2m"}, timedelta(minutes=2)),
        ({"interval": "5m", "timeout": "10s"}, timedelta(seconds=30)),
    ],
)
def test_get_timeout(spec: dict[str, Any], expected: timedelta) -> None:
    """Test the timeout of an attempt."""
    assert Kustomization.parse_doc(_doc(**spec)).get_timeout() == expected


def test_get_retry_interval() -> None:
    """Test the retry interval defaults to the interval."""
    assert Kustomization.parse_doc(_doc()).get_retry_interval() == timedelta(
        minutes=10
    )
    assert Kustomization.parse_doc(
        _doc(retryInterval="30s")
    ).get_retry_interval() == timedelta(seconds=30)


def test_kustomization_to_doc() -> None:
    """Test that a Kustomization with status can be parsed from its output."""
    ks = Kustomization.parse_doc(_doc(wait=True, postBuild={"substitute": {"A": "b"}}))
    ready_inventory(
        ks,
        ResourceInventory(),
        "main@sha1:abc",
        "ReconciliationSucceeded",
        "Applied revision: main@sha1:abc",
        ks.generation,
        now=lambda: datetime(2024, 1, 1, tzinfo=timezone.utc),
    )
    doc = ks.to_doc()
    assert doc["spec"]["interval"] == "10m"
    assert doc["spec"]["postBuild"] == {"substitute": {"A": "b"}, "substituteFrom": []}
    assert doc["status"]["lastAppliedRevision"] == "main@sha1:abc"
    assert [cond["type"] for cond in doc["status"]["conditions"]] == [
        "Ready",
        "Healthy",
    ]
    assert Kustomization.parse_doc(doc) == ks


def test_config_map_and_secret_values() -> None:
    """Test reading the values of ConfigMaps and Secrets."""
    config_map = parse_raw_obj(
        {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": "vars", "namespace": "flux-system"},
            "data": {"CLUSTER": "prod"},
            "binaryData": {"BLOB": "aGVsbG8="},
        }
    )
    assert isinstance(config_map, ConfigMap)
    assert config_map.values() == {"CLUSTER": "prod", "BLOB": "hello"}

    secret = parse_raw_obj(
        {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": "vars", "namespace": "flux-system"},
            "data": {"PASSWORD": "c2VjcmV0"},
            "stringData": {"USER": "admin"},
        }
    )
    assert isinstance(secret, Secret)
    assert secret.values() == {"PASSWORD": "secret", "USER": "admin"}


def test_invalid_secret_data() -> None:
    secret = Secret(name="vars", namespace="flux-system", data={"KEY": "abc"})
    with pytest.raises(InputException, match="flux-system/vars"):
        secret.values()


def test_parse_unsupported_kind() -> None:
    with pytest.raises(InputException, match="Unsupported object kind apps/v1/Deployment"):
        parse_raw_obj(
            {"apiVersion": "apps/v1", "kind": "Deployment", "metadata": {"name": "a"}}
        )
