"""Tests for post build variable substitution."""

from typing import Any

import pytest

from flux_reconciler.exceptions import SubstitutionException
from flux_reconciler.manifest import ConfigMap, Kustomization, Secret
from flux_reconciler.values import cluster_config, collect_substitutions, substitute


def _kustomization(post_build: dict[str, Any]) -> Kustomization:
    return Kustomization.parse_doc(
        {
            "apiVersion": "kustomize.toolkit.fluxcd.io/v1",
            "kind": "Kustomization",
            "metadata": {"name": "apps", "namespace": "flux-system"},
            "spec": {
                "interval": "10m",
                "sourceRef": {"kind": "GitRepository", "name": "flux-system"},
                "postBuild": post_build,
            },
        }
    )


@pytest.mark.parametrize(
    ("text", "variables", "expected"),
    [
        ("replicas: ${REPLICAS}", {"REPLICAS": "3"}, "replicas: 3"),
        ("replicas: ${REPLICAS:=1}", {}, "replicas: 1"),
        ("replicas: ${REPLICAS:=1}", {"REPLICAS": "3"}, "replicas: 3"),
        ("replicas: ${REPLICAS:=1}", {"REPLICAS": ""}, "replicas: 1"),
        ("tag: ${VERSION:1}", {"VERSION": "v1.2.3"}, "tag: 1.2.3"),
        ("host: ${DOMAIN/example/prod}", {"DOMAIN": "app.example.com"}, "host: app.prod.com"),
        ("${A}-${B}", {"A": "x", "B": "y"}, "x-y"),
        ("name: ${UNSET}", {}, "name: ${UNSET}"),
        ("value: ${A^^}", {"A": "x"}, "value: ${A^^}"),
        ("cost: $5 or {A}", {"A": "x"}, "cost: $5 or {A}"),
    ],
)
def test_substitute(text: str, variables: dict[str, str], expected: str) -> None:
    """Test the supported variable expressions."""
    assert substitute(text, variables) == expected


def test_substitute_strict() -> None:
    """Test that strict mode fails for variables without a value."""
    assert substitute("a: ${A:=x}", {}, strict=True) == "a: x"
    with pytest.raises(SubstitutionException, match="strict mode.*B, C"):
        substitute("a: ${C}\nb: ${B}\nc: ${C}", {}, strict=True)


def test_collect_substitutions_precedence() -> None:
    """Test that explicit values win and earlier references win."""
    config = cluster_config(
        secrets=[
            Secret(
                name="cluster-secrets",
                namespace="flux-system",
                string_data={"PASSWORD": "hunter2", "REGION": "eu-west-1"},
            )
        ],
        config_maps=[
            ConfigMap(
                name="cluster-vars",
                namespace="flux-system",
                data={"REGION": "us-east-1", "CLUSTER": "prod", "not-a-var": "x"},
            ),
            ConfigMap(
                name="other-namespace",
                namespace="default",
                data={"IGNORED": "true"},
            ),
        ],
    )
    ks = _kustomization(
        {
            "substitute": {"CLUSTER": "staging"},
            "substituteFrom": [
                {"kind": "ConfigMap", "name": "cluster-vars"},
                {"kind": "Secret", "name": "cluster-secrets"},
                {"kind": "ConfigMap", "name": "other-namespace", "optional": True},
            ],
        }
    )
    assert collect_substitutions(ks, config) == {
        "REGION": "us-east-1",
        "CLUSTER": "staging",
        "PASSWORD": "hunter2",
    }


def test_collect_substitutions_missing_reference() -> None:
    config = cluster_config(secrets=[], config_maps=[])
    ks = _kustomization({"substituteFrom": [{"kind": "Secret", "name": "missing"}]})
    with pytest.raises(
        SubstitutionException, match="substitute from 'Secret/missing' error: not found"
    ):
        collect_substitutions(ks, config)


def test_collect_substitutions_invalid_name() -> None:
    config = cluster_config(secrets=[], config_maps=[])
    ks = _kustomization({"substitute": {"cluster-name": "prod"}})
    with pytest.raises(SubstitutionException, match="'cluster-name' var name is invalid"):
        collect_substitutions(ks, config)


def test_collect_substitutions_unsupported_kind() -> None:
    config = cluster_config(secrets=[], config_maps=[])
    ks = _kustomization({"substituteFrom": [{"kind": "Bucket", "name": "vars"}]})
    with pytest.raises(SubstitutionException, match="Unsupported substituteFrom kind"):
        collect_substitutions(ks, config)
