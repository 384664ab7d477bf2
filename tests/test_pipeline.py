"""Tests for the post build pipeline."""

from collections.abc import Mapping
from typing import Any

import pytest
import yaml

from flux_reconciler.decryption import Decryptor, SopsDecryptor
from flux_reconciler.exceptions import DecryptionException, SubstitutionException
from flux_reconciler.kustomize import dump_manifests, split_manifests
from flux_reconciler.manifest import ConfigMap, Kustomization, Secret
from flux_reconciler.pipeline import PostBuildPipeline
from flux_reconciler.values import cluster_config


class FakeDecryptor(Decryptor):
    """Decrypts documents by reversing the value of every data key."""

    def __init__(self) -> None:
        self.keys: list[Mapping[str, str]] = []

    def is_encrypted(self, doc: dict[str, Any]) -> bool:
        return "encrypted" in doc

    async def decrypt(
        self, doc: dict[str, Any], keys: Mapping[str, str]
    ) -> dict[str, Any]:
        self.keys.append(keys)
        doc = {k: v for k, v in doc.items() if k != "encrypted"}
        doc["data"] = {k: v[::-1] for k, v in doc["data"].items()}
        return doc


def _kustomization(**spec: Any) -> Kustomization:
    return Kustomization.parse_doc(
        {
            "apiVersion": "kustomize.toolkit.fluxcd.io/v1",
            "kind": "Kustomization",
            "metadata": {"name": "apps", "namespace": "flux-system"},
            "spec": {
                "interval": "10m",
                "sourceRef": {"kind": "GitRepository", "name": "flux-system"},
                **spec,
            },
        }
    )


def _config_map(
    name: str, annotations: dict[str, str] | None = None, **data: str
) -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": name, "namespace": "default"}
    if annotations:
        metadata["annotations"] = annotations
    return {"apiVersion": "v1", "kind": "ConfigMap", "metadata": metadata, "data": data}


def _documents(*objects: dict[str, Any]) -> list[str]:
    return split_manifests(dump_manifests(objects))


@pytest.fixture(name="decryptor")
def decryptor_fixture() -> FakeDecryptor:
    return FakeDecryptor()


@pytest.fixture(name="pipeline")
def pipeline_fixture(decryptor: FakeDecryptor) -> PostBuildPipeline:
    config = cluster_config(
        secrets=[
            Secret(
                name="sops-age",
                namespace="flux-system",
                string_data={"age.agekey": "AGE-SECRET-KEY-1"},
            )
        ],
        config_maps=[
            ConfigMap(
                name="cluster-vars", namespace="flux-system", data={"REPLICAS": "3"}
            )
        ],
    )
    return PostBuildPipeline(config, decryptors={"fake": decryptor})


async def test_run_without_post_build(pipeline: PostBuildPipeline) -> None:
    """Test that objects pass through unchanged without decryption or variables."""
    objects = [_config_map("a", value="${REPLICAS}")]
    assert await pipeline.run(_kustomization(), dump_manifests(objects)) == objects


async def test_substitute_replicas(pipeline: PostBuildPipeline) -> None:
    """Test that substituted values are parsed with their YAML type."""
    objects = [
        {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {"name": "podinfo", "namespace": "default"},
            "spec": {"replicas": "${REPLICAS:=1}"},
        }
    ]
    ks = _kustomization(postBuild={"substitute": {}})
    result = await pipeline.run(ks, dump_manifests(objects))
    assert result[0]["spec"]["replicas"] == 1

    ks = _kustomization(
        postBuild={"substituteFrom": [{"kind": "ConfigMap", "name": "cluster-vars"}]}
    )
    result = await pipeline.run(ks, dump_manifests(objects))
    assert result[0]["spec"]["replicas"] == 3


async def test_substitute_quoted_values(pipeline: PostBuildPipeline) -> None:
    """Test that quoted variables stay strings after substitution."""
    data = b"""---
apiVersion: v1
kind: ConfigMap
metadata:
  name: settings
  namespace: default
data:
  PORT: "${PORT}"
  DEBUG: '${DEBUG}'
"""
    ks = _kustomization(postBuild={"substitute": {"PORT": "8080", "DEBUG": "true"}})
    [result] = await pipeline.run(ks, data)
    assert result["data"] == {"PORT": "8080", "DEBUG": "true"}


async def test_substitute_disabled(pipeline: PostBuildPipeline) -> None:
    """Test that objects can opt out of substitution."""
    skipped = _config_map(
        "skipped",
        annotations={"kustomize.toolkit.fluxcd.io/substitute": "disabled"},
        script="echo ${HOME}",
    )
    documents = _documents(_config_map("a", value="${VALUE}"), skipped)
    ks = _kustomization(postBuild={"substitute": {"VALUE": "x", "HOME": "/root"}})
    result = pipeline.substitute(ks, documents)
    assert result[0]["data"] == {"value": "x"}
    assert result[1] == skipped


async def test_substitute_invalid_yaml(pipeline: PostBuildPipeline) -> None:
    """Test that a substitution that breaks the document is reported."""
    documents = _documents(_config_map("a", value="${VALUE}"))
    ks = _kustomization(postBuild={"substitute": {"VALUE": "[unclosed"}})
    with pytest.raises(SubstitutionException, match="invalid YAML for ConfigMap a"):
        pipeline.substitute(ks, documents)


async def test_decrypt(pipeline: PostBuildPipeline, decryptor: FakeDecryptor) -> None:
    """Test that only encrypted documents are decrypted."""
    encrypted = {**_config_map("secret", password="terces"), "encrypted": True}
    plain, secret = _documents(_config_map("plain", value="plain"), encrypted)
    ks = _kustomization(
        decryption={"provider": "fake", "secretRef": {"name": "sops-age"}}
    )
    result = await pipeline.decrypt(ks, [plain, secret])
    assert result[0] == plain
    assert yaml.safe_load(result[1]) == _config_map("secret", password="secret")
    assert decryptor.keys == [{"age.agekey": "AGE-SECRET-KEY-1"}]


async def test_decrypt_without_configuration(
    pipeline: PostBuildPipeline, decryptor: FakeDecryptor
) -> None:
    encrypted = {**_config_map("secret", password="terces"), "encrypted": True}
    documents = _documents(encrypted)
    assert await pipeline.decrypt(_kustomization(), documents) == documents
    assert decryptor.keys == []


@pytest.mark.parametrize(
    ("decryption", "match"),
    [
        ({"provider": "vault"}, "unsupported decryption provider 'vault'"),
        (
            {"provider": "fake", "secretRef": {"name": "missing"}},
            "decryption secret 'flux-system/missing' not found",
        ),
    ],
)
async def test_decrypt_failure(
    pipeline: PostBuildPipeline, decryption: dict[str, Any], match: str
) -> None:
    ks = _kustomization(decryption=decryption)
    with pytest.raises(DecryptionException, match=match):
        await pipeline.decrypt(ks, _documents(_config_map("a", value="a")))


def test_sops_is_encrypted() -> None:
    """Test recognizing sops encrypted documents."""
    decryptor = SopsDecryptor()
    assert decryptor.is_encrypted({"kind": "Secret", "sops": {"mac": "ENC[...]"}})
    assert not decryptor.is_encrypted({"kind": "Secret", "sops": "plain"})
    assert not decryptor.is_encrypted({"kind": "Secret"})


async def test_sops_requires_age_keys() -> None:
    decryptor = SopsDecryptor()
    with pytest.raises(DecryptionException, match="no age keys"):
        await decryptor.decrypt({"sops": {"mac": "x"}}, {"identity.asc": "pgp"})


async def test_sops_missing_binary() -> None:
    """Test a missing sops binary is reported as a decryption failure."""
    decryptor = SopsDecryptor(sops_bin="flux-reconciler-missing-sops")
    with pytest.raises(DecryptionException, match="could not be started"):
        await decryptor.decrypt(
            {"sops": {"mac": "x"}}, {"age.agekey": "AGE-SECRET-KEY-1"}
        )
