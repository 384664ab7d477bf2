"""Post processing of the rendered overlay before it is applied.

The steps run in a fixed order: the rendered bytes are split into documents,
encrypted documents are decrypted, and then variables are substituted into
the document text before it is parsed into objects. No cluster calls are made
during this phase.
"""

from collections.abc import Mapping
import logging
from typing import Any

import yaml

from .decryption import Decryptor, default_decryptors
from .exceptions import DecryptionException, InputException, SubstitutionException
from .kustomize import manifest_objects, split_manifests
from .manifest import DISABLED_VALUE, SUBSTITUTE_ANNOTATION, Kustomization
from .values import ClusterConfig, collect_substitutions, substitute

__all__ = ["PostBuildPipeline"]

_LOGGER = logging.getLogger(__name__)

# Avoid folding long strings which could split a variable expression
_YAML_WIDTH = 1 << 30


def _substitution_disabled(obj: dict[str, Any]) -> bool:
    metadata = obj.get("metadata") or {}
    for attr in ("annotations", "labels"):
        if (metadata.get(attr) or {}).get(SUBSTITUTE_ANNOTATION) == DISABLED_VALUE:
            return True
    return False


class PostBuildPipeline:
    """Decrypts and substitutes the rendered manifests of a Kustomization."""

    def __init__(
        self,
        cluster_config: ClusterConfig,
        decryptors: Mapping[str, Decryptor] | None = None,
        strict: bool = False,
    ) -> None:
        """Initialize PostBuildPipeline.

        Args:
            cluster_config: Source of the Secrets and ConfigMaps referenced for
                key material and variables.
            decryptors: Decryption providers keyed by provider name.
            strict: Fail when a variable has no value and no default.
        """
        self._cluster_config = cluster_config
        self._decryptors = (
            default_decryptors() if decryptors is None else dict(decryptors)
        )
        self._strict = strict

    async def run(self, ks: Kustomization, data: bytes) -> list[dict[str, Any]]:
        """Return the final objects for the rendered manifest bytes.

        The reconciler calls the steps one at a time so that a timeout is
        reported against the step in flight.

        Raises:
            BuildException: The rendered bytes are not valid manifests.
            DecryptionException: An encrypted document could not be decrypted.
            SubstitutionException: Variables could not be substituted.
        """
        documents = split_manifests(data)
        documents = await self.decrypt(ks, documents)
        return self.substitute(ks, documents)

    async def decrypt(self, ks: Kustomization, documents: list[str]) -> list[str]:
        """Decrypt every document recognized by the configured provider.

        Documents that are not encrypted are returned with their text intact.
        """
        if (decryption := ks.spec.decryption) is None:
            return documents
        if (decryptor := self._decryptors.get(decryption.provider)) is None:
            raise DecryptionException(
                f"unsupported decryption provider '{decryption.provider}'"
            )
        keys: dict[str, str] = {}
        if decryption.secret_ref is not None:
            secret = self._cluster_config.get_secret(
                decryption.secret_ref.name, ks.namespace
            )
            if secret is None:
                raise DecryptionException(
                    f"decryption secret '{ks.namespace}/{decryption.secret_ref.name}' not found"
                )
            try:
                keys = secret.values()
            except InputException as err:
                raise DecryptionException(str(err)) from err

        result = []
        for document in documents:
            obj = yaml.safe_load(document)
            if decryptor.is_encrypted(obj):
                _LOGGER.debug(
                    "Decrypting %s/%s for %s",
                    obj.get("kind"),
                    (obj.get("metadata") or {}).get("name"),
                    ks.namespaced_name,
                )
                obj = await decryptor.decrypt(obj, keys)
                document = yaml.dump(obj, sort_keys=False, width=_YAML_WIDTH)
            result.append(document)
        return result

    def substitute(
        self, ks: Kustomization, documents: list[str]
    ) -> list[dict[str, Any]]:
        """Substitute variables into every document that has not opted out.

        Variables are replaced in the document text, so a quoted expression
        stays a string and an unquoted one takes the YAML type of its value.
        """
        variables: dict[str, str] | None = None
        if ks.spec.post_build is not None:
            try:
                variables = collect_substitutions(ks, self._cluster_config)
            except InputException as err:
                raise SubstitutionException(str(err)) from err

        result: list[dict[str, Any]] = []
        for document in documents:
            obj = yaml.safe_load(document)
            if variables is not None and not _substitution_disabled(obj):
                text = substitute(document, variables, strict=self._strict)
                try:
                    out = yaml.safe_load(text)
                except yaml.YAMLError as err:
                    raise SubstitutionException(
                        f"substitution produced invalid YAML for {obj.get('kind')} "
                        f"{(obj.get('metadata') or {}).get('name')}: {err}"
                    ) from err
                if not isinstance(out, dict):
                    raise SubstitutionException(
                        f"substitution produced a non object document: {out!r}"
                    )
                obj = out
            result.extend(manifest_objects(obj))
        return result
