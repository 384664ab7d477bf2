"""Module for post build variable substitution.

Variables are collected from the explicit `postBuild.substitute` map and from
the ConfigMaps and Secrets listed in `postBuild.substituteFrom`. Explicit
values always win over referenced ones, and earlier references win over later
ones.

The supported expressions are:

    ${VAR}              value of VAR
    ${VAR:=default}     value of VAR, or `default` when VAR is unset or empty
    ${VAR:offset}       value of VAR starting at the character `offset`
    ${VAR/old/new}      value of VAR with the first `old` replaced by `new`

Any other `${...}` form is left as is. A variable without a value and without
a default is left verbatim unless strict mode is enabled.
"""

from collections.abc import Callable, Iterable, Mapping
import logging
import re
from typing import TypeVar

from .exceptions import SubstitutionException
from .manifest import (
    CONFIG_MAP_KIND,
    SECRET_KIND,
    ConfigMap,
    Kustomization,
    Secret,
)

__all__ = [
    "ClusterConfig",
    "cluster_config",
    "collect_substitutions",
    "substitute",
]

_LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T", bound=ConfigMap | Secret)

VAR_NAME_RE = re.compile(r"^[_a-zA-Z][_a-zA-Z0-9]*$")

_NAME = r"[_a-zA-Z][_a-zA-Z0-9]*"
_EXPR_RE = re.compile(
    r"\$\{(?P<name>" + _NAME + r")"
    r"(?:"
    r"(?P<default>:=[^}]*)"
    r"|:(?P<offset>\d+)"
    r"|/(?P<old>[^/}]+)/(?P<new>[^}]*)"
    r")?\}"
)


class ClusterConfig:
    """Interface for accessing the ConfigMaps and Secrets in the cluster."""

    def __init__(
        self,
        secrets: Callable[[], Iterable[Secret]],
        config_maps: Callable[[], Iterable[ConfigMap]],
    ) -> None:
        """Initialize ClusterConfig."""
        self._secrets = secrets
        self._config_maps = config_maps

    @property
    def secrets(self) -> Iterable[Secret]:
        """Available Secret objects in the cluster."""
        return iter(self._secrets())

    @property
    def config_maps(self) -> Iterable[ConfigMap]:
        """Available ConfigMap objects in the cluster."""
        return iter(self._config_maps())

    def get_secret(self, name: str, namespace: str) -> Secret | None:
        return _find_object(name, namespace, self.secrets)

    def get_config_map(self, name: str, namespace: str) -> ConfigMap | None:
        return _find_object(name, namespace, self.config_maps)


def cluster_config(
    secrets: list[Secret], config_maps: list[ConfigMap]
) -> ClusterConfig:
    """Create a ClusterConfig from a list of secrets and configmaps."""
    return ClusterConfig(
        lambda: secrets,
        lambda: config_maps,
    )


def _find_object(name: str, namespace: str, objects: Iterable[_T]) -> _T | None:
    """Find the object in the list of objects."""
    for obj in objects:
        if obj.name == name and obj.namespace == namespace:
            return obj
    return None


def collect_substitutions(
    ks: Kustomization, config: ClusterConfig
) -> dict[str, str]:
    """Return the variables available to the Kustomization.

    Raises SubstitutionException for invalid variable names or missing
    references that are not optional.
    """
    post_build = ks.spec.post_build
    if post_build is None:
        return {}

    values: dict[str, str] = {}
    for ref in post_build.substitute_from:
        _LOGGER.debug("Expanding substitute reference %s", ref)
        found: ConfigMap | Secret | None = None
        if ref.kind == SECRET_KIND:
            found = config.get_secret(ref.name, ks.namespace)
        elif ref.kind == CONFIG_MAP_KIND:
            found = config.get_config_map(ref.name, ks.namespace)
        else:
            raise SubstitutionException(
                f"Unsupported substituteFrom kind '{ref.kind}' for {ref.name}"
            )
        if found is None:
            if ref.optional:
                _LOGGER.warning(
                    "Skipping optional substitute reference for %s: %s %s not found",
                    ks.namespaced_name,
                    ref.kind,
                    ref.name,
                )
                continue
            raise SubstitutionException(
                f"substitute from '{ref.kind}/{ref.name}' error: not found"
            )
        for key, value in found.values().items():
            if not VAR_NAME_RE.match(key):
                _LOGGER.debug("Skipping key %s of %s %s", key, ref.kind, ref.name)
                continue
            # Earlier references win over later ones
            values.setdefault(key, value)

    for key in post_build.substitute:
        if not VAR_NAME_RE.match(key):
            raise SubstitutionException(
                f"'{key}' var name is invalid, must match '{VAR_NAME_RE.pattern}'"
            )
    values.update(post_build.substitute)
    return values


def substitute(text: str, variables: Mapping[str, str], strict: bool = False) -> str:
    """Replace variable expressions in the text."""
    missing: list[str] = []

    def replace(match: re.Match[str]) -> str:
        name = match.group("name")
        value = variables.get(name)
        if (default := match.group("default")) is not None:
            return value if value else default[2:]
        if value is None:
            missing.append(name)
            return match.group(0)
        if (offset := match.group("offset")) is not None:
            return value[int(offset) :]
        if (old := match.group("old")) is not None:
            return value.replace(old, match.group("new"), 1)
        return value

    result = _EXPR_RE.sub(replace, text)
    if missing and strict:
        raise SubstitutionException(
            f"variable not set (strict mode): {', '.join(sorted(set(missing)))}"
        )
    return result
