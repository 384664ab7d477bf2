"""Representation of the reconciled objects and the configuration they reference.

A `Kustomization` is the unit of reconciliation. Its spec is owned by the user
and is read only to the controller, while its status is written exclusively by
the reconciliation attempts of that same Kustomization.

Documents are parsed from the kubernetes representation with `parse_doc` and
serialized back with `to_doc`, which uses the camelCase field names of the
`kustomize.toolkit.fluxcd.io` API.
"""

import base64
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
import re
from typing import Any, ClassVar, Optional

from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig

from .exceptions import InputException
from .inventory import ResourceInventory

__all__ = [
    "NamedResource",
    "Kustomization",
    "KustomizationSpec",
    "KustomizationStatus",
    "Condition",
    "ConfigMap",
    "Secret",
    "parse_raw_obj",
    "parse_duration",
    "format_duration",
]

_LOGGER = logging.getLogger(__name__)


# Match a prefix of apiVersion to ensure we have the right type of object.
# We don't check specific versions for forward compatibility on upgrade.
FLUXTOMIZE_DOMAIN = "kustomize.toolkit.fluxcd.io"
KUSTOMIZE_KIND = "Kustomization"
SECRET_KIND = "Secret"
CONFIG_MAP_KIND = "ConfigMap"
DEFAULT_NAMESPACE = "flux-system"

# Labels stamped on every applied object to record its owning Kustomization.
OWNER_NAME_LABEL = f"{FLUXTOMIZE_DOMAIN}/name"
OWNER_NAMESPACE_LABEL = f"{FLUXTOMIZE_DOMAIN}/namespace"

# Annotation or label values used to opt objects out of controller behavior.
SUBSTITUTE_ANNOTATION = f"{FLUXTOMIZE_DOMAIN}/substitute"
PRUNE_ANNOTATION = f"{FLUXTOMIZE_DOMAIN}/prune"
DISABLED_VALUE = "disabled"

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(h|ms|m|s)")
_DURATION_UNITS = {
    "h": timedelta(hours=1),
    "m": timedelta(minutes=1),
    "s": timedelta(seconds=1),
    "ms": timedelta(milliseconds=1),
}


def parse_duration(value: str | int | float | timedelta | None) -> timedelta | None:
    """Parse a Go style duration string such as `1m30s` into a timedelta.

    Plain numbers are treated as seconds.
    """
    if value is None or isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    text = value.strip()
    if not text:
        raise InputException("Invalid empty duration")
    pos = 0
    total = timedelta()
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise InputException(f"Invalid duration '{value}'")
    return total


def format_duration(value: timedelta | None) -> str | None:
    """Render a timedelta as a Go style duration string e.g. `4m30s`."""
    if value is None:
        return None
    millis = round(value.total_seconds() * 1000)
    if millis == 0:
        return "0s"
    hours, millis = divmod(millis, 3_600_000)
    minutes, millis = divmod(millis, 60_000)
    seconds, millis = divmod(millis, 1000)
    out = ""
    if hours:
        out += f"{hours}h"
    if minutes:
        out += f"{minutes}m"
    if seconds:
        out += f"{seconds}s"
    if millis:
        out += f"{millis}ms"
    return out


def _duration_field(alias: str | None = None, **kwargs: Any) -> Any:
    return field(
        metadata=field_options(
            alias=alias, serialize=format_duration, deserialize=parse_duration
        ),
        **kwargs,
    )


def _check_version(doc: dict[str, Any], version: str) -> None:
    """Assert that the resource has the specified version."""
    if not (api_version := doc.get("apiVersion")):
        raise InputException(f"Invalid object missing apiVersion: {doc}")
    if not api_version.startswith(version):
        raise InputException(f"Invalid object expected '{version}': {doc}")


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for a kubernetes resource."""

    kind: str
    namespace: str | None
    name: str

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


@dataclass
class SourceReference(BaseManifest):
    """Reference to the source that provides the Kustomization contents."""

    kind: str
    """The kind of the source e.g. GitRepository, OCIRepository or Bucket."""

    name: str
    """The name of the source."""

    namespace: str | None = None
    """The namespace of the source, defaults to the Kustomization namespace."""

    @property
    def resource_id(self) -> NamedResource:
        return NamedResource(self.kind, self.namespace, self.name)


@dataclass
class DependencyReference(BaseManifest):
    """A Kustomization that must be ready before the referring one is built."""

    name: str
    namespace: str | None = None

    @property
    def resource_id(self) -> NamedResource:
        return NamedResource(KUSTOMIZE_KIND, self.namespace, self.name)


@dataclass
class LocalObjectReference(BaseManifest):
    """A reference to an object in the same namespace."""

    name: str


@dataclass
class KubeConfigReference(BaseManifest):
    """A secret holding a kubeconfig for reconciling on a remote cluster."""

    secret_ref: LocalObjectReference = field(
        metadata=field_options(alias="secretRef")
    )


@dataclass
class Decryption(BaseManifest):
    """How encrypted values in the rendered manifests are decrypted."""

    provider: str
    """The name of the decryption engine e.g. `sops`."""

    secret_ref: Optional[LocalObjectReference] = field(
        metadata=field_options(alias="secretRef"), default=None
    )
    """The secret holding the private keys used for decryption."""


@dataclass
class SubstituteReference(BaseManifest):
    """SubstituteReference contains a reference to a resource containing the variables name and value."""

    kind: str
    """The kind of resource."""

    name: str
    """The name of the resource."""

    optional: bool = False
    """Whether the reference is optional."""


@dataclass
class PostBuild(BaseManifest):
    """Actions to perform on the manifests generated by building the overlay."""

    substitute: dict[str, str] = field(default_factory=dict)
    """Explicit variables, these always win over `substitute_from`."""

    substitute_from: list[SubstituteReference] = field(
        metadata=field_options(alias="substituteFrom"), default_factory=list
    )
    """ConfigMaps and Secrets holding additional variables."""


@dataclass
class Patch(BaseManifest):
    """A strategic merge or JSON6902 patch with an optional target selector."""

    patch: str
    target: Optional[dict[str, Any]] = None


@dataclass
class Image(BaseManifest):
    """An image name, tag or digest override."""

    name: str
    new_name: Optional[str] = field(
        metadata=field_options(alias="newName"), default=None
    )
    new_tag: Optional[str] = field(metadata=field_options(alias="newTag"), default=None)
    digest: Optional[str] = None


@dataclass
class HealthCheckReference(BaseManifest):
    """An object to include in the health assessment."""

    api_version: str = field(metadata=field_options(alias="apiVersion"))
    kind: str
    name: str
    namespace: str | None = None


@dataclass
class KustomizationSpec(BaseManifest):
    """The desired state of a Kustomization, owned by the user."""

    interval: timedelta = _duration_field()
    """The interval at which to reconcile the Kustomization."""

    source_ref: SourceReference = field(metadata=field_options(alias="sourceRef"))
    """Reference of the source where the kustomization file is."""

    prune: bool = False
    """Enables garbage collection of objects removed from the source."""

    path: str = ""
    """Path to the directory with the overlay, relative to the source root."""

    retry_interval: Optional[timedelta] = _duration_field("retryInterval", default=None)
    """The interval at which to retry a previously failed reconciliation."""

    timeout: Optional[timedelta] = _duration_field(default=None)
    """Timeout covering build, apply and health checking."""

    wait: bool = False
    """Check the health of all reconciled objects. Takes precedence over health checks."""

    force: bool = False
    """Recreate objects when an apply fails due to an immutable field change."""

    suspend: bool = False
    """Suspend subsequent reconciliations."""

    target_namespace: Optional[str] = field(
        metadata=field_options(alias="targetNamespace"), default=None
    )
    """Sets or overrides the namespace of the rendered objects."""

    service_account_name: Optional[str] = field(
        metadata=field_options(alias="serviceAccountName"), default=None
    )
    """Service account to impersonate when applying."""

    kube_config: Optional[KubeConfigReference] = field(
        metadata=field_options(alias="kubeConfig"), default=None
    )
    """Remote cluster kubeconfig, takes precedence over the service account."""

    depends_on: list[DependencyReference] = field(
        metadata=field_options(alias="dependsOn"), default_factory=list
    )
    """Kustomizations that must be ready before this one is reconciled."""

    patches: list[Patch] = field(default_factory=list)
    images: list[Image] = field(default_factory=list)

    decryption: Optional[Decryption] = None
    post_build: Optional[PostBuild] = field(
        metadata=field_options(alias="postBuild"), default=None
    )

    health_checks: list[HealthCheckReference] = field(
        metadata=field_options(alias="healthChecks"), default_factory=list
    )
    """Objects to include in the health assessment."""


class ConditionStatus:
    """Values of the status field of a condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


@dataclass
class Condition(BaseManifest):
    """The state of one aspect of a Kustomization."""

    type: str
    status: str
    reason: str
    message: str = ""
    observed_generation: int = field(
        metadata=field_options(alias="observedGeneration"), default=0
    )
    last_transition_time: Optional[datetime] = field(
        metadata=field_options(alias="lastTransitionTime"), default=None
    )


def _conditions_to_list(
    conditions: dict[str, Condition] | None,
) -> list[dict[str, Any]] | None:
    if conditions is None:
        return None
    return [condition.to_dict() for condition in conditions.values()]


def _conditions_from_list(
    values: list[dict[str, Any]] | None,
) -> dict[str, Condition]:
    conditions: dict[str, Condition] = {}
    for value in values or ():
        condition = Condition.from_dict(value)
        conditions[condition.type] = condition
    return conditions


@dataclass
class KustomizationStatus(BaseManifest):
    """The observed state of a Kustomization, owned by the controller."""

    observed_generation: int = field(
        metadata=field_options(alias="observedGeneration"), default=-1
    )
    """The last reconciled generation."""

    conditions: dict[str, Condition] = field(
        metadata=field_options(
            serialize=_conditions_to_list, deserialize=_conditions_from_list
        ),
        default_factory=dict,
    )
    """Conditions keyed by type, serialized as a list."""

    last_applied_revision: Optional[str] = field(
        metadata=field_options(alias="lastAppliedRevision"), default=None
    )
    """The last successfully applied revision."""

    last_attempted_revision: Optional[str] = field(
        metadata=field_options(alias="lastAttemptedRevision"), default=None
    )
    """The revision of the last reconciliation attempt."""

    inventory: Optional[ResourceInventory] = None
    """The objects successfully applied by the last reconciliation."""


@dataclass
class Kustomization(BaseManifest):
    """A Kustomization is a set of declared cluster artifacts.

    This represents a flux Kustomization that points to a path within a
    source artifact containing a `kustomize` overlay.
    """

    kind: ClassVar[str] = KUSTOMIZE_KIND
    """The kind of the object."""

    name: str
    """The name of the kustomization."""

    namespace: str
    """The namespace of the kustomization."""

    spec: KustomizationSpec
    """The desired state, owned by the user."""

    generation: int = 1
    """Bumped on every change to the spec."""

    status: KustomizationStatus = field(default_factory=KustomizationStatus)
    """The observed state, owned by the controller."""

    deletion_requested: bool = field(
        metadata=field_options(alias="deletionRequested"), default=False
    )
    """Set when the object is being torn down and the finalizer must run."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Kustomization":
        """Parse a Kustomization from a kubernetes resource."""
        _check_version(doc, FLUXTOMIZE_DOMAIN)
        if not (metadata := doc.get("metadata")):
            raise InputException(f"Invalid {cls} missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid {cls} missing metadata.name: {doc}")
        namespace = metadata.get("namespace", DEFAULT_NAMESPACE)
        if not (spec_doc := doc.get("spec")):
            raise InputException(f"Invalid {cls} missing spec: {doc}")
        if "interval" not in spec_doc:
            raise InputException(f"Invalid {cls} missing spec.interval: {doc}")
        if not (source_ref := spec_doc.get("sourceRef")) or "name" not in source_ref:
            raise InputException(f"Invalid {cls} missing spec.sourceRef: {doc}")
        for dependency in spec_doc.get("dependsOn", ()):
            if not dependency.get("name"):
                raise InputException(f"Invalid {cls} missing dependsOn.name: {doc}")
        try:
            spec = KustomizationSpec.from_dict(spec_doc)
        except InputException:
            raise
        except Exception as err:
            raise InputException(f"Invalid {cls} spec: {err}") from err

        # References default to the namespace of the Kustomization
        if spec.source_ref.namespace is None:
            spec.source_ref.namespace = namespace
        for dep in spec.depends_on:
            if dep.namespace is None:
                dep.namespace = namespace
        for check in spec.health_checks:
            if check.namespace is None:
                check.namespace = namespace

        status = KustomizationStatus()
        if status_doc := doc.get("status"):
            status = KustomizationStatus.from_dict(status_doc)
        return Kustomization(
            name=name,
            namespace=namespace,
            spec=spec,
            generation=metadata.get("generation", 1),
            status=status,
        )

    def to_doc(self) -> dict[str, Any]:
        """Return the kubernetes representation of the Kustomization."""
        return {
            "apiVersion": f"{FLUXTOMIZE_DOMAIN}/v1",
            "kind": KUSTOMIZE_KIND,
            "metadata": {
                "name": self.name,
                "namespace": self.namespace,
                "generation": self.generation,
            },
            "spec": self.spec.to_dict(),
            "status": self.status.to_dict(),
        }

    @property
    def resource_id(self) -> NamedResource:
        return NamedResource(KUSTOMIZE_KIND, self.namespace, self.name)

    @property
    def namespaced_name(self) -> str:
        """Return the namespace and name concatenated as an id."""
        return f"{self.namespace}/{self.name}"

    @property
    def health_required(self) -> bool:
        """Whether the Healthy condition is tracked for this Kustomization."""
        return self.spec.wait or bool(self.spec.health_checks)

    def get_timeout(self) -> timedelta:
        """Return the timeout for a reconciliation attempt.

        Defaults to the interval less 30 seconds and is never below 30 seconds.
        """
        duration = self.spec.interval - timedelta(seconds=30)
        if self.spec.timeout is not None:
            duration = self.spec.timeout
        return max(duration, timedelta(seconds=30))

    def get_retry_interval(self) -> timedelta:
        """Return the interval used to retry a failed reconciliation."""
        if self.spec.retry_interval is not None:
            return self.spec.retry_interval
        return self.spec.interval

    def get_depends_on(self) -> tuple[NamedResource, list[NamedResource]]:
        """Return the identity of this Kustomization and its dependencies."""
        return self.resource_id, [dep.resource_id for dep in self.spec.depends_on]


def _decode_data(name: str, data: dict[str, Any] | None) -> dict[str, str]:
    try:
        return {k: base64.b64decode(v).decode("utf-8") for k, v in (data or {}).items()}
    except ValueError as err:
        raise InputException(f"Unable to decode base64 data in {name}") from err


@dataclass
class ConfigMap(BaseManifest):
    """A ConfigMap is an API object used to store data in key-value pairs."""

    kind: ClassVar[str] = CONFIG_MAP_KIND
    """The kind of the ConfigMap."""

    name: str
    """The name of the ConfigMap."""

    namespace: str | None = None
    """The namespace of the ConfigMap."""

    data: dict[str, Any] | None = None
    """The data in the ConfigMap."""

    binary_data: dict[str, Any] | None = field(
        metadata=field_options(alias="binaryData"), default=None
    )
    """The base64 encoded binary data in the ConfigMap."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "ConfigMap":
        """Parse a config map object from a kubernetes resource."""
        _check_version(doc, "v1")
        if not (metadata := doc.get("metadata")):
            raise InputException(f"Invalid {cls} missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid {cls} missing metadata.name: {doc}")
        return ConfigMap(
            name=name,
            namespace=metadata.get("namespace"),
            data=doc.get("data"),
            binary_data=doc.get("binaryData"),
        )

    def values(self) -> dict[str, str]:
        """Return all key/value pairs with binary data decoded."""
        values = {k: str(v) for k, v in (self.data or {}).items()}
        values.update(_decode_data(f"{self.namespace}/{self.name}", self.binary_data))
        return values


@dataclass
class Secret(BaseManifest):
    """A Secret contains a small amount of sensitive data."""

    kind: ClassVar[str] = SECRET_KIND
    """The kind of the Secret."""

    name: str
    """The name of the Secret."""

    namespace: str | None = None
    """The namespace of the Secret."""

    data: dict[str, Any] | None = None
    """The base64 encoded data in the Secret."""

    string_data: dict[str, Any] | None = field(
        metadata=field_options(alias="stringData"), default=None
    )
    """The plain string data in the Secret."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Secret":
        """Parse a secret object from a kubernetes resource."""
        _check_version(doc, "v1")
        if not (metadata := doc.get("metadata")):
            raise InputException(f"Invalid {cls} missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid {cls} missing metadata.name: {doc}")
        return Secret(
            name=name,
            namespace=metadata.get("namespace"),
            data=doc.get("data"),
            string_data=doc.get("stringData"),
        )

    def values(self) -> dict[str, str]:
        """Return all key/value pairs with data decoded."""
        values = _decode_data(f"{self.namespace}/{self.name}", self.data)
        values.update({k: str(v) for k, v in (self.string_data or {}).items()})
        return values


def parse_raw_obj(obj: dict[str, Any]) -> BaseManifest:
    """Parse a raw kubernetes object into a BaseManifest.

    Only the kinds the controller tracks in the store are supported.
    """
    if not (kind := obj.get("kind")):
        raise InputException(f"Invalid object missing kind: {obj}")
    if not (api_version := obj.get("apiVersion")):
        raise InputException(f"Invalid object missing apiVersion: {obj}")
    if kind == KUSTOMIZE_KIND and api_version.startswith(FLUXTOMIZE_DOMAIN):
        return Kustomization.parse_doc(obj)
    if kind == CONFIG_MAP_KIND:
        return ConfigMap.parse_doc(obj)
    if kind == SECRET_KIND:
        return Secret.parse_doc(obj)
    raise InputException(f"Unsupported object kind {api_version}/{kind}")
