"""Configuration objects for flux-reconciler."""

from dataclasses import dataclass, field
from datetime import timedelta


@dataclass
class KustomizationControllerConfig:
    """Configuration for the KustomizationController."""

    dependency_requeue_interval: timedelta = timedelta(seconds=30)
    """Fixed backoff used when a dependency is not ready yet."""

    health_poll_interval: timedelta = timedelta(seconds=2)
    """How often the health assessor polls the readiness of objects."""

    max_reported_unready: int = 10
    """Maximum number of not ready objects named in a health failure message."""

    strict_substitution: bool = False
    """Fail the build when a variable has no value and no default."""

    default_service_account: str | None = None
    """Service account used when a Kustomization does not name one."""

    finalize_prune: bool = True
    """Prune the inventory of a Kustomization when it is deleted."""


@dataclass
class ReadAction:
    """Configuration for reading resources from disk."""

    recursive: bool = True
    """Descend into subdirectories."""

    extensions: tuple[str, ...] = (".yaml", ".yml")
    """Suffixes of the files that are read."""


@dataclass
class OrchestratorConfig:
    """Configuration for the orchestrator."""

    kustomization_controller_config: KustomizationControllerConfig = field(
        default_factory=KustomizationControllerConfig
    )
    read_action_config: ReadAction = field(default_factory=ReadAction)

    wait_timeout: timedelta = timedelta(minutes=5)
    """How long `run` waits for every Kustomization to settle."""
