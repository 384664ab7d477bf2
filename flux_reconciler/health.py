"""Health assessment of the objects applied by a Kustomization.

Readiness is computed per object kind by a check registered in a
`ReadinessRegistry`. The `HealthAssessor` polls the tracked objects until all
of them are ready or the deadline of the attempt is reached, and then reports
the objects that are still not ready in a stable order.
"""

import asyncio
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import timedelta
import logging
from typing import Any

from .cluster import ClusterClient, Credential
from .exceptions import ClusterException
from .inventory import ObjMetadata, split_api_version
from .manifest import Kustomization, format_duration

__all__ = [
    "ReadinessCheck",
    "ReadinessRegistry",
    "HealthAssessor",
    "HealthResult",
    "tracked_objects",
]

_LOGGER = logging.getLogger(__name__)

ReadinessCheck = Callable[[dict[str, Any]], bool]

DEFAULT_POLL_INTERVAL = timedelta(seconds=2)
DEFAULT_MAX_REPORTED = 10


def _status(obj: dict[str, Any]) -> dict[str, Any]:
    return obj.get("status") or {}


def _conditions(obj: dict[str, Any]) -> dict[str, str]:
    return {
        cond.get("type"): cond.get("status")
        for cond in _status(obj).get("conditions") or ()
        if isinstance(cond, dict)
    }


def _generation_observed(obj: dict[str, Any]) -> bool:
    """Return False while the status describes an older generation."""
    generation = (obj.get("metadata") or {}).get("generation")
    observed = _status(obj).get("observedGeneration")
    if generation is None or observed is None:
        return True
    return observed >= generation


def _desired_replicas(obj: dict[str, Any]) -> int:
    replicas = (obj.get("spec") or {}).get("replicas")
    return 1 if replicas is None else replicas


def deployment_ready(obj: dict[str, Any]) -> bool:
    status = _status(obj)
    replicas = _desired_replicas(obj)
    if not status or not _generation_observed(obj):
        return False
    if _conditions(obj).get("Available") == "False":
        return False
    return (
        status.get("updatedReplicas", 0) >= replicas
        and status.get("readyReplicas", 0) >= replicas
        and status.get("availableReplicas", 0) >= replicas
    )


def stateful_set_ready(obj: dict[str, Any]) -> bool:
    status = _status(obj)
    replicas = _desired_replicas(obj)
    if not status or not _generation_observed(obj):
        return False
    current, update = status.get("currentRevision"), status.get("updateRevision")
    if current and update and current != update:
        return False
    return (
        status.get("readyReplicas", 0) >= replicas
        and status.get("updatedReplicas", replicas) >= replicas
    )


def daemon_set_ready(obj: dict[str, Any]) -> bool:
    status = _status(obj)
    if "desiredNumberScheduled" not in status or not _generation_observed(obj):
        return False
    desired = status["desiredNumberScheduled"]
    return (
        status.get("numberReady", 0) >= desired
        and status.get("updatedNumberScheduled", 0) >= desired
        and status.get("numberAvailable", 0) >= desired
    )


def job_ready(obj: dict[str, Any]) -> bool:
    conditions = _conditions(obj)
    if conditions.get("Failed") == "True":
        return False
    if conditions.get("Complete") == "True":
        return True
    completions = (obj.get("spec") or {}).get("completions")
    completions = 1 if completions is None else completions
    return _status(obj).get("succeeded", 0) >= completions


def pod_ready(obj: dict[str, Any]) -> bool:
    if _status(obj).get("phase") == "Succeeded":
        return True
    return _conditions(obj).get("Ready") == "True"


def ready_condition(obj: dict[str, Any]) -> bool:
    """Generic check for objects that report a Ready condition.

    Objects without conditions are ready as soon as they exist.
    """
    if not _generation_observed(obj):
        return False
    conditions = _conditions(obj)
    if "Ready" not in conditions:
        return True
    return conditions["Ready"] == "True"


BUILTIN_CHECKS: dict[str, ReadinessCheck] = {
    "Deployment": deployment_ready,
    "StatefulSet": stateful_set_ready,
    "DaemonSet": daemon_set_ready,
    "Job": job_ready,
    "Pod": pod_ready,
}


class ReadinessRegistry:
    """Lookup table of readiness checks by object kind."""

    def __init__(
        self,
        checks: Mapping[str, ReadinessCheck] | None = None,
        default: ReadinessCheck = ready_condition,
    ) -> None:
        """Initialize ReadinessRegistry.

        Args:
            checks: Checks keyed by kind, defaults to the built in workload checks.
            default: Check used for kinds without a registered check.
        """
        self._checks = dict(BUILTIN_CHECKS if checks is None else checks)
        self._default = default

    def register(self, kind: str, check: ReadinessCheck) -> None:
        self._checks[kind] = check

    def is_ready(self, obj: dict[str, Any]) -> bool:
        """Return True if the live object is ready."""
        check = self._checks.get(obj.get("kind", ""), self._default)
        return check(obj)

    def __contains__(self, kind: object) -> bool:
        return kind in self._checks


@dataclass
class HealthResult:
    """The outcome of a health assessment."""

    not_ready: list[ObjMetadata] = field(default_factory=list)
    """Objects still not ready when the assessment ended, sorted."""

    message: str = ""

    @property
    def healthy(self) -> bool:
        return not self.not_ready


def tracked_objects(
    ks: Kustomization, applied: Iterable[ObjMetadata]
) -> list[ObjMetadata]:
    """Return the objects to assess for the Kustomization.

    With `wait` every applied object is tracked, otherwise the explicit list of
    health checks is used.
    """
    if ks.spec.wait:
        return list(applied)
    refs = []
    for check in ks.spec.health_checks:
        group, version = split_api_version(check.api_version)
        refs.append(
            ObjMetadata(
                group=group,
                version=version,
                kind=check.kind,
                namespace=check.namespace or "",
                name=check.name,
            )
        )
    return refs


class HealthAssessor:
    """Polls the readiness of objects until they are all ready."""

    def __init__(
        self,
        client: ClusterClient,
        registry: ReadinessRegistry | None = None,
        poll_interval: timedelta = DEFAULT_POLL_INTERVAL,
        max_reported: int = DEFAULT_MAX_REPORTED,
    ) -> None:
        self._client = client
        self._registry = registry or ReadinessRegistry()
        self._poll_interval = poll_interval
        self._max_reported = max_reported

    async def assess(
        self,
        refs: Sequence[ObjMetadata],
        credential: Credential,
        deadline: float | None = None,
    ) -> HealthResult:
        """Wait for all objects to become ready.

        Args:
            refs: The objects to track.
            credential: Identity used to read the objects.
            deadline: Event loop time at which to give up, shared with the
                rest of the attempt.
        """
        pending = sorted(set(refs), key=lambda ref: ref.sort_key)
        if not pending:
            return HealthResult()
        loop = asyncio.get_running_loop()
        start = loop.time()
        _LOGGER.debug("Waiting for %d objects to become ready", len(pending))
        try:
            async with asyncio.timeout_at(deadline):
                while True:
                    pending = [
                        ref for ref in pending if not await self._is_ready(ref, credential)
                    ]
                    if not pending:
                        return HealthResult()
                    await asyncio.sleep(self._poll_interval.total_seconds())
        except TimeoutError:
            elapsed = timedelta(seconds=round(loop.time() - start))
            return HealthResult(
                not_ready=pending, message=self._timeout_message(pending, elapsed)
            )

    async def _is_ready(self, ref: ObjMetadata, credential: Credential) -> bool:
        try:
            obj = await self._client.get(ref, credential)
        except ClusterException as err:
            _LOGGER.debug("Unable to read %s: %s", ref, err)
            return False
        if obj is None:
            _LOGGER.debug("%s not found", ref)
            return False
        return self._registry.is_ready(obj)

    def _timeout_message(self, pending: list[ObjMetadata], elapsed: timedelta) -> str:
        names = [str(ref) for ref in pending[: self._max_reported]]
        if (more := len(pending) - len(names)) > 0:
            names.append(f"and {more} more")
        return (
            f"health check failed after {format_duration(elapsed)}: "
            f"timeout waiting for: [{', '.join(names)}]"
        )
