"""A single reconciliation attempt of a Kustomization.

An attempt runs these phases in order, stopping at the first failure:

    1. Fetch the source artifact and its revision
    2. Check that dependencies are ready for that revision
    3. Render the overlay
    4. Decrypt encrypted documents
    5. Substitute variables
    6. Resolve the credential and apply and prune the objects
    7. Assess the health of the applied objects

All phases share one deadline computed from the timeout of the
Kustomization. When the deadline expires the failure is attributed to the
phase that was in flight. Every outcome is written to the status through the
helpers in `flux_reconciler.conditions` and persisted to the store.
"""

import asyncio
from dataclasses import dataclass
from datetime import timedelta
import logging
from pathlib import Path

from flux_reconciler import conditions
from flux_reconciler.cluster import Credential, CredentialResolver
from flux_reconciler.config import KustomizationControllerConfig
from flux_reconciler.dependency import DependencyGate
from flux_reconciler.exceptions import (
    BuildException,
    ClusterException,
    CommandException,
    DecryptionException,
    DependencyCycleError,
    DependencyNotReadyError,
    InventoryException,
    SourceNotReadyError,
    SubstitutionException,
)
from flux_reconciler.health import HealthAssessor, tracked_objects
from flux_reconciler.kustomize import OverlayRenderer, split_manifests
from flux_reconciler.manifest import Kustomization, format_duration
from flux_reconciler.pipeline import PostBuildPipeline
from flux_reconciler.source import SourceArtifact, SourceProvider
from flux_reconciler.store import Store

from .apply import ApplyEngine, ApplyResult

__all__ = ["Reconciler"]

_LOGGER = logging.getLogger(__name__)


class Phase:
    """Names of the phases of an attempt, used in timeout messages."""

    SOURCE = "source"
    DEPENDENCIES = "dependencies"
    BUILD = "build"
    DECRYPT = "decryption"
    SUBSTITUTE = "substitution"
    APPLY = "apply"
    HEALTH = "health check"


# The failure reason recorded when a phase fails or times out
_PHASE_REASON = {
    Phase.SOURCE: conditions.BUILD_FAILED_REASON,
    Phase.DEPENDENCIES: conditions.DEPENDENCY_NOT_READY_REASON,
    Phase.BUILD: conditions.BUILD_FAILED_REASON,
    Phase.DECRYPT: conditions.DECRYPTION_FAILED_REASON,
    Phase.SUBSTITUTE: conditions.SUBSTITUTION_FAILED_REASON,
    Phase.APPLY: conditions.APPLY_FAILED_REASON,
}


class AttemptFailed(Exception):
    """Ends an attempt with a failure that has been recorded in the status."""

    def __init__(self, requeue: timedelta) -> None:
        super().__init__()
        self.requeue = requeue


@dataclass
class Attempt:
    """State of an attempt in flight."""

    generation: int
    timeout: timedelta
    phase: str = Phase.SOURCE
    revision: str | None = None


def resolve_path(artifact: SourceArtifact, path: str) -> Path:
    """Return the overlay directory within the artifact.

    Raises BuildException if the path escapes the artifact root.
    """
    root = Path(artifact.path).resolve()
    resolved = (root / path.lstrip("/")).resolve()
    if resolved != root and root not in resolved.parents:
        raise BuildException(f"path '{path}' is outside of the source artifact")
    return resolved


class Reconciler:
    """Runs reconciliation attempts and records the outcome in the store."""

    def __init__(
        self,
        store: Store,
        config: KustomizationControllerConfig,
        source_provider: SourceProvider,
        renderer: OverlayRenderer,
        pipeline: PostBuildPipeline,
        credentials: CredentialResolver,
        engine: ApplyEngine,
        assessor: HealthAssessor,
        gate: DependencyGate | None = None,
    ) -> None:
        """Initialize Reconciler.

        Args:
            store: Holds the Kustomizations and receives their status.
            config: Controller configuration.
            source_provider: Supplies source artifacts.
            renderer: Renders the kustomize overlay.
            pipeline: Decrypts and substitutes the rendered objects.
            credentials: Resolves the identity used to apply.
            engine: Applies and prunes objects in the cluster.
            assessor: Checks the health of applied objects.
            gate: Checks dependencies, created from the store if not given.
        """
        self._store = store
        self._config = config
        self._source_provider = source_provider
        self._renderer = renderer
        self._pipeline = pipeline
        self._credentials = credentials
        self._engine = engine
        self._assessor = assessor
        self._gate = gate or DependencyGate(store)

    async def reconcile(self, ks: Kustomization) -> timedelta:
        """Run one attempt and return the delay until the next one."""
        attempt = Attempt(generation=ks.generation, timeout=ks.get_timeout())
        _LOGGER.info(
            "Reconciling %s generation %d", ks.namespaced_name, attempt.generation
        )
        deadline = asyncio.get_running_loop().time() + attempt.timeout.total_seconds()
        try:
            try:
                async with asyncio.timeout_at(deadline):
                    result, credential = await self._build_and_apply(ks, attempt)
            except TimeoutError:
                self._fail(
                    ks,
                    attempt,
                    _PHASE_REASON[attempt.phase],
                    f"{attempt.phase} timed out after {format_duration(attempt.timeout)}",
                )
                return ks.get_retry_interval()
            return await self._assess(ks, attempt, result, credential, deadline)
        except AttemptFailed as failed:
            return failed.requeue
        except Exception as err:
            _LOGGER.error(
                "Unexpected error reconciling %s: %s",
                ks.namespaced_name,
                err,
                exc_info=True,
            )
            self._fail(ks, attempt, conditions.APPLY_FAILED_REASON, str(err))
            return ks.get_retry_interval()

    async def finalize(self, ks: Kustomization) -> None:
        """Run the prune only pass before a deleted Kustomization is removed."""
        if not ks.spec.prune or ks.spec.suspend or not self._config.finalize_prune:
            _LOGGER.info("Skipping garbage collection of %s", ks.namespaced_name)
            return
        credential = await self._credentials.resolve(
            ks.namespace, ks.spec.service_account_name, ks.spec.kube_config
        )
        result = await self._engine.prune_all(ks, credential)
        if result.prune_errors:
            _LOGGER.error(
                "Garbage collection of %s failed for %d objects",
                ks.namespaced_name,
                len(result.prune_errors),
            )
        _LOGGER.info(
            "Garbage collected %d objects of %s", len(result.pruned), ks.namespaced_name
        )

    async def _build_and_apply(
        self, ks: Kustomization, attempt: Attempt
    ) -> tuple[ApplyResult, Credential]:
        try:
            artifact = await self._source_provider.fetch(ks.spec.source_ref)
        except SourceNotReadyError as err:
            self._fail(ks, attempt, conditions.BUILD_FAILED_REASON, str(err))
            raise AttemptFailed(ks.get_retry_interval()) from err
        attempt.revision = artifact.revision

        attempt.phase = Phase.DEPENDENCIES
        try:
            self._gate.check(ks, artifact.revision)
        except DependencyCycleError as err:
            self._fail(ks, attempt, conditions.CYCLE_DETECTED_REASON, str(err))
            raise AttemptFailed(ks.get_retry_interval()) from err
        except DependencyNotReadyError as err:
            _LOGGER.info("Dependencies of %s not ready: %s", ks.namespaced_name, err)
            self._fail(ks, attempt, conditions.DEPENDENCY_NOT_READY_REASON, str(err))
            raise AttemptFailed(self._config.dependency_requeue_interval) from err

        self._progressing(
            ks,
            f"Fetching manifests for revision {artifact.revision} "
            f"with a timeout of {format_duration(attempt.timeout)}",
        )

        attempt.phase = Phase.BUILD
        try:
            path = resolve_path(artifact, ks.spec.path)
            data = await self._renderer.render(
                path, ks.spec.patches, ks.spec.images, ks.spec.target_namespace
            )
            documents = split_manifests(data)
        except (BuildException, CommandException) as err:
            self._fail(ks, attempt, conditions.BUILD_FAILED_REASON, str(err))
            raise AttemptFailed(ks.get_retry_interval()) from err

        attempt.phase = Phase.DECRYPT
        try:
            documents = await self._pipeline.decrypt(ks, documents)
        except DecryptionException as err:
            self._fail(ks, attempt, conditions.DECRYPTION_FAILED_REASON, str(err))
            raise AttemptFailed(ks.get_retry_interval()) from err

        attempt.phase = Phase.SUBSTITUTE
        try:
            objects = self._pipeline.substitute(ks, documents)
        except SubstitutionException as err:
            self._fail(ks, attempt, conditions.SUBSTITUTION_FAILED_REASON, str(err))
            raise AttemptFailed(ks.get_retry_interval()) from err

        attempt.phase = Phase.APPLY
        try:
            credential = await self._credentials.resolve(
                ks.namespace, ks.spec.service_account_name, ks.spec.kube_config
            )
            result = await self._engine.apply(
                ks, objects, artifact.revision, credential
            )
        except (ClusterException, InventoryException) as err:
            self._fail(ks, attempt, conditions.APPLY_FAILED_REASON, str(err))
            raise AttemptFailed(ks.get_retry_interval()) from err

        if result.errors or result.prune_errors:
            reason = conditions.APPLY_FAILED_REASON
            errors = result.errors
            if not errors:
                reason = conditions.PRUNE_FAILED_REASON
                errors = result.prune_errors
            message = "\n".join(f"{ref}: {err}" for ref, err in errors.items())
            conditions.not_ready_inventory(
                ks,
                result.inventory,
                artifact.revision,
                reason,
                message,
                attempt.generation,
            )
            self._store.update_status(ks.resource_id, ks.status)
            raise AttemptFailed(ks.get_retry_interval())
        return result, credential

    async def _assess(
        self,
        ks: Kustomization,
        attempt: Attempt,
        result: ApplyResult,
        credential: Credential,
        deadline: float,
    ) -> timedelta:
        revision = result.revision
        if ks.health_required:
            attempt.phase = Phase.HEALTH
            refs = tracked_objects(ks, result.inventory.objects())
            self._progressing(
                ks,
                f"Checking health of {len(refs)} resources "
                f"with a timeout of {format_duration(attempt.timeout)}",
            )
            health = await self._assessor.assess(refs, credential, deadline)
            if not health.healthy:
                conditions.unhealthy(
                    ks, result.inventory, revision, health.message, attempt.generation
                )
                self._store.update_status(ks.resource_id, ks.status)
                return ks.get_retry_interval()

        conditions.ready_inventory(
            ks,
            result.inventory,
            revision,
            conditions.RECONCILIATION_SUCCEEDED_REASON,
            f"Applied revision: {revision}",
            attempt.generation,
        )
        self._store.update_status(ks.resource_id, ks.status)
        _LOGGER.info(
            "Reconciliation of %s finished, next run in %s",
            ks.namespaced_name,
            format_duration(ks.spec.interval),
        )
        return ks.spec.interval

    def _progressing(self, ks: Kustomization, message: str) -> None:
        conditions.progressing(ks, message)
        self._store.update_status(ks.resource_id, ks.status)

    def _fail(
        self, ks: Kustomization, attempt: Attempt, reason: str, message: str
    ) -> None:
        conditions.not_ready(ks, attempt.revision, reason, message, attempt.generation)
        if not ks.health_required:
            conditions.remove_condition(ks, conditions.HEALTHY_CONDITION)
        self._store.update_status(ks.resource_id, ks.status)
