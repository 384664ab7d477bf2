"""Condition state machine for Kustomization status.

A Kustomization is conceptually in one of these states, derived from its
conditions rather than stored as a single value:

    - Progressing: a reconciliation is in flight, Ready=Unknown
    - Ready: the last apply succeeded, Ready=True
    - Failed: the last attempt failed, Ready=False

The Healthy condition is an orthogonal axis that is only present when the
Kustomization sets `wait` or lists `healthChecks`. Ready reflects that the
apply succeeded while Healthy reflects that the resulting workloads are live.

The helpers in this module are the only functions that write conditions,
revisions, inventory and the observed generation of a status.
"""

from collections.abc import Callable
from datetime import datetime, timezone
import logging

from .inventory import ResourceInventory
from .manifest import Condition, ConditionStatus, Kustomization, KustomizationStatus

__all__ = [
    "READY_CONDITION",
    "HEALTHY_CONDITION",
    "trim_message",
    "set_condition",
    "progressing",
    "not_ready",
    "not_ready_inventory",
    "ready_inventory",
]

_LOGGER = logging.getLogger(__name__)

READY_CONDITION = "Ready"
HEALTHY_CONDITION = "Healthy"
PROGRESSING_CONDITION = "Progressing"

# Reasons are stable strings consumed by tooling.
PROGRESSING_REASON = "Progressing"
DEPENDENCY_NOT_READY_REASON = "DependencyNotReady"
CYCLE_DETECTED_REASON = "CycleDetected"
BUILD_FAILED_REASON = "BuildFailed"
DECRYPTION_FAILED_REASON = "DecryptionFailed"
SUBSTITUTION_FAILED_REASON = "SubstitutionFailed"
APPLY_FAILED_REASON = "ApplyFailed"
PRUNE_FAILED_REASON = "PruneFailed"
UNHEALTHY_REASON = "Unhealthy"
RECONCILIATION_SUCCEEDED_REASON = "ReconciliationSucceeded"

MAX_CONDITION_MESSAGE_LENGTH = 20000
TRUNCATION_MARKER = "..."

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def trim_message(message: str, limit: int = MAX_CONDITION_MESSAGE_LENGTH) -> str:
    """Truncate a message to the limit and append a marker when cut."""
    if len(message) <= limit:
        return message
    return message[:limit] + TRUNCATION_MARKER


def is_ready(status: KustomizationStatus) -> bool:
    """Return True if the Ready condition is True."""
    condition = status.conditions.get(READY_CONDITION)
    return condition is not None and condition.status == ConditionStatus.TRUE


def set_condition(
    ks: Kustomization,
    condition_type: str,
    status: str,
    reason: str,
    message: str,
    generation: int | None = None,
    now: Clock = _utcnow,
) -> Condition:
    """Insert or replace the condition of the given type.

    The transition time only moves when the status value changes.
    """
    existing = ks.status.conditions.get(condition_type)
    transition_time = now()
    if existing is not None and existing.status == status:
        transition_time = existing.last_transition_time or transition_time
    condition = Condition(
        type=condition_type,
        status=status,
        reason=reason,
        message=trim_message(message),
        observed_generation=ks.generation if generation is None else generation,
        last_transition_time=transition_time,
    )
    ks.status.conditions[condition_type] = condition
    return condition


def remove_condition(ks: Kustomization, condition_type: str) -> None:
    ks.status.conditions.pop(condition_type, None)


def progressing(ks: Kustomization, message: str, now: Clock = _utcnow) -> None:
    """Mark the start of a reconciliation, leaving the Healthy condition alone."""
    set_condition(
        ks,
        READY_CONDITION,
        ConditionStatus.UNKNOWN,
        PROGRESSING_REASON,
        message,
        now=now,
    )


def set_healthiness(
    ks: Kustomization,
    status: str,
    reason: str,
    message: str,
    generation: int | None = None,
    now: Clock = _utcnow,
) -> None:
    """Set the Healthy condition, or remove it when no health checks are required."""
    if not ks.health_required:
        remove_condition(ks, HEALTHY_CONDITION)
        return
    set_condition(ks, HEALTHY_CONDITION, status, reason, message, generation, now)


def set_readiness(
    ks: Kustomization,
    status: str,
    reason: str,
    message: str,
    revision: str | None,
    generation: int,
    now: Clock = _utcnow,
) -> None:
    """Set the Ready condition and record the completed attempt.

    The observed generation is the generation captured at the start of the
    attempt and never moves backwards.
    """
    set_condition(ks, READY_CONDITION, status, reason, message, generation, now)
    ks.status.observed_generation = max(ks.status.observed_generation, generation)
    if revision:
        ks.status.last_attempted_revision = revision


def not_ready(
    ks: Kustomization,
    revision: str | None,
    reason: str,
    message: str,
    generation: int,
    now: Clock = _utcnow,
) -> None:
    """Register a failed attempt that did not reach the apply phase."""
    set_readiness(
        ks, ConditionStatus.FALSE, reason, message, revision, generation, now
    )


def not_ready_inventory(
    ks: Kustomization,
    inventory: ResourceInventory | None,
    revision: str | None,
    reason: str,
    message: str,
    generation: int,
    now: Clock = _utcnow,
) -> None:
    """Register a failed apply attempt, replacing the inventory."""
    set_readiness(
        ks, ConditionStatus.FALSE, reason, message, revision, generation, now
    )
    set_healthiness(ks, ConditionStatus.FALSE, reason, reason, generation, now)
    ks.status.inventory = inventory


def ready_inventory(
    ks: Kustomization,
    inventory: ResourceInventory,
    revision: str,
    reason: str,
    message: str,
    generation: int,
    now: Clock = _utcnow,
) -> None:
    """Register a successful apply attempt with healthy workloads."""
    set_readiness(ks, ConditionStatus.TRUE, reason, message, revision, generation, now)
    set_healthiness(ks, ConditionStatus.TRUE, reason, reason, generation, now)
    ks.status.inventory = inventory
    ks.status.last_applied_revision = revision


def unhealthy(
    ks: Kustomization,
    inventory: ResourceInventory,
    revision: str,
    message: str,
    generation: int,
    now: Clock = _utcnow,
) -> None:
    """Register an apply that succeeded but whose workloads are not live."""
    set_readiness(
        ks,
        ConditionStatus.TRUE,
        RECONCILIATION_SUCCEEDED_REASON,
        f"Applied revision: {revision}",
        revision,
        generation,
        now,
    )
    set_healthiness(
        ks, ConditionStatus.FALSE, UNHEALTHY_REASON, message, generation, now
    )
    ks.status.inventory = inventory
    ks.status.last_applied_revision = revision
