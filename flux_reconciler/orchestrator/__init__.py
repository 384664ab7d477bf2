"""Orchestrator for flux-reconciler.

This module wires the Kustomization controller to its collaborators and
loads the initial resources from disk.
"""

from flux_reconciler.config import OrchestratorConfig

from .orchestrator import Orchestrator, BootstrapOptions

__all__ = [
    "Orchestrator",
    "OrchestratorConfig",
    "BootstrapOptions",
]
