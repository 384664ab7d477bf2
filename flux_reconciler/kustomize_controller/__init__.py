"""Kustomization controller for flux-reconciler.

This module contains the scheduling loop, the reconciliation attempt and the
apply and prune engine for Kustomization resources.
"""

from .apply import ApplyEngine, ApplyResult
from .controller import KustomizationController
from .reconciler import Reconciler

__all__ = [
    "ApplyEngine",
    "ApplyResult",
    "KustomizationController",
    "Reconciler",
]
