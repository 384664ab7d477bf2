"""
flux-reconciler is the reconciliation core of a Flux style Kustomization
controller: it gates on dependencies, renders and post processes overlays,
applies and prunes objects, assesses their health and reports the outcome as
status conditions.
"""

__all__ = [
    "manifest",
    "inventory",
    "conditions",
    "kustomize",
    "exceptions",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
