"""Command line tools for flux-reconciler."""
