"""The cluster API surface used to apply, prune and health check objects."""

from .client import ApplyAction, AppliedObject, ClusterClient, Credential
from .credentials import CredentialResolver, SecretCredentialResolver
from .in_memory import InMemoryCluster

__all__ = [
    "ApplyAction",
    "AppliedObject",
    "ClusterClient",
    "Credential",
    "CredentialResolver",
    "SecretCredentialResolver",
    "InMemoryCluster",
]
