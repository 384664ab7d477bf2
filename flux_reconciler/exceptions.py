"""Exceptions related to flux-reconciler."""

__all__ = [
    "FluxException",
    "InputException",
    "CommandException",
    "DependencyNotReadyError",
    "DependencyCycleError",
]


class FluxException(Exception):
    """Generic base exception used for this library."""


class InputException(FluxException):
    """Raised when the input files or values are not formatted as expected."""


class CommandException(FluxException):
    """Raised when there is a failure running a subcommand."""


class KustomizeException(CommandException):
    """Raised when there is a failure running a kustomize command."""


class KustomizePathException(KustomizeException):
    """Raised a Kustomization points to a path that does not exist."""


class SourceNotReadyError(FluxException):
    """Raised when the source artifact for a Kustomization is not available."""


class BuildException(FluxException):
    """Raised when the overlay could not be rendered or parsed."""


class DecryptionException(FluxException):
    """Raised when an encrypted value in the rendered manifests can't be decrypted."""


class SubstitutionException(FluxException):
    """Raised when post build variable substitution fails."""


class InventoryException(FluxException):
    """Raised when an inventory entry is malformed."""


class DependencyNotReadyError(FluxException):
    """Raised when a Kustomization dependency is not ready."""

    def __init__(self, dependency_id: str, message: str) -> None:
        super().__init__(f"dependency '{dependency_id}' {message}")
        self.dependency_id = dependency_id
        self.message = message


class DependencyCycleError(DependencyNotReadyError):
    """Raised when the dependsOn graph contains a cycle through a Kustomization."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(
            cycle[0], f"is part of a dependency cycle: {' -> '.join(cycle)}"
        )


class ClusterException(FluxException):
    """Raised when a call against the cluster API fails."""


class ObjectNotFoundError(ClusterException):
    """Raised when an object is not found in the store or cluster."""


class ImmutableFieldError(ClusterException):
    """Raised when an apply would change an immutable field of an object."""

    def __init__(self, resource_id: str, fields: list[str]) -> None:
        super().__init__(
            f"{resource_id} is invalid: field is immutable: {', '.join(fields)}"
        )
        self.resource_id = resource_id
        self.fields = fields
