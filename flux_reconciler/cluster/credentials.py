"""Resolution of the identity used when applying a Kustomization."""

from abc import ABC, abstractmethod
import logging

from flux_reconciler.exceptions import ClusterException, InputException
from flux_reconciler.manifest import KubeConfigReference
from flux_reconciler.values import ClusterConfig

from .client import Credential

__all__ = [
    "CredentialResolver",
    "SecretCredentialResolver",
]

_LOGGER = logging.getLogger(__name__)

# Keys of a kubeconfig secret checked in order
KUBECONFIG_KEYS = ("value", "value.yaml")


class CredentialResolver(ABC):
    """Turns a service account or kubeconfig reference into a credential."""

    @abstractmethod
    async def resolve(
        self,
        namespace: str,
        service_account: str | None,
        kube_config: KubeConfigReference | None,
    ) -> Credential:
        """Return the credential for a Kustomization in the namespace.

        A kubeconfig reference takes precedence over the service account.

        Raises ClusterException if the credential can't be resolved.
        """


class SecretCredentialResolver(CredentialResolver):
    """Reads kubeconfig secrets and falls back to a default service account."""

    def __init__(
        self, cluster_config: ClusterConfig, default_service_account: str | None = None
    ) -> None:
        self._cluster_config = cluster_config
        self._default_service_account = default_service_account

    async def resolve(
        self,
        namespace: str,
        service_account: str | None,
        kube_config: KubeConfigReference | None,
    ) -> Credential:
        if kube_config is not None:
            name = kube_config.secret_ref.name
            if (secret := self._cluster_config.get_secret(name, namespace)) is None:
                raise ClusterException(
                    f"kubeconfig secret '{namespace}/{name}' not found"
                )
            try:
                values = secret.values()
            except InputException as err:
                raise ClusterException(str(err)) from err
            for key in KUBECONFIG_KEYS:
                if value := values.get(key):
                    _LOGGER.debug("Using kubeconfig %s/%s[%s]", namespace, name, key)
                    return Credential(namespace=namespace, kube_config=value)
            raise ClusterException(
                f"kubeconfig secret '{namespace}/{name}' has none of the keys {', '.join(KUBECONFIG_KEYS)}"
            )
        return Credential(
            namespace=namespace,
            service_account=service_account or self._default_service_account,
        )
