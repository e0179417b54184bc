"""Exception types raised across the provisioning core."""

from __future__ import annotations


class ClusterPlaneError(Exception):
    """Base class for all Clusterplane errors."""


class UnsupportedProvider(ClusterPlaneError, ValueError):
    """Raised for a provider string outside the known set."""


class MissingCredentialFields(ClusterPlaneError, ValueError):
    """Raised when a credential set lacks fields its provider requires."""

    def __init__(self, provider: str, missing: list[str]) -> None:
        self.provider = provider
        self.missing = missing
        super().__init__(f"Missing {provider} credential fields: {', '.join(missing)}")


class CredentialInvalid(ClusterPlaneError):
    """The validator rejected a credential set. Nothing was persisted."""


class ImmutableSource(ClusterPlaneError):
    """Attempt to modify credentials that come from operator configuration."""


class ProviderUnavailable(ClusterPlaneError):
    """Network failure or timeout talking to an infrastructure API."""


class ProvisioningFailed(ClusterPlaneError):
    """A deploy call failed before any node was created."""

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        super().__init__(f"{provider} provisioning failed: {message}")


class PartialProvisioning(ProvisioningFailed):
    """Some, but not all, requested nodes were created before a failure.

    Created nodes are not rolled back. They stay tagged with the deployment id,
    which is named in the message, and are cleaned up by an operator sweep on
    that tag. Destroying the errored cluster record does not reach them.
    """

    def __init__(
        self, provider: str, deployment_id: str, created: list[str], requested: int, message: str
    ) -> None:
        self.deployment_id = deployment_id
        self.created = created
        self.requested = requested
        super().__init__(
            provider,
            f"{len(created)}/{requested} nodes created for deployment {deployment_id}: {message}",
        )


class DestroyFailed(ClusterPlaneError):
    """Remote teardown of a deployment failed."""


class NodeNotReady(ClusterPlaneError):
    """The node has no externally reachable address yet."""


class KeyMaterialMissing(ClusterPlaneError):
    """An SSH private key is required but was not supplied."""


class KubeconfigUnavailable(ClusterPlaneError):
    """The kubeconfig could not be read from the node."""


class RecordNotFound(ClusterPlaneError):
    """No cluster record exists for the given id."""
