"""
Infrastructure adapters behind one factory.

Usage:
    from clusterplane.providers import get_provider

    provider = get_provider("aws", {"access_key_id": ..., "secret_access_key": ...})
    result = await provider.deploy(ClusterSpec(name="demo", node_count=2))
"""

from __future__ import annotations

from typing import Any

from clusterplane.config import TimeoutConfig
from clusterplane.models import ProviderKind
from clusterplane.providers.base import ClusterProvider


def get_provider(
    kind: str | ProviderKind,
    credentials: dict[str, Any],
    region: str | None = None,
    timeouts: TimeoutConfig | None = None,
) -> ClusterProvider:
    """Build the adapter for *kind*.

    Raises UnsupportedProvider for an unknown kind and MissingCredentialFields
    when a required credential field is empty. Adapters import lazily so a
    deployment only needs the SDKs of the providers it uses.
    """
    kind = ProviderKind.parse(kind)
    kind.check_fields(credentials)
    region = region or credentials.get("region") or kind.default_region

    if kind is ProviderKind.AWS:
        from clusterplane.providers.aws import AWSProvider

        return AWSProvider(
            region,
            credentials["access_key_id"],
            credentials["secret_access_key"],
            credentials.get("session_token"),
            timeouts=timeouts,
        )
    if kind is ProviderKind.AZURE:
        from clusterplane.providers.azure import AzureProvider

        return AzureProvider(
            credentials["tenant_id"],
            credentials["client_id"],
            credentials["client_secret"],
            credentials["subscription_id"],
            region,
            timeouts=timeouts,
        )
    if kind is ProviderKind.GCP:
        from clusterplane.providers.gcp import GCPProvider

        return GCPProvider(
            credentials["project_id"],
            credentials["service_account_key"],
            region,
            timeouts=timeouts,
        )

    from clusterplane.providers.onprem import OnPremProvider

    return OnPremProvider(
        credentials["host"],
        credentials["user"],
        credentials["ssh_key"],
        credentials.get("port") or 22,
        timeouts=timeouts,
    )


__all__ = ["ClusterProvider", "get_provider"]
