"""ClusterProvider protocol and helpers shared by all adapters.

The protocol defines the uniform contract every infrastructure kind
implements. Any object with ``deploy()``, ``destroy()`` and
``get_kubeconfig()`` coroutines satisfies it; no inheritance required.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol, runtime_checkable

from clusterplane.errors import KubeconfigUnavailable, PartialProvisioning, ProvisioningFailed
from clusterplane.models import (
    MANAGED_BY,
    ClusterSpec,
    DestroyResult,
    NodeDescriptor,
    ProvisioningResult,
)

logger = logging.getLogger(__name__)

DEPLOYMENT_TAG = "DeploymentId"
MANAGED_BY_TAG = "ManagedBy"
CLUSTER_TAG = "Cluster"

_BOOTSTRAP_TEMPLATE = """#!/bin/bash
# Install k3s (lightweight Kubernetes) and make its kubeconfig readable over SSH.
PUBLIC_IP=$({public_ip_command} || true)
curl -sfL https://get.k3s.io | sh -s - ${{PUBLIC_IP:+--tls-san $PUBLIC_IP}} --write-kubeconfig-mode 644
"""


@runtime_checkable
class ClusterProvider(Protocol):
    """Uniform adapter contract implemented once per infrastructure kind."""

    async def deploy(self, spec: ClusterSpec) -> ProvisioningResult:
        """Create ``spec.node_count`` nodes tagged with a fresh deployment id."""
        ...

    async def destroy(self, deployment_id: str) -> DestroyResult:
        """Delete every resource tagged with *deployment_id*. Idempotent."""
        ...

    async def get_kubeconfig(self, result: ProvisioningResult) -> str:
        """Read the cluster kubeconfig from a representative node."""
        ...


def resource_tags(deployment_id: str, cluster_name: str, custom: dict[str, str] | None = None) -> dict[str, str]:
    """Tags applied to every created resource. Custom tags cannot override ours."""
    tags = dict(custom or {})
    tags.update(
        {
            DEPLOYMENT_TAG: deployment_id,
            MANAGED_BY_TAG: MANAGED_BY,
            CLUSTER_TAG: cluster_name,
        }
    )
    return tags


def bootstrap_script(public_ip_command: str) -> str:
    """Startup script installing k3s, advertising the node's public address."""
    return _BOOTSTRAP_TEMPLATE.format(public_ip_command=public_ip_command)


async def create_nodes(
    provider: str,
    deployment_id: str,
    count: int,
    create_one: Callable[[int], Awaitable[NodeDescriptor]],
) -> list[NodeDescriptor]:
    """Issue *count* node-create calls concurrently and wait for all of them.

    If any call fails the whole batch fails: PartialProvisioning when some
    nodes exist, ProvisioningFailed when none do. Nothing is rolled back.
    """
    results = await asyncio.gather(*(create_one(i) for i in range(count)), return_exceptions=True)

    created = [r for r in results if isinstance(r, NodeDescriptor)]
    failures = [r for r in results if isinstance(r, BaseException)]
    if not failures:
        return created

    first = failures[0]
    logger.error(
        "[%s] %d/%d node creations failed for deployment %s: %s",
        provider,
        len(failures),
        count,
        deployment_id,
        first,
    )
    if created:
        raise PartialProvisioning(
            provider, deployment_id, [n.instance_id for n in created], count, str(first)
        ) from first
    raise ProvisioningFailed(provider, str(first)) from first


def first_node(result: ProvisioningResult) -> NodeDescriptor:
    """The representative node used for kubeconfig retrieval."""
    if not result.nodes:
        raise KubeconfigUnavailable("No nodes to retrieve kubeconfig from")
    return result.nodes[0]
