"""
Provisioner — cluster lifecycle orchestration.

create_cluster() records a ``pending`` cluster and returns at once; the
deploy runs as a background task whose only visible effect is the status
moving to ``active`` or ``error``. Destroy tears down remote resources by
deployment id and always removes the record.

SSH key material returned by a deploy is encrypted before it is persisted
and decrypted only into a transient copy for kubeconfig retrieval.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from clusterplane.clusters.dal import ClusterStore
from clusterplane.config import TimeoutConfig, get_config
from clusterplane.errors import KubeconfigUnavailable, RecordNotFound
from clusterplane.models import DEFAULT_TENANT, Cluster, ClusterStatus, ProviderKind, ProvisioningResult
from clusterplane.providers import ClusterProvider, get_provider
from clusterplane.vault.crypto import Cipher, cipher_from_config
from clusterplane.vault.service import CredentialVault

logger = logging.getLogger(__name__)

ProviderFactory = Callable[..., ClusterProvider]


class Provisioner:
    def __init__(
        self,
        vault: CredentialVault,
        clusters: ClusterStore | None = None,
        cipher: Cipher | None = None,
        provider_factory: ProviderFactory = get_provider,
        timeouts: TimeoutConfig | None = None,
    ) -> None:
        self._vault = vault
        self._clusters = clusters or ClusterStore()
        self._cipher = cipher or cipher_from_config()
        self._provider_factory = provider_factory
        self._timeouts = timeouts or get_config().timeouts
        self._tasks: set[asyncio.Task] = set()

    def _provider(self, cluster: Cluster, credentials: dict[str, Any]) -> ClusterProvider:
        return self._provider_factory(
            cluster.provider, credentials, region=cluster.region, timeouts=self._timeouts
        )

    # --- Create ---

    async def create_cluster(
        self,
        name: str,
        provider: str,
        tenant_id: str | None = None,
        region: str | None = None,
        node_count: int = 3,
        instance_type: str | None = None,
        tags: dict[str, str] | None = None,
    ) -> Cluster:
        """Insert a pending record and start provisioning in the background."""
        kind = ProviderKind.parse(provider)
        tenant_id = tenant_id or DEFAULT_TENANT
        region = region or kind.default_region
        config: dict[str, Any] = {"region": region, "instance_type": instance_type, "tags": tags or {}}

        cluster = await asyncio.to_thread(
            self._clusters.insert,
            name,
            kind.value,
            tenant_id,
            region=region,
            node_count=node_count,
            config=config,
        )
        logger.info("Cluster %s (%s on %s) recorded as pending", cluster.id, name, kind)

        task = asyncio.create_task(self.provision_cluster(cluster), name=f"provision-{cluster.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return cluster

    async def provision_cluster(self, cluster: Cluster, credentials: dict[str, Any] | None = None) -> None:
        """Deploy and persist the outcome. Never raises.

        Credentials are resolved here when not given, so a vault failure
        still moves the record to ``error``.
        """
        logger.info("Starting provisioning for %s (%s)", cluster.name, cluster.provider)
        try:
            if credentials is None:
                credentials = await self._vault.resolve(cluster.provider, cluster.tenant_id)
                if credentials is None:
                    logger.warning(
                        "No %s credentials configured for tenant %s", cluster.provider, cluster.tenant_id
                    )
            provider = self._provider(cluster, credentials or {})
            result = await provider.deploy(cluster.to_spec())
            logger.info("[%s] Deployment %s succeeded", cluster.provider, result.deployment_id)

            if result.has_key_material:
                result = result.with_details(
                    key_material=self._cipher.encrypt_text(result.details["key_material"]),
                    is_encrypted=True,
                )
            config = {**cluster.config, "provisioning_result": result.to_dict()}
            await asyncio.to_thread(
                self._clusters.update,
                cluster.id,
                status=ClusterStatus.ACTIVE,
                config=config,
                expected_status=ClusterStatus.PENDING,
            )
            logger.info("Cluster %s is active", cluster.id)
        except Exception as e:
            logger.error("Provisioning failed for cluster %s: %s", cluster.id, e)
            try:
                await asyncio.to_thread(
                    self._clusters.update,
                    cluster.id,
                    status=ClusterStatus.ERROR,
                    config={"error": str(e)},
                    expected_status=ClusterStatus.PENDING,
                )
            except Exception as store_error:
                logger.error("Could not record failure for cluster %s: %s", cluster.id, store_error)

    async def drain(self) -> None:
        """Wait for every in-flight provisioning task."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # --- Reads ---

    async def get_cluster(self, cluster_id: str, tenant_id: str | None = None) -> Cluster:
        """Fetch a cluster. With *tenant_id*, another tenant's cluster is reported as missing."""
        cluster = await asyncio.to_thread(self._clusters.get, cluster_id)
        if cluster is None or (tenant_id is not None and cluster.tenant_id != tenant_id):
            raise RecordNotFound(f"Cluster {cluster_id} not found")
        return cluster

    async def list_clusters(self, tenant_id: str | None = None) -> list[Cluster]:
        return await asyncio.to_thread(self._clusters.list, tenant_id)

    # --- Kubeconfig ---

    def _decrypted(self, result: ProvisioningResult) -> ProvisioningResult:
        if result.is_encrypted and result.has_key_material:
            return result.with_details(
                key_material=self._cipher.decrypt_text(result.details["key_material"]),
                is_encrypted=False,
            )
        return result

    async def get_kubeconfig(self, cluster_id: str, tenant_id: str | None = None) -> str:
        cluster = await self.get_cluster(cluster_id, tenant_id)
        result = cluster.provisioning_result
        if result is None:
            raise KubeconfigUnavailable(f"Cluster {cluster_id} has no provisioning result")

        credentials = await self._vault.resolve(cluster.provider, cluster.tenant_id)
        if credentials is None:
            raise KubeconfigUnavailable(f"No {cluster.provider} credentials configured")

        provider = self._provider(cluster, credentials)
        return await provider.get_kubeconfig(self._decrypted(result))

    # --- Destroy ---

    async def destroy_cluster(self, cluster_id: str, tenant_id: str | None = None) -> bool:
        logger.info("Destruction requested for cluster %s", cluster_id)
        cluster = await self.get_cluster(cluster_id, tenant_id)

        deployment_id = cluster.deployment_id
        if deployment_id:
            try:
                credentials = await self._vault.resolve(cluster.provider, cluster.tenant_id)
                provider = self._provider(cluster, credentials or {})
                outcome = await provider.destroy(deployment_id)
                logger.info("Deployment %s destroyed (%d resources)", deployment_id, outcome.count)
            except Exception as e:
                logger.error("Failed to destroy resources for %s: %s", deployment_id, e)

        await asyncio.to_thread(self._clusters.delete, cluster_id)
        logger.info("Cluster %s deleted", cluster_id)
        return True
