"""OnPremProvider — a single pre-existing host reached over SSH.

Nothing is created or destroyed remotely. The host is expected to already
run k3s.
"""

from __future__ import annotations

import logging
import uuid

from clusterplane.config import TimeoutConfig
from clusterplane.errors import KeyMaterialMissing
from clusterplane.models import ClusterSpec, DestroyResult, NodeDescriptor, ProvisioningResult
from clusterplane.providers.ssh import fetch_kubeconfig

logger = logging.getLogger(__name__)

STATIC_NODE_ID = "static-host-1"


class OnPremProvider:
    resource_type = "onprem-cluster"

    def __init__(
        self,
        host: str,
        user: str,
        ssh_key: str,
        port: int = 22,
        *,
        timeouts: TimeoutConfig | None = None,
    ) -> None:
        self.host = host
        self.user = user
        self.ssh_key = ssh_key
        self.port = int(port or 22)
        self._timeouts = timeouts or TimeoutConfig()

    async def deploy(self, spec: ClusterSpec) -> ProvisioningResult:
        deployment_id = str(uuid.uuid4())
        logger.info("[OnPrem] Registering %s as cluster %s", self.host, spec.name)
        node = NodeDescriptor(
            instance_id=STATIC_NODE_ID,
            deployment_id=deployment_id,
            name=STATIC_NODE_ID,
            private_address=self.host,
            public_address=self.host,
            state="running",
        )
        return ProvisioningResult(
            success=True,
            deployment_id=deployment_id,
            resource_type=self.resource_type,
            nodes=[node],
            details={"host": self.host, "ssh_user": self.user, "port": self.port},
        )

    async def destroy(self, deployment_id: str) -> DestroyResult:
        logger.info("[OnPrem] Nothing to tear down for deployment %s", deployment_id)
        return DestroyResult(success=True, count=0)

    async def get_kubeconfig(self, result: ProvisioningResult) -> str:
        if not self.ssh_key:
            raise KeyMaterialMissing(f"No SSH key configured for {self.user}@{self.host}")
        return await fetch_kubeconfig(
            self.host,
            self.user,
            self.ssh_key,
            port=self.port,
            timeout=self._timeouts.kubeconfig,
        )
