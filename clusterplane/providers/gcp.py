"""
GCPProvider — Compute Engine instances via google-cloud-compute.

The compute clients are synchronous, so calls run through
``asyncio.to_thread``. Labels stand in for tags (GCE label keys must be
lowercase), and teardown rediscovers instances through a label filter.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import uuid
from typing import Any

from google.api_core.exceptions import GoogleAPICallError, NotFound
from google.cloud import compute_v1
from google.oauth2 import service_account

from clusterplane.config import TimeoutConfig
from clusterplane.errors import DestroyFailed, KeyMaterialMissing, NodeNotReady, ProviderUnavailable
from clusterplane.models import MANAGED_BY, ClusterSpec, DestroyResult, NodeDescriptor, ProvisioningResult
from clusterplane.providers.base import bootstrap_script, create_nodes, first_node
from clusterplane.providers.keys import generate_ssh_key_pair
from clusterplane.providers.ssh import fetch_kubeconfig

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/cloud-platform"]

DEFAULT_MACHINE_TYPE = "e2-medium"
SOURCE_IMAGE = "projects/ubuntu-os-cloud/global/images/family/ubuntu-2404-lts-amd64"
SSH_USER = "clusterplane"

PUBLIC_IP_COMMAND = (
    'curl -s --max-time 5 -H "Metadata-Flavor: Google" '
    '"http://metadata.google.internal/computeMetadata/v1/instance/network-interfaces/0/'
    'access-configs/0/external-ip"'
)

_LABEL_INVALID = re.compile(r"[^a-z0-9_-]")


def load_service_account_info(key: str | dict[str, Any]) -> dict[str, Any]:
    """Parse a service-account key given as JSON text or an already-decoded dict."""
    if isinstance(key, dict):
        return key
    try:
        info = json.loads(key)
    except (TypeError, ValueError) as e:
        raise ValueError("Invalid JSON format for Service Account Key") from e
    if not isinstance(info, dict):
        raise ValueError("Invalid JSON format for Service Account Key")
    return info


def label_value(value: str) -> str:
    """Coerce *value* into the GCE label charset (lowercase, max 63 chars)."""
    return _LABEL_INVALID.sub("-", value.lower())[:63]


def deployment_labels(deployment_id: str, cluster_name: str, custom: dict[str, str] | None = None) -> dict[str, str]:
    labels = {label_value(k): label_value(v) for k, v in (custom or {}).items()}
    labels.update(
        {
            "deployment_id": deployment_id,
            "managed_by": MANAGED_BY,
            "cluster": label_value(cluster_name),
        }
    )
    return labels


class GCPProvider:
    """Provision Compute Engine instances bootstrapped with k3s."""

    resource_type = "gce-cluster"

    def __init__(
        self,
        project_id: str,
        service_account_key: str | dict[str, Any],
        zone: str = "us-central1-a",
        *,
        timeouts: TimeoutConfig | None = None,
        instances_client: Any = None,
    ) -> None:
        self.project_id = project_id
        self.zone = zone
        self._timeouts = timeouts or TimeoutConfig()
        if instances_client is None:
            credentials = service_account.Credentials.from_service_account_info(
                load_service_account_info(service_account_key), scopes=SCOPES
            )
            instances_client = compute_v1.InstancesClient(credentials=credentials)
        self.instances = instances_client

    # --- Deploy ---

    def _instance_resource(
        self,
        name: str,
        zone: str,
        machine_type: str,
        labels: dict[str, str],
        startup_script: str,
        public_key: str,
    ) -> compute_v1.Instance:
        return compute_v1.Instance(
            name=name,
            machine_type=f"zones/{zone}/machineTypes/{machine_type}",
            labels=labels,
            disks=[
                compute_v1.AttachedDisk(
                    boot=True,
                    auto_delete=True,
                    initialize_params=compute_v1.AttachedDiskInitializeParams(
                        source_image=SOURCE_IMAGE, disk_size_gb=20
                    ),
                )
            ],
            network_interfaces=[
                compute_v1.NetworkInterface(
                    network="global/networks/default",
                    access_configs=[compute_v1.AccessConfig(name="External NAT", type_="ONE_TO_ONE_NAT")],
                )
            ],
            metadata=compute_v1.Metadata(
                items=[
                    compute_v1.Items(key="startup-script", value=startup_script),
                    compute_v1.Items(key="ssh-keys", value=f"{SSH_USER}:{public_key}"),
                ]
            ),
        )

    def _insert_and_wait(self, zone: str, instance: compute_v1.Instance) -> compute_v1.Instance:
        operation = self.instances.insert(project=self.project_id, zone=zone, instance_resource=instance)
        operation.result(timeout=self._timeouts.create)
        return self.instances.get(project=self.project_id, zone=zone, instance=instance.name)

    async def deploy(self, spec: ClusterSpec) -> ProvisioningResult:
        deployment_id = str(uuid.uuid4())
        zone = spec.region or self.zone
        machine_type = spec.instance_type or DEFAULT_MACHINE_TYPE
        labels = deployment_labels(deployment_id, spec.name, spec.tags)
        public_key, private_key = generate_ssh_key_pair(f"clusterplane-{deployment_id[:8]}")
        startup_script = bootstrap_script(PUBLIC_IP_COMMAND)

        logger.info(
            "[GCP] Creating %d instances (%s) in %s for deployment %s",
            spec.node_count,
            machine_type,
            zone,
            deployment_id,
        )

        async def _create(index: int) -> NodeDescriptor:
            # Instance names: lowercase, start with a letter, unique per zone.
            node_name = f"{label_value(spec.name)}-{deployment_id[:8]}-{index + 1}"
            resource = self._instance_resource(
                node_name, zone, machine_type, labels, startup_script, public_key
            )
            created = await asyncio.to_thread(self._insert_and_wait, zone, resource)
            interface = created.network_interfaces[0] if created.network_interfaces else None
            access = interface.access_configs[0] if interface and interface.access_configs else None
            return NodeDescriptor(
                instance_id=str(created.id or node_name),
                deployment_id=deployment_id,
                name=node_name,
                private_address=interface.network_i_p if interface else None,
                public_address=access.nat_i_p if access else None,
                state=created.status or None,
            )

        nodes = await create_nodes("gcp", deployment_id, spec.node_count, _create)

        return ProvisioningResult(
            success=True,
            deployment_id=deployment_id,
            resource_type=self.resource_type,
            nodes=nodes,
            details={
                "project_id": self.project_id,
                "zone": zone,
                "ssh_user": SSH_USER,
                "key_material": private_key,
            },
        )

    # --- Destroy ---

    def _find_instance_names(self, deployment_id: str) -> list[str]:
        request = compute_v1.ListInstancesRequest(
            project=self.project_id,
            zone=self.zone,
            filter=f'labels.deployment_id = "{deployment_id}"',
        )
        return [instance.name for instance in self.instances.list(request=request)]

    def _delete_and_wait(self, name: str) -> None:
        try:
            operation = self.instances.delete(project=self.project_id, zone=self.zone, instance=name)
            operation.result(timeout=self._timeouts.create)
        except NotFound:
            logger.info("[GCP] Instance %s already gone", name)

    async def destroy(self, deployment_id: str) -> DestroyResult:
        if not deployment_id:
            raise ValueError("No deployment id provided for destruction")

        logger.info("[GCP] Destroying instances for deployment %s", deployment_id)
        try:
            names = await asyncio.to_thread(self._find_instance_names, deployment_id)
        except GoogleAPICallError as e:
            raise DestroyFailed(f"GCP instance lookup failed: {e}") from e
        if not names:
            return DestroyResult(success=True, count=0)

        outcomes = await asyncio.gather(
            *(asyncio.to_thread(self._delete_and_wait, name) for name in names),
            return_exceptions=True,
        )
        failures = [(n, o) for n, o in zip(names, outcomes) if isinstance(o, Exception)]
        for name, error in failures:
            logger.error("[GCP] Failed to delete %s: %s", name, error)
        if len(failures) == len(names):
            raise DestroyFailed(f"GCP destroy failed: {failures[0][1]}") from failures[0][1]

        return DestroyResult(success=True, count=len(names) - len(failures))

    # --- Kubeconfig ---

    async def get_public_ip(self, instance_name: str, zone: str | None = None) -> str | None:
        try:
            instance = await asyncio.to_thread(
                self.instances.get, project=self.project_id, zone=zone or self.zone, instance=instance_name
            )
        except NotFound:
            return None
        except GoogleAPICallError as e:
            raise ProviderUnavailable(f"GCP instance lookup failed: {e}") from e
        for interface in instance.network_interfaces:
            for access in interface.access_configs:
                if access.nat_i_p:
                    return access.nat_i_p
        return None

    async def get_kubeconfig(self, result: ProvisioningResult) -> str:
        node = first_node(result)
        public_ip = await self.get_public_ip(node.name, result.details.get("zone"))
        if not public_ip:
            raise NodeNotReady(f"Instance {node.name} has no external IP yet")

        private_key = result.details.get("key_material")
        if not private_key:
            raise KeyMaterialMissing("No SSH key available to retrieve kubeconfig")

        return await fetch_kubeconfig(
            public_ip,
            result.details.get("ssh_user") or SSH_USER,
            private_key,
            timeout=self._timeouts.kubeconfig,
        )
