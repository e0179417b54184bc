"""
AzureProvider — VMs through the Azure Resource Manager REST API.

Talks to ARM directly with httpx: a client-credentials token from the
Microsoft identity platform, then PUT/GET/DELETE on resource ids.
Long-running operations are polled through the Azure-AsyncOperation or
Location header until they settle.

Each node gets its own public IP, NIC and VM, created concurrently. Nodes
log in with a generated SSH key whose private half travels back in the
provisioning result.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx

from clusterplane.config import TimeoutConfig
from clusterplane.errors import (
    DestroyFailed,
    KeyMaterialMissing,
    NodeNotReady,
    ProviderUnavailable,
    ProvisioningFailed,
)
from clusterplane.models import ClusterSpec, DestroyResult, NodeDescriptor, ProvisioningResult
from clusterplane.providers.base import (
    DEPLOYMENT_TAG,
    MANAGED_BY_TAG,
    bootstrap_script,
    create_nodes,
    first_node,
    resource_tags,
)
from clusterplane.providers.keys import generate_ssh_key_pair
from clusterplane.providers.ssh import fetch_kubeconfig

logger = logging.getLogger(__name__)

LOGIN_URL = "https://login.microsoftonline.com"
ARM_URL = "https://management.azure.com"
ARM_SCOPE = "https://management.azure.com/.default"

RESOURCES_API_VERSION = "2021-04-01"
NETWORK_API_VERSION = "2023-09-01"
COMPUTE_API_VERSION = "2023-09-01"
DISK_API_VERSION = "2023-04-02"

RESOURCE_GROUP = "clusterplane-rg"
ADMIN_USERNAME = "azureuser"
DEFAULT_VM_SIZE = "Standard_B2s"

PUBLIC_IP_COMMAND = (
    'curl -s --max-time 5 -H Metadata:true "http://169.254.169.254/metadata/instance/network/'
    'interface/0/ipv4/ipAddress/0/publicIpAddress?api-version=2021-02-01&format=text"'
)

# Deletion order: dependents before the things they reference.
DELETE_ORDER = (
    "microsoft.compute/virtualmachines",
    "microsoft.network/networkinterfaces",
    "microsoft.network/publicipaddresses",
    "microsoft.compute/disks",
    "microsoft.network/virtualnetworks",
)

API_VERSIONS = {
    "microsoft.compute/virtualmachines": COMPUTE_API_VERSION,
    "microsoft.compute/disks": DISK_API_VERSION,
}


class AzureApiError(RuntimeError):
    """Non-2xx response from the identity platform or ARM."""

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {message}")


class AzureOperationError(RuntimeError):
    """A long-running ARM operation ended in Failed or Canceled."""


def error_message(response: httpx.Response) -> str:
    """Best human-readable message from an ARM or identity-platform error body."""
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    error = body.get("error")
    if isinstance(error, dict):
        return error.get("message") or error.get("code") or str(error)
    return body.get("error_description") or error or response.reason_phrase


def _check(response: httpx.Response) -> None:
    if response.is_error:
        raise AzureApiError(response.status_code, error_message(response))


def api_version_for(resource_type: str) -> str:
    resource_type = resource_type.lower()
    if resource_type in API_VERSIONS:
        return API_VERSIONS[resource_type]
    if resource_type.startswith("microsoft.network/"):
        return NETWORK_API_VERSION
    return RESOURCES_API_VERSION


async def acquire_token(
    client: httpx.AsyncClient, tenant_id: str, client_id: str, client_secret: str
) -> str:
    """Client-credentials token scoped to Azure Resource Manager."""
    response = await client.post(
        f"{LOGIN_URL}/{tenant_id}/oauth2/v2.0/token",
        data={
            "grant_type": "client_credentials",
            "client_id": client_id,
            "client_secret": client_secret,
            "scope": ARM_SCOPE,
        },
    )
    _check(response)
    token = response.json().get("access_token")
    if not token:
        raise AzureApiError(response.status_code, "No access token in response")
    return token


class AzureProvider:
    """Provision Azure VMs bootstrapped with k3s."""

    resource_type = "azure-vm-cluster"

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        subscription_id: str,
        location: str = "eastus",
        *,
        resource_group: str = RESOURCE_GROUP,
        timeouts: TimeoutConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        poll_interval: float = 2.0,
    ) -> None:
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.subscription_id = subscription_id
        self.location = location
        self.resource_group = resource_group
        self._timeouts = timeouts or TimeoutConfig()
        self._transport = transport
        self._poll_interval = poll_interval

    # --- HTTP plumbing ---

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        async with httpx.AsyncClient(
            base_url=ARM_URL, timeout=self._timeouts.api, transport=self._transport
        ) as client:
            token = await acquire_token(client, self.tenant_id, self.client_id, self.client_secret)
            client.headers["Authorization"] = f"Bearer {token}"
            yield client

    @property
    def _group_path(self) -> str:
        return f"/subscriptions/{self.subscription_id}/resourceGroups/{self.resource_group}"

    def _network_path(self, kind: str, name: str) -> str:
        return f"{self._group_path}/providers/Microsoft.Network/{kind}/{name}"

    def _compute_path(self, kind: str, name: str) -> str:
        return f"{self._group_path}/providers/Microsoft.Compute/{kind}/{name}"

    async def _wait(self, client: httpx.AsyncClient, response: httpx.Response) -> None:
        """Poll a long-running operation started by *response* until it settles."""
        operation_url = response.headers.get("Azure-AsyncOperation")
        location_url = response.headers.get("Location")
        if not operation_url and not location_url:
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeouts.create
        while True:
            await asyncio.sleep(self._poll_interval)
            if operation_url:
                poll = await client.get(operation_url)
                _check(poll)
                status = poll.json().get("status")
                if status == "Succeeded":
                    return
                if status in ("Failed", "Canceled"):
                    raise AzureOperationError(f"Operation {status}: {error_message(poll)}")
            else:
                poll = await client.get(location_url)
                if poll.status_code != 202:
                    _check(poll)
                    return
            if loop.time() > deadline:
                raise TimeoutError(f"Azure operation did not finish within {self._timeouts.create}s")

    async def _put(
        self, client: httpx.AsyncClient, path: str, api_version: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        params = {"api-version": api_version}
        response = await client.put(path, params=params, json=body)
        _check(response)
        if "Azure-AsyncOperation" not in response.headers and "Location" not in response.headers:
            return response.json()
        await self._wait(client, response)
        final = await client.get(path, params=params)
        _check(final)
        return final.json()

    async def _delete(self, client: httpx.AsyncClient, resource_id: str, api_version: str) -> None:
        response = await client.delete(resource_id, params={"api-version": api_version})
        if response.status_code == 404:
            return
        _check(response)
        await self._wait(client, response)

    # --- Deploy ---

    async def _ensure_resource_group(self, client: httpx.AsyncClient) -> None:
        await self._put(
            client,
            self._group_path,
            RESOURCES_API_VERSION,
            {"location": self.location, "tags": {MANAGED_BY_TAG: "clusterplane"}},
        )

    async def _create_vnet(self, client: httpx.AsyncClient, name: str, tags: dict[str, str]) -> str:
        await self._put(
            client,
            self._network_path("virtualNetworks", name),
            NETWORK_API_VERSION,
            {
                "location": self.location,
                "tags": tags,
                "properties": {
                    "addressSpace": {"addressPrefixes": ["10.0.0.0/16"]},
                    "subnets": [{"name": "default", "properties": {"addressPrefix": "10.0.0.0/24"}}],
                },
            },
        )
        return f"{self._network_path('virtualNetworks', name)}/subnets/default"

    async def deploy(self, spec: ClusterSpec) -> ProvisioningResult:
        deployment_id = str(uuid.uuid4())
        tags = resource_tags(deployment_id, spec.name, spec.tags)
        vm_size = spec.instance_type or DEFAULT_VM_SIZE
        location = spec.region or self.location
        public_key, private_key = generate_ssh_key_pair(f"clusterplane-{deployment_id[:8]}")
        custom_data = base64.b64encode(bootstrap_script(PUBLIC_IP_COMMAND).encode()).decode()
        vnet_name = f"{spec.name}-{deployment_id[:8]}-vnet"

        async with self._session() as client:
            try:
                await self._ensure_resource_group(client)
                logger.info("[Azure] Creating VNet %s", vnet_name)
                subnet_id = await self._create_vnet(client, vnet_name, tags)
            except (httpx.HTTPError, AzureApiError, AzureOperationError, TimeoutError) as e:
                raise ProvisioningFailed("azure", str(e)) from e

            async def _create(index: int) -> NodeDescriptor:
                node_name = f"{spec.name}-{deployment_id[:8]}-node-{index + 1}"
                pip = await self._put(
                    client,
                    self._network_path("publicIPAddresses", f"{node_name}-pip"),
                    NETWORK_API_VERSION,
                    {
                        "location": location,
                        "tags": tags,
                        "sku": {"name": "Standard"},
                        "properties": {"publicIPAllocationMethod": "Static"},
                    },
                )
                nic = await self._put(
                    client,
                    self._network_path("networkInterfaces", f"{node_name}-nic"),
                    NETWORK_API_VERSION,
                    {
                        "location": location,
                        "tags": tags,
                        "properties": {
                            "ipConfigurations": [
                                {
                                    "name": "ipconfig1",
                                    "properties": {
                                        "subnet": {"id": subnet_id},
                                        "publicIPAddress": {"id": pip["id"]},
                                    },
                                }
                            ]
                        },
                    },
                )
                logger.info("[Azure] Creating VM %s (%s)", node_name, vm_size)
                vm = await self._put(
                    client,
                    self._compute_path("virtualMachines", node_name),
                    COMPUTE_API_VERSION,
                    {
                        "location": location,
                        "tags": tags,
                        "properties": {
                            "hardwareProfile": {"vmSize": vm_size},
                            "storageProfile": {
                                "imageReference": {
                                    "publisher": "Canonical",
                                    "offer": "ubuntu-24_04-lts",
                                    "sku": "server",
                                    "version": "latest",
                                },
                                "osDisk": {
                                    "createOption": "FromImage",
                                    "deleteOption": "Delete",
                                    "managedDisk": {"storageAccountType": "Standard_LRS"},
                                },
                            },
                            "osProfile": {
                                "computerName": node_name,
                                "adminUsername": ADMIN_USERNAME,
                                "customData": custom_data,
                                "linuxConfiguration": {
                                    "disablePasswordAuthentication": True,
                                    "ssh": {
                                        "publicKeys": [
                                            {
                                                "path": f"/home/{ADMIN_USERNAME}/.ssh/authorized_keys",
                                                "keyData": public_key,
                                            }
                                        ]
                                    },
                                },
                            },
                            "networkProfile": {
                                "networkInterfaces": [
                                    {"id": nic["id"], "properties": {"deleteOption": "Delete"}}
                                ]
                            },
                        },
                    },
                )
                ip_configs = (nic.get("properties") or {}).get("ipConfigurations") or [{}]
                return NodeDescriptor(
                    instance_id=vm.get("id") or node_name,
                    deployment_id=deployment_id,
                    name=node_name,
                    private_address=(ip_configs[0].get("properties") or {}).get("privateIPAddress"),
                    public_address=(pip.get("properties") or {}).get("ipAddress"),
                    state=(vm.get("properties") or {}).get("provisioningState"),
                )

            nodes = await create_nodes("azure", deployment_id, spec.node_count, _create)

        return ProvisioningResult(
            success=True,
            deployment_id=deployment_id,
            resource_type=self.resource_type,
            nodes=nodes,
            details={
                "resource_group": self.resource_group,
                "location": location,
                "vnet": vnet_name,
                "ssh_user": ADMIN_USERNAME,
                "key_material": private_key,
            },
        )

    # --- Destroy ---

    async def _list_tagged(self, client: httpx.AsyncClient, deployment_id: str) -> list[dict[str, Any]] | None:
        """Resources in the group tagged with the deployment id; None if the group is gone."""
        response = await client.get(
            f"{self._group_path}/resources",
            params={
                "$filter": f"tagName eq '{DEPLOYMENT_TAG}' and tagValue eq '{deployment_id}'",
                "api-version": RESOURCES_API_VERSION,
            },
        )
        if response.status_code == 404:
            return None
        _check(response)
        body = response.json()
        resources = list(body.get("value", []))
        next_link = body.get("nextLink")
        while next_link:
            page = await client.get(next_link)
            _check(page)
            body = page.json()
            resources.extend(body.get("value", []))
            next_link = body.get("nextLink")
        return resources

    async def destroy(self, deployment_id: str) -> DestroyResult:
        if not deployment_id:
            raise ValueError("No deployment id provided for destruction")

        logger.info("[Azure] Destroying resources for deployment %s", deployment_id)
        deleted = 0
        try:
            async with self._session() as client:
                resources = await self._list_tagged(client, deployment_id)
                if not resources:
                    return DestroyResult(success=True, count=0)

                def _rank(resource: dict[str, Any]) -> int:
                    kind = (resource.get("type") or "").lower()
                    return DELETE_ORDER.index(kind) if kind in DELETE_ORDER else len(DELETE_ORDER)

                for rank in sorted({_rank(r) for r in resources}):
                    batch = [r for r in resources if _rank(r) == rank]
                    outcomes = await asyncio.gather(
                        *(self._delete(client, r["id"], api_version_for(r.get("type", ""))) for r in batch),
                        return_exceptions=True,
                    )
                    for resource, outcome in zip(batch, outcomes):
                        if isinstance(outcome, Exception):
                            logger.error("[Azure] Failed to delete %s: %s", resource.get("name"), outcome)
                        else:
                            logger.info("[Azure] Deleted %s %s", resource.get("type"), resource.get("name"))
                            deleted += 1
        except (httpx.HTTPError, AzureApiError) as e:
            raise DestroyFailed(f"Azure destroy failed: {e}") from e

        return DestroyResult(success=True, count=deleted)

    # --- Kubeconfig ---

    async def get_public_ip(self, node: NodeDescriptor) -> str | None:
        try:
            async with self._session() as client:
                response = await client.get(
                    self._network_path("publicIPAddresses", f"{node.name}-pip"),
                    params={"api-version": NETWORK_API_VERSION},
                )
                if response.status_code == 404:
                    return None
                _check(response)
        except (httpx.HTTPError, AzureApiError) as e:
            raise ProviderUnavailable(f"Azure public IP lookup failed: {e}") from e
        return (response.json().get("properties") or {}).get("ipAddress")

    async def get_kubeconfig(self, result: ProvisioningResult) -> str:
        node = first_node(result)
        public_ip = await self.get_public_ip(node)
        if not public_ip:
            raise NodeNotReady(f"VM {node.name} has no public IP yet")

        private_key = result.details.get("key_material")
        if not private_key:
            raise KeyMaterialMissing("No SSH key available to retrieve kubeconfig")

        return await fetch_kubeconfig(
            public_ip,
            result.details.get("ssh_user") or ADMIN_USERNAME,
            private_key,
            timeout=self._timeouts.kubeconfig,
        )
