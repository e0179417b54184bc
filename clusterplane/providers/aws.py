"""
AWSProvider — EC2-backed cluster nodes via boto3.

boto3 is synchronous, so every API call runs through ``asyncio.to_thread``.
Each node is a separate RunInstances call so node creation fans out
concurrently. Resources are found again for teardown through the
``DeploymentId`` tag, never through the stored node list.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from clusterplane.config import TimeoutConfig
from clusterplane.errors import DestroyFailed, KeyMaterialMissing, NodeNotReady, ProviderUnavailable
from clusterplane.models import ClusterSpec, DestroyResult, NodeDescriptor, ProvisioningResult
from clusterplane.providers.base import (
    DEPLOYMENT_TAG,
    bootstrap_script,
    create_nodes,
    first_node,
    resource_tags,
)
from clusterplane.providers.ssh import fetch_kubeconfig

logger = logging.getLogger(__name__)

DEFAULT_INSTANCE_TYPE = "t3.small"
SSH_USER = "ubuntu"

AMI_PARAMETERS = {
    "ubuntu24": "/aws/service/canonical/ubuntu/server/24.04/stable/current/amd64/hvm/ebs-gp3/ami-id",
    "ubuntu22": "/aws/service/canonical/ubuntu/server/22.04/stable/current/amd64/hvm/ebs-gp3/ami-id",
    "amazon-linux-2023": "/aws/service/ami-amazon-linux-latest/al2023-ami-kernel-default-x86_64",
}

# us-east-1 images used when SSM is unreachable
FALLBACK_AMIS = {
    "ubuntu24": "ami-04b70fa74e45c3917",
    "ubuntu22": "ami-0c02fb55956c7d316",
    "amazon-linux-2023": "ami-051f7e7f6c2f40dc1",
}

INGRESS_PORTS = (22, 6443, 80, 443)  # SSH, Kubernetes API, HTTP, HTTPS

LIVE_INSTANCE_STATES = ["pending", "running", "stopping", "stopped"]

PUBLIC_IP_COMMAND = "curl -s --max-time 5 http://169.254.169.254/latest/meta-data/public-ipv4"


def _tag_list(tags: dict[str, str]) -> list[dict[str, str]]:
    return [{"Key": k, "Value": v} for k, v in tags.items()]


class AWSProvider:
    """Provision EC2 instances bootstrapped with k3s."""

    resource_type = "ec2-cluster"

    def __init__(
        self,
        region: str,
        access_key_id: str,
        secret_access_key: str,
        session_token: str | None = None,
        *,
        timeouts: TimeoutConfig | None = None,
        session: Any = None,
    ) -> None:
        self.region = region
        self._timeouts = timeouts or TimeoutConfig()
        self._session = session or boto3.session.Session(
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            aws_session_token=session_token,
            region_name=region,
        )
        client_config = BotoConfig(
            connect_timeout=self._timeouts.api,
            read_timeout=self._timeouts.api,
            retries={"max_attempts": 3},
        )
        self.ec2 = self._session.client("ec2", config=client_config)
        self.ssm = self._session.client("ssm", config=client_config)

    # --- Deploy ---

    async def get_latest_ami(self, os_image: str = "ubuntu24") -> str:
        """Latest image id from the public SSM parameter, or a static fallback."""
        name = AMI_PARAMETERS.get(os_image, AMI_PARAMETERS["ubuntu24"])
        try:
            response = await asyncio.to_thread(self.ssm.get_parameter, Name=name)
            return response["Parameter"]["Value"]
        except (BotoCoreError, ClientError, KeyError) as e:
            logger.warning("Failed to fetch AMI from SSM for %s, using fallback: %s", os_image, e)
            return FALLBACK_AMIS.get(os_image, FALLBACK_AMIS["ubuntu24"])

    async def _create_key_pair(self, key_name: str, tags: dict[str, str]) -> str | None:
        try:
            response = await asyncio.to_thread(
                self.ec2.create_key_pair,
                KeyName=key_name,
                TagSpecifications=[{"ResourceType": "key-pair", "Tags": _tag_list(tags)}],
            )
            return response.get("KeyMaterial")
        except (BotoCoreError, ClientError) as e:
            logger.warning("Failed to create key pair %s: %s", key_name, e)
            return None

    async def _create_security_group(
        self, cluster_name: str, deployment_id: str, tags: dict[str, str]
    ) -> str | None:
        group_name = f"sg-{cluster_name}-{deployment_id[:8]}"
        try:
            response = await asyncio.to_thread(
                self.ec2.create_security_group,
                GroupName=group_name,
                Description=f"Security group for cluster {cluster_name}",
                TagSpecifications=[
                    {
                        "ResourceType": "security-group",
                        "Tags": _tag_list({"Name": group_name, **tags}),
                    }
                ],
            )
            group_id = response["GroupId"]
            await asyncio.to_thread(
                self.ec2.authorize_security_group_ingress,
                GroupId=group_id,
                IpPermissions=[
                    {
                        "IpProtocol": "tcp",
                        "FromPort": port,
                        "ToPort": port,
                        "IpRanges": [{"CidrIp": "0.0.0.0/0"}],
                    }
                    for port in INGRESS_PORTS
                ],
            )
            return group_id
        except (BotoCoreError, ClientError, KeyError) as e:
            logger.warning("Failed to create security group %s: %s", group_name, e)
            return None

    async def deploy(self, spec: ClusterSpec) -> ProvisioningResult:
        deployment_id = str(uuid.uuid4())
        tags = resource_tags(deployment_id, spec.name, spec.tags)
        instance_type = spec.instance_type or DEFAULT_INSTANCE_TYPE

        image_id = await self.get_latest_ami(spec.os_image)
        key_name = f"key-{deployment_id[:8]}"
        key_material = await self._create_key_pair(key_name, tags)
        security_group_id = await self._create_security_group(spec.name, deployment_id, tags)
        user_data = bootstrap_script(PUBLIC_IP_COMMAND)

        logger.info(
            "[AWS] Launching %d instances (%s) for cluster %s, deployment %s",
            spec.node_count,
            instance_type,
            spec.name,
            deployment_id,
        )

        async def _launch(index: int) -> NodeDescriptor:
            node_name = f"{spec.name}-node-{index + 1}"
            request: dict[str, Any] = {
                "ImageId": image_id,
                "InstanceType": instance_type,
                "MinCount": 1,
                "MaxCount": 1,
                "UserData": user_data,
                "TagSpecifications": [
                    {"ResourceType": "instance", "Tags": _tag_list({"Name": node_name, **tags})}
                ],
            }
            if key_material:
                request["KeyName"] = key_name
            if security_group_id:
                request["SecurityGroupIds"] = [security_group_id]

            response = await asyncio.to_thread(self.ec2.run_instances, **request)
            instance = response["Instances"][0]
            return NodeDescriptor(
                instance_id=instance["InstanceId"],
                deployment_id=deployment_id,
                name=node_name,
                private_address=instance.get("PrivateIpAddress"),
                public_address=instance.get("PublicIpAddress"),
                state=(instance.get("State") or {}).get("Name"),
            )

        nodes = await create_nodes("aws", deployment_id, spec.node_count, _launch)

        return ProvisioningResult(
            success=True,
            deployment_id=deployment_id,
            resource_type=self.resource_type,
            nodes=nodes,
            details={
                "region": self.region,
                "key_name": key_name if key_material else None,
                "key_material": key_material,
                "security_group_id": security_group_id,
                "ssh_user": SSH_USER,
            },
        )

    # --- Destroy ---

    def _find_instance_ids(self, deployment_id: str) -> list[str]:
        filters = [
            {"Name": f"tag:{DEPLOYMENT_TAG}", "Values": [deployment_id]},
            {"Name": "instance-state-name", "Values": LIVE_INSTANCE_STATES},
        ]
        instance_ids: list[str] = []
        kwargs: dict[str, Any] = {"Filters": filters}
        while True:
            response = self.ec2.describe_instances(**kwargs)
            for reservation in response.get("Reservations", []):
                for instance in reservation.get("Instances", []):
                    if instance.get("InstanceId"):
                        instance_ids.append(instance["InstanceId"])
            token = response.get("NextToken")
            if not token:
                return instance_ids
            kwargs["NextToken"] = token

    async def _delete_key_pairs(self, deployment_id: str) -> None:
        try:
            response = await asyncio.to_thread(
                self.ec2.describe_key_pairs,
                Filters=[{"Name": f"tag:{DEPLOYMENT_TAG}", "Values": [deployment_id]}],
            )
            for pair in response.get("KeyPairs", []):
                await asyncio.to_thread(self.ec2.delete_key_pair, KeyName=pair["KeyName"])
        except (BotoCoreError, ClientError) as e:
            logger.warning("[AWS] Key pair cleanup for %s failed: %s", deployment_id, e)

    async def destroy(self, deployment_id: str) -> DestroyResult:
        if not deployment_id:
            raise ValueError("No deployment id provided for destruction")

        logger.info("[AWS] Destroying resources for deployment %s", deployment_id)
        try:
            instance_ids = await asyncio.to_thread(self._find_instance_ids, deployment_id)
            if instance_ids:
                logger.info("[AWS] Terminating instances: %s", ", ".join(instance_ids))
                await asyncio.to_thread(self.ec2.terminate_instances, InstanceIds=instance_ids)
            else:
                logger.info("[AWS] No live instances found for %s", deployment_id)
        except (BotoCoreError, ClientError) as e:
            raise DestroyFailed(f"AWS destroy failed: {e}") from e

        # Security groups stay until the instances finish terminating.
        await self._delete_key_pairs(deployment_id)
        return DestroyResult(success=True, count=len(instance_ids))

    # --- Kubeconfig ---

    async def get_public_ip(self, instance_id: str) -> str | None:
        try:
            response = await asyncio.to_thread(self.ec2.describe_instances, InstanceIds=[instance_id])
        except (BotoCoreError, ClientError) as e:
            raise ProviderUnavailable(f"AWS describe_instances failed: {e}") from e
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return instance.get("PublicIpAddress")
        return None

    async def get_kubeconfig(self, result: ProvisioningResult) -> str:
        node = first_node(result)
        public_ip = await self.get_public_ip(node.instance_id)
        if not public_ip:
            raise NodeNotReady(f"Instance {node.instance_id} has no public IP yet")

        private_key = result.details.get("key_material")
        if not private_key:
            raise KeyMaterialMissing("No SSH key available to retrieve kubeconfig")

        return await fetch_kubeconfig(
            public_ip,
            result.details.get("ssh_user") or SSH_USER,
            private_key,
            timeout=self._timeouts.kubeconfig,
        )
