"""
Data models for the provisioning core.

All models are plain dataclasses. ProvisioningResult and Cluster know how to
convert to and from the JSON shapes persisted in the clusters table.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from clusterplane.errors import MissingCredentialFields, UnsupportedProvider

DEFAULT_TENANT = "00000000-0000-0000-0000-000000000000"
MANAGED_BY = "clusterplane"


class ProviderKind(StrEnum):
    AWS = "aws"
    AZURE = "azure"
    GCP = "gcp"
    ONPREM = "onprem"

    @classmethod
    def parse(cls, value: str | ProviderKind) -> ProviderKind:
        try:
            return cls(value)
        except ValueError:
            raise UnsupportedProvider(f"Provider {value!r} not supported") from None

    @property
    def required_fields(self) -> tuple[str, ...]:
        return REQUIRED_FIELDS[self]

    @property
    def default_region(self) -> str | None:
        return DEFAULT_REGIONS.get(self)

    def check_fields(self, credentials: dict[str, Any]) -> None:
        """Raise MissingCredentialFields if any required field is empty."""
        missing = [f for f in self.required_fields if not credentials.get(f)]
        if missing:
            raise MissingCredentialFields(self.value, missing)


REQUIRED_FIELDS: dict[ProviderKind, tuple[str, ...]] = {
    ProviderKind.AWS: ("access_key_id", "secret_access_key"),
    ProviderKind.AZURE: ("tenant_id", "client_id", "client_secret", "subscription_id"),
    ProviderKind.GCP: ("project_id", "service_account_key"),
    ProviderKind.ONPREM: ("host", "user", "ssh_key"),
}

DEFAULT_REGIONS: dict[ProviderKind, str] = {
    ProviderKind.AWS: "us-east-1",
    ProviderKind.AZURE: "eastus",
    ProviderKind.GCP: "us-central1-a",
}


class ClusterStatus(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    ERROR = "error"


@dataclass
class ClusterSpec:
    """Desired configuration handed to an adapter's deploy()."""

    name: str
    node_count: int = 3
    region: str | None = None
    instance_type: str | None = None
    tags: dict[str, str] = field(default_factory=dict)
    os_image: str = "ubuntu24"


@dataclass
class NodeDescriptor:
    """One compute node created (or registered) by a deploy."""

    instance_id: str
    deployment_id: str
    name: str = ""
    private_address: str | None = None
    public_address: str | None = None
    state: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "deployment_id": self.deployment_id,
            "name": self.name,
            "private_address": self.private_address,
            "public_address": self.public_address,
            "state": self.state,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NodeDescriptor:
        return cls(
            instance_id=data.get("instance_id", ""),
            deployment_id=data.get("deployment_id", ""),
            name=data.get("name") or "",
            private_address=data.get("private_address"),
            public_address=data.get("public_address"),
            state=data.get("state"),
        )


@dataclass
class ProvisioningResult:
    """Output of a successful deploy, persisted inside the cluster config.

    ``details`` is provider-specific and may carry ``key_material`` (an SSH
    private key). The provisioner encrypts it in place before persisting and
    sets ``is_encrypted``.
    """

    success: bool
    deployment_id: str
    resource_type: str
    nodes: list[NodeDescriptor] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def has_key_material(self) -> bool:
        return bool(self.details.get("key_material"))

    @property
    def is_encrypted(self) -> bool:
        return bool(self.details.get("is_encrypted"))

    def with_details(self, **changes: Any) -> ProvisioningResult:
        """Return a deep copy with ``details`` updated; self is left untouched."""
        clone = copy.deepcopy(self)
        clone.details.update(changes)
        return clone

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "deployment_id": self.deployment_id,
            "resource_type": self.resource_type,
            "nodes": [n.to_dict() for n in self.nodes],
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProvisioningResult:
        return cls(
            success=bool(data.get("success")),
            deployment_id=data.get("deployment_id", ""),
            resource_type=data.get("resource_type", ""),
            nodes=[NodeDescriptor.from_dict(n) for n in data.get("nodes") or []],
            details=dict(data.get("details") or {}),
        )


@dataclass
class DestroyResult:
    success: bool
    count: int = 0


@dataclass
class Cluster:
    """A tenant-scoped cluster record."""

    id: str
    name: str
    provider: ProviderKind
    tenant_id: str = DEFAULT_TENANT
    region: str | None = None
    node_count: int = 3
    status: ClusterStatus = ClusterStatus.PENDING
    config: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None

    @property
    def provisioning_result(self) -> ProvisioningResult | None:
        data = self.config.get("provisioning_result")
        if not data:
            return None
        return ProvisioningResult.from_dict(data)

    @property
    def deployment_id(self) -> str | None:
        data = self.config.get("provisioning_result") or {}
        return data.get("deployment_id") or None

    @property
    def error(self) -> str | None:
        return self.config.get("error")

    def to_spec(self) -> ClusterSpec:
        return ClusterSpec(
            name=self.name,
            node_count=self.node_count,
            region=self.region,
            instance_type=self.config.get("instance_type"),
            tags=dict(self.config.get("tags") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        """API response shape. Key material is never included."""
        config = copy.deepcopy(self.config)
        details = (config.get("provisioning_result") or {}).get("details")
        if details and "key_material" in details:
            details["key_material"] = "[redacted]"
        return {
            "id": self.id,
            "name": self.name,
            "provider": str(self.provider),
            "region": self.region,
            "nodeCount": self.node_count,
            "status": str(self.status),
            "config": config,
            "organizationId": self.tenant_id,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Cluster:
        """Build a Cluster from a clusters table row (RealDictCursor)."""
        return cls(
            id=str(row["id"]),
            name=row["name"],
            provider=ProviderKind(row["provider"]),
            tenant_id=str(row.get("tenant_id") or DEFAULT_TENANT),
            region=row.get("region"),
            node_count=row.get("node_count") or 3,
            status=ClusterStatus(row.get("status") or ClusterStatus.PENDING),
            config=dict(row.get("config") or {}),
            created_at=row.get("created_at"),
        )
