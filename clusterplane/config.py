"""
Centralized configuration for Clusterplane.

All configuration is loaded from environment variables with sensible defaults.
Operator-injected provider credentials use the provider-native variable names
(AWS_ACCESS_KEY_ID, AZURE_CLIENT_ID, ...) so existing deployments keep working.

Usage:
    from clusterplane.config import get_config
    cfg = get_config()
    print(cfg.db.name)             # "clusterplane"
    print(cfg.operator.for_provider("aws"))
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from clusterplane.models import ProviderKind


@dataclass(frozen=True)
class DatabaseConfig:
    """PostgreSQL connection parameters."""

    host: str = ""  # empty = Unix socket (peer auth); set to 127.0.0.1 for TCP
    port: int = 5432
    name: str = "clusterplane"
    user: str = "clusterplane"
    password: str = ""
    pool_size: int = 10

    @property
    def dsn_summary(self) -> str:
        """user@host:port/name, without the password."""
        return f"{self.user}@{self.host or 'local socket'}:{self.port}/{self.name}"

    @property
    def dsn(self) -> str:
        """Return a psycopg2-compatible DSN string."""
        parts = [f"dbname={self.name}"]
        if self.host:
            parts.append(f"host={self.host}")
        parts.append(f"port={self.port}")
        if self.user:
            parts.append(f"user={self.user}")
        if self.password:
            parts.append(f"password={self.password}")
        return " ".join(parts)

    @property
    def dict(self) -> dict[str, str | int]:
        """Return a psycopg2.connect() kwargs dict."""
        d: dict[str, str | int] = {
            "dbname": self.name,
            "port": self.port,
        }
        if self.host:
            d["host"] = self.host
        if self.user:
            d["user"] = self.user
        if self.password:
            d["password"] = self.password
        return d


@dataclass(frozen=True)
class TimeoutConfig:
    """Outbound call timeouts, in seconds."""

    validation: float = 5.0  # credential checks and SSH probes
    kubeconfig: float = 20.0  # SSH session used to read kubeconfig
    api: float = 30.0  # single provider API request
    create: float = 300.0  # waiting on a node-create operation


@dataclass(frozen=True)
class OperatorCredentials:
    """Provider credentials injected by the operator through the environment.

    These always win over tenant-stored credentials and cannot be removed
    through the API.
    """

    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    aws_region: str = ""

    azure_client_id: str = ""
    azure_client_secret: str = ""
    azure_tenant_id: str = ""
    azure_subscription_id: str = ""

    gcp_project_id: str = ""
    gcp_service_account_key: str = ""

    onprem_host: str = ""
    onprem_user: str = ""
    onprem_ssh_key: str = ""

    def _credential_set(self, provider: str) -> dict[str, Any] | None:
        if provider == "aws":
            creds: dict[str, Any] = {
                "access_key_id": self.aws_access_key_id,
                "secret_access_key": self.aws_secret_access_key,
            }
            if self.aws_region:
                creds["region"] = self.aws_region
            return creds
        if provider == "azure":
            return {
                "client_id": self.azure_client_id,
                "client_secret": self.azure_client_secret,
                "tenant_id": self.azure_tenant_id,
                "subscription_id": self.azure_subscription_id,
            }
        if provider == "gcp":
            return {
                "project_id": self.gcp_project_id,
                "service_account_key": self.gcp_service_account_key,
            }
        if provider == "onprem":
            return {
                "host": self.onprem_host,
                "user": self.onprem_user,
                "ssh_key": self.onprem_ssh_key,
            }
        return None

    def has(self, provider: str) -> bool:
        """True when every field required for *provider* is present."""
        creds = self._credential_set(provider)
        if creds is None:
            return False
        return all(creds.get(f) for f in ProviderKind(provider).required_fields)

    def for_provider(self, provider: str) -> dict[str, Any] | None:
        """Return the credential set for *provider*, or None if not configured."""
        if not self.has(provider):
            return None
        return self._credential_set(provider)

    @classmethod
    def from_env(cls) -> OperatorCredentials:
        env = os.environ
        return cls(
            aws_access_key_id=env.get("AWS_ACCESS_KEY_ID", ""),
            aws_secret_access_key=env.get("AWS_SECRET_ACCESS_KEY", ""),
            aws_region=env.get("AWS_REGION", ""),
            azure_client_id=env.get("AZURE_CLIENT_ID", ""),
            azure_client_secret=env.get("AZURE_CLIENT_SECRET", ""),
            azure_tenant_id=env.get("AZURE_TENANT_ID", ""),
            azure_subscription_id=env.get("AZURE_SUBSCRIPTION_ID", ""),
            gcp_project_id=env.get("GCP_PROJECT_ID", ""),
            gcp_service_account_key=env.get("GCP_SERVICE_ACCOUNT_KEY", ""),
            onprem_host=env.get("ONPREM_HOST", ""),
            onprem_user=env.get("ONPREM_USER", ""),
            onprem_ssh_key=env.get("ONPREM_SSH_KEY", ""),
        )


@dataclass(frozen=True)
class Config:
    """Top-level Clusterplane configuration."""

    workspace: Path = field(default_factory=lambda: Path.home() / ".clusterplane")

    # Raw operator-held encryption key (hex or base64). Empty = use workspace key file.
    encryption_key: str = ""

    db: DatabaseConfig = field(default_factory=DatabaseConfig)
    operator: OperatorCredentials = field(default_factory=OperatorCredentials)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)

    api_port: int = 3333


# Singleton
_config: Config | None = None


def get_config() -> Config:
    """Get or create the singleton config from environment variables."""
    global _config
    if _config is not None:
        return _config
    _config = _load_from_env()
    return _config


def _load_from_env() -> Config:
    """Load configuration from environment variables."""
    workspace = Path(os.environ.get("CLUSTERPLANE_WORKSPACE", Path.home() / ".clusterplane"))

    db = DatabaseConfig(
        host=os.environ.get("CLUSTERPLANE_DB_HOST", ""),
        port=int(os.environ.get("CLUSTERPLANE_DB_PORT", "5432")),
        name=os.environ.get("CLUSTERPLANE_DB_NAME", "clusterplane"),
        user=os.environ.get("CLUSTERPLANE_DB_USER", os.environ.get("USER", "clusterplane")),
        password=os.environ.get("CLUSTERPLANE_DB_PASSWORD", ""),
        pool_size=int(os.environ.get("CLUSTERPLANE_DB_POOL_SIZE", "10")),
    )

    timeouts = TimeoutConfig(
        validation=float(os.environ.get("CLUSTERPLANE_VALIDATION_TIMEOUT", "5")),
        kubeconfig=float(os.environ.get("CLUSTERPLANE_KUBECONFIG_TIMEOUT", "20")),
        api=float(os.environ.get("CLUSTERPLANE_API_TIMEOUT", "30")),
        create=float(os.environ.get("CLUSTERPLANE_CREATE_TIMEOUT", "300")),
    )

    return Config(
        workspace=workspace,
        encryption_key=os.environ.get("CLUSTERPLANE_ENCRYPTION_KEY", ""),
        db=db,
        operator=OperatorCredentials.from_env(),
        timeouts=timeouts,
        api_port=int(os.environ.get("CLUSTERPLANE_API_PORT", "3333")),
    )


def reset_config() -> None:
    """Reset the singleton config (for testing)."""
    global _config
    _config = None
