"""
Clusterplane HTTP API — thin FastAPI layer over the vault and provisioner.

The tenant is taken from the ``X-Organization-Id`` header; requests without
it act on the default tenant.

Start:
  clusterplane serve
  # or
  uvicorn clusterplane.api.app:create_app --factory --port 3333
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from clusterplane import __version__
from clusterplane.db import close_pool
from clusterplane.errors import (
    ClusterPlaneError,
    CredentialInvalid,
    ImmutableSource,
    KeyMaterialMissing,
    KubeconfigUnavailable,
    MissingCredentialFields,
    NodeNotReady,
    ProviderUnavailable,
    RecordNotFound,
    UnsupportedProvider,
)
from clusterplane.models import DEFAULT_TENANT
from clusterplane.provisioner import Provisioner
from clusterplane.vault.service import CredentialVault

logger = logging.getLogger(__name__)

ERROR_STATUS: dict[type[ClusterPlaneError], int] = {
    CredentialInvalid: 400,
    MissingCredentialFields: 400,
    UnsupportedProvider: 400,
    RecordNotFound: 404,
    ImmutableSource: 409,
    NodeNotReady: 409,
    KeyMaterialMissing: 409,
    KubeconfigUnavailable: 409,
    ProviderUnavailable: 502,
}


# ─── Request Bodies ──────────────────────────────────────────────────


class ConnectRequest(BaseModel):
    data: dict[str, Any]
    display_name: str | None = None


class CreateClusterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=63)
    provider: str
    region: str | None = None
    node_count: int = Field(3, ge=1, le=100)
    instance_type: str | None = None
    tags: dict[str, str] = Field(default_factory=dict)


# ─── Dependencies ────────────────────────────────────────────────────


def tenant_id(x_organization_id: str | None = Header(default=None)) -> str:
    return x_organization_id or DEFAULT_TENANT


def get_vault(request: Request) -> CredentialVault:
    return request.app.state.vault


def get_provisioner(request: Request) -> Provisioner:
    return request.app.state.provisioner


# ─── App Factory ─────────────────────────────────────────────────────


def create_app(vault: CredentialVault | None = None, provisioner: Provisioner | None = None) -> FastAPI:
    """Build the API. Collaborators default to database-backed instances."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owns_stores = vault is None or provisioner is None
        if owns_stores:
            from clusterplane.vault.crypto import cipher_from_config

            cipher = cipher_from_config()
            app.state.vault = vault or CredentialVault(cipher)
            app.state.provisioner = provisioner or Provisioner(app.state.vault, cipher=cipher)
        yield
        await app.state.provisioner.drain()
        if owns_stores:
            close_pool()

    app = FastAPI(
        title="Clusterplane",
        description="Multi-tenant cluster provisioning across AWS, Azure, GCP and on-prem hosts.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.vault = vault
    app.state.provisioner = provisioner

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ClusterPlaneError)
    async def _clusterplane_error(request: Request, exc: ClusterPlaneError) -> JSONResponse:
        status = next((code for kind, code in ERROR_STATUS.items() if isinstance(exc, kind)), 500)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status, content={"error": str(exc)})

    # ─── Health ──────────────────────────────────────────────────────

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "version": __version__}

    # ─── Credentials ─────────────────────────────────────────────────

    @app.get("/credentials")
    async def list_credentials(
        tenant: str = Depends(tenant_id), vault: CredentialVault = Depends(get_vault)
    ) -> list[dict[str, Any]]:
        return [s.model_dump(mode="json") for s in await vault.list_stored(tenant)]

    @app.get("/credentials/{provider}")
    async def credential_status(
        provider: str, tenant: str = Depends(tenant_id), vault: CredentialVault = Depends(get_vault)
    ) -> dict[str, Any]:
        status = await vault.status(provider, tenant)
        return status.model_dump(mode="json")

    @app.post("/credentials/{provider}/connect")
    async def connect(
        provider: str,
        body: ConnectRequest,
        tenant: str = Depends(tenant_id),
        vault: CredentialVault = Depends(get_vault),
    ) -> dict[str, Any]:
        summary = await vault.save(provider, tenant, body.data, body.display_name)
        return {"success": True, "display_name": summary.display_name, "identity": summary.identity}

    @app.post("/credentials/{provider}/disconnect")
    async def disconnect(
        provider: str, tenant: str = Depends(tenant_id), vault: CredentialVault = Depends(get_vault)
    ) -> dict[str, Any]:
        await vault.delete(provider, tenant)
        return {"success": True}

    # ─── Clusters ────────────────────────────────────────────────────

    @app.get("/clusters")
    async def list_clusters(
        tenant: str = Depends(tenant_id), provisioner: Provisioner = Depends(get_provisioner)
    ) -> list[dict[str, Any]]:
        return [c.to_dict() for c in await provisioner.list_clusters(tenant)]

    @app.post("/clusters", status_code=202)
    async def create_cluster(
        body: CreateClusterRequest,
        tenant: str = Depends(tenant_id),
        provisioner: Provisioner = Depends(get_provisioner),
    ) -> dict[str, Any]:
        cluster = await provisioner.create_cluster(
            body.name,
            body.provider,
            tenant_id=tenant,
            region=body.region,
            node_count=body.node_count,
            instance_type=body.instance_type,
            tags=body.tags,
        )
        return cluster.to_dict()

    @app.get("/clusters/{cluster_id}")
    async def get_cluster(
        cluster_id: str,
        tenant: str = Depends(tenant_id),
        provisioner: Provisioner = Depends(get_provisioner),
    ) -> dict[str, Any]:
        return (await provisioner.get_cluster(cluster_id, tenant)).to_dict()

    @app.get("/clusters/{cluster_id}/kubeconfig")
    async def kubeconfig(
        cluster_id: str,
        tenant: str = Depends(tenant_id),
        provisioner: Provisioner = Depends(get_provisioner),
    ) -> PlainTextResponse:
        text = await provisioner.get_kubeconfig(cluster_id, tenant)
        return PlainTextResponse(
            text,
            media_type="application/x-yaml",
            headers={"Content-Disposition": f'attachment; filename="kubeconfig-{cluster_id}.yaml"'},
        )

    @app.delete("/clusters/{cluster_id}")
    async def delete_cluster(
        cluster_id: str,
        tenant: str = Depends(tenant_id),
        provisioner: Provisioner = Depends(get_provisioner),
    ) -> dict[str, Any]:
        await provisioner.destroy_cluster(cluster_id, tenant)
        return {"success": True}

    return app
