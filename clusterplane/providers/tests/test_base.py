"""Tests for shared adapter helpers: tagging, bootstrap script, parallel node creation."""

from __future__ import annotations

import asyncio

import pytest

from clusterplane.errors import KubeconfigUnavailable, PartialProvisioning, ProvisioningFailed
from clusterplane.models import NodeDescriptor, ProvisioningResult
from clusterplane.providers.base import (
    DEPLOYMENT_TAG,
    MANAGED_BY_TAG,
    ClusterProvider,
    bootstrap_script,
    create_nodes,
    first_node,
    resource_tags,
)
from clusterplane.providers.onprem import OnPremProvider


class TestResourceTags:
    def test_required_tags(self):
        tags = resource_tags("dep-1", "demo")
        assert tags[DEPLOYMENT_TAG] == "dep-1"
        assert tags[MANAGED_BY_TAG] == "clusterplane"
        assert tags["Cluster"] == "demo"

    def test_custom_tags_merged(self):
        tags = resource_tags("dep-1", "demo", {"team": "infra"})
        assert tags["team"] == "infra"

    def test_custom_tags_cannot_override(self):
        tags = resource_tags("dep-1", "demo", {DEPLOYMENT_TAG: "spoofed"})
        assert tags[DEPLOYMENT_TAG] == "dep-1"


class TestBootstrapScript:
    def test_installs_k3s_with_public_ip(self):
        script = bootstrap_script("curl -s http://meta/ip")
        assert script.startswith("#!/bin/bash")
        assert "get.k3s.io" in script
        assert "PUBLIC_IP=$(curl -s http://meta/ip || true)" in script
        assert "--tls-san $PUBLIC_IP" in script
        assert "--write-kubeconfig-mode 644" in script


class TestCreateNodes:
    @pytest.mark.asyncio
    async def test_all_nodes_share_deployment_id(self):
        async def _create(i: int) -> NodeDescriptor:
            return NodeDescriptor(instance_id=f"i-{i}", deployment_id="dep-1")

        nodes = await create_nodes("aws", "dep-1", 3, _create)
        assert [n.instance_id for n in nodes] == ["i-0", "i-1", "i-2"]
        assert {n.deployment_id for n in nodes} == {"dep-1"}

    @pytest.mark.asyncio
    async def test_calls_run_concurrently(self):
        started = 0
        gate = asyncio.Event()

        async def _create(i: int) -> NodeDescriptor:
            nonlocal started
            started += 1
            if started == 3:
                gate.set()
            await asyncio.wait_for(gate.wait(), 1)
            return NodeDescriptor(instance_id=f"i-{i}", deployment_id="dep-1")

        nodes = await create_nodes("aws", "dep-1", 3, _create)
        assert len(nodes) == 3

    @pytest.mark.asyncio
    async def test_partial_failure(self):
        async def _create(i: int) -> NodeDescriptor:
            if i == 2:
                raise RuntimeError("InsufficientInstanceCapacity")
            return NodeDescriptor(instance_id=f"i-{i}", deployment_id="dep-1")

        with pytest.raises(PartialProvisioning) as exc_info:
            await create_nodes("aws", "dep-1", 3, _create)

        err = exc_info.value
        assert err.created == ["i-0", "i-1"]
        assert err.requested == 3
        assert err.deployment_id == "dep-1"
        assert isinstance(err.__cause__, RuntimeError)
        assert "InsufficientInstanceCapacity" in str(err)

    @pytest.mark.asyncio
    async def test_total_failure(self):
        async def _create(i: int) -> NodeDescriptor:
            raise RuntimeError("quota exceeded")

        with pytest.raises(ProvisioningFailed) as exc_info:
            await create_nodes("gcp", "dep-1", 2, _create)
        assert not isinstance(exc_info.value, PartialProvisioning)
        assert "quota exceeded" in str(exc_info.value)


class TestFirstNode:
    def test_no_nodes(self):
        result = ProvisioningResult(success=True, deployment_id="d", resource_type="x")
        with pytest.raises(KubeconfigUnavailable):
            first_node(result)


class TestProtocol:
    def test_adapters_satisfy_protocol(self):
        assert isinstance(OnPremProvider("h", "u", "k"), ClusterProvider)
