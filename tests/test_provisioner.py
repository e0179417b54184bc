"""Tests for clusterplane.provisioner — cluster lifecycle orchestration."""

from __future__ import annotations

import pytest

from clusterplane.errors import (
    KubeconfigUnavailable,
    NodeNotReady,
    PartialProvisioning,
    ProvisioningFailed,
    RecordNotFound,
)
from clusterplane.models import ClusterStatus
from clusterplane.vault.crypto import Cipher

TENANT = "11111111-1111-1111-1111-111111111111"

AWS_CREDS = {"access_key_id": "AKIA", "secret_access_key": "secret"}


async def _connect_aws(vault, tenant=TENANT):
    await vault.save("aws", tenant, dict(AWS_CREDS))


class TestCreateCluster:
    @pytest.mark.asyncio
    async def test_returns_pending_before_deploy(self, provisioner, vault, cluster_store):
        await _connect_aws(vault)

        cluster = await provisioner.create_cluster("demo", "aws", TENANT, node_count=2)

        assert cluster.status is ClusterStatus.PENDING
        assert cluster.region == "us-east-1"
        assert cluster.config["region"] == "us-east-1"
        await provisioner.drain()
        assert cluster_store.clusters[cluster.id].status is ClusterStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_deploy_receives_spec(self, provisioner, vault, fake_provider):
        await _connect_aws(vault)

        await provisioner.create_cluster(
            "demo", "aws", TENANT, region="eu-west-1", node_count=4, instance_type="t3.large", tags={"team": "infra"}
        )
        await provisioner.drain()

        spec = fake_provider.deployed[0]
        assert (spec.name, spec.node_count, spec.region) == ("demo", 4, "eu-west-1")
        assert spec.instance_type == "t3.large"
        assert spec.tags == {"team": "infra"}

    @pytest.mark.asyncio
    async def test_status_moves_once(self, provisioner, vault, cluster_store):
        await _connect_aws(vault)

        cluster = await provisioner.create_cluster("demo", "aws", TENANT)
        await provisioner.drain()

        assert cluster_store.history[cluster.id] == ["pending", "active"]

    @pytest.mark.asyncio
    async def test_unknown_provider_rejected(self, provisioner, cluster_store):
        with pytest.raises(ValueError):
            await provisioner.create_cluster("demo", "linode", TENANT)
        assert cluster_store.clusters == {}


class TestProvisioningOutcome:
    @pytest.mark.asyncio
    async def test_key_material_encrypted_at_rest(self, provisioner, vault, cluster_store, cipher, fake_provider):
        await _connect_aws(vault)

        cluster = await provisioner.create_cluster("demo", "aws", TENANT)
        await provisioner.drain()

        details = cluster_store.clusters[cluster.id].config["provisioning_result"]["details"]
        assert details["is_encrypted"] is True
        assert details["key_material"] != fake_provider.key_material
        assert cipher.decrypt_text(details["key_material"]) == fake_provider.key_material

    @pytest.mark.asyncio
    async def test_without_key_material(self, provisioner, vault, cluster_store, fake_provider):
        fake_provider.key_material = None
        await _connect_aws(vault)

        cluster = await provisioner.create_cluster("demo", "aws", TENANT)
        await provisioner.drain()

        details = cluster_store.clusters[cluster.id].config["provisioning_result"]["details"]
        assert "key_material" not in details
        assert "is_encrypted" not in details

    @pytest.mark.asyncio
    async def test_deploy_failure_records_error(self, provisioner, vault, cluster_store, fake_provider):
        fake_provider.deploy_error = ProvisioningFailed("aws", "VcpuLimitExceeded")
        await _connect_aws(vault)

        cluster = await provisioner.create_cluster("demo", "aws", TENANT)
        await provisioner.drain()

        stored = cluster_store.clusters[cluster.id]
        assert stored.status is ClusterStatus.ERROR
        assert stored.config == {"error": "aws provisioning failed: VcpuLimitExceeded"}
        assert cluster_store.history[cluster.id] == ["pending", "error"]

    @pytest.mark.asyncio
    async def test_credential_lookup_failure(self, provisioner, vault, credential_store, cluster_store):
        await _connect_aws(vault)
        row = credential_store.rows[("aws", TENANT)]
        row["encrypted_data"] = Cipher.generate().encrypt('{"access_key_id": "rotated"}')

        cluster = await provisioner.create_cluster("demo", "aws", TENANT)
        assert cluster.status is ClusterStatus.PENDING
        await provisioner.drain()

        assert cluster_store.clusters[cluster.id].status is ClusterStatus.ERROR
        assert cluster_store.history[cluster.id] == ["pending", "error"]

    @pytest.mark.asyncio
    async def test_partial_failure_not_torn_down_by_destroy(self, provisioner, vault, fake_provider):
        fake_provider.deploy_error = PartialProvisioning("aws", "dep-1234", ["i-0"], 3, "InsufficientCapacity")
        await _connect_aws(vault)

        cluster = await provisioner.create_cluster("demo", "aws", TENANT)
        await provisioner.drain()
        await provisioner.destroy_cluster(cluster.id)

        assert fake_provider.destroyed == []

    @pytest.mark.asyncio
    async def test_partial_failure_names_deployment(self, provisioner, vault, cluster_store, fake_provider):
        fake_provider.deploy_error = PartialProvisioning("aws", "dep-1234", ["i-0"], 3, "InsufficientCapacity")
        await _connect_aws(vault)

        cluster = await provisioner.create_cluster("demo", "aws", TENANT)
        await provisioner.drain()

        error = cluster_store.clusters[cluster.id].config["error"]
        assert "dep-1234" in error
        assert "1/3 nodes" in error

    @pytest.mark.asyncio
    async def test_store_failure_is_contained(self, provisioner, vault, cluster_store, monkeypatch):
        await _connect_aws(vault)

        def _broken_update(*args, **kwargs):
            raise RuntimeError("connection reset")

        cluster = await provisioner.create_cluster("demo", "aws", TENANT)
        monkeypatch.setattr(cluster_store, "update", _broken_update)
        await provisioner.drain()

        assert cluster_store.clusters[cluster.id].status is ClusterStatus.PENDING

    @pytest.mark.asyncio
    async def test_no_credentials_uses_empty_set(self, provisioner, fake_provider, cluster_store):
        cluster = await provisioner.create_cluster("demo", "aws", TENANT)
        await provisioner.drain()

        assert len(fake_provider.deployed) == 1
        assert cluster_store.clusters[cluster.id].status is ClusterStatus.ACTIVE


class TestReads:
    @pytest.mark.asyncio
    async def test_get_missing(self, provisioner):
        with pytest.raises(RecordNotFound):
            await provisioner.get_cluster("does-not-exist")

    @pytest.mark.asyncio
    async def test_get_scoped_to_tenant(self, provisioner, cluster_store):
        cluster = cluster_store.insert("demo", "aws", TENANT)
        assert (await provisioner.get_cluster(cluster.id, TENANT)).id == cluster.id
        with pytest.raises(RecordNotFound):
            await provisioner.get_cluster(cluster.id, "other")

    @pytest.mark.asyncio
    async def test_list_scoped_to_tenant(self, provisioner, vault):
        await _connect_aws(vault)
        await _connect_aws(vault, tenant="other")
        await provisioner.create_cluster("mine", "aws", TENANT)
        await provisioner.create_cluster("theirs", "aws", "other")
        await provisioner.drain()

        names = [c.name for c in await provisioner.list_clusters(TENANT)]
        assert names == ["mine"]


class TestKubeconfig:
    @pytest.mark.asyncio
    async def test_passes_decrypted_copy(self, provisioner, vault, cluster_store, fake_provider):
        await _connect_aws(vault)
        cluster = await provisioner.create_cluster("demo", "aws", TENANT)
        await provisioner.drain()

        text = await provisioner.get_kubeconfig(cluster.id)

        assert text.startswith("apiVersion: v1")
        passed = fake_provider.kubeconfig_requests[0]
        assert passed.details["key_material"] == fake_provider.key_material
        assert passed.is_encrypted is False
        stored = cluster_store.clusters[cluster.id].config["provisioning_result"]["details"]
        assert stored["is_encrypted"] is True
        assert stored["key_material"] != fake_provider.key_material

    @pytest.mark.asyncio
    async def test_pending_cluster(self, provisioner, vault, cluster_store):
        cluster = cluster_store.insert("demo", "aws", TENANT)
        with pytest.raises(KubeconfigUnavailable):
            await provisioner.get_kubeconfig(cluster.id)

    @pytest.mark.asyncio
    async def test_credentials_removed(self, provisioner, vault):
        await _connect_aws(vault)
        cluster = await provisioner.create_cluster("demo", "aws", TENANT)
        await provisioner.drain()
        await vault.delete("aws", TENANT)

        with pytest.raises(KubeconfigUnavailable, match="credentials"):
            await provisioner.get_kubeconfig(cluster.id)

    @pytest.mark.asyncio
    async def test_node_not_ready_leaves_status(self, provisioner, vault, cluster_store, fake_provider, monkeypatch):
        await _connect_aws(vault)
        cluster = await provisioner.create_cluster("demo", "aws", TENANT)
        await provisioner.drain()

        async def _no_address(result):
            raise NodeNotReady("Instance i-0 has no public IP yet")

        monkeypatch.setattr(fake_provider, "get_kubeconfig", _no_address)
        with pytest.raises(NodeNotReady):
            await provisioner.get_kubeconfig(cluster.id)

        assert cluster_store.clusters[cluster.id].status is ClusterStatus.ACTIVE
        assert cluster_store.history[cluster.id] == ["pending", "active"]

    @pytest.mark.asyncio
    async def test_other_tenant_gets_not_found(self, provisioner, vault, fake_provider):
        await _connect_aws(vault)
        cluster = await provisioner.create_cluster("demo", "aws", TENANT)
        await provisioner.drain()

        with pytest.raises(RecordNotFound):
            await provisioner.get_kubeconfig(cluster.id, tenant_id="other")
        assert fake_provider.kubeconfig_requests == []


class TestDestroy:
    @pytest.mark.asyncio
    async def test_destroys_by_deployment_id(self, provisioner, vault, cluster_store, fake_provider):
        await _connect_aws(vault)
        cluster = await provisioner.create_cluster("demo", "aws", TENANT)
        await provisioner.drain()
        deployment_id = cluster_store.clusters[cluster.id].deployment_id

        assert await provisioner.destroy_cluster(cluster.id) is True
        assert fake_provider.destroyed == [deployment_id]
        assert cluster.id not in cluster_store.clusters

    @pytest.mark.asyncio
    async def test_record_deleted_when_teardown_fails(self, provisioner, vault, cluster_store, fake_provider):
        await _connect_aws(vault)
        cluster = await provisioner.create_cluster("demo", "aws", TENANT)
        await provisioner.drain()
        fake_provider.destroy_error = RuntimeError("throttled")

        assert await provisioner.destroy_cluster(cluster.id) is True
        assert cluster.id not in cluster_store.clusters

    @pytest.mark.asyncio
    async def test_no_deployment_skips_provider(self, provisioner, cluster_store, fake_provider):
        cluster = cluster_store.insert("demo", "aws", TENANT)

        assert await provisioner.destroy_cluster(cluster.id) is True
        assert fake_provider.destroyed == []
        assert cluster.id not in cluster_store.clusters

    @pytest.mark.asyncio
    async def test_failed_cluster_deleted(self, provisioner, vault, cluster_store, fake_provider):
        fake_provider.deploy_error = RuntimeError("boom")
        await _connect_aws(vault)
        cluster = await provisioner.create_cluster("demo", "aws", TENANT)
        await provisioner.drain()

        await provisioner.destroy_cluster(cluster.id)
        assert fake_provider.destroyed == []
        assert cluster.id not in cluster_store.clusters

    @pytest.mark.asyncio
    async def test_missing_cluster(self, provisioner):
        with pytest.raises(RecordNotFound):
            await provisioner.destroy_cluster("nope")

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_destroy(self, provisioner, vault, cluster_store, fake_provider):
        await _connect_aws(vault)
        cluster = await provisioner.create_cluster("demo", "aws", TENANT)
        await provisioner.drain()

        with pytest.raises(RecordNotFound):
            await provisioner.destroy_cluster(cluster.id, tenant_id="other")
        assert cluster.id in cluster_store.clusters
        assert fake_provider.destroyed == []
