"""Tests for the AKS verifier (ContainerServiceClient through azure-identity) and the AKS provider."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from hosted_e2e.models import ClusterSpec, NodeGroupSpec
from hosted_e2e.providers.aks import AKSProvider, AksVerifier

SUBSCRIPTION = "00000000-0000-0000-0000-000000000000"
CLUSTER = "auto-hp-e2e-abcde"


def _make_pool(name: str, count: int, version: str = "1.30.4") -> MagicMock:
    pool = MagicMock()
    pool.as_dict.return_value = {
        "name": name,
        "count": count,
        "orchestrator_version": version,
        "vm_size": "Standard_D2s_v3",
    }
    return pool


@pytest.fixture
def mock_container() -> MagicMock:
    container = MagicMock()
    container.managed_clusters.get.return_value.as_dict.return_value = {
        "name": CLUSTER,
        "kubernetes_version": "1.30.4",
        "provisioning_state": "Succeeded",
    }
    container.agent_pools.list.return_value = [_make_pool("nodepool1", 2), _make_pool("nodepool2", 1)]
    return container


@pytest.fixture
def verifier() -> AksVerifier:
    return AksVerifier(SUBSCRIPTION, "rg-test")


class TestAksVerifier:
    def test_cluster_query(self, verifier: AksVerifier, mock_container: MagicMock) -> None:
        with patch.object(verifier, "_get_container_client", return_value=mock_container):
            version = verifier.get(CLUSTER, "cluster", "kubernetes_version")

        assert version == "1.30.4"
        mock_container.managed_clusters.get.assert_called_once_with("rg-test", CLUSTER)

    def test_agent_pool_query(self, verifier: AksVerifier, mock_container: MagicMock) -> None:
        with patch.object(verifier, "_get_container_client", return_value=mock_container):
            counts = verifier.get(CLUSTER, "nodepool", "[].count")
            total = verifier.get(CLUSTER, "nodepool", "length(@)")

        assert counts == [2, 1]
        assert total == 2
        mock_container.agent_pools.list.assert_called_with("rg-test", CLUSTER)

    def test_errors_propagate(self, verifier: AksVerifier) -> None:
        mock_container = MagicMock()
        mock_container.managed_clusters.get.side_effect = Exception("ResourceNotFound")

        with (
            patch.object(verifier, "_get_container_client", return_value=mock_container),
            pytest.raises(Exception, match="ResourceNotFound"),
        ):
            verifier.get("missing", "cluster", "name")

    def test_get_credential_creates_once(self, verifier: AksVerifier) -> None:
        with patch("hosted_e2e.providers.aks.DefaultAzureCredential") as mock_cred:
            cred1 = verifier._get_credential()
            cred2 = verifier._get_credential()

        assert cred1 is cred2
        mock_cred.assert_called_once()

    def test_get_container_client_creates_once(self, verifier: AksVerifier) -> None:
        with (
            patch("hosted_e2e.providers.aks.DefaultAzureCredential") as mock_cred,
            patch("hosted_e2e.providers.aks.ContainerServiceClient") as mock_cs,
        ):
            c1 = verifier._get_container_client()
            c2 = verifier._get_container_client()

        assert c1 is c2
        mock_cs.assert_called_once_with(credential=mock_cred.return_value, subscription_id=SUBSCRIPTION)


class TestAKSProvider:
    def test_build_spec_sets_pool_versions(self, make_settings) -> None:
        provider = AKSProvider(make_settings(provider="aks", aks_resource_group="rg-test"), verifier=MagicMock())
        template = ClusterSpec(node_groups=[NodeGroupSpec(name="nodepool1", version="1.29")])

        spec = provider.build_spec(template, CLUSTER, "1.30", "cc-1", {"owner": "qa"})

        assert spec.display_name == CLUSTER
        assert spec.credential_secret == "cc-1"
        assert spec.resource_group == "rg-test"
        assert spec.node_groups[0].version == "1.30"
        assert spec.tags == {"owner": "qa"}

    def test_build_spec_keeps_template_resource_group(self, make_settings) -> None:
        provider = AKSProvider(make_settings(provider="aks", aks_resource_group=""), verifier=MagicMock())

        spec = provider.build_spec(ClusterSpec(resource_group="rg-template"), CLUSTER, "1.30", "cc-1", {})

        assert spec.resource_group == "rg-template"

    def test_version_params(self, make_settings) -> None:
        provider = AKSProvider(make_settings(provider="aks"), verifier=MagicMock())
        assert provider.version_params("cc-1") == {"cloudCredentialId": "cc-1"}

    def test_verify_delegates(self, make_settings) -> None:
        verifier = MagicMock()
        verifier.get.return_value = "1.30.4"
        provider = AKSProvider(make_settings(provider="aks"), verifier=verifier)

        assert provider.verify(CLUSTER, "cluster", "kubernetes_version") == "1.30.4"
        verifier.get.assert_called_once_with(CLUSTER, "cluster", "kubernetes_version")

    def test_import_spec(self, make_settings) -> None:
        provider = AKSProvider(make_settings(provider="aks", aks_resource_group="rg-test"), verifier=MagicMock())

        spec = provider.import_spec(CLUSTER, "cc-1")

        assert spec.imported is True
        assert spec.resource_group == "rg-test"

    def test_no_import_support(self, make_settings) -> None:
        provider = AKSProvider(make_settings(provider="aks"), verifier=MagicMock())

        assert not provider.supports_import
        with pytest.raises(NotImplementedError, match="aks clusters cannot be created"):
            provider.create_on_provider(CLUSTER, "1.30", 1, {})
