"""Tests for the cluster resource models and the per-provider document layout."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from hosted_e2e.models import ClusterResource, ClusterSpec, NodeGroupSpec, Token, spec_from_api, spec_to_api


def _make_payload(**overrides: object) -> dict:
    payload = {
        "id": "c-00001",
        "type": "cluster",
        "name": "auto-hp-e2e-abcde",
        "state": "active",
        "transitioning": "no",
        "transitioningMessage": "",
        "version": {"gitVersion": "v1.30.4-eks-a1b2c3"},
        "eksConfig": {
            "displayName": "auto-hp-e2e-abcde",
            "amazonCredentialSecret": "cattle-global-data:cc-xyz12",
            "kubernetesVersion": "1.30",
            "nodeGroups": [{"nodegroupName": "ranchernodes", "desiredSize": 2, "version": "1.30"}],
            "loggingTypes": ["api"],
        },
        "eksStatus": {
            "upstreamSpec": {"kubernetesVersion": "1.29", "nodeGroups": [{"nodegroupName": "ranchernodes"}]}
        },
    }
    payload.update(overrides)
    return payload


class TestEksDocument:
    def test_decodes_wire_keys(self) -> None:
        spec = spec_from_api(
            "eks",
            {
                "displayName": "c1",
                "amazonCredentialSecret": "cattle-global-data:cc-1",
                "nodeGroups": [{"nodegroupName": "ranchernodes", "desiredSize": 2}],
            },
        )

        assert spec.display_name == "c1"
        assert spec.credential_secret == "cattle-global-data:cc-1"
        assert spec.node_group_names == ["ranchernodes"]
        assert spec.node_groups[0].desired_size == 2

    def test_encodes_wire_keys_without_nulls(self) -> None:
        spec = ClusterSpec(credential_secret="cc", node_groups=[NodeGroupSpec(name="ng1")])

        assert spec_to_api("eks", spec) == {
            "nodeGroups": [{"nodegroupName": "ng1"}],
            "amazonCredentialSecret": "cc",
        }

    def test_unknown_keys_survive_a_round_trip(self) -> None:
        document = {
            "region": "us-west-2",
            "ebsCSIDriver": True,
            "secretsEncryption": False,
            "nodeGroups": [{"nodegroupName": "ng1", "requestSpotInstances": True, "spotInstanceTypes": None}],
        }

        body = spec_to_api("eks", spec_from_api("eks", document))

        assert body["ebsCSIDriver"] is True
        assert body["secretsEncryption"] is False
        assert body["nodeGroups"] == [{"nodegroupName": "ng1", "requestSpotInstances": True, "spotInstanceTypes": None}]

    def test_fields_without_an_eks_key_are_not_sent(self) -> None:
        spec = ClusterSpec(
            zone="us-central1-c", resource_group="rg", node_groups=[NodeGroupSpec(name="a", image_type="COS")]
        )

        assert spec_to_api("eks", spec) == {"nodeGroups": [{"nodegroupName": "a"}]}


class TestGkeDocument:
    def test_decodes_nested_pool_keys(self) -> None:
        spec = spec_from_api(
            "gke",
            {
                "clusterName": "c1",
                "googleCredentialSecret": "cattle-global-data:cc-2",
                "projectID": "proj-1",
                "zone": "us-central1-c",
                "labels": {"owner": "qa"},
                "nodePools": [
                    {
                        "name": "pool-1",
                        "initialNodeCount": 3,
                        "version": "1.30.5-gke.100",
                        "config": {"machineType": "n1-standard-2", "diskSizeGb": 100, "imageType": "COS_CONTAINERD"},
                        "autoscaling": {"enabled": False},
                    }
                ],
            },
        )

        pool = spec.node_groups[0]
        assert spec.display_name == "c1"
        assert spec.credential_secret == "cattle-global-data:cc-2"
        assert spec.project_id == "proj-1"
        assert spec.tags == {"owner": "qa"}
        assert pool.desired_size == 3
        assert pool.instance_type == "n1-standard-2"
        assert pool.disk_size == 100
        assert pool.image_type == "COS_CONTAINERD"
        assert pool.min_size is None

    def test_nested_extras_are_merged_back(self) -> None:
        document = {
            "nodePools": [
                {
                    "name": "pool-1",
                    "config": {"machineType": "n1-standard-2", "tags": ["web"]},
                    "autoscaling": {"enabled": True, "minNodeCount": 1, "maxNodeCount": 3},
                }
            ]
        }
        spec = spec_from_api("gke", document)
        spec.node_groups[0].max_size = 5

        pool = spec_to_api("gke", spec)["nodePools"][0]

        assert pool["config"] == {"machineType": "n1-standard-2", "tags": ["web"]}
        assert pool["autoscaling"] == {"enabled": True, "minNodeCount": 1, "maxNodeCount": 5}

    def test_mapped_only_parents_are_not_left_empty(self) -> None:
        spec = spec_from_api("gke", {"nodePools": [{"name": "p", "config": {"machineType": "e2-small"}}]})

        assert spec.node_groups[0].model_extra == {}


class TestAksDocument:
    def test_pool_keys(self) -> None:
        spec = ClusterSpec(
            resource_group="rg-1",
            region="eastus",
            node_groups=[
                NodeGroupSpec(name="agentpool", desired_size=2, version="1.30.3", instance_type="Standard_D2s_v3")
            ],
        )

        assert spec_to_api("aks", spec) == {
            "resourceLocation": "eastus",
            "resourceGroup": "rg-1",
            "nodePools": [
                {"name": "agentpool", "orchestratorVersion": "1.30.3", "count": 2, "vmSize": "Standard_D2s_v3"}
            ],
        }


class TestClusterSpec:
    def test_node_group_names(self) -> None:
        spec = ClusterSpec(node_groups=[NodeGroupSpec(name="a"), NodeGroupSpec(name="b")])
        assert spec.node_group_names == ["a", "b"]

    def test_no_node_groups(self) -> None:
        assert ClusterSpec().node_group_names == []

    def test_copy_keeps_extras(self) -> None:
        spec = spec_from_api("eks", {"ebsCSIDriver": True})
        assert spec.model_copy(deep=True).model_extra == {"ebsCSIDriver": True}


class TestClusterResource:
    def test_from_api(self) -> None:
        cluster = ClusterResource.from_api(_make_payload())

        assert cluster.provider == "eks"
        assert cluster.version == "v1.30.4-eks-a1b2c3"
        assert cluster.desired.kubernetes_version == "1.30"
        assert cluster.desired.credential_secret == "cattle-global-data:cc-xyz12"
        assert cluster.desired.node_groups[0].name == "ranchernodes"
        assert cluster.desired.node_groups[0].desired_size == 2
        assert cluster.observed.kubernetes_version == "1.29"
        assert cluster.observed.node_group_names == ["ranchernodes"]
        assert cluster.is_active

    def test_from_api_before_first_reconcile(self) -> None:
        cluster = ClusterResource.from_api(_make_payload(state="provisioning", eksStatus=None, version=None))

        assert cluster.observed is None
        assert cluster.version is None
        assert not cluster.is_active

    def test_from_api_detects_gke(self) -> None:
        payload = _make_payload(eksConfig=None, eksStatus=None, gkeConfig={"zone": "us-central1-c"})

        assert ClusterResource.from_api(payload).provider == "gke"

    def test_from_api_without_hosted_config(self) -> None:
        with pytest.raises(ValueError, match="no hosted provider configuration"):
            ClusterResource.from_api(_make_payload(eksConfig=None, eksStatus=None))

    def test_to_api_only_writes_desired(self) -> None:
        body = ClusterResource.from_api(_make_payload()).to_api()

        assert body["id"] == "c-00001"
        assert body["eksConfig"]["kubernetesVersion"] == "1.30"
        assert body["eksConfig"]["nodeGroups"][0]["nodegroupName"] == "ranchernodes"
        assert "eksStatus" not in body

    @pytest.mark.parametrize("state", ["updating", "upgrading"])
    def test_is_updating(self, state: str) -> None:
        assert ClusterResource.from_api(_make_payload(state=state)).is_updating

    def test_error_message_contains_any_phrasing(self) -> None:
        cluster = ClusterResource.from_api(
            _make_payload(transitioning="error", transitioningMessage="NodePool names must be unique within [c-1]")
        )

        assert cluster.error_message_contains("is not unique within the cluster", "NodePool names must be unique")
        assert not cluster.error_message_contains("version must match")

    def test_error_message_requires_error_state(self) -> None:
        cluster = ClusterResource.from_api(_make_payload(transitioning="yes", transitioningMessage="waiting"))
        assert not cluster.error_message_contains("waiting")


class TestToken:
    def test_parses_token_response(self) -> None:
        token = Token.model_validate({"name": "token-abc12", "token": "token-abc12:secret", "ttl": 0, "type": "token"})
        assert token.token == "token-abc12:secret"


def test_malformed_node_groups_fail_validation() -> None:
    with pytest.raises(ValidationError):
        spec_from_api("gke", {"nodePools": "not-a-list"})
    with pytest.raises(ValidationError):
        spec_from_api("eks", {"nodeGroups": [{"desiredSize": 1}]})
