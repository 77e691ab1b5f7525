"""Shared test fixtures: an in-memory management API, settings, templates and execution contexts."""

from __future__ import annotations

import copy
import ipaddress
import itertools
import json
from collections import Counter
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest

from hosted_e2e.clients.management import ManagementClient
from hosted_e2e.config import E2ESettings, RancherConfig, TestConfig
from hosted_e2e.context import ExecutionContext
from hosted_e2e.convergence import Timeouts
from hosted_e2e.models import spec_from_api
from hosted_e2e.providers.eks import EKSProvider, EksctlCLI
from hosted_e2e.versions import compare_versions

pytest_plugins = ["hosted_e2e.pytest_plugin"]

BASE_URL = "https://rancher.test/v3"
EKS_VERSIONS = ["1.29", "1.30", "1.31"]
CREDENTIAL_ID = "cattle-global-data:cc-test"

SECURITY_GROUPS_MESSAGE = "subnets must be provided if security groups are provided"
ACCESS_MESSAGE = "public access, private access, or both must be enabled"
NO_NODE_GROUP_MESSAGE = "Cluster must have at least one managed nodegroup or one self-managed node"

# (list key, name key, version key) of each provider's node groups in a cluster document
NODE_GROUP_KEYS = {
    "eks": ("nodeGroups", "nodegroupName", "version"),
    "gke": ("nodePools", "name", "version"),
    "aks": ("nodePools", "name", "orchestratorVersion"),
}


def _make_node_group(name: str = "ranchernodes", **overrides: Any) -> dict[str, Any]:
    """EKS node group as it appears under ``eksConfig.nodeGroups``."""
    node_group = {
        "nodegroupName": name,
        "instanceType": "t3.large",
        "diskSize": 20,
        "minSize": 1,
        "maxSize": 2,
        "desiredSize": 1,
        "tags": {"team": "qa"},
        "labels": {"pool": name},
        "requestSpotInstances": False,
    }
    node_group.update(overrides)
    return node_group


def _make_template(**overrides: Any) -> dict[str, Any]:
    """EKS cluster template as it appears under ``eksClusterConfig`` in the test config file."""
    template = {
        "region": "us-west-2",
        "nodeGroups": [_make_node_group()],
        "loggingTypes": [],
        "publicAccess": True,
        "privateAccess": False,
        "publicAccessSources": ["0.0.0.0/0"],
        "secretsEncryption": False,
        "tags": {"team": "qa"},
    }
    template.update(overrides)
    return template


def _make_node_pool(name: str = "default-pool", **overrides: Any) -> dict[str, Any]:
    """GKE node pool as it appears under ``gkeConfig.nodePools``."""
    node_pool = {
        "name": name,
        "initialNodeCount": 1,
        "autoscaling": {"enabled": False},
        "config": {
            "diskSizeGb": 100,
            "diskType": "pd-standard",
            "imageType": "COS_CONTAINERD",
            "machineType": "n2-standard-2",
            "labels": {"pool": name},
            "oauthScopes": ["https://www.googleapis.com/auth/devstorage.read_only"],
            "tags": [],
        },
        "management": {"autoRepair": True, "autoUpgrade": True},
        "maxPodsConstraint": 110,
    }
    node_pool.update(overrides)
    return node_pool


def _make_gke_template(**overrides: Any) -> dict[str, Any]:
    """GKE cluster template as it appears under ``gkeClusterConfig`` in the test config file."""
    template = {
        "zone": "us-central1-c",
        "labels": {"team": "qa"},
        "network": "default",
        "subnetwork": "default",
        "clusterAddons": {"horizontalPodAutoscaling": True, "httpLoadBalancing": True, "networkPolicyConfig": False},
        "nodePools": [_make_node_pool()],
    }
    template.update(overrides)
    return template


def _make_settings(**overrides: Any) -> E2ESettings:
    """Settings independent of the test runner's environment."""
    values: dict[str, Any] = {
        "provider": "eks",
        "downstream_k8s_minor_version": "",
        "skip_upgrade_tests": False,
        "cluster_cleanup": True,
        "is_import": False,
        "eks_region": "us-west-2",
        "gke_zone": "us-central1-c",
        "gke_project_id": "test-project",
        "aks_subscription_id": "00000000-0000-0000-0000-000000000000",
        "aks_resource_group": "rg-test",
        "timeout_scale": 1.0,
        "cluster_name_prefix": "auto-hp-e2e",
        "config_path": "",
    }
    values.update(overrides)
    return E2ESettings(**values)


def _make_test_config(**templates: dict[str, Any]) -> TestConfig:
    specs = {provider: spec_from_api(provider, raw) for provider, raw in templates.items()}
    if not specs:
        specs = {"eks": spec_from_api("eks", _make_template())}
    rancher = RancherConfig(host="rancher.test", admin_token="token-test", cloud_credential_id=CREDENTIAL_ID)
    return TestConfig(rancher=rancher, templates=specs)


def _error(status: int, message: str, code: str) -> httpx.Response:
    return httpx.Response(status, json={"type": "error", "status": status, "code": code, "message": message})


class FakeManagementAPI:
    """In-memory management API.

    Every write leaves the cluster "pending" for ``lag`` reads; the read after
    that reconciles: the upstream spec is copied from the desired config, or the
    cluster reports a transitioning error for configurations the provider refuses.
    Configurations the API itself refuses are rejected with 422 on the write.

    Imported clusters settle with the upstream spec registered for their name in
    ``provider_clusters``, standing in for a cluster created with the provider's CLI.
    """

    def __init__(self, lag: int = 1, versions: list[str] | None = None, settings: dict[str, str] | None = None):
        self.lag = lag
        self.versions = list(versions or EKS_VERSIONS)
        self.settings = dict(settings or {})
        self.duplicate_message = "NodePool names must be unique within the [{id}] cluster to avoid duplication"
        self.clusters: dict[str, dict[str, Any]] = {}
        self.provider_clusters: dict[str, dict[str, Any]] = {}
        self.requests: list[tuple[str, str]] = []
        self._ids = itertools.count(1)

    # --- transport ---

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/v3").rstrip("/") or "/"
        self.requests.append((request.method, path))
        body = json.loads(request.content) if request.content else None
        parts = [p for p in path.split("/") if p]

        if not parts:
            return httpx.Response(200, json={"type": "collection"})
        if parts[0] == "clusters":
            return self._clusters(request, parts[1:], body)
        if parts[0] == "tokens" and request.method == "POST":
            return httpx.Response(201, json={"name": "token-abc12", "token": "token-abc12:secret", "ttl": 0})
        if parts[0] == "settings" and len(parts) == 2:
            if parts[1] not in self.settings:
                return _error(404, f"setting {parts[1]} not found", "NotFound")
            return httpx.Response(200, json={"id": parts[1], "value": self.settings[parts[1]], "default": ""})
        if parts[0] == "meta":
            return httpx.Response(200, json=self.versions)
        return _error(404, f"{path} not found", "NotFound")

    def _clusters(self, request: httpx.Request, parts: list[str], body: Any) -> httpx.Response:
        if not parts:
            if request.method != "POST":
                return _error(405, "method not allowed", "MethodNotAllowed")
            return self._create(body)

        record = self.clusters.get(parts[0])
        if record is None:
            return _error(404, f"cluster {parts[0]} not found", "NotFound")
        if request.method == "GET":
            self._advance(record)
            return httpx.Response(200, json=self.document(record))
        if request.method == "PUT":
            return self._update(record, body)
        if request.method == "DELETE":
            del self.clusters[record["id"]]
            return httpx.Response(200, json={})
        if request.method == "POST" and request.url.params.get("action") == "generateKubeconfig":
            return httpx.Response(200, json={"config": "apiVersion: v1\nkind: Config\n"})
        return _error(405, "method not allowed", "MethodNotAllowed")

    # --- behaviour ---

    def _provider(self, body: dict[str, Any]) -> str:
        return next(p for p in ("eks", "gke", "aks") if body.get(f"{p}Config") is not None)

    def _reject(self, config: dict[str, Any]) -> httpx.Response | None:
        if config.get("securityGroups") and not config.get("subnets"):
            return _error(422, SECURITY_GROUPS_MESSAGE, "InvalidBodyContent")
        if config.get("publicAccess") is False and config.get("privateAccess") is False:
            return _error(422, ACCESS_MESSAGE, "InvalidBodyContent")
        return None

    def _create(self, body: dict[str, Any]) -> httpx.Response:
        provider = self._provider(body)
        config = body[f"{provider}Config"]
        rejection = self._reject(config)
        if rejection is not None:
            return rejection
        cluster_id = f"c-{next(self._ids):05d}"
        record = {
            "id": cluster_id,
            "name": body["name"],
            "provider": provider,
            "config": copy.deepcopy(config),
            "upstream": None,
            "state": "provisioning",
            "transitioning": "yes",
            "message": "",
            "version": None,
            "pending": self.lag,
            "settled": False,
        }
        self.clusters[cluster_id] = record
        return httpx.Response(201, json=self.document(record))

    def _update(self, record: dict[str, Any], body: dict[str, Any]) -> httpx.Response:
        config = body[f"{record['provider']}Config"]
        rejection = self._reject(config)
        if rejection is not None:
            return rejection
        record.update(
            config=copy.deepcopy(config),
            state="updating",
            transitioning="yes",
            message="",
            pending=self.lag,
            settled=False,
        )
        return httpx.Response(200, json=self.document(record))

    def _async_error(self, record: dict[str, Any]) -> str:
        config = record["config"]
        list_key, name_key, version_key = NODE_GROUP_KEYS[record["provider"]]
        node_groups = config.get(list_key) or []
        if not node_groups:
            return NO_NODE_GROUP_MESSAGE
        duplicates = [name for name, count in Counter(ng[name_key] for ng in node_groups).items() if count > 1]
        if duplicates:
            return self.duplicate_message.format(id=record["id"])
        control_plane = config.get("kubernetesVersion")
        for ng in node_groups:
            version = ng.get(version_key)
            if not version or not control_plane or version == control_plane:
                continue
            if record["upstream"] is None:
                return f"nodegroup {ng[name_key]}: version must match cluster [{control_plane}]"
            if compare_versions(version, control_plane) > 0:
                return (
                    f"versions for cluster [{control_plane}] and nodegroup [{version}] not compatible: "
                    "all nodegroup kubernetes versions must be equal to or one minor version lower "
                    "than the cluster kubernetes version"
                )
        invalid = []
        for cidr in config.get("publicAccessSources") or []:
            try:
                ipaddress.ip_network(cidr, strict=False)
            except ValueError:
                invalid.append(cidr)
        if invalid:
            return f"InvalidParameterException: The following CIDRs are invalid in publicAccessCidrs: {invalid}"
        return ""

    def _advance(self, record: dict[str, Any]) -> None:
        if record["pending"] > 0:
            record["pending"] -= 1
            return
        if record["settled"]:
            return
        record["settled"] = True
        if record["config"].get("imported"):
            existing = self.provider_clusters.get(record["name"])
            if existing is None:
                record.update(transitioning="error", message=f"cluster {record['name']} not found on the provider")
                return
            upstream = copy.deepcopy(existing)
        else:
            error = self._async_error(record)
            if error:
                record.update(transitioning="error", message=error)
                return
            upstream = copy.deepcopy(record["config"])
        list_key, _, version_key = NODE_GROUP_KEYS[record["provider"]]
        control_plane = upstream.get("kubernetesVersion")
        for ng in upstream.get(list_key) or []:
            if not ng.get(version_key):
                ng[version_key] = control_plane
        record.update(upstream=upstream, state="active", transitioning="no", message="")
        if control_plane:
            record["version"] = {"gitVersion": f"v{control_plane}.0-{record['provider']}-a1b2c3"}

    def sync_from_provider(
        self, cluster_id: str, kubernetes_version: str | None = None, node_group_version: str | None = None
    ) -> None:
        """Apply a change made directly on the provider, as the operator would sync it back.

        Imported clusters keep their submitted config; only the upstream spec moves.
        """
        record = self.clusters[cluster_id]
        list_key, _, version_key = NODE_GROUP_KEYS[record["provider"]]
        specs = [record["upstream"]] if record["config"].get("imported") else [record["config"], record["upstream"]]
        for spec in specs:
            if kubernetes_version:
                spec["kubernetesVersion"] = kubernetes_version
            if node_group_version:
                for ng in spec.get(list_key) or []:
                    ng[version_key] = node_group_version

    def upstream_of(self, cluster_name: str) -> dict[str, Any]:
        return next(r["upstream"] or {} for r in self.clusters.values() if r["name"] == cluster_name)

    def document(self, record: dict[str, Any]) -> dict[str, Any]:
        provider = record["provider"]
        upstream = record["upstream"]
        return {
            "id": record["id"],
            "type": "cluster",
            "name": record["name"],
            "state": record["state"],
            "transitioning": record["transitioning"],
            "transitioningMessage": record["message"],
            "version": record["version"],
            f"{provider}Config": copy.deepcopy(record["config"]),
            f"{provider}Status": {"upstreamSpec": copy.deepcopy(upstream)} if upstream is not None else None,
        }


@pytest.fixture
def fake_api() -> FakeManagementAPI:
    return FakeManagementAPI()


@pytest.fixture
def management_api_client(fake_api: FakeManagementAPI) -> ManagementClient:
    return ManagementClient(BASE_URL, "token-test", transport=httpx.MockTransport(fake_api.handler))


@pytest.fixture
def eksctl_runner() -> MagicMock:
    return MagicMock(return_value="[]")


@pytest.fixture
def fake_context(management_api_client: ManagementClient, eksctl_runner: MagicMock) -> ExecutionContext:
    """EKS context wired to the fake API, with polling that never really sleeps."""
    settings = _make_settings()
    provider = EKSProvider(settings, cli=EksctlCLI(runner=eksctl_runner))
    return ExecutionContext(
        settings=settings,
        client=management_api_client,
        provider=provider,
        test_config=_make_test_config(),
        cluster_name="auto-hp-e2e-abcde",
        credential_id=CREDENTIAL_ID,
        timeouts=Timeouts().scaled(0.01),
        sleep=lambda _seconds: None,
    )


@pytest.fixture(autouse=True)
def ci_user(monkeypatch: pytest.MonkeyPatch) -> str:
    """Stable owner tag on provisioned clusters."""
    monkeypatch.setenv("LOGNAME", "tester")
    monkeypatch.setenv("USER", "tester")
    return "tester"


@pytest.fixture
def make_node_group():
    return _make_node_group


@pytest.fixture
def make_template():
    return _make_template


@pytest.fixture
def make_node_pool():
    return _make_node_pool


@pytest.fixture
def make_gke_template():
    return _make_gke_template


@pytest.fixture
def make_settings():
    return _make_settings


@pytest.fixture
def make_test_config():
    return _make_test_config
