"""GKE: zonal/regional cluster specs and the gcloud-based verifier."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import structlog

from hosted_e2e.config import E2ESettings
from hosted_e2e.kubeconfig import forget_downstream_kubeconfig, scoped_kubeconfig, set_temp_kubeconfig
from hosted_e2e.models import ClusterSpec
from hosted_e2e.providers.base import HostedProvider
from hosted_e2e.providers.cli import format_tags, query_json, run_cli
from hosted_e2e.validation import validate_region

log = structlog.get_logger()


class GcloudCLI:
    binary = "gcloud"

    def __init__(self, project_id: str, runner: Callable[..., str] = run_cli) -> None:
        self.project_id = project_id
        self._run = runner

    def _location_flag(self, location: str, regional: bool) -> str:
        return f"--region={location}" if regional else f"--zone={location}"

    def _gcloud(self, args: list[str], action: str) -> str:
        return self._run(self.binary, [*args, f"--project={self.project_id}", "--quiet"], action=action)

    def get(
        self, location: str, cluster_name: str, kind: str, query: str, *extra_args: str, regional: bool = False
    ) -> Any:
        """Describe the cluster (``kind="cluster"``) or list its node pools, then select ``query``."""
        if kind == "cluster":
            args = ["container", "clusters", "describe", cluster_name]
        else:
            args = ["container", "node-pools", "list", f"--cluster={cluster_name}"]
        args += [self._location_flag(location, regional), *extra_args, "--format=json"]
        return query_json(self._gcloud(args, f"describe {kind}"), query)

    def upgrade_cluster(
        self, location: str, cluster_name: str, version: str, *, node_pool: str | None = None, regional: bool = False
    ) -> None:
        """Upgrade the control plane, or one node pool when ``node_pool`` is given."""
        args = ["container", "clusters", "upgrade", cluster_name, self._location_flag(location, regional)]
        if node_pool:
            args.append(f"--node-pool={node_pool}")
        else:
            args.append("--master")
        args.append(f"--cluster-version={version}")
        self._gcloud(args, "upgrade cluster")
        log.info("gke_cluster_upgraded", cluster=cluster_name, node_pool=node_pool, version=version)

    def resize_node_pool(
        self, location: str, cluster_name: str, node_pool: str, size: int, *, regional: bool = False
    ) -> None:
        args = [
            "container", "clusters", "resize", cluster_name,
            f"--node-pool={node_pool}",
            f"--num-nodes={size}",
            self._location_flag(location, regional),
        ]
        self._gcloud(args, "resize node pool")

    def create_cluster(
        self,
        location: str,
        cluster_name: str,
        k8s_version: str,
        nodes: int,
        labels: dict[str, str],
        *extra_args: str,
        regional: bool = False,
    ) -> None:
        """Create a cluster directly on GKE, with its credentials in a per-cluster kubeconfig."""
        with scoped_kubeconfig():
            set_temp_kubeconfig(cluster_name)
            args = [
                "container", "clusters", "create", cluster_name,
                self._location_flag(location, regional),
                f"--cluster-version={k8s_version}",
                f"--num-nodes={nodes}",
                f"--labels={format_tags(labels)}",
                "--no-enable-autoupgrade",
                *extra_args,
            ]
            self._gcloud(args, "create cluster")
        log.info("gke_cluster_created", cluster=cluster_name, location=location)

    def delete_cluster(self, location: str, cluster_name: str, *, regional: bool = False) -> None:
        try:
            args = ["container", "clusters", "delete", cluster_name, self._location_flag(location, regional)]
            self._gcloud(args, "delete cluster")
        finally:
            forget_downstream_kubeconfig(cluster_name)
        log.info("gke_cluster_deleted", cluster=cluster_name)


class GKEProvider(HostedProvider):
    """GKE clusters are either zonal (default) or regional (``regional=True``)."""

    name = "gke"

    def __init__(self, settings: E2ESettings, regional: bool = False, cli: GcloudCLI | None = None) -> None:
        self.settings = settings
        self.regional = regional
        self.project_id = settings.gke_project_id
        self.location = settings.gke_region if regional else settings.gke_zone
        validate_region(self.location)
        self.cli = cli or GcloudCLI(self.project_id)

    def version_params(self, credential_id: str) -> dict[str, str]:
        params = {"cloudCredentialId": credential_id, "projectId": self.project_id}
        params["region" if self.regional else "zone"] = self.location
        return params

    def _place(self, spec: ClusterSpec) -> None:
        spec.project_id = self.project_id
        if self.regional:
            spec.region, spec.zone = self.location, None
        else:
            spec.zone, spec.region = self.location, None

    def build_spec(
        self,
        template: ClusterSpec,
        cluster_name: str,
        k8s_version: str,
        credential_id: str,
        tags: dict[str, str],
    ) -> ClusterSpec:
        spec = template.model_copy(deep=True)
        spec.display_name = cluster_name
        spec.kubernetes_version = k8s_version
        spec.credential_secret = credential_id
        spec.tags = {**(spec.tags or {}), **tags}
        self._place(spec)
        if self.regional:
            spec.locations = [*(spec.locations or []), self.settings.gke_zone]
        for pool in spec.node_groups or []:
            pool.version = k8s_version
        return spec

    def create_on_provider(self, cluster_name: str, k8s_version: str, nodes: int, tags: dict[str, str]) -> None:
        self.cli.create_cluster(self.location, cluster_name, k8s_version, nodes, tags, regional=self.regional)

    def delete_on_provider(self, cluster_name: str) -> None:
        self.cli.delete_cluster(self.location, cluster_name, regional=self.regional)

    def import_spec(self, cluster_name: str, credential_id: str) -> ClusterSpec:
        spec = ClusterSpec(display_name=cluster_name, credential_secret=credential_id, imported=True)
        self._place(spec)
        return spec

    def verify(self, cluster_name: str, kind: str, query: str, *extra_args: str) -> Any:
        return self.cli.get(self.location, cluster_name, kind, query, *extra_args, regional=self.regional)
