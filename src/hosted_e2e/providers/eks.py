"""EKS: cluster template handling and the eksctl-based provider-side verifier."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog

from hosted_e2e.config import E2ESettings
from hosted_e2e.errors import SubprocessFailure
from hosted_e2e.kubeconfig import (
    downstream_kubeconfig,
    forget_downstream_kubeconfig,
    scoped_kubeconfig,
    set_temp_kubeconfig,
)
from hosted_e2e.models import ClusterSpec
from hosted_e2e.providers.base import HostedProvider
from hosted_e2e.providers.cli import format_tags, query_json, run_cli
from hosted_e2e.validation import validate_region

log = structlog.get_logger()

Runner = Callable[..., str]

DEFAULT_CLI_NODE_GROUP = "ranchernodes"


class EksctlCLI:
    """Thin wrapper over ``eksctl`` for provider-driven changes and one-shot reads."""

    binary = "eksctl"

    def __init__(self, runner: Runner = run_cli) -> None:
        self._run = runner

    def _eksctl(self, args: list[str], action: str) -> str:
        return self._run(self.binary, args, action=action)

    def create_cluster(
        self,
        region: str,
        cluster_name: str,
        k8s_version: str,
        nodes: int,
        tags: dict[str, str],
        *extra_args: str,
    ) -> Path:
        """Create a cluster directly on AWS; returns the kubeconfig eksctl wrote for it.

        KUBECONFIG is pointed at a fresh per-cluster file during the call and
        restored afterwards, even when eksctl fails.
        """
        with scoped_kubeconfig():
            kubeconfig = set_temp_kubeconfig(cluster_name)
            args = [
                "create", "cluster",
                f"--region={region}",
                f"--name={cluster_name}",
                f"--version={k8s_version}",
                "--nodegroup-name", DEFAULT_CLI_NODE_GROUP,
                "--nodes", str(nodes),
                "--tags", format_tags(tags),
                *extra_args,
            ]
            self._eksctl(args, "create cluster")
        log.info("eks_cluster_created", cluster=cluster_name, region=region)
        return kubeconfig

    def upgrade_cluster(self, region: str, cluster_name: str, version: str) -> None:
        args = [
            "upgrade", "cluster",
            f"--region={region}",
            f"--name={cluster_name}",
            f"--version={version}",
            "--approve",
        ]
        self._eksctl(args, "upgrade cluster")
        log.info("eks_control_plane_upgraded", cluster=cluster_name, version=version)

    def add_node_group(self, region: str, cluster_name: str, node_group: str, *extra_args: str) -> None:
        args = [
            "create", "nodegroup",
            f"--region={region}",
            "--cluster", cluster_name,
            "--name", node_group,
            *extra_args,
        ]
        self._eksctl(args, "add nodegroup")

    def upgrade_node_group(self, region: str, cluster_name: str, node_group: str, version: str) -> None:
        args = [
            "upgrade", "nodegroup",
            f"--region={region}",
            f"--name={node_group}",
            f"--cluster={cluster_name}",
            f"--kubernetes-version={version}",
        ]
        self._eksctl(args, "upgrade nodegroup")

    def modify_node_group(
        self, region: str, cluster_name: str, node_group: str, operation: str, *extra_args: str
    ) -> None:
        """Create or delete a node group; deletes skip pod eviction."""
        args = [operation, "nodegroup", f"--region={region}", f"--name={node_group}", f"--cluster={cluster_name}"]
        if operation == "delete":
            args.append("--disable-eviction")
        args.extend(extra_args)
        self._eksctl(args, "modify nodegroup")

    def delete_cluster(self, region: str, cluster_name: str) -> None:
        """Delete every node group, then the cluster.

        KUBECONFIG points at the cluster's own kubeconfig during the call, or is
        empty when none was recorded. On every path it is restored, and the
        downstream file and its variable are removed.
        """
        kubeconfig = downstream_kubeconfig(cluster_name)
        try:
            with scoped_kubeconfig(kubeconfig if kubeconfig is not None else ""):
                try:
                    names = self.get(region, cluster_name, "nodegroup", "[].Name") or []
                except SubprocessFailure as err:
                    raise SubprocessFailure(
                        "Failed to list nodegroups for deletion",
                        command=err.command,
                        returncode=err.returncode,
                        stdout=err.stdout,
                        stderr=err.stderr,
                    ) from err
                for name in names:
                    self.modify_node_group(region, cluster_name, name, "delete", "--wait")
                self._eksctl(["delete", "cluster", f"--region={region}", f"--name={cluster_name}"], "delete cluster")
        finally:
            forget_downstream_kubeconfig(cluster_name)
        log.info("eks_cluster_deleted", cluster=cluster_name)

    def get(self, region: str, cluster_name: str, kind: str, query: str, *extra_args: str) -> Any:
        """Describe the cluster (``kind="cluster"``) or its node groups and select ``query``.

        Extra args go before the output flag, e.g. ``"--name", "gpuenabled"`` to
        narrow a node group listing.
        """
        if kind == "cluster":
            args = ["get", "cluster", f"--region={region}", f"--name={cluster_name}"]
        else:
            args = ["get", "nodegroup", f"--region={region}", f"--cluster={cluster_name}"]
        args.extend(extra_args)
        args.append("-ojson")
        output = self._eksctl(args, f"get {kind}")
        return query_json(output, query)


class EKSProvider(HostedProvider):
    name = "eks"

    def __init__(self, settings: E2ESettings, cli: EksctlCLI | None = None) -> None:
        self.settings = settings
        validate_region(settings.eks_region)
        self.region = settings.eks_region
        self.cli = cli or EksctlCLI()

    def version_params(self, credential_id: str) -> dict[str, str]:
        return {"cloudCredentialId": credential_id, "region": self.region}

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
        spec.region = self.region
        spec.kubernetes_version = k8s_version
        spec.credential_secret = credential_id
        spec.tags = {**(spec.tags or {}), **tags}
        for ng in spec.node_groups or []:
            if ng.version is None:
                ng.version = k8s_version
        return spec

    def create_on_provider(self, cluster_name: str, k8s_version: str, nodes: int, tags: dict[str, str]) -> None:
        self.cli.create_cluster(self.region, cluster_name, k8s_version, nodes, tags)

    def delete_on_provider(self, cluster_name: str) -> None:
        self.cli.delete_cluster(self.region, cluster_name)

    def import_spec(self, cluster_name: str, credential_id: str) -> ClusterSpec:
        return ClusterSpec(
            display_name=cluster_name, region=self.region, credential_secret=credential_id, imported=True
        )

    def verify(self, cluster_name: str, kind: str, query: str, *extra_args: str) -> Any:
        return self.cli.get(self.region, cluster_name, kind, query, *extra_args)
