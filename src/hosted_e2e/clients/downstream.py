"""Kubernetes Core API wrapper for downstream clusters: node readiness and pod health."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog
from kubernetes import client as k8s_client

from hosted_e2e.clients import load_k8s_api_client

log = structlog.get_logger()

_HEALTHY_POD_PHASES = {"Running", "Succeeded"}


class DownstreamClient:
    """Read-only view of a provisioned cluster through its own kubeconfig."""

    def __init__(self, kubeconfig_path: str | Path, cluster_name: str = "") -> None:
        self._kubeconfig_path = Path(kubeconfig_path)
        self._cluster_name = cluster_name
        self._api: k8s_client.CoreV1Api | None = None

    def _get_api(self) -> k8s_client.CoreV1Api:
        if self._api is None:
            self._api = k8s_client.CoreV1Api(load_k8s_api_client(self._kubeconfig_path))
        return self._api

    def get_nodes(self) -> list[dict[str, Any]]:
        """List nodes with version, pool label and a flat condition map."""
        api = self._get_api()
        try:
            node_list = api.list_node()
        except Exception:
            log.error("failed_to_list_nodes", cluster=self._cluster_name)
            raise

        results: list[dict[str, Any]] = []
        for node in node_list.items:
            labels = node.metadata.labels or {}
            conditions = {c.type: c.status for c in (node.status.conditions or [])}
            results.append(
                {
                    "name": node.metadata.name,
                    "version": node.status.node_info.kubelet_version if node.status.node_info else None,
                    "node_group": labels.get("eks.amazonaws.com/nodegroup")
                    or labels.get("cloud.google.com/gke-nodepool")
                    or labels.get("agentpool"),
                    "unschedulable": bool(node.spec.unschedulable),
                    "ready": conditions.get("Ready") == "True",
                    "conditions": conditions,
                }
            )
        return results

    def all_nodes_ready(self) -> bool:
        nodes = self.get_nodes()
        not_ready = [n["name"] for n in nodes if not n["ready"]]
        if not_ready:
            log.info("nodes_not_ready", cluster=self._cluster_name, nodes=not_ready)
        return bool(nodes) and not not_ready

    def get_unhealthy_pods(self, namespace: str | None = None) -> list[dict[str, Any]]:
        """Pods whose phase is neither Running nor Succeeded."""
        api = self._get_api()
        try:
            if namespace:
                pod_list = api.list_namespaced_pod(namespace)
            else:
                pod_list = api.list_pod_for_all_namespaces()
        except Exception:
            log.error("failed_to_list_pods", cluster=self._cluster_name, namespace=namespace)
            raise

        return [
            {
                "name": pod.metadata.name,
                "namespace": pod.metadata.namespace,
                "phase": pod.status.phase,
                "reason": pod.status.reason,
            }
            for pod in pod_list.items
            if pod.status.phase not in _HEALTHY_POD_PHASES
        ]
