"""Client factories for the management API and downstream Kubernetes clusters."""

from __future__ import annotations

from pathlib import Path

from kubernetes import client as k8s_client
from kubernetes.config import new_client_from_config

from hosted_e2e.clients.management import ManagementClient
from hosted_e2e.config import RancherConfig


def load_k8s_api_client(kubeconfig_path: str | Path, context: str | None = None) -> k8s_client.ApiClient:
    """Create an isolated Kubernetes API client for a downstream cluster's kubeconfig.

    Uses new_client_from_config so that several downstream clusters can be
    inspected in one process without touching the global SDK configuration.
    """
    return new_client_from_config(config_file=str(kubeconfig_path), context=context)


def load_management_client(rancher: RancherConfig, token: str | None = None) -> ManagementClient:
    """Create a management API client from the test configuration."""
    return ManagementClient(rancher.base_url, token or rancher.admin_token, verify=not rancher.insecure)


__all__ = ["ManagementClient", "load_k8s_api_client", "load_management_client"]
