"""AKS: cluster specs and the Azure SDK based provider-side verifier."""

from __future__ import annotations

import threading
from typing import Any

import structlog
from azure.identity import DefaultAzureCredential
from azure.mgmt.containerservice import ContainerServiceClient

from hosted_e2e.config import E2ESettings
from hosted_e2e.models import ClusterSpec
from hosted_e2e.providers.base import HostedProvider
from hosted_e2e.providers.cli import query_json

log = structlog.get_logger()


class AksVerifier:
    """Reads managed clusters and agent pools through ``ContainerServiceClient``.

    Queries run against the SDK models' ``as_dict()`` form, whose keys are
    snake_case: ``kubernetes_version`` for the cluster, ``[].count`` or
    ``[].orchestrator_version`` for agent pools.
    """

    def __init__(self, subscription_id: str, resource_group: str) -> None:
        self.subscription_id = subscription_id
        self.resource_group = resource_group
        self._container_client: ContainerServiceClient | None = None
        self._credential: DefaultAzureCredential | None = None
        # _get_container_client calls _get_credential under the same lock.
        self._lock = threading.RLock()

    def _get_credential(self) -> DefaultAzureCredential:
        with self._lock:
            if self._credential is None:
                self._credential = DefaultAzureCredential()
            return self._credential

    def _get_container_client(self) -> ContainerServiceClient:
        with self._lock:
            if self._container_client is None:
                self._container_client = ContainerServiceClient(
                    credential=self._get_credential(),
                    subscription_id=self.subscription_id,
                )
            return self._container_client

    def get(self, cluster_name: str, kind: str, query: str) -> Any:
        """Fetch the managed cluster (``kind="cluster"``) or its agent pools and select ``query``."""
        client = self._get_container_client()
        try:
            if kind == "cluster":
                document: Any = client.managed_clusters.get(self.resource_group, cluster_name).as_dict()
            else:
                document = [pool.as_dict() for pool in client.agent_pools.list(self.resource_group, cluster_name)]
        except Exception:
            log.error("failed_to_get_aks_resource", cluster=cluster_name, kind=kind)
            raise
        return query_json(document, query)


class AKSProvider(HostedProvider):
    name = "aks"

    def __init__(self, settings: E2ESettings, verifier: AksVerifier | None = None) -> None:
        self.settings = settings
        self.resource_group = settings.aks_resource_group
        self.verifier = verifier or AksVerifier(settings.aks_subscription_id, settings.aks_resource_group)

    def version_params(self, credential_id: str) -> dict[str, str]:
        return {"cloudCredentialId": credential_id}

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
        if self.resource_group:
            spec.resource_group = self.resource_group
        spec.tags = {**(spec.tags or {}), **tags}
        for pool in spec.node_groups or []:
            pool.version = k8s_version
        return spec

    def import_spec(self, cluster_name: str, credential_id: str) -> ClusterSpec:
        return ClusterSpec(
            display_name=cluster_name,
            credential_secret=credential_id,
            resource_group=self.resource_group or None,
            imported=True,
        )

    def verify(self, cluster_name: str, kind: str, query: str, *extra_args: str) -> Any:
        return self.verifier.get(cluster_name, kind, query)
