"""Common surface of a hosted provider: desired-spec construction and one-shot verification."""

from __future__ import annotations

from typing import Any

from hosted_e2e.models import ClusterSpec


class HostedProvider:
    """Per-provider knowledge the mutator and scenarios need.

    Subclasses fill in where the cluster lives (region or zone), how a template
    becomes a desired spec, and how to read the provider's own view of a cluster.
    """

    name: str = ""

    def version_params(self, credential_id: str) -> dict[str, str]:
        """Query parameters for the management API's version metadata endpoint."""
        raise NotImplementedError

    def build_spec(
        self,
        template: ClusterSpec,
        cluster_name: str,
        k8s_version: str,
        credential_id: str,
        tags: dict[str, str],
    ) -> ClusterSpec:
        raise NotImplementedError

    def import_spec(self, cluster_name: str, credential_id: str) -> ClusterSpec:
        raise NotImplementedError

    def create_on_provider(self, cluster_name: str, k8s_version: str, nodes: int, tags: dict[str, str]) -> None:
        """Create a cluster with the provider's own tooling, ready to be imported."""
        msg = f"{self.name} clusters cannot be created outside the management API"
        raise NotImplementedError(msg)

    def delete_on_provider(self, cluster_name: str) -> None:
        msg = f"{self.name} clusters cannot be deleted outside the management API"
        raise NotImplementedError(msg)

    @property
    def supports_import(self) -> bool:
        return type(self).create_on_provider is not HostedProvider.create_on_provider

    def verify(self, cluster_name: str, kind: str, query: str, *extra_args: str) -> Any:
        """Read one value from the provider directly, bypassing the management API."""
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"
