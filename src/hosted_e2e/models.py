"""Pydantic v2 models for cluster resources, and the per-provider layout of their API documents.

``ClusterSpec`` and ``NodeGroupSpec`` use one set of snake_case field names for
every provider. Each provider's ``<provider>Config`` / ``upstreamSpec`` document
names and nests those fields differently (``nodeGroups[].nodegroupName`` on EKS,
``nodePools[].config.machineType`` on GKE, ``nodePools[].vmSize`` on AKS), so a
``WireFormat`` per provider maps each field to its key path. Keys a document
carries that have no field are kept as model extras and written back unchanged.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict

Provider = Literal["eks", "gke", "aks"]
PROVIDERS: tuple[str, ...] = ("eks", "gke", "aks")

# Logging types accepted by the EKS control plane.
EKS_LOGGING_TYPES = ("api", "audit", "authenticator", "controllerManager", "scheduler")


class NodeGroupSpec(BaseModel):
    """A named, sized compute pool. ``name`` must be unique within its cluster."""

    model_config = ConfigDict(extra="allow")

    name: str
    version: str | None = None
    instance_type: str | None = None
    disk_size: int | None = None
    min_size: int | None = None
    max_size: int | None = None
    desired_size: int | None = None
    tags: dict[str, str] | None = None
    labels: dict[str, str] | None = None
    gpu: bool | None = None
    image_type: str | None = None


class ClusterSpec(BaseModel):
    """Desired (submitted) or observed (upstream) configuration of a hosted cluster."""

    model_config = ConfigDict(extra="allow")

    display_name: str | None = None
    region: str | None = None
    zone: str | None = None
    project_id: str | None = None
    resource_group: str | None = None
    locations: list[str] | None = None
    kubernetes_version: str | None = None
    node_groups: list[NodeGroupSpec] | None = None
    logging_types: list[str] | None = None
    public_access: bool | None = None
    private_access: bool | None = None
    public_access_sources: list[str] | None = None
    security_groups: list[str] | None = None
    subnets: list[str] | None = None
    tags: dict[str, str] | None = None
    imported: bool | None = None
    credential_secret: str | None = None

    @property
    def node_group_names(self) -> list[str]:
        return [ng.name for ng in self.node_groups or []]


FieldPaths = Mapping[str, tuple[str, ...]]


def _pop_path(document: dict[str, Any], path: tuple[str, ...]) -> Any:
    """Remove and return the value at ``path``, dropping parents left empty."""
    *parents, leaf = path
    chain: list[tuple[dict[str, Any], str]] = []
    node = document
    for key in parents:
        child = node.get(key)
        if not isinstance(child, dict):
            return None
        chain.append((node, key))
        node = child
    value = node.pop(leaf, None)
    for parent, key in reversed(chain):
        if parent[key]:
            break
        del parent[key]
    return value


def _set_path(document: dict[str, Any], path: tuple[str, ...], value: Any) -> None:
    *parents, leaf = path
    node = document
    for key in parents:
        node = node.setdefault(key, {})
    node[leaf] = copy.deepcopy(value)


def _decode(document: Mapping[str, Any], fields: FieldPaths) -> dict[str, Any]:
    remaining = copy.deepcopy(dict(document))
    values: dict[str, Any] = {}
    for name, path in fields.items():
        value = _pop_path(remaining, path)
        if value is not None:
            values[name] = value
    return {**remaining, **values}


def _encode(model: BaseModel, fields: FieldPaths) -> dict[str, Any]:
    document = copy.deepcopy(model.model_extra or {})
    for name, path in fields.items():
        value = getattr(model, name)
        if value is not None:
            _set_path(document, path, value)
    return document


@dataclass(frozen=True)
class WireFormat:
    """Key paths of one provider's cluster document.

    Spec fields with no entry in ``cluster_fields`` / ``node_group_fields`` have
    no counterpart in that provider's document and are never sent.
    """

    node_groups_key: str
    cluster_fields: FieldPaths
    node_group_fields: FieldPaths

    def decode(self, document: Mapping[str, Any]) -> ClusterSpec:
        values = _decode({k: v for k, v in document.items() if k != self.node_groups_key}, self.cluster_fields)
        node_groups = document.get(self.node_groups_key)
        if isinstance(node_groups, list):
            values["node_groups"] = [
                _decode(ng, self.node_group_fields) if isinstance(ng, Mapping) else ng for ng in node_groups
            ]
        elif node_groups is not None:
            # Left for pydantic to reject.
            values["node_groups"] = node_groups
        return ClusterSpec.model_validate(values)

    def encode(self, spec: ClusterSpec) -> dict[str, Any]:
        document = _encode(spec, self.cluster_fields)
        if spec.node_groups is not None:
            document[self.node_groups_key] = [_encode(ng, self.node_group_fields) for ng in spec.node_groups]
        return document


EKS_WIRE = WireFormat(
    node_groups_key="nodeGroups",
    cluster_fields={
        "display_name": ("displayName",),
        "credential_secret": ("amazonCredentialSecret",),
        "region": ("region",),
        "imported": ("imported",),
        "kubernetes_version": ("kubernetesVersion",),
        "tags": ("tags",),
        "logging_types": ("loggingTypes",),
        "public_access": ("publicAccess",),
        "private_access": ("privateAccess",),
        "public_access_sources": ("publicAccessSources",),
        "security_groups": ("securityGroups",),
        "subnets": ("subnets",),
    },
    node_group_fields={
        "name": ("nodegroupName",),
        "version": ("version",),
        "instance_type": ("instanceType",),
        "disk_size": ("diskSize",),
        "min_size": ("minSize",),
        "max_size": ("maxSize",),
        "desired_size": ("desiredSize",),
        "tags": ("tags",),
        "labels": ("labels",),
        "gpu": ("gpu",),
    },
)

GKE_WIRE = WireFormat(
    node_groups_key="nodePools",
    cluster_fields={
        "display_name": ("clusterName",),
        "credential_secret": ("googleCredentialSecret",),
        "project_id": ("projectID",),
        "region": ("region",),
        "zone": ("zone",),
        "locations": ("locations",),
        "imported": ("imported",),
        "kubernetes_version": ("kubernetesVersion",),
        "tags": ("labels",),
    },
    node_group_fields={
        "name": ("name",),
        "version": ("version",),
        "desired_size": ("initialNodeCount",),
        "instance_type": ("config", "machineType"),
        "disk_size": ("config", "diskSizeGb"),
        "image_type": ("config", "imageType"),
        "labels": ("config", "labels"),
        "min_size": ("autoscaling", "minNodeCount"),
        "max_size": ("autoscaling", "maxNodeCount"),
    },
)

AKS_WIRE = WireFormat(
    node_groups_key="nodePools",
    cluster_fields={
        "display_name": ("clusterName",),
        "credential_secret": ("azureCredentialSecret",),
        "region": ("resourceLocation",),
        "resource_group": ("resourceGroup",),
        "imported": ("imported",),
        "kubernetes_version": ("kubernetesVersion",),
        "tags": ("tags",),
    },
    node_group_fields={
        "name": ("name",),
        "version": ("orchestratorVersion",),
        "desired_size": ("count",),
        "instance_type": ("vmSize",),
        "disk_size": ("osDiskSizeGB",),
        "min_size": ("minCount",),
        "max_size": ("maxCount",),
        "labels": ("nodeLabels",),
    },
)

WIRE_FORMATS: dict[str, WireFormat] = {"eks": EKS_WIRE, "gke": GKE_WIRE, "aks": AKS_WIRE}


def spec_from_api(provider: str, document: Mapping[str, Any]) -> ClusterSpec:
    return WIRE_FORMATS[provider].decode(document)


def spec_to_api(provider: str, spec: ClusterSpec) -> dict[str, Any]:
    return WIRE_FORMATS[provider].encode(spec)


class ClusterResource(BaseModel):
    """A managed cluster: identity, lifecycle state, and parallel desired/observed specs."""

    id: str
    name: str
    provider: Provider
    state: str = ""
    transitioning: str = "no"
    transitioning_message: str = ""
    version: str | None = None
    desired: ClusterSpec | None = None
    observed: ClusterSpec | None = None

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> ClusterResource:
        """Build from a management API cluster document.

        The provider is whichever ``<provider>Config`` / ``<provider>Status`` block is present.
        """
        provider = next(
            (p for p in PROVIDERS if payload.get(f"{p}Config") is not None or payload.get(f"{p}Status") is not None),
            None,
        )
        if provider is None:
            msg = f"Cluster {payload.get('id')!r} has no hosted provider configuration"
            raise ValueError(msg)
        config = payload.get(f"{provider}Config")
        upstream = (payload.get(f"{provider}Status") or {}).get("upstreamSpec")
        version = payload.get("version") or {}
        return cls(
            id=payload["id"],
            name=payload.get("name", ""),
            provider=provider,
            state=payload.get("state", ""),
            transitioning=payload.get("transitioning", "no") or "no",
            transitioning_message=payload.get("transitioningMessage", "") or "",
            version=version.get("gitVersion") if isinstance(version, dict) else None,
            desired=spec_from_api(provider, config) if config is not None else None,
            observed=spec_from_api(provider, upstream) if upstream is not None else None,
        )

    def to_api(self) -> dict[str, Any]:
        """Serialise for create/update; only the desired config is writable."""
        body: dict[str, Any] = {"type": "cluster", "name": self.name}
        if self.id:
            body["id"] = self.id
        if self.desired is not None:
            body[f"{self.provider}Config"] = spec_to_api(self.provider, self.desired)
        return body

    @property
    def is_active(self) -> bool:
        return self.state == "active"

    @property
    def is_updating(self) -> bool:
        return self.state in ("updating", "upgrading")

    @property
    def is_transitioning_error(self) -> bool:
        return self.transitioning == "error"

    def error_message_contains(self, *substrings: str) -> bool:
        """True when the cluster is in error and its message contains any of ``substrings``.

        Backend wording for the same condition differs between operator versions,
        so callers pass every accepted phrasing.
        """
        return self.is_transitioning_error and any(s in self.transitioning_message for s in substrings)


class Token(BaseModel):
    """An API token returned by the management API."""

    name: str = ""
    token: str
    ttl: int | None = None
