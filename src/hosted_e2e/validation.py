"""Checks on names, regions and logging types, run before anything is sent to the API.

Every failure is a ``ConfigError``: the input came from configuration or a
scenario parameter, not from the server.
"""

from __future__ import annotations

import re

from hosted_e2e.errors import ConfigError
from hosted_e2e.models import EKS_LOGGING_TYPES, PROVIDERS

# RFC 1123 label: lowercase alphanumeric and hyphens, 1-63 chars, starts/ends with alphanumeric
_CLUSTER_NAME_RE = re.compile(r"^[a-z0-9]([a-z0-9\-]{0,61}[a-z0-9])?$")

# EKS node group names: alphanumeric, hyphen and underscore, 1-63 chars, starting alphanumeric
_NODE_GROUP_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9\-_]{0,62}$")

_REGION_RE = re.compile(r"^[a-z]+(-[a-z]+)+-?\d+(-[a-z])?$")


def validate_cluster_name(name: str) -> None:
    """Validate a downstream cluster name against RFC 1123."""
    if not _CLUSTER_NAME_RE.match(name):
        msg = f"Invalid cluster name: {name!r}. Must be a valid RFC 1123 label."
        raise ConfigError(msg)


def validate_node_group_name(name: str | None) -> None:
    if name is None:
        return
    if not _NODE_GROUP_RE.match(name):
        msg = f"Invalid node group name: {name!r}. Must be 1-63 alphanumeric, '-' or '_' characters."
        raise ConfigError(msg)


def validate_region(region: str) -> None:
    """Validate a cloud region or zone identifier such as us-west-2 or us-central1-c."""
    if not _REGION_RE.match(region):
        msg = f"Invalid region: {region!r}."
        raise ConfigError(msg)


def validate_provider(provider: str) -> None:
    if provider not in PROVIDERS:
        valid = ", ".join(sorted(PROVIDERS))
        msg = f"Invalid provider: {provider!r}. Must be one of: {valid}"
        raise ConfigError(msg)


def validate_logging_types(logging_types: list[str]) -> None:
    unknown = sorted(set(logging_types) - set(EKS_LOGGING_TYPES))
    if unknown:
        valid = ", ".join(EKS_LOGGING_TYPES)
        msg = f"Invalid logging types: {', '.join(unknown)}. Must be among: {valid}"
        raise ConfigError(msg)
