"""Environment settings and the YAML test configuration file (management API + cluster templates)."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from hosted_e2e.errors import ConfigError
from hosted_e2e.models import PROVIDERS, ClusterSpec, spec_from_api

CONFIG_ENV_VAR = "CATTLE_TEST_CONFIG"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class E2ESettings:
    """Process-wide settings with environment variable overrides."""

    provider: str = field(default_factory=lambda: os.environ.get("PROVIDER", "eks").lower())
    downstream_k8s_minor_version: str = field(
        default_factory=lambda: os.environ.get("DOWNSTREAM_K8S_MINOR_VERSION", "")
    )
    skip_upgrade_tests: bool = field(default_factory=lambda: _env_bool("SKIP_UPGRADE_TESTS", False))
    cluster_cleanup: bool = field(default_factory=lambda: _env_bool("DOWNSTREAM_CLUSTER_CLEANUP", True))
    is_import: bool = field(default_factory=lambda: _env_bool("IMPORT", False))
    eks_region: str = field(default_factory=lambda: os.environ.get("EKS_REGION", "us-west-2"))
    gke_zone: str = field(default_factory=lambda: os.environ.get("GKE_ZONE", "us-central1-c"))
    gke_project_id: str = field(default_factory=lambda: os.environ.get("GKE_PROJECT_ID", ""))
    aks_subscription_id: str = field(default_factory=lambda: os.environ.get("AKS_SUBSCRIPTION_ID", ""))
    aks_resource_group: str = field(default_factory=lambda: os.environ.get("AKS_RESOURCE_GROUP", ""))
    timeout_scale: float = field(default_factory=lambda: float(os.environ.get("TIMEOUT_SCALE", "1")))
    cluster_name_prefix: str = field(default_factory=lambda: os.environ.get("CLUSTER_NAME_PREFIX", "auto-hp-e2e"))
    config_path: str = field(default_factory=lambda: os.environ.get(CONFIG_ENV_VAR, ""))

    @property
    def gke_region(self) -> str:
        """Region derived from the zone, e.g. us-central1-c -> us-central1."""
        return self.gke_zone.rsplit("-", 1)[0] if self.gke_zone.count("-") >= 2 else self.gke_zone


def get_settings() -> E2ESettings:
    """Return settings with environment variable overrides applied."""
    return E2ESettings()


@dataclass(frozen=True)
class RancherConfig:
    """Connection details for the management API."""

    host: str
    admin_token: str
    insecure: bool = False
    cloud_credential_id: str = ""

    @property
    def base_url(self) -> str:
        host = self.host.rstrip("/")
        if not host.startswith(("http://", "https://")):
            host = f"https://{host}"
        return f"{host}/v3"


@dataclass(frozen=True)
class TestConfig:
    """Parsed test configuration: API connection plus per-provider cluster templates."""

    __test__ = False

    rancher: RancherConfig
    templates: dict[str, ClusterSpec] = field(default_factory=dict)
    path: Path | None = None

    def template(self, provider: str) -> ClusterSpec:
        """Return a deep copy of the provider's template, safe to mutate per scenario."""
        if provider not in self.templates:
            msg = f"No {provider}ClusterConfig section in {self.path or 'test config'}"
            raise ConfigError(msg)
        return self.templates[provider].model_copy(deep=True)


def _parse_rancher(raw: Any, path: Path) -> RancherConfig:
    if not isinstance(raw, dict):
        msg = f"Test config {path} must contain a 'rancher' mapping."
        raise ConfigError(msg)
    missing = [key for key in ("host", "adminToken") if not raw.get(key)]
    if missing:
        msg = f"Test config {path} 'rancher' section is missing: {', '.join(missing)}."
        raise ConfigError(msg)
    return RancherConfig(
        host=str(raw["host"]),
        admin_token=str(raw["adminToken"]),
        insecure=bool(raw.get("insecure", False)),
        cloud_credential_id=str(raw.get("cloudCredentialId", "")),
    )


def load_test_config(path: Path | str | None = None) -> TestConfig:
    """Parse the YAML test configuration.

    Args:
        path: File to read; defaults to the ``CATTLE_TEST_CONFIG`` environment variable.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigError: If the content is malformed or a template fails validation.
    """
    if path is None:
        env_path = os.environ.get(CONFIG_ENV_VAR)
        if not env_path:
            msg = f"{CONFIG_ENV_VAR} is not set; point it at the test configuration YAML file."
            raise ConfigError(msg)
        path = env_path
    path = Path(path)
    if not path.exists():
        msg = f"Test configuration file not found: {path}."
        raise FileNotFoundError(msg)

    raw = yaml.safe_load(path.read_text())
    if not isinstance(raw, dict):
        msg = f"Test config {path} must be a mapping."
        raise ConfigError(msg)

    rancher = _parse_rancher(raw.get("rancher"), path)

    templates: dict[str, ClusterSpec] = {}
    for provider in PROVIDERS:
        section = raw.get(f"{provider}ClusterConfig")
        if section is None:
            continue
        if not isinstance(section, dict):
            msg = f"{provider}ClusterConfig in {path} must be a mapping."
            raise ConfigError(msg)
        try:
            templates[provider] = spec_from_api(provider, section)
        except ValidationError as err:
            msg = f"Invalid {provider}ClusterConfig in {path}: {err}"
            raise ConfigError(msg) from err

    return TestConfig(rancher=rancher, templates=templates, path=path)


def save_admin_token(path: Path | str, token: str) -> None:
    """Persist a new admin token into the test configuration file, keeping everything else."""
    path = Path(path)
    raw = yaml.safe_load(path.read_text()) or {}
    raw.setdefault("rancher", {})["adminToken"] = token
    path.write_text(yaml.safe_dump(raw, sort_keys=False))
