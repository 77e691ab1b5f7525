"""Execution context handed to every mutator operation and scenario body."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace

from hosted_e2e.clients.management import ManagementClient
from hosted_e2e.config import E2ESettings, TestConfig
from hosted_e2e.convergence import Timeouts
from hosted_e2e.providers.base import HostedProvider
from hosted_e2e.reporting import CaseReporter


@dataclass
class ExecutionContext:
    """Everything a scenario needs; passed explicitly instead of living in module globals.

    ``sleep`` is forwarded to every convergence wait so tests can poll without
    real delays.
    """

    settings: E2ESettings
    client: ManagementClient
    provider: HostedProvider
    test_config: TestConfig
    cluster_name: str = ""
    credential_id: str = ""
    timeouts: Timeouts = field(default_factory=Timeouts)
    reporter: CaseReporter = field(default_factory=CaseReporter)
    sleep: Callable[[float], None] = time.sleep

    def for_cluster(self, cluster_name: str, provider: HostedProvider | None = None) -> ExecutionContext:
        """Copy of this context bound to one scenario's cluster."""
        return replace(self, cluster_name=cluster_name, provider=provider or self.provider)


def build_context(
    settings: E2ESettings,
    client: ManagementClient,
    provider: HostedProvider,
    test_config: TestConfig,
    **kwargs: object,
) -> ExecutionContext:
    """Context with timeouts scaled by ``settings.timeout_scale`` and the configured credential."""
    kwargs.setdefault("timeouts", Timeouts().scaled(settings.timeout_scale))
    kwargs.setdefault("credential_id", test_config.rancher.cloud_credential_id)
    return ExecutionContext(  # type: ignore[arg-type]
        settings=settings, client=client, provider=provider, test_config=test_config, **kwargs
    )
