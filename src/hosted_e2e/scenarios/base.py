"""Scenario records, the per-provider registry, and the single runner that owns cluster lifecycle."""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from hosted_e2e import cluster_ops as ops
from hosted_e2e.context import ExecutionContext
from hosted_e2e.convergence import expect_that
from hosted_e2e.errors import ScenarioSkipped, SynchronousRejection
from hosted_e2e.log_setup import bind_scenario, unbind_scenario
from hosted_e2e.models import ClusterResource
from hosted_e2e.providers import HostedProvider, get_provider
from hosted_e2e.reporting import FAILED, PASSED, SKIPPED

log = structlog.get_logger()

SKIP_UPGRADE_TESTS_REASON = "Skipping upgrade tests (SKIP_UPGRADE_TESTS is set)"
IMPORT_UNSUPPORTED_REASON = "Scenario provisions through the management API; not run when IMPORT is set"


@dataclass
class ClusterFixture:
    """Per-scenario state: the cluster under test and the versions chosen for it.

    ``cleanups`` undo what the body creates and run before the cluster is
    deleted. ``provider_cleanups`` remove resources created on the provider
    before the cluster was registered, and run after it is deleted.
    """

    cluster: ClusterResource | None = None
    k8s_version: str = ""
    upgrade_to_version: str = ""
    cleanups: list[Callable[[], None]] = field(default_factory=list)
    provider_cleanups: list[Callable[[], None]] = field(default_factory=list)


ScenarioBody = Callable[[ExecutionContext, ClusterFixture], None]


@dataclass(frozen=True)
class Scenario:
    """One test case as data.

    ``provision`` creates the cluster from the template and waits for it before
    the body runs; bodies that build deliberately invalid clusters set it to
    False and store what they create on the fixture. When IMPORT is set, a
    provisioned cluster is created with the provider's CLI and imported instead;
    only scenarios with ``supports_import`` run that way. ``options`` are passed to
    the provider factory (e.g. ``{"regional": True}`` for GKE).
    """

    case_id: int | None
    title: str
    body: ScenarioBody
    provider: str
    is_upgrade: bool = False
    provision: bool = True
    supports_import: bool = False
    options: Mapping[str, Any] = field(default_factory=dict)
    disabled_reason: str = ""


_REGISTRY: dict[str, list[Scenario]] = {}


def register(*scenarios: Scenario) -> None:
    for scenario in scenarios:
        _REGISTRY.setdefault(scenario.provider, []).append(scenario)


def scenarios_for(provider: str) -> list[Scenario]:
    return list(_REGISTRY.get(provider, []))


def get_scenario(provider: str, case_id: int) -> Scenario:
    for scenario in _REGISTRY.get(provider, []):
        if scenario.case_id == case_id:
            return scenario
    msg = f"No {provider} scenario with case id {case_id}"
    raise KeyError(msg)


def expect_rejection(action: Callable[[], Any], substring: str) -> SynchronousRejection:
    """Run ``action`` and require an immediate rejection whose message contains ``substring``."""
    try:
        action()
    except SynchronousRejection as err:
        expect_that(err.message, lambda message: substring in message, "rejection message")
        return err
    msg = f"Expected the request to be rejected with {substring!r}, but it was accepted"
    raise AssertionError(msg)


def _provider_for(ctx: ExecutionContext, scenario: Scenario) -> HostedProvider:
    if not scenario.options and ctx.provider.name == scenario.provider:
        return ctx.provider
    return get_provider(ctx.settings, scenario.provider, **scenario.options)


def _import_cluster(ctx: ExecutionContext, fixture: ClusterFixture) -> ClusterResource:
    """Create the cluster with the provider's CLI, then register it with the management API."""
    template_groups = ctx.test_config.template(ctx.provider.name).node_groups or []
    nodes = (template_groups[0].desired_size if template_groups else None) or 1
    provider = ctx.provider
    # registered first so a partially created cluster is still removed
    fixture.provider_cleanups.append(lambda: provider.delete_on_provider(ctx.cluster_name))
    provider.create_on_provider(
        ctx.cluster_name, fixture.k8s_version, nodes, ops.common_metadata_labels(ctx.cluster_name)
    )
    return ops.import_hosted_cluster(ctx, wait=True)


def _cleanup(ctx: ExecutionContext, fixture: ClusterFixture) -> None:
    """Run body cleanups newest first, delete the cluster, then remove provider-side resources.

    Every step is attempted even when an earlier one fails; the first failure is
    raised once all of them have run.
    """
    if not ctx.settings.cluster_cleanup:
        log.info("skipping_cluster_cleanup", cluster=ctx.cluster_name)
        return
    steps: list[Callable[[], None]] = list(reversed(fixture.cleanups))
    cluster = fixture.cluster
    if cluster is not None and cluster.id:

        def delete_cluster() -> None:
            log.info("cleaning_up_cluster", cluster=cluster.name, cluster_id=cluster.id)
            ops.delete_hosted_cluster(ctx, cluster)

        steps.append(delete_cluster)
    steps.extend(reversed(fixture.provider_cleanups))

    errors: list[Exception] = []
    for step in steps:
        try:
            step()
        except Exception as err:
            log.error("cleanup_step_failed", cluster=ctx.cluster_name, error=str(err))
            errors.append(err)
    if errors:
        raise errors[0]


def _skip_reason(ctx: ExecutionContext, scenario: Scenario, provider: HostedProvider) -> str:
    if scenario.disabled_reason:
        return scenario.disabled_reason
    if scenario.is_upgrade and ctx.settings.skip_upgrade_tests:
        return SKIP_UPGRADE_TESTS_REASON
    if scenario.provision and ctx.settings.is_import and not (scenario.supports_import and provider.supports_import):
        return IMPORT_UNSUPPORTED_REASON
    return ""


def run_scenario(base_ctx: ExecutionContext, scenario: Scenario) -> ClusterFixture:
    """Run one scenario against a freshly named cluster and always attempt cleanup.

    The outcome is recorded after cleanup, so a pass whose cleanup fails is
    reported as a failure.

    Raises:
        ScenarioSkipped: The scenario is disabled, is an upgrade scenario while
            upgrade tests are skipped, or cannot run against an imported cluster.
        AssertionError: A check or convergence wait failed.
        HostedE2EError: A management API or provider call failed.
    """
    provider = _provider_for(base_ctx, scenario)
    reason = _skip_reason(base_ctx, scenario, provider)
    if reason:
        base_ctx.reporter.record(scenario.case_id, scenario.title, SKIPPED, message=reason)
        raise ScenarioSkipped(reason)

    cluster_name = ops.append_random_string(base_ctx.settings.cluster_name_prefix)
    ctx = base_ctx.for_cluster(cluster_name, provider)
    fixture = ClusterFixture()
    bind_scenario(scenario.case_id, cluster_name, scenario.provider)
    start = time.monotonic()
    error: Exception | None = None
    try:
        fixture.k8s_version = ops.get_k8s_version(ctx, for_upgrade=scenario.is_upgrade)
        if scenario.is_upgrade:
            fixture.upgrade_to_version = ops.get_k8s_version(ctx, for_upgrade=False)
        log.info(
            "scenario_started",
            title=scenario.title,
            k8s_version=fixture.k8s_version,
            upgrade_to_version=fixture.upgrade_to_version or None,
            imported=bool(scenario.provision and ctx.settings.is_import),
        )
        if scenario.provision:
            if ctx.settings.is_import:
                fixture.cluster = _import_cluster(ctx, fixture)
            else:
                fixture.cluster = ops.create_hosted_cluster(ctx, fixture.k8s_version, wait=True)
        scenario.body(ctx, fixture)
    except Exception as err:
        error = err
        raise
    finally:
        try:
            _cleanup(ctx, fixture)
        except Exception as err:
            log.error("cluster_cleanup_failed", cluster=cluster_name, error=str(err))
            if error is None:
                error = err
                raise
        finally:
            outcome = FAILED if error is not None else PASSED
            ctx.reporter.record(
                scenario.case_id, scenario.title, outcome, time.monotonic() - start, str(error) if error else ""
            )
            unbind_scenario()
    return fixture
