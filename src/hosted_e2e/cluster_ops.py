"""Desired-state mutator: cluster operations expressed as edits to the desired spec.

Every named operation follows the same shape: apply an edit through
``update_cluster``, optionally check that the API echoed the edit back, optionally
wait for the cluster to finish updating, then poll the observed (upstream) spec
until it reflects the edit. Synchronous rejections surface as
``SynchronousRejection`` from the write; slow or failed reconciliation surfaces as
``ConvergenceTimeout`` from the poll.
"""

from __future__ import annotations

import getpass
import re
import secrets
import string
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

import structlog

from hosted_e2e.clients.downstream import DownstreamClient
from hosted_e2e.clients.management import ManagementClient
from hosted_e2e.context import ExecutionContext
from hosted_e2e.convergence import (
    ConvergenceWindow,
    contains_all,
    equal_to,
    expect_that,
    has_entries,
    has_exact_elements,
    has_length,
    is_true,
    mapping_equal_to,
    version_at_least,
    wait_for,
)
from hosted_e2e.errors import SettingNotFound
from hosted_e2e.kubeconfig import write_kubeconfig
from hosted_e2e.models import ClusterResource, ClusterSpec, NodeGroupSpec
from hosted_e2e.validation import validate_cluster_name, validate_logging_types, validate_node_group_name
from hosted_e2e.versions import default_k8s_version, filter_ui_unsupported, minor_version, sort_versions

log = structlog.get_logger()

Transform = Callable[[ClusterSpec], None] | Mapping[str, Any]

UI_VERSION_RANGE_SETTING = "ui-k8s-supported-versions-range"

_NAME_ALPHABET = string.ascii_lowercase + string.digits


# --- naming and metadata ---


def append_random_string(prefix: str, length: int = 5) -> str:
    """``prefix-xxxxx`` with a random lowercase alphanumeric suffix."""
    return f"{prefix}-{''.join(secrets.choice(_NAME_ALPHABET) for _ in range(length))}"


def common_metadata_labels(test_id: str = "") -> dict[str, str]:
    """Tags put on every provisioned cluster so leaked resources can be traced back to a run."""
    labels = {"owner": f"hosted-providers-qa-ci-{getpass.getuser()}"}
    if test_id:
        # Label values are limited to 63 characters of [a-z0-9_.-].
        labels["testfilenumber"] = re.sub(r"[^a-z0-9_.-]", "_", test_id.lower())[:63]
    return labels


# --- generic update ---


def update_cluster(client: ManagementClient, cluster: ClusterResource, transform: Transform) -> ClusterResource:
    """Apply ``transform`` to the latest desired spec and submit it.

    The cluster is re-read first, so a change made while an earlier update is
    still reconciling builds on that update's desired spec.

    Args:
        client: Management API client.
        cluster: The cluster to change; only its id is trusted.
        transform: Callable that edits the desired spec in place, or a mapping of
            field names to new values.

    Returns:
        The resource as echoed by the API.

    Raises:
        SynchronousRejection: The API refused the update.
    """
    latest = client.get_cluster(cluster.id)
    desired = (latest.desired or ClusterSpec()).model_copy(deep=True)
    if callable(transform):
        transform(desired)
    else:
        desired = ClusterSpec.model_validate({**desired.model_dump(), **dict(transform)})
    log.info("updating_cluster", cluster=latest.name, cluster_id=latest.id, state=latest.state)
    return client.update_cluster(latest.model_copy(update={"desired": desired}))


def _desired(cluster: ClusterResource) -> ClusterSpec:
    return cluster.desired or ClusterSpec()


def _observe(ctx: ExecutionContext, cluster_id: str, read: Callable[[ClusterSpec], Any]) -> Callable[[], Any]:
    def sample() -> Any:
        return read(ctx.client.get_cluster(cluster_id).observed or ClusterSpec())

    return sample


def _poll_observed(
    ctx: ExecutionContext,
    cluster: ClusterResource,
    read: Callable[[ClusterSpec], Any],
    target: Any,
    window: ConvergenceWindow,
    description: str,
) -> ClusterResource:
    wait_for(_observe(ctx, cluster.id, read), target, window, description, sleep=ctx.sleep)
    return ctx.client.get_cluster(cluster.id)


# --- lifecycle ---


def create_hosted_cluster(
    ctx: ExecutionContext,
    k8s_version: str,
    customize: Callable[[ClusterSpec], None] | None = None,
    *,
    wait: bool = False,
) -> ClusterResource:
    """Provision ``ctx.cluster_name`` from the provider template.

    ``customize`` edits the desired spec before submission, e.g. to build an
    intentionally invalid configuration.
    """
    validate_cluster_name(ctx.cluster_name)
    template = ctx.test_config.template(ctx.provider.name)
    spec = ctx.provider.build_spec(
        template, ctx.cluster_name, k8s_version, ctx.credential_id, common_metadata_labels(ctx.cluster_name)
    )
    if customize is not None:
        customize(spec)
    cluster = ctx.client.create_cluster(ctx.cluster_name, ctx.provider.name, spec)
    log.info("cluster_created", cluster=cluster.name, cluster_id=cluster.id, version=k8s_version)
    if wait:
        cluster = wait_until_cluster_ready(ctx, cluster)
    return cluster


def import_hosted_cluster(ctx: ExecutionContext, *, wait: bool = False) -> ClusterResource:
    """Register an existing provider cluster with the management API."""
    validate_cluster_name(ctx.cluster_name)
    spec = ctx.provider.import_spec(ctx.cluster_name, ctx.credential_id)
    cluster = ctx.client.create_cluster(ctx.cluster_name, ctx.provider.name, spec)
    log.info("cluster_imported", cluster=cluster.name, cluster_id=cluster.id)
    if wait:
        cluster = wait_until_cluster_ready(ctx, cluster)
    return cluster


def delete_hosted_cluster(ctx: ExecutionContext, cluster: ClusterResource) -> None:
    ctx.client.delete_cluster(cluster.id)


# --- state waits ---


def wait_until_cluster_ready(ctx: ExecutionContext, cluster: ClusterResource) -> ClusterResource:
    """Block until the cluster is active and its upstream spec has been populated."""
    wait_for(
        lambda: _state_of(ctx.client.get_cluster(cluster.id)),
        lambda s: s[0] == "active" and s[2],
        ctx.timeouts.cluster_ready,
        f"cluster {cluster.name} to become active",
        sleep=ctx.sleep,
    )
    return ctx.client.get_cluster(cluster.id)


def _state_of(cluster: ClusterResource) -> tuple[str, str, bool]:
    return cluster.state, cluster.transitioning, cluster.observed is not None


def wait_cluster_in_upgrade(ctx: ExecutionContext, cluster: ClusterResource) -> None:
    wait_for(
        lambda: ctx.client.get_cluster(cluster.id).state,
        lambda state: state in ("updating", "upgrading"),
        ctx.timeouts.state_transition,
        f"cluster {cluster.name} to start updating",
        sleep=ctx.sleep,
    )


def wait_cluster_upgraded(ctx: ExecutionContext, cluster: ClusterResource) -> ClusterResource:
    """Wait for the cluster to enter an updating state and then return to active."""
    wait_cluster_in_upgrade(ctx, cluster)
    wait_for(
        lambda: ctx.client.get_cluster(cluster.id).state,
        "active",
        ctx.timeouts.state_transition,
        f"cluster {cluster.name} to finish updating",
        sleep=ctx.sleep,
    )
    return ctx.client.get_cluster(cluster.id)


def wait_for_transition_error(
    ctx: ExecutionContext,
    cluster: ClusterResource,
    messages: tuple[str, ...] | list[str] | str,
    window: ConvergenceWindow,
) -> str:
    """Wait until the cluster reports a transitioning error containing any of ``messages``.

    Returns the full transitioning message.
    """
    accepted = (messages,) if isinstance(messages, str) else tuple(messages)

    latest = wait_for(
        lambda: ctx.client.get_cluster(cluster.id),
        lambda c: c.error_message_contains(*accepted),
        window,
        f"cluster {cluster.name} to report error {' | '.join(accepted)!r}",
        sleep=ctx.sleep,
    )
    return latest.transitioning_message


# --- versions ---


def list_versions(ctx: ExecutionContext) -> list[str]:
    """Versions the management API offers for this provider, minus those the UI hides."""
    versions = ctx.client.list_kubernetes_versions(
        ctx.provider.name, **ctx.provider.version_params(ctx.credential_id)
    )
    try:
        ui_range = ctx.client.get_setting(UI_VERSION_RANGE_SETTING)
    except SettingNotFound:
        # setting absent on older servers
        ui_range = ""
    return sort_versions(filter_ui_unsupported(versions, ui_range))


def get_k8s_version(ctx: ExecutionContext, for_upgrade: bool = False) -> str:
    """Version to provision with.

    ``DOWNSTREAM_K8S_MINOR_VERSION`` wins when set (newest offered patch of that
    minor, or the minor itself). Otherwise the newest version of the highest
    minor, or of the second highest for upgrade scenarios.
    """
    override = ctx.settings.downstream_k8s_minor_version
    versions = list_versions(ctx)
    if override:
        matching = [v for v in versions if minor_version(v) == minor_version(override)]
        return matching[0] if matching else override
    return default_k8s_version(versions, for_upgrade)


# --- version upgrades ---


def upgrade_cluster_kubernetes_version(
    ctx: ExecutionContext, cluster: ClusterResource, version: str, *, check: bool = True
) -> ClusterResource:
    """Upgrade the control plane only; node groups must keep their version."""
    current = _desired(cluster).kubernetes_version

    def edit(spec: ClusterSpec) -> None:
        spec.kubernetes_version = version

    cluster = update_cluster(ctx.client, cluster, edit)
    if not check:
        return cluster

    desired = _desired(cluster)
    expect_that(desired.kubernetes_version, version, "desired control plane version")
    for ng in desired.node_groups or []:
        expect_that(ng.version, current, f"desired version of node group {ng.name}")

    cluster = _poll_observed(
        ctx,
        cluster,
        lambda s: s.kubernetes_version,
        equal_to(version),
        ctx.timeouts.control_plane_upgrade,
        "control plane upgrade to appear in the upstream spec",
    )
    for ng in (cluster.observed or ClusterSpec()).node_groups or []:
        expect_that(ng.version, current, f"upstream version of node group {ng.name}")
    return cluster


def upgrade_node_kubernetes_version(
    ctx: ExecutionContext,
    cluster: ClusterResource,
    version: str,
    *,
    wait: bool = True,
    check: bool = True,
    exact: bool = True,
) -> ClusterResource:
    """Set every node group to ``version``.

    With ``exact=False`` the upstream check accepts any version at or above the
    target, for providers that pick the newest patch themselves.
    """

    def edit(spec: ClusterSpec) -> None:
        for ng in spec.node_groups or []:
            ng.version = version

    cluster = update_cluster(ctx.client, cluster, edit)
    for ng in _desired(cluster).node_groups or []:
        expect_that(ng.version, version, f"desired version of node group {ng.name}")

    if wait:
        cluster = wait_cluster_upgraded(ctx, cluster)

    if check:
        matcher = equal_to(version) if exact else version_at_least(version)
        cluster = _poll_observed(
            ctx,
            cluster,
            lambda s: all(ng.version is not None and matcher.matches(ng.version) for ng in s.node_groups or []),
            is_true(),
            ctx.timeouts.node_group_upgrade,
            "node group upgrade to appear in the upstream spec",
        )
    return cluster


# --- node groups ---


def _node_group_from_template(template: NodeGroupSpec, name: str, version: str | None) -> NodeGroupSpec:
    """Copy of ``template``, including provider-only keys, under a new name and version."""
    validate_node_group_name(name)
    return template.model_copy(update={"name": name, "version": version}, deep=True)


def add_node_groups_to_config(spec: ClusterSpec, count: int) -> ClusterSpec:
    """Replace the spec's node groups with ``count`` copies of the first one, each uniquely named."""
    if not spec.node_groups:
        msg = "Cluster config has no node group to use as a template"
        raise ValueError(msg)
    template = spec.node_groups[0]
    groups: list[NodeGroupSpec] = []
    for _ in range(count):
        name = append_random_string(template.name)
        validate_node_group_name(name)
        groups.insert(0, template.model_copy(update={"name": name}, deep=True))
    spec.node_groups = groups
    return spec


def add_node_group(
    ctx: ExecutionContext,
    cluster: ClusterResource,
    increase_by: int = 1,
    *,
    wait: bool = True,
    check: bool = True,
) -> ClusterResource:
    """Prepend ``increase_by`` node groups built from the provider template's first node group."""
    template_groups = ctx.test_config.template(ctx.provider.name).node_groups or []
    if not template_groups:
        msg = f"{ctx.provider.name} template has no node group to copy"
        raise ValueError(msg)
    current = list(_desired(cluster).node_groups or [])
    version = _desired(cluster).kubernetes_version
    new_groups = [
        _node_group_from_template(template_groups[0], append_random_string("ng"), version) for _ in range(increase_by)
    ]
    expected_names = [ng.name for ng in reversed(new_groups)] + [ng.name for ng in current]

    def edit(spec: ClusterSpec) -> None:
        spec.node_groups = [*reversed(new_groups), *(spec.node_groups or [])]

    cluster = update_cluster(ctx.client, cluster, edit)
    if check:
        expect_that(_desired(cluster).node_group_names, has_exact_elements(expected_names), "desired node groups")
    if wait:
        cluster = wait_cluster_upgraded(ctx, cluster)
    if check:
        cluster = _poll_observed(
            ctx,
            cluster,
            lambda s: s.node_groups or [],
            has_length(len(expected_names)),
            ctx.timeouts.node_group_count,
            "node group count to increase in the upstream spec",
        )
        expect_that(sorted(cluster.observed.node_group_names), sorted(expected_names), "upstream node groups")
    return cluster


def delete_node_group(
    ctx: ExecutionContext,
    cluster: ClusterResource,
    name: str | None = None,
    *,
    wait: bool = True,
    check: bool = True,
) -> ClusterResource:
    """Remove node group ``name``, or the last one when no name is given."""
    current = _desired(cluster).node_group_names
    target = name or current[-1]
    if target not in current:
        msg = f"Node group {target!r} not found in cluster {cluster.name}"
        raise KeyError(msg)
    expected_names = [n for n in current if n != target]

    def edit(spec: ClusterSpec) -> None:
        spec.node_groups = [ng for ng in spec.node_groups or [] if ng.name != target]

    cluster = update_cluster(ctx.client, cluster, edit)
    if check:
        expect_that(_desired(cluster).node_group_names, has_exact_elements(expected_names), "desired node groups")
    if wait:
        cluster = wait_cluster_upgraded(ctx, cluster)
    if check:
        cluster = _poll_observed(
            ctx,
            cluster,
            lambda s: s.node_groups or [],
            has_length(len(expected_names)),
            ctx.timeouts.node_group_count,
            "node group count to decrease in the upstream spec",
        )
        expect_that(sorted(cluster.observed.node_group_names), sorted(expected_names), "upstream node groups")
    return cluster


def scale_node_group(
    ctx: ExecutionContext,
    cluster: ClusterResource,
    node_count: int,
    *,
    wait: bool = True,
    check: bool = True,
) -> ClusterResource:
    """Set the desired size of every node group to ``node_count``.

    A node group that carries a max size gets ``node_count`` as its max too.
    """

    def edit(spec: ClusterSpec) -> None:
        for ng in spec.node_groups or []:
            ng.desired_size = node_count
            if ng.max_size is not None:
                ng.max_size = node_count

    cluster = update_cluster(ctx.client, cluster, edit)
    if check:
        for ng in _desired(cluster).node_groups or []:
            expect_that(ng.desired_size, node_count, f"desired size of node group {ng.name}")
    if wait:
        cluster = wait_cluster_upgraded(ctx, cluster)
    if check:
        cluster = _poll_observed(
            ctx,
            cluster,
            lambda s: [ng.desired_size for ng in s.node_groups or []],
            lambda sizes: bool(sizes) and all(size == node_count for size in sizes),
            ctx.timeouts.node_group_scale,
            f"node groups to scale to {node_count} in the upstream spec",
        )
    return cluster


# --- cluster settings ---


def update_logging(
    ctx: ExecutionContext, cluster: ClusterResource, logging_types: list[str], *, check: bool = True
) -> ClusterResource:
    validate_logging_types(logging_types)

    def edit(spec: ClusterSpec) -> None:
        spec.logging_types = list(logging_types)

    cluster = update_cluster(ctx.client, cluster, edit)
    if check:
        expect_that(_desired(cluster).logging_types, has_exact_elements(logging_types), "desired logging types")
        cluster = _poll_observed(
            ctx,
            cluster,
            lambda s: s.logging_types or [],
            has_exact_elements(logging_types),
            ctx.timeouts.metadata,
            "logging changes to appear in the upstream spec",
        )
    return cluster


def update_access(
    ctx: ExecutionContext,
    cluster: ClusterResource,
    public_access: bool,
    private_access: bool,
    *,
    check: bool = True,
) -> ClusterResource:
    """Set endpoint access. Disabling both is refused synchronously by the API."""
    cluster = update_cluster(ctx.client, cluster, {"public_access": public_access, "private_access": private_access})
    if check:
        desired = _desired(cluster)
        expect_that((desired.public_access, desired.private_access), (public_access, private_access), "desired access")
        cluster = _poll_observed(
            ctx,
            cluster,
            lambda s: (s.public_access, s.private_access),
            (public_access, private_access),
            ctx.timeouts.metadata,
            "access changes to appear in the upstream spec",
        )
    return cluster


def update_public_access_sources(
    ctx: ExecutionContext, cluster: ClusterResource, sources: list[str], *, check: bool = True
) -> ClusterResource:
    """Append CIDRs to the public access sources."""

    def edit(spec: ClusterSpec) -> None:
        spec.public_access_sources = [*(spec.public_access_sources or []), *sources]

    cluster = update_cluster(ctx.client, cluster, edit)
    if check:
        expect_that(_desired(cluster).public_access_sources, contains_all(sources), "desired public access sources")
        cluster = _poll_observed(
            ctx,
            cluster,
            lambda s: s.public_access_sources or [],
            contains_all(sources),
            ctx.timeouts.metadata,
            "public access sources to appear in the upstream spec",
        )
    return cluster


def update_cluster_tags(
    ctx: ExecutionContext, cluster: ClusterResource, tags: dict[str, str], *, check: bool = True
) -> ClusterResource:
    """Replace the cluster tags, which is also how tags are removed."""
    cluster = update_cluster(ctx.client, cluster, {"tags": dict(tags)})
    if check:
        expect_that(_desired(cluster).tags, has_entries(tags), "desired cluster tags")
        cluster = _poll_observed(
            ctx,
            cluster,
            lambda s: s.tags or {},
            mapping_equal_to(tags),
            ctx.timeouts.metadata,
            "cluster tag changes to appear in the upstream spec",
        )
    return cluster


def update_node_group_metadata(
    ctx: ExecutionContext,
    cluster: ClusterResource,
    tags: dict[str, str],
    labels: dict[str, str],
    *,
    check: bool = True,
) -> ClusterResource:
    """Replace tags and labels on every node group."""

    def edit(spec: ClusterSpec) -> None:
        for ng in spec.node_groups or []:
            ng.tags = dict(tags)
            ng.labels = dict(labels)

    cluster = update_cluster(ctx.client, cluster, edit)
    if check:
        for ng in _desired(cluster).node_groups or []:
            expect_that(ng.tags, has_entries(tags), f"desired tags of node group {ng.name}")
            expect_that(ng.labels, has_entries(labels), f"desired labels of node group {ng.name}")
        cluster = _poll_observed(
            ctx,
            cluster,
            lambda s: any((ng.tags or {}) == tags and (ng.labels or {}) == labels for ng in s.node_groups or []),
            is_true(),
            ctx.timeouts.metadata,
            "node group metadata changes to appear in the upstream spec",
        )
    return cluster


# --- downstream readiness ---


def cluster_is_ready_checks(
    ctx: ExecutionContext, cluster: ClusterResource, directory: str | Path | None = None
) -> None:
    """Cluster active, control plane version reported, every node Ready, kube-system healthy."""
    cluster = ctx.client.get_cluster(cluster.id)
    expect_that(cluster.state, "active", f"state of cluster {cluster.name}")
    desired_version = _desired(cluster).kubernetes_version
    if desired_version:
        expect_that(
            cluster.version,
            lambda v: bool(v) and minor_version(v) == minor_version(desired_version),
            f"reported version of cluster {cluster.name}",
        )

    kubeconfig = write_kubeconfig(ctx.client.generate_kubeconfig(cluster.id), cluster.name, directory)
    try:
        downstream = DownstreamClient(kubeconfig, cluster.name)
        wait_for(
            downstream.all_nodes_ready,
            is_true(),
            ctx.timeouts.state_transition,
            f"all nodes of {cluster.name} to be Ready",
            sleep=ctx.sleep,
        )
        wait_for(
            lambda: downstream.get_unhealthy_pods("kube-system"),
            has_length(0),
            ctx.timeouts.metadata,
            f"kube-system pods of {cluster.name} to be healthy",
            sleep=ctx.sleep,
        )
    finally:
        kubeconfig.unlink(missing_ok=True)
