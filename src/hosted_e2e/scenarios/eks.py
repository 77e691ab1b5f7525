"""EKS P1 scenarios: invalid configurations, upgrades, logging, metadata, and provider-side sync."""

from __future__ import annotations

from hosted_e2e import cluster_ops as ops
from hosted_e2e.context import ExecutionContext
from hosted_e2e.convergence import contains_all, equal_to, expect_that, is_true, wait_for
from hosted_e2e.models import ClusterResource, ClusterSpec
from hosted_e2e.scenarios.base import ClusterFixture, Scenario, expect_rejection, register

NO_NODE_GROUP_MESSAGE = "Cluster must have at least one managed nodegroup or one self-managed node"
# Operator versions word the duplicate-name error differently.
DUPLICATE_NODE_GROUP_MESSAGES = ("is not unique within the cluster", "NodePool names must be unique")
VERSION_MISMATCH_MESSAGE = "version must match cluster"
SECURITY_GROUPS_MESSAGE = "subnets must be provided if security groups are provided"
ACCESS_DISABLED_MESSAGE = "public access, private access, or both must be enabled"
INVALID_CIDR_MESSAGE = "InvalidParameterException: The following CIDRs are invalid in publicAccessCidrs"
INCOMPATIBLE_VERSION_MESSAGE = "not compatible"

ALL_LOGGING_TYPES = ["api", "audit", "authenticator", "controllerManager", "scheduler"]
GPU_NODE_GROUP = "gpuenabled"
GPU_AMI_TYPE = "AL2_x86_64_GPU"


def _cluster(fixture: ClusterFixture) -> ClusterResource:
    if fixture.cluster is None:
        msg = "Scenario requires a provisioned cluster"
        raise RuntimeError(msg)
    return fixture.cluster


def _observed_node_group_versions(ctx: ExecutionContext, cluster: ClusterResource) -> list[str | None]:
    observed = ctx.client.get_cluster(cluster.id).observed or ClusterSpec()
    return [ng.version for ng in observed.node_groups or []]


# --- invalid configurations ---


def no_node_groups(ctx: ExecutionContext, fixture: ClusterFixture) -> None:
    def customize(spec: ClusterSpec) -> None:
        spec.node_groups = None

    fixture.cluster = ops.create_hosted_cluster(ctx, fixture.k8s_version, customize)
    ops.wait_for_transition_error(ctx, fixture.cluster, NO_NODE_GROUP_MESSAGE, ctx.timeouts.missing_node_group_error)


def duplicate_node_group_names(ctx: ExecutionContext, fixture: ClusterFixture) -> None:
    def customize(spec: ClusterSpec) -> None:
        ops.add_node_groups_to_config(spec, 2)
        for ng in spec.node_groups or []:
            ng.name = "duplicate"

    fixture.cluster = ops.create_hosted_cluster(ctx, fixture.k8s_version, customize)
    ops.wait_for_transition_error(ctx, fixture.cluster, DUPLICATE_NODE_GROUP_MESSAGES, ctx.timeouts.validation_error)


def mismatched_node_group_version(ctx: ExecutionContext, fixture: ClusterFixture) -> None:
    versions = ops.list_versions(ctx)
    if len(versions) < 2:
        msg = f"Need two Kubernetes versions to build a mismatch, got {versions}"
        raise AssertionError(msg)
    control_plane_version, node_group_version = versions[1], versions[0]

    def customize(spec: ClusterSpec) -> None:
        for ng in spec.node_groups or []:
            ng.version = node_group_version

    fixture.cluster = ops.create_hosted_cluster(ctx, control_plane_version, customize)
    ops.wait_for_transition_error(ctx, fixture.cluster, VERSION_MISMATCH_MESSAGE, ctx.timeouts.validation_error)


def security_groups_without_subnets(ctx: ExecutionContext, fixture: ClusterFixture) -> None:
    groups = [ops.append_random_string("sg"), ops.append_random_string("sg")]

    def customize(spec: ClusterSpec) -> None:
        spec.security_groups = groups
        spec.subnets = None

    def create() -> None:
        fixture.cluster = ops.create_hosted_cluster(ctx, fixture.k8s_version, customize)

    expect_rejection(create, SECURITY_GROUPS_MESSAGE)


def invalid_access_settings(ctx: ExecutionContext, fixture: ClusterFixture) -> None:
    """An invalid CIDR fails asynchronously; disabling both endpoints fails synchronously."""
    cluster = _cluster(fixture)
    ops.update_public_access_sources(ctx, cluster, [ops.append_random_string("invalid")], check=False)
    ops.wait_for_transition_error(ctx, cluster, INVALID_CIDR_MESSAGE, ctx.timeouts.invalid_endpoint_error)

    expect_rejection(lambda: ops.update_access(ctx, cluster, False, False, check=False), ACCESS_DISABLED_MESSAGE)


def gpu_node_group(ctx: ExecutionContext, fixture: ClusterFixture) -> None:
    def customize(spec: ClusterSpec) -> None:
        groups = list(spec.node_groups or [])
        gpu = groups[0].model_copy(
            update={"name": GPU_NODE_GROUP, "gpu": True, "instance_type": "p2.xlarge"}, deep=True
        )
        spec.node_groups = [*groups, gpu]

    fixture.cluster = ops.create_hosted_cluster(ctx, fixture.k8s_version, customize, wait=True)
    ops.cluster_is_ready_checks(ctx, fixture.cluster)
    ami = ctx.provider.verify(ctx.cluster_name, "nodegroup", "[0].ImageID", "--name", GPU_NODE_GROUP)
    expect_that(ami, GPU_AMI_TYPE, "AMI type of the GPU node group")


# --- upgrades ---


def node_group_version_above_control_plane(ctx: ExecutionContext, fixture: ClusterFixture) -> None:
    cluster = ops.upgrade_node_kubernetes_version(
        ctx, _cluster(fixture), fixture.upgrade_to_version, wait=False, check=False
    )
    ops.wait_for_transition_error(ctx, cluster, INCOMPATIBLE_VERSION_MESSAGE, ctx.timeouts.validation_error)


def upgrade_control_plane_and_replace_node_group(ctx: ExecutionContext, fixture: ClusterFixture) -> None:
    upgrade_to = fixture.upgrade_to_version
    cluster = ops.upgrade_cluster_kubernetes_version(ctx, _cluster(fixture), upgrade_to)

    template = (ctx.test_config.template(ctx.provider.name).node_groups or [])[0]
    new_group = template.model_copy(update={"name": ops.append_random_string("ng")}, deep=True)

    def replace_node_groups(spec: ClusterSpec) -> None:
        spec.node_groups = [new_group]

    cluster = ops.update_cluster(ctx.client, cluster, replace_node_groups)
    expect_that((cluster.desired or ClusterSpec()).node_group_names, [new_group.name], "desired node groups")

    ops.wait_cluster_upgraded(ctx, cluster)
    wait_for(
        lambda: _observed_node_group_versions(ctx, cluster),
        lambda versions: bool(versions) and all(v == upgrade_to for v in versions),
        ctx.timeouts.new_node_group_version,
        "version of the new node group to appear in the upstream spec",
        sleep=ctx.sleep,
    )


def update_while_updating(ctx: ExecutionContext, fixture: ClusterFixture) -> None:
    """A second change submitted mid-upgrade must compose with the pending one."""
    upgrade_to = fixture.upgrade_to_version
    logging_types = ["api"]
    cluster = ops.upgrade_cluster_kubernetes_version(ctx, _cluster(fixture), upgrade_to, check=False)
    expect_that((cluster.desired or ClusterSpec()).kubernetes_version, upgrade_to, "desired control plane version")

    ops.wait_cluster_in_upgrade(ctx, cluster)
    cluster = ops.update_logging(ctx, cluster, logging_types, check=False)
    expect_that((cluster.desired or ClusterSpec()).logging_types, logging_types, "desired logging types")
    expect_that((cluster.desired or ClusterSpec()).kubernetes_version, upgrade_to, "desired control plane version")

    ops.wait_cluster_upgraded(ctx, cluster)

    def observed() -> tuple[list[str], str | None]:
        upstream = ctx.client.get_cluster(cluster.id).observed or ClusterSpec()
        return upstream.logging_types or [], upstream.kubernetes_version

    wait_for(
        observed,
        lambda s: contains_all(logging_types).matches(s[0]) and s[1] == upgrade_to,
        ctx.timeouts.update_while_updating,
        "logging and version changes to appear in the upstream spec",
        sleep=ctx.sleep,
    )


def _provider_control_plane_upgrade(ctx: ExecutionContext, cluster: ClusterResource, upgrade_to: str) -> None:
    ctx.provider.cli.upgrade_cluster(ctx.provider.region, ctx.cluster_name, upgrade_to)
    wait_for(
        lambda: (ctx.client.get_cluster(cluster.id).observed or ClusterSpec()).kubernetes_version,
        equal_to(upgrade_to),
        ctx.timeouts.provider_sync,
        "provider-side control plane upgrade to appear in the upstream spec",
        sleep=ctx.sleep,
    )


def sync_upgrade_from_provider(ctx: ExecutionContext, fixture: ClusterFixture) -> None:
    """Upgrade through eksctl and wait for the management API to pick the change up."""
    cluster = _cluster(fixture)
    upgrade_to = fixture.upgrade_to_version
    region = ctx.provider.region
    cli = ctx.provider.cli

    _provider_control_plane_upgrade(ctx, cluster, upgrade_to)
    cluster = ctx.client.get_cluster(cluster.id)
    if not ctx.settings.is_import:
        # imported clusters carry an empty desired spec
        for ng in (cluster.desired or ClusterSpec()).node_groups or []:
            expect_that(ng.version, fixture.k8s_version, f"desired version of node group {ng.name}")

    for name in (cluster.observed or ClusterSpec()).node_group_names:
        cli.upgrade_node_group(region, ctx.cluster_name, name, upgrade_to)
    wait_for(
        lambda: all(
            ng.version == upgrade_to
            for ng in (ctx.client.get_cluster(cluster.id).observed or ClusterSpec()).node_groups or []
        ),
        is_true(),
        ctx.timeouts.provider_sync,
        "provider-side node group upgrade to appear in the upstream spec",
        sleep=ctx.sleep,
    )
    if not ctx.settings.is_import:
        desired = ctx.client.get_cluster(cluster.id).desired or ClusterSpec()
        expect_that(desired.kubernetes_version, upgrade_to, "desired control plane version")
        for ng in desired.node_groups or []:
            expect_that(ng.version, upgrade_to, f"desired version of node group {ng.name}")


def sync_changes_to_provider(ctx: ExecutionContext, fixture: ClusterFixture) -> None:
    """Edits submitted after an eksctl control plane upgrade must show up in eksctl's view of the cluster."""
    cluster = _cluster(fixture)
    upgrade_to = fixture.upgrade_to_version
    name = ctx.cluster_name

    _provider_control_plane_upgrade(ctx, cluster, upgrade_to)
    cluster = ctx.client.get_cluster(cluster.id)
    node_groups = (cluster.desired or ClusterSpec()).node_groups or []
    for ng in node_groups:
        expect_that(ng.version, fixture.k8s_version, f"desired version of node group {ng.name}")
    group_count = len(node_groups)
    scaled_to = (node_groups[0].desired_size or 1) + 1

    cluster = ops.scale_node_group(ctx, cluster, scaled_to)
    expect_that(ctx.provider.verify(name, "cluster", "[0].Version"), upgrade_to, "EKS control plane version")
    expect_that(ctx.provider.verify(name, "nodegroup", "length(@)"), group_count, "EKS node group count")
    expect_that(
        ctx.provider.verify(name, "nodegroup", "[].DesiredCapacity"),
        lambda sizes: bool(sizes) and all(size == scaled_to for size in sizes),
        "EKS node group desired capacity",
    )

    cluster = ops.add_node_group(ctx, cluster)
    expect_that((cluster.desired or ClusterSpec()).kubernetes_version, upgrade_to, "desired control plane version")
    expect_that(ctx.provider.verify(name, "cluster", "[0].Version"), upgrade_to, "EKS control plane version")
    expect_that(ctx.provider.verify(name, "nodegroup", "length(@)"), group_count + 1, "EKS node group count")

    ops.update_logging(ctx, cluster, ALL_LOGGING_TYPES)
    expect_that(ctx.provider.verify(name, "nodegroup", "length(@)"), group_count + 1, "EKS node group count")
    expect_that(
        ctx.provider.verify(name, "cluster", "[0].Logging.ClusterLogging[?Enabled].Types[]"),
        contains_all(ALL_LOGGING_TYPES),
        "EKS enabled logging types",
    )


# --- settings and metadata ---


def update_logging_types(ctx: ExecutionContext, fixture: ClusterFixture) -> None:
    cluster = ops.update_logging(ctx, _cluster(fixture), ALL_LOGGING_TYPES)
    ops.update_logging(ctx, cluster, ALL_LOGGING_TYPES[:1])


def update_tags_and_labels(ctx: ExecutionContext, fixture: ClusterFixture) -> None:
    tags = {"foo": "bar", "testCaseID": "144-97-143"}
    labels = {"testCaseID": "142-99-145"}
    cluster = _cluster(fixture)

    original_tags = dict((cluster.desired or ClusterSpec()).tags or {})
    cluster = ops.update_cluster_tags(ctx, cluster, {**original_tags, **tags})
    cluster = ops.update_cluster_tags(ctx, cluster, original_tags)
    for key, value in tags.items():
        expect_that(
            ((cluster.desired or ClusterSpec()).tags or {}).get(key),
            lambda v, value=value: v != value,
            f"removed cluster tag {key}",
        )

    first = (cluster.desired or ClusterSpec()).node_groups[0]
    original_ng_tags = dict(first.tags or {})
    original_ng_labels = dict(first.labels or {})
    cluster = ops.update_node_group_metadata(
        ctx, cluster, {**original_ng_tags, **tags}, {**original_ng_labels, **labels}
    )
    cluster = ops.update_node_group_metadata(ctx, cluster, original_ng_tags, original_ng_labels)
    for ng in (cluster.desired or ClusterSpec()).node_groups or []:
        for key, value in tags.items():
            expect_that((ng.tags or {}).get(key), lambda v, value=value: v != value, f"removed tag {key} on {ng.name}")
        for key, value in labels.items():
            expect_that(
                (ng.labels or {}).get(key), lambda v, value=value: v != value, f"removed label {key} on {ng.name}"
            )


SCENARIOS = [
    Scenario(141, "should error out to provision a cluster with no nodegroups", no_node_groups, "eks", provision=False),
    Scenario(
        255,
        "should fail to provision a cluster with duplicate nodegroup names",
        duplicate_node_group_names,
        "eks",
        provision=False,
    ),
    Scenario(
        127,
        "should fail to create a cluster with different versions on control plane and nodegroup",
        mismatched_node_group_version,
        "eks",
        provision=False,
    ),
    Scenario(
        120,
        "should fail to create a cluster with only security groups",
        security_groups_without_subnets,
        "eks",
        provision=False,
    ),
    Scenario(
        147,
        "should fail to update both public/private access as false and invalid values of the access",
        invalid_access_settings,
        "eks",
    ),
    Scenario(274, "should provision with the GPU feature enabled", gpu_node_group, "eks", provision=False),
    Scenario(
        126,
        "should fail to upgrade the node group version above the control plane",
        node_group_version_above_control_plane,
        "eks",
        is_upgrade=True,
    ),
    Scenario(
        125,
        "should upgrade the control plane and replace the node groups",
        upgrade_control_plane_and_replace_node_group,
        "eks",
        is_upgrade=True,
    ),
    Scenario(
        148,
        "should update a cluster while it is still in updating state",
        update_while_updating,
        "eks",
        is_upgrade=True,
    ),
    Scenario(128, "should update cluster logging types", update_logging_types, "eks"),
    Scenario(131, "should add and remove tags and labels", update_tags_and_labels, "eks"),
    Scenario(
        None,
        "should sync a control plane and node group upgrade done through eksctl",
        sync_upgrade_from_provider,
        "eks",
        is_upgrade=True,
        supports_import=True,
    ),
    Scenario(
        None,
        "should push changes made through the API to EKS after an eksctl upgrade",
        sync_changes_to_provider,
        "eks",
        is_upgrade=True,
    ),
]

register(*SCENARIOS)
