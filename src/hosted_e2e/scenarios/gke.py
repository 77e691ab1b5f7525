"""GKE P0 scenarios for zonal and regional clusters."""

from __future__ import annotations

from hosted_e2e import cluster_ops as ops
from hosted_e2e.context import ExecutionContext
from hosted_e2e.convergence import expect_that, version_at_least
from hosted_e2e.models import ClusterSpec
from hosted_e2e.scenarios.base import ClusterFixture, Scenario, register


def _gcloud_pool_count(ctx: ExecutionContext) -> int:
    return ctx.provider.verify(ctx.cluster_name, "nodepool", "length(@)")


def node_pool_checks(ctx: ExecutionContext, fixture: ClusterFixture) -> None:
    """Scale up and down, then add and delete a node pool, checking gcloud agrees on the pool count."""
    cluster = fixture.cluster
    ops.cluster_is_ready_checks(ctx, cluster)

    initial = (cluster.desired or ClusterSpec()).node_groups[0].desired_size or 1
    cluster = ops.scale_node_group(ctx, cluster, initial + 1)
    cluster = ops.scale_node_group(ctx, cluster, initial)

    pool_count = len((cluster.desired or ClusterSpec()).node_groups or [])
    cluster = ops.add_node_group(ctx, cluster)
    expect_that(_gcloud_pool_count(ctx), pool_count + 1, "gcloud node pool count")

    cluster = ops.delete_node_group(ctx, cluster)
    expect_that(_gcloud_pool_count(ctx), pool_count, "gcloud node pool count")


def upgrade_checks(ctx: ExecutionContext, fixture: ClusterFixture) -> None:
    """Upgrade the control plane, then the node pools; GKE may settle on a newer patch."""
    cluster = ops.upgrade_cluster_kubernetes_version(ctx, fixture.cluster, fixture.upgrade_to_version)
    cluster = ops.upgrade_node_kubernetes_version(ctx, cluster, fixture.upgrade_to_version, exact=False)
    version = ctx.provider.verify(ctx.cluster_name, "cluster", "currentMasterVersion")
    expect_that(version, version_at_least(fixture.upgrade_to_version), "gcloud control plane version")


SCENARIOS = [
    Scenario(
        8,
        "should successfully provision the zonal cluster & add, delete, scale nodepool",
        node_pool_checks,
        "gke",
    ),
    Scenario(
        11,
        "should be able to upgrade k8s version of the zonal provisioned cluster",
        upgrade_checks,
        "gke",
        is_upgrade=True,
    ),
    Scenario(
        300,
        "should successfully provision the regional cluster & add, delete, scale nodepool",
        node_pool_checks,
        "gke",
        options={"regional": True},
    ),
    Scenario(
        301,
        "should be able to upgrade k8s version of the regional provisioned cluster",
        upgrade_checks,
        "gke",
        is_upgrade=True,
        options={"regional": True},
    ),
]

register(*SCENARIOS)
