"""Scenario catalogue. Importing this package registers every provider's scenarios."""

from __future__ import annotations

from hosted_e2e.scenarios import eks, gke
from hosted_e2e.scenarios.base import (
    ClusterFixture,
    Scenario,
    expect_rejection,
    get_scenario,
    register,
    run_scenario,
    scenarios_for,
)

__all__ = [
    "ClusterFixture",
    "Scenario",
    "eks",
    "expect_rejection",
    "get_scenario",
    "gke",
    "register",
    "run_scenario",
    "scenarios_for",
]
