"""pytest integration: markers, session fixtures, and case-id reporting for scenario tests.

Enable with ``pytest_plugins = ["hosted_e2e.pytest_plugin"]`` in the root conftest.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator

import pytest

from hosted_e2e.clients import load_management_client
from hosted_e2e.clients.management import ManagementClient
from hosted_e2e.config import CONFIG_ENV_VAR, E2ESettings, TestConfig, get_settings, load_test_config
from hosted_e2e.context import ExecutionContext, build_context
from hosted_e2e.errors import ScenarioSkipped
from hosted_e2e.log_setup import configure_logging
from hosted_e2e.providers import get_provider
from hosted_e2e.reporting import CaseReporter, CaseResult
from hosted_e2e.scenarios import ClusterFixture, Scenario, run_scenario


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "e2e: runs against a live management API and cloud provider")
    config.addinivalue_line("markers", "upgrade: Kubernetes upgrade scenario; skipped when SKIP_UPGRADE_TESTS is set")
    configure_logging()


@pytest.fixture(scope="session")
def e2e_settings() -> E2ESettings:
    return get_settings()


@pytest.fixture(scope="session")
def e2e_test_config(e2e_settings: E2ESettings) -> TestConfig:
    if not e2e_settings.config_path:
        pytest.skip(f"{CONFIG_ENV_VAR} is not set")
    return load_test_config(e2e_settings.config_path)


@pytest.fixture(scope="session")
def management_client(e2e_test_config: TestConfig) -> Iterator[ManagementClient]:
    client = load_management_client(e2e_test_config.rancher)
    try:
        yield client
    finally:
        client.close()


@pytest.fixture
def case_reporter(record_property: Callable[[str, object], None]) -> CaseReporter:
    """Reporter that also stores each case id as a ``qase_id`` property in the JUnit report."""

    def sink(result: CaseResult) -> None:
        if result.case_id is not None:
            record_property("qase_id", result.case_id)

    return CaseReporter(sink=sink)


@pytest.fixture
def execution_context(
    e2e_settings: E2ESettings,
    e2e_test_config: TestConfig,
    management_client: ManagementClient,
    case_reporter: CaseReporter,
) -> ExecutionContext:
    provider = get_provider(e2e_settings)
    return build_context(e2e_settings, management_client, provider, e2e_test_config, reporter=case_reporter)


@pytest.fixture
def run_case(execution_context: ExecutionContext) -> Callable[[Scenario], ClusterFixture]:
    """Run a scenario, turning ``ScenarioSkipped`` into a pytest skip."""

    def run(scenario: Scenario) -> ClusterFixture:
        try:
            return run_scenario(execution_context, scenario)
        except ScenarioSkipped as err:
            pytest.skip(str(err))

    return run
