"""
Test-run wiring for the teleproxy harness.

The whole test loop runs while the machine lock is held. Inside it the
environment is checked once and, when cluster scenarios can run, the
manifests are applied to the test cluster before the first test.
"""

from typing import Optional

import pytest

from cluster import ClusterProvisioner, check_environment
from harness_config import HarnessConfig
from health_poller import HealthPoller
from machine_lock import get_machine_lock
from scenario_report import ProvisioningError, ScenarioReport

skip_reason_key = pytest.StashKey[Optional[str]]()


@pytest.hookimpl(hookwrapper=True)
def pytest_runtestloop(session):
    config = HarnessConfig.from_env()

    with get_machine_lock(config):
        reason = check_environment(config)
        if reason is None:
            try:
                ClusterProvisioner(config).apply()
            except ProvisioningError as e:
                pytest.exit(f"cluster provisioning failed: {e}\n{e.output}", returncode=3)
        session.config.stash[skip_reason_key] = reason
        yield


@pytest.fixture(scope="session")
def harness_config() -> HarnessConfig:
    return HarnessConfig.from_env()


@pytest.fixture(scope="session")
def environment_unavailable(request) -> Optional[str]:
    """Why cluster scenarios are skipped, or None when they can run."""
    return request.config.stash.get(skip_reason_key, None)


@pytest.fixture
def requires_cluster(environment_unavailable):
    if environment_unavailable is not None:
        pytest.skip(environment_unavailable)


@pytest.fixture
def report(request) -> ScenarioReport:
    return ScenarioReport(request.node.name)


@pytest.fixture
def poller(harness_config) -> HealthPoller:
    return HealthPoller.from_config(harness_config)
