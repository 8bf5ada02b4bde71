"""
Pytest configuration and fixtures for StageGate tests.
"""

import sys

import pytest

from stagegate.config.settings import GatesConfig, GateSuiteConfig
from stagegate.models import DeployableRevision, Environment
from stagegate.pipeline import (
    GateRunner,
    PipelineController,
    RollbackResolver,
    ServiceUpdater,
    StackDeployer,
)
from stagegate.platform import InMemoryPlatform, StackBinding

STAGING_ENDPOINT = "http://stg.example/"
PRODUCTION_ENDPOINT = "http://prod.example/"


def python_suite(code: str) -> GateSuiteConfig:
    """A gate suite that runs ``code`` with the current interpreter."""
    return GateSuiteConfig(command=[sys.executable, "-c", code], timeout_seconds=30)


PASSING_SUITE = "import sys; sys.exit(0)"
FAILING_SUITE = (
    "print('FAILED tests/smoke/test_home.py::test_home - AssertionError'); "
    "raise SystemExit(1)"
)


@pytest.fixture(autouse=True)
def audit_log(tmp_path, monkeypatch):
    """Keep audit entries inside the test's temp directory."""
    path = tmp_path / "audit.jsonl"
    monkeypatch.setattr("stagegate.audit.AUDIT_LOG_PATH", path)
    return path


@pytest.fixture
def staging_env():
    return Environment(
        name="staging",
        stack_name="app-staging",
        template="infrastructure/service.yml",
        cluster="stg-cluster",
        service="app",
        family="app-staging",
        execution_role_ref="arn:aws:iam::000000000000:role/app-exec",
        network_placement_refs=["subnet-a", "subnet-b"],
    )


@pytest.fixture
def production_env():
    return Environment(
        name="production",
        stack_name="app-production",
        template="infrastructure/service.yml",
        cluster="prod-cluster",
        service="app",
        family="app-production",
        execution_role_ref="arn:aws:iam::000000000000:role/app-exec",
        network_placement_refs=["subnet-c"],
    )


@pytest.fixture
def platform(staging_env, production_env):
    """
    In-memory platform with both stacks bound.

    Production already runs revision 7 of its family.
    """
    memory = InMemoryPlatform(ramp_step=1)
    for env, endpoint in (
        (staging_env, STAGING_ENDPOINT),
        (production_env, PRODUCTION_ENDPOINT),
    ):
        memory.bind_stack(
            env.stack_name,
            StackBinding(
                cluster=env.cluster,
                service=env.service,
                family=env.family,
                endpoint=endpoint,
            ),
        )
    memory.seed_revisions(
        production_env.family, [f"registry.example/app@sha256:{i:064x}" for i in range(1, 8)]
    )
    memory.run_service(production_env.cluster, production_env.service, production_env.family, 7)
    return memory


@pytest.fixture
def artifact():
    return DeployableRevision(reference="sha:abc123", commit_sha="abc123")


@pytest.fixture
def gates_config():
    return GatesConfig(
        settle_seconds=0,
        suites={
            "acceptance": python_suite(PASSING_SUITE),
            "smoke": python_suite(PASSING_SUITE),
        },
    )


@pytest.fixture
def make_controller(platform, staging_env, production_env, gates_config):
    """Factory for a controller wired to the in-memory platform with zero delays."""

    def _make(gate_runner=None, rollback_resolver=None, store=None):
        return PipelineController(
            staging=staging_env,
            production=production_env,
            stack_deployer=StackDeployer(platform),
            service_updater=ServiceUpdater(platform, interval_seconds=0, max_attempts=10),
            gate_runner=gate_runner or GateRunner(gates_config),
            rollback_resolver=rollback_resolver or RollbackResolver(platform),
            store=store,
        )

    return _make
