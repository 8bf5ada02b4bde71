"""
Tests for the pipeline controller.
"""

import json
import sys

import pytest
from unittest.mock import AsyncMock, Mock

from stagegate.config.settings import GatesConfig, GateSuiteConfig
from stagegate.errors import RevisionOrderError
from stagegate.models import GateResult, ServiceState, TriggerEvent
from stagegate.pipeline import GateRunner, RunStore
from stagegate.stages import PipelineState

FAILING_SMOKE = GateSuiteConfig(
    command=[
        sys.executable,
        "-c",
        "print('FAILED tests/smoke/test_home.py::test_home - AssertionError'); raise SystemExit(1)",
    ]
)


def gate_runner(acceptance: bool = True, smoke: bool = True) -> Mock:
    """Gate runner double with fixed outcomes per suite."""

    async def run_suite(suite_id, endpoint):
        passed = acceptance if suite_id == "acceptance" else smoke
        return GateResult(
            suite_id=suite_id,
            passed=passed,
            details={"endpoint": endpoint, "exit_code": 0 if passed else 1},
        )

    runner = Mock()
    runner.run_suite = AsyncMock(side_effect=run_suite)
    return runner


def stages(run):
    return [(r.stage, r.status) for r in run.stage_results]


class TestPipelineController:
    """Test stage sequencing and failure handling."""

    @pytest.mark.asyncio
    async def test_successful_promotion(self, make_controller, platform, artifact, production_env):
        run = await make_controller().run(artifact, TriggerEvent(message="Add search"))

        assert run.state == PipelineState.SUCCEEDED
        assert run.outcome == "succeeded"
        assert stages(run) == [(stage, "success") for stage in (
            PipelineState.STAGING_DEPLOY,
            PipelineState.STAGING_UPDATE,
            PipelineState.STAGING_GATE,
            PipelineState.PROD_DEPLOY,
            PipelineState.PROD_UPDATE,
            PipelineState.PROD_GATE,
        )]
        assert production_env.running_revision == 8
        assert production_env.is_converged
        assert run.result_for(PipelineState.PROD_DEPLOY).outputs["endpoint"] == "http://prod.example/"

    @pytest.mark.asyncio
    async def test_staging_gate_failure_blocks_production(self, make_controller, platform, artifact):
        """Test that a failed acceptance gate means production is never touched."""
        controller = make_controller(gate_runner=gate_runner(acceptance=False))

        run = await controller.run(artifact)

        assert run.state == PipelineState.FAILED
        assert run.result_for(PipelineState.STAGING_GATE).error == "GateFailure"
        assert run.result_for(PipelineState.PROD_DEPLOY).status == "skipped"
        assert PipelineState.PROD_DEPLOY not in run.executed_stages()
        assert [c for c in platform.calls_to("apply_stack") if c[1] == "app-production"] == []
        assert platform.latest_revision("app-production") == 7

    @pytest.mark.asyncio
    async def test_prod_gate_failure_without_intent(self, make_controller, platform, artifact):
        """Test that production keeps the new revision when no rollback was requested."""
        resolver = Mock()
        resolver.resolve_previous = AsyncMock()
        controller = make_controller(gate_runner=gate_runner(smoke=False), rollback_resolver=resolver)

        run = await controller.run(artifact, TriggerEvent(message="Add search"))

        assert run.state == PipelineState.FAILED
        assert run.result_for(PipelineState.PROD_GATE).status == "failed"
        assert run.result_for(PipelineState.ROLLING_BACK) is None
        resolver.resolve_previous.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_prod_gate_failure_with_intent(self, make_controller, platform, artifact, production_env):
        controller = make_controller(gate_runner=gate_runner(smoke=False))

        run = await controller.run(artifact, TriggerEvent(rollback_intent=True))

        assert run.state == PipelineState.ROLLED_BACK
        assert run.outcome == "rolled_back"
        rollback = run.result_for(PipelineState.ROLLING_BACK)
        assert rollback.status == "success"
        assert rollback.outputs["copied_from_revision"] == 7
        assert rollback.outputs["rollback_revision"] == 9
        assert production_env.running_revision == 9

    @pytest.mark.asyncio
    async def test_rollback_without_prior_revision(
        self, make_controller, platform, artifact, production_env
    ):
        """Test that a first-ever production revision cannot be rolled back."""
        platform.revisions.pop(production_env.family)
        platform.services[(production_env.cluster, production_env.service)].deployments = []
        controller = make_controller(gate_runner=gate_runner(smoke=False))

        run = await controller.run(artifact, TriggerEvent(message="Launch [rollback]"))

        assert run.state == PipelineState.FAILED
        rollback = run.result_for(PipelineState.ROLLING_BACK)
        assert rollback.status == "failed"
        assert rollback.error == "NoPriorRevisionError"
        prod_updates = [c for c in platform.calls_to("update_service") if c[1] == "prod-cluster"]
        assert len(prod_updates) == 1  # PROD_UPDATE only
        assert platform.calls_to("register_revision") == []

    @pytest.mark.asyncio
    async def test_stack_failure_skips_remaining_stages(self, make_controller, platform, artifact):
        platform.fail_stack("app-staging", "Template format error")

        run = await make_controller().run(artifact)

        assert run.state == PipelineState.FAILED
        assert stages(run)[0] == (PipelineState.STAGING_DEPLOY, "failed")
        assert all(status == "skipped" for _, status in stages(run)[1:])
        assert len(run.stage_results) == 6

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_without_rollback(self, make_controller, artifact):
        runner = Mock()
        runner.run_suite = AsyncMock(side_effect=RuntimeError("boom"))
        controller = make_controller(gate_runner=runner)

        run = await controller.run(artifact, TriggerEvent(rollback_intent=True))

        assert run.state == PipelineState.FAILED
        assert run.result_for(PipelineState.STAGING_GATE).error == "RuntimeError"

    @pytest.mark.asyncio
    async def test_abort_between_stages(self, make_controller, artifact):
        """Test that an abort lands before the next stage and skips the rest."""
        controller = make_controller()

        async def abort_after_acceptance(suite_id, endpoint):
            controller.request_abort("run-abort")
            return GateResult(suite_id=suite_id, passed=True)

        controller.gate_runner = Mock()
        controller.gate_runner.run_suite = AsyncMock(side_effect=abort_after_acceptance)

        run = await controller.run(artifact, run_id="run-abort")

        assert run.state == PipelineState.FAILED
        assert "Aborted before PROD_DEPLOY" in run.message
        assert run.result_for(PipelineState.STAGING_GATE).status == "success"
        assert [s for s, status in stages(run) if status == "skipped"] == [
            PipelineState.PROD_DEPLOY,
            PipelineState.PROD_UPDATE,
            PipelineState.PROD_GATE,
        ]

    @pytest.mark.asyncio
    async def test_run_is_persisted(self, make_controller, artifact, tmp_path):
        store = RunStore(tmp_path / "state")
        run = await make_controller(store=store).run(artifact, run_id="run-persisted")

        with open(store.state_file) as f:
            state = json.load(f)
        assert state["runs"]["run-persisted"]["state"] == "SUCCEEDED"
        assert store.get("run-persisted") is run

    @pytest.mark.asyncio
    async def test_audit_trail(self, make_controller, artifact, audit_log):
        await make_controller(gate_runner=gate_runner(smoke=False)).run(
            artifact, TriggerEvent(message="Risky [rollback]", actor="alice")
        )

        actions = [json.loads(line)["action"] for line in audit_log.read_text().splitlines()]
        assert actions == ["run_started", "rollback_started", "rollback_completed", "run_finished"]

    @pytest.mark.asyncio
    async def test_gate_refuses_diverged_environment(self, make_controller, artifact, staging_env):
        """Test that a gate does not run while declared and running revisions differ."""
        runner = gate_runner()
        controller = make_controller(gate_runner=runner)
        # Rollout reports success without the service reaching the declared revision
        controller.service_updater = Mock()
        controller.service_updater.roll_out = AsyncMock(
            return_value=ServiceState(running_count=2, desired_count=2)
        )

        run = await controller.run(artifact)

        assert run.state == PipelineState.FAILED
        gate = run.result_for(PipelineState.STAGING_GATE)
        assert gate.status == "failed"
        assert gate.error == "EnvironmentDivergedError"
        assert gate.details["declared_revision"] == 1
        assert gate.details["running_revision"] is None
        assert staging_env.declared_revision == 1
        runner.run_suite.assert_not_awaited()
        assert [s for s, status in stages(run) if status == "skipped"] == [
            PipelineState.PROD_DEPLOY,
            PipelineState.PROD_UPDATE,
            PipelineState.PROD_GATE,
        ]

    @pytest.mark.asyncio
    async def test_prod_deploy_refuses_diverged_staging(
        self, make_controller, platform, artifact, staging_env
    ):
        """Test that production is not deployed when staging drifted after its gate."""

        async def drift_after_acceptance(suite_id, endpoint):
            staging_env.running_revision = 99
            return GateResult(suite_id=suite_id, passed=True)

        runner = Mock()
        runner.run_suite = AsyncMock(side_effect=drift_after_acceptance)

        run = await make_controller(gate_runner=runner).run(artifact)

        assert run.state == PipelineState.FAILED
        assert run.result_for(PipelineState.STAGING_GATE).status == "success"
        deploy = run.result_for(PipelineState.PROD_DEPLOY)
        assert deploy.status == "failed"
        assert deploy.error == "EnvironmentDivergedError"
        assert deploy.details["environment"] == "staging"
        assert run.result_for(PipelineState.PROD_UPDATE).status == "skipped"
        assert run.result_for(PipelineState.PROD_GATE).status == "skipped"
        assert [c for c in platform.calls_to("apply_stack") if c[1] == "app-production"] == []

    @pytest.mark.asyncio
    async def test_rollback_refuses_out_of_order_revision(self, make_controller, platform, artifact):
        resolver = Mock()
        resolver.resolve_previous = AsyncMock(
            side_effect=RevisionOrderError(
                "Registered app-production:4 is not newer than active revision 8",
                {"family": "app-production", "current_revision": 8, "registered_revision": 4},
            )
        )
        controller = make_controller(gate_runner=gate_runner(smoke=False), rollback_resolver=resolver)

        run = await controller.run(artifact, TriggerEvent(rollback_intent=True))

        assert run.state == PipelineState.FAILED
        rollback = run.result_for(PipelineState.ROLLING_BACK)
        assert rollback.status == "failed"
        assert rollback.error == "RevisionOrderError"
        assert rollback.details["registered_revision"] == 4
        prod_updates = [c for c in platform.calls_to("update_service") if c[1] == "prod-cluster"]
        assert len(prod_updates) == 1  # PROD_UPDATE only


class TestEndToEnd:
    """Full pipeline against the in-memory platform with real gate suites."""

    @pytest.mark.asyncio
    async def test_smoke_failure_rolls_back_production(
        self, make_controller, platform, artifact, staging_env, production_env
    ):
        gates = GatesConfig(
            settle_seconds=0,
            suites={
                "acceptance": GateSuiteConfig(
                    command=[
                        sys.executable,
                        "-c",
                        "import os, sys; "
                        "sys.exit(0 if os.environ['BASE_URL'] == 'http://stg.example/' else 1)",
                    ]
                ),
                "smoke": FAILING_SMOKE,
            },
        )
        controller = make_controller(gate_runner=GateRunner(gates))

        run = await controller.run(artifact, TriggerEvent(message="Ship it [rollback]"))

        assert run.state == PipelineState.ROLLED_BACK
        assert staging_env.endpoint == "http://stg.example/"
        assert staging_env.running_revision == 1
        assert run.result_for(PipelineState.STAGING_UPDATE).outputs["running_count"] == 2

        assert run.result_for(PipelineState.PROD_DEPLOY).outputs["declared_revision"] == 8
        smoke = run.result_for(PipelineState.PROD_GATE)
        assert smoke.status == "failed"
        assert smoke.details["failed_tests"] == ["tests/smoke/test_home.py::test_home"]

        rollback = run.result_for(PipelineState.ROLLING_BACK)
        assert rollback.outputs["copied_from_revision"] == 7
        assert rollback.outputs["rollback_revision"] == 9
        assert platform.calls_to("describe_revision") == [
            ("describe_revision", "app-production", 7)
        ]
        assert platform.calls_to("update_service")[-1] == (
            "update_service",
            "prod-cluster",
            "app",
            "app-production:9",
        )
        assert production_env.declared_revision == 9
        assert production_env.running_revision == 9

        seven = await platform.describe_revision("app-production", 7)
        nine = await platform.describe_revision("app-production", 9)
        assert nine["containerDefinitions"] == seven["containerDefinitions"]

    @pytest.mark.asyncio
    async def test_rerun_after_rollback_redeploys_declared_revision(
        self, make_controller, platform, artifact, production_env
    ):
        """Test that re-running the same artifact after a rollback restores the stack's revision."""
        first = await make_controller(gate_runner=gate_runner(smoke=False)).run(
            artifact, TriggerEvent(rollback_intent=True)
        )
        assert first.state == PipelineState.ROLLED_BACK
        assert production_env.running_revision == 9

        second = await make_controller(gate_runner=gate_runner()).run(artifact)

        assert second.state == PipelineState.SUCCEEDED
        deploy = second.result_for(PipelineState.PROD_DEPLOY)
        assert deploy.outputs["changed"] is False
        assert deploy.outputs["declared_revision"] == 8
        assert platform.calls_to("update_service")[-1] == (
            "update_service",
            "prod-cluster",
            "app",
            "app-production:8",
        )
        assert production_env.declared_revision == 8
        assert production_env.running_revision == 8
