"""
Pipeline controller.

Sequences the stage executors through the pipeline state machine:
staging deploy, update and acceptance gate, then production deploy, update
and smoke gate. A failed production gate rolls back only when the trigger
carries explicit rollback intent.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set
from uuid import uuid4

from stagegate.audit import audit_pipeline_action
from stagegate.errors import (
    EnvironmentDivergedError,
    GateFailure,
    NoPriorRevisionError,
    StageGateError,
)
from stagegate.logging_config import LogContext, log_stage_transition
from stagegate.models import (
    DeployableRevision,
    Environment,
    PipelineRun,
    StageResult,
    TriggerEvent,
    utc_now,
)
from stagegate.pipeline.gate_runner import GateRunner
from stagegate.pipeline.rollback import RollbackResolver
from stagegate.pipeline.service_updater import ServiceUpdater
from stagegate.pipeline.stack_deployer import StackDeployer
from stagegate.pipeline.state import RunStore
from stagegate.stages import (
    ROLLBACK_ELIGIBLE,
    STAGE_ENVIRONMENT,
    STAGE_SEQUENCE,
    PipelineState,
    remaining_stages,
)
from stagegate.utils.log_sanitizer import sanitize_for_log

logger = logging.getLogger(__name__)


class PipelineController:
    """Runs one artifact through staging and production."""

    def __init__(
        self,
        staging: Environment,
        production: Environment,
        stack_deployer: StackDeployer,
        service_updater: ServiceUpdater,
        gate_runner: GateRunner,
        rollback_resolver: RollbackResolver,
        acceptance_suite: str = "acceptance",
        smoke_suite: str = "smoke",
        rollback_marker: str = "[rollback]",
        store: Optional[RunStore] = None,
    ) -> None:
        self.environments: Dict[str, Environment] = {
            "staging": staging,
            "production": production,
        }
        self.stack_deployer = stack_deployer
        self.service_updater = service_updater
        self.gate_runner = gate_runner
        self.rollback_resolver = rollback_resolver
        self.acceptance_suite = acceptance_suite
        self.smoke_suite = smoke_suite
        self.rollback_marker = rollback_marker
        self.store = store
        self._abort_requested: Set[str] = set()

        self._executors: Dict[PipelineState, Callable[[PipelineRun], Awaitable[Dict[str, Any]]]] = {
            PipelineState.STAGING_DEPLOY: self._deploy_staging,
            PipelineState.STAGING_UPDATE: self._update_staging,
            PipelineState.STAGING_GATE: self._gate_staging,
            PipelineState.PROD_DEPLOY: self._deploy_production,
            PipelineState.PROD_UPDATE: self._update_production,
            PipelineState.PROD_GATE: self._gate_production,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def request_abort(self, run_id: str) -> None:
        """Stop ``run_id`` before its next stage starts."""
        self._abort_requested.add(run_id)

    async def run(
        self,
        artifact: DeployableRevision,
        trigger: Optional[TriggerEvent] = None,
        run_id: Optional[str] = None,
    ) -> PipelineRun:
        """
        Promote ``artifact`` through staging and production.

        Args:
            artifact: Artifact produced by the build
            trigger: Triggering event; carries the rollback intent
            run_id: Identifier to use; generated when omitted

        Returns:
            The terminal PipelineRun with one StageResult per transition
        """
        run = PipelineRun(
            run_id=run_id or str(uuid4()),
            artifact=artifact,
            trigger=trigger or TriggerEvent(),
        )
        with LogContext(run_id=run.run_id):
            logger.info(
                f"Run {run.run_id}: promoting {artifact.reference} "
                f"(trigger: {sanitize_for_log(run.trigger.message or run.trigger.source)})"
            )
            audit_pipeline_action(
                "run_started",
                run.run_id,
                {"artifact": artifact.reference, "commit_sha": artifact.commit_sha},
                user=run.trigger.actor,
            )
            await self._persist(run)
            try:
                await self._execute(run)
            finally:
                self._abort_requested.discard(run.run_id)

            logger.info(f"Run {run.run_id} finished: {run.state.value}")
            audit_pipeline_action(
                "run_finished",
                run.run_id,
                {"state": run.state.value, "message": run.message},
                user=run.trigger.actor,
                success=run.outcome == "succeeded",
            )
        return run

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _execute(self, run: PipelineRun) -> None:
        for stage in STAGE_SEQUENCE:
            if run.run_id in self._abort_requested:
                logger.warning(f"Run {run.run_id} aborted before {stage.value}")
                audit_pipeline_action("run_aborted", run.run_id, {"before": stage.value})
                await self._fail(run, f"Aborted before {stage.value}", skip_from=stage)
                return

            run.transition(stage)
            started_at = utc_now()
            try:
                outputs = await self._executors[stage](run)
            except StageGateError as e:
                await self._record_failure(run, stage, started_at, type(e).__name__, e.message, e.details)
                if stage in ROLLBACK_ELIGIBLE and run.trigger.has_rollback_intent(self.rollback_marker):
                    await self._roll_back(run, e)
                else:
                    if stage in ROLLBACK_ELIGIBLE:
                        logger.warning(
                            f"Run {run.run_id}: {stage.value} failed without rollback intent; "
                            "production keeps the new revision"
                        )
                    await self._fail(run, f"{stage.value} failed: {e.message}", after=stage)
                return
            except Exception as e:
                logger.exception(f"Run {run.run_id}: unexpected error in {stage.value}")
                await self._record_failure(
                    run, stage, started_at, type(e).__name__, str(e), {}
                )
                await self._fail(run, f"{stage.value} failed: {e}", after=stage)
                return

            await self._record(
                run,
                StageResult(
                    stage=stage,
                    status="success",
                    environment=STAGE_ENVIRONMENT[stage],
                    outputs=outputs,
                    started_at=started_at,
                    completed_at=utc_now(),
                ),
            )

        run.finalize(PipelineState.SUCCEEDED, "Promoted to production")
        await self._persist(run)

    async def _roll_back(self, run: PipelineRun, cause: StageGateError) -> None:
        production = self.environments["production"]
        run.transition(PipelineState.ROLLING_BACK)
        started_at = utc_now()
        audit_pipeline_action(
            "rollback_started",
            run.run_id,
            {"cause": type(cause).__name__, "message": cause.message},
            user=run.trigger.actor,
        )
        logger.warning(f"Run {run.run_id}: rolling back production after {type(cause).__name__}")

        try:
            record = await self.rollback_resolver.resolve_previous(production)
            state = await self.service_updater.roll_out(production, revision=record.revision)
        except NoPriorRevisionError as e:
            logger.critical(
                f"Run {run.run_id}: rollback abandoned, production is stuck on "
                f"{production.family}:{e.details.get('current_revision')} with no prior revision"
            )
            audit_pipeline_action("rollback_abandoned", run.run_id, e.details, success=False)
            await self._record_failure(
                run, PipelineState.ROLLING_BACK, started_at, type(e).__name__, e.message, e.details
            )
            await self._fail(run, f"Rollback abandoned: {e.message}")
            return
        except StageGateError as e:
            logger.error(f"Run {run.run_id}: rollback failed: {e.message}")
            audit_pipeline_action("rollback_failed", run.run_id, e.details, success=False)
            await self._record_failure(
                run, PipelineState.ROLLING_BACK, started_at, type(e).__name__, e.message, e.details
            )
            await self._fail(run, f"Rollback failed: {e.message}")
            return
        except Exception as e:
            logger.exception(f"Run {run.run_id}: unexpected error during rollback")
            await self._record_failure(
                run, PipelineState.ROLLING_BACK, started_at, type(e).__name__, str(e), {}
            )
            await self._fail(run, f"Rollback failed: {e}")
            return

        outputs = {
            "copied_from_revision": record.source_revision,
            "rollback_revision": record.revision,
            "rollback_arn": record.arn,
            "service_state": state.model_dump(),
        }
        await self._record(
            run,
            StageResult(
                stage=PipelineState.ROLLING_BACK,
                status="success",
                environment="production",
                outputs=outputs,
                started_at=started_at,
                completed_at=utc_now(),
            ),
        )
        audit_pipeline_action("rollback_completed", run.run_id, outputs, success=True)
        run.finalize(
            PipelineState.ROLLED_BACK,
            f"Production rolled back to {production.family}:{record.revision}",
        )
        await self._persist(run)

    # ------------------------------------------------------------------
    # Stage executors
    # ------------------------------------------------------------------

    async def _deploy(self, run: PipelineRun, env: Environment) -> Dict[str, Any]:
        result = await self.stack_deployer.apply(env, run.artifact)
        return {
            "endpoint": result.endpoint,
            "declared_revision": result.declared_revision,
            "changed": result.changed,
        }

    async def _update(self, env: Environment) -> Dict[str, Any]:
        state = await self.service_updater.roll_out(env)
        return state.model_dump()

    async def _gate(self, env: Environment, suite_id: str) -> Dict[str, Any]:
        self._require_converged(env)
        if not env.endpoint:
            raise EnvironmentDivergedError(
                f"{env.name} has no resolved endpoint to gate against", {"environment": env.name}
            )
        result = await self.gate_runner.run_suite(suite_id, env.endpoint)
        if not result.passed:
            raise GateFailure(
                f"Gate suite {suite_id} failed against {env.endpoint}",
                {"suite_id": suite_id, **result.details},
            )
        return {"suite_id": suite_id, **result.details}

    async def _deploy_staging(self, run: PipelineRun) -> Dict[str, Any]:
        return await self._deploy(run, self.environments["staging"])

    async def _update_staging(self, run: PipelineRun) -> Dict[str, Any]:
        return await self._update(self.environments["staging"])

    async def _gate_staging(self, run: PipelineRun) -> Dict[str, Any]:
        return await self._gate(self.environments["staging"], self.acceptance_suite)

    async def _deploy_production(self, run: PipelineRun) -> Dict[str, Any]:
        self._require_converged(self.environments["staging"])
        return await self._deploy(run, self.environments["production"])

    async def _update_production(self, run: PipelineRun) -> Dict[str, Any]:
        return await self._update(self.environments["production"])

    async def _gate_production(self, run: PipelineRun) -> Dict[str, Any]:
        return await self._gate(self.environments["production"], self.smoke_suite)

    def _require_converged(self, env: Environment) -> None:
        if not env.is_converged:
            raise EnvironmentDivergedError(
                f"{env.name} declares revision {env.declared_revision} but runs "
                f"{env.running_revision}",
                {
                    "environment": env.name,
                    "declared_revision": env.declared_revision,
                    "running_revision": env.running_revision,
                },
            )

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    async def _record(self, run: PipelineRun, result: StageResult) -> None:
        run.record(result)
        details: Dict[str, Any] = {"error": result.error, "message": result.message} if result.error else {}
        log_stage_transition(
            run.run_id, result.stage.value, result.status, result.environment, details or None
        )
        await self._persist(run)

    async def _record_failure(
        self,
        run: PipelineRun,
        stage: PipelineState,
        started_at: str,
        error: str,
        message: str,
        details: Dict[str, Any],
    ) -> None:
        logger.error(f"Run {run.run_id}: {stage.value} failed with {error}: {message}")
        await self._record(
            run,
            StageResult(
                stage=stage,
                status="failed",
                environment=STAGE_ENVIRONMENT.get(stage),
                error=error,
                message=message,
                details=details,
                started_at=started_at,
                completed_at=utc_now(),
            ),
        )

    async def _fail(
        self,
        run: PipelineRun,
        message: str,
        after: Optional[PipelineState] = None,
        skip_from: Optional[PipelineState] = None,
    ) -> None:
        """Record skipped results for stages that never ran, then finalize FAILED."""
        if skip_from is not None:
            skipped = [skip_from] + remaining_stages(skip_from)
        elif after is not None:
            skipped = remaining_stages(after)
        else:
            skipped = []
        for stage in skipped:
            run.record(
                StageResult(
                    stage=stage,
                    status="skipped",
                    environment=STAGE_ENVIRONMENT[stage],
                    message="Not executed",
                )
            )
        run.finalize(PipelineState.FAILED, message)
        await self._persist(run)

    async def _persist(self, run: PipelineRun) -> None:
        if self.store is not None:
            await self.store.save_run(run)
