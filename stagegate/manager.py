"""
Pipeline manager.

Owns the platforms, environments and pipeline components built from one
StageGateConfig, and is the only caller of the PipelineController. It makes
sure at most one run touches a given (service family, environment) pair at a
time.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple
from uuid import uuid4

from stagegate.artifact_registry import ArtifactRegistryClient
from stagegate.audit import audit_pipeline_action, configure_audit_log
from stagegate.config.settings import StageGateConfig
from stagegate.errors import PipelineBusyError
from stagegate.models import DeployableRevision, Environment, PipelineRun, TriggerEvent
from stagegate.pipeline import (
    GateRunner,
    PipelineController,
    RollbackResolver,
    RunStore,
    ServiceUpdater,
    StackDeployer,
)
from stagegate.platform import (
    ClusterPlatform,
    InfrastructurePlatform,
    InMemoryPlatform,
    StackBinding,
    build_platforms,
)
from stagegate.utils.log_sanitizer import sanitize_identifier

logger = logging.getLogger(__name__)

LockKey = Tuple[str, str]


class PipelineManager:
    """Builds the pipeline from configuration and serializes runs per environment."""

    def __init__(
        self,
        config: StageGateConfig,
        infrastructure: Optional[InfrastructurePlatform] = None,
        cluster: Optional[ClusterPlatform] = None,
        registry: Optional[ArtifactRegistryClient] = None,
    ):
        """
        Initialize the manager.

        Args:
            config: Root configuration
            infrastructure: Infrastructure platform; built from config when omitted
            cluster: Cluster platform; built from config when omitted
            registry: Artifact registry client; built from config when omitted
        """
        self.config = config

        if infrastructure is None or cluster is None:
            infrastructure, cluster = build_platforms(config.platform)
        self.infrastructure = infrastructure
        self.cluster = cluster

        self.environments: Dict[str, Environment] = config.environments()
        if isinstance(infrastructure, InMemoryPlatform):
            self._bind_memory_stacks(infrastructure)

        configure_audit_log(config.pipeline.audit_log)
        self.store = RunStore(Path(config.pipeline.state_dir), config.pipeline.history_limit)
        self.store.load()

        self.registry = registry or ArtifactRegistryClient(
            username=config.registry.username,
            token=config.registry.token,
            timeout=config.registry.timeout_seconds,
        )

        self.service_updater = ServiceUpdater(
            cluster,
            interval_seconds=config.polling.interval_seconds,
            max_attempts=config.polling.max_attempts,
        )
        self.rollback_resolver = RollbackResolver(cluster)
        self.controller = PipelineController(
            staging=self.environments["staging"],
            production=self.environments["production"],
            stack_deployer=StackDeployer(infrastructure),
            service_updater=self.service_updater,
            gate_runner=GateRunner(config.gates),
            rollback_resolver=self.rollback_resolver,
            acceptance_suite=config.gates.acceptance_suite,
            smoke_suite=config.gates.smoke_suite,
            rollback_marker=config.pipeline.rollback_marker,
            store=self.store,
        )

        self._lock = asyncio.Lock()
        self._in_flight: Dict[LockKey, str] = {}

        # Track background tasks to prevent garbage collection
        self._background_tasks: Set[asyncio.Task] = set()

    def _bind_memory_stacks(self, platform: InMemoryPlatform) -> None:
        for env in self.environments.values():
            platform.bind_stack(
                env.stack_name,
                StackBinding(
                    cluster=env.cluster,
                    service=env.service,
                    family=env.family,
                    endpoint=f"http://{env.stack_name}.local/",
                    endpoint_output=env.endpoint_output,
                    revision_output=env.revision_output,
                ),
            )

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def _keys(self, *names: str) -> List[LockKey]:
        return [(self.environments[name].family, name) for name in names]

    async def _claim(self, keys: List[LockKey], owner: str) -> None:
        async with self._lock:
            busy = {
                f"{family}/{env}": self._in_flight[(family, env)]
                for family, env in keys
                if (family, env) in self._in_flight
            }
            if busy:
                raise PipelineBusyError(
                    f"Another run is in flight for {', '.join(busy)}",
                    {"in_flight": busy},
                )
            for key in keys:
                self._in_flight[key] = owner

    async def _release(self, keys: List[LockKey], owner: str) -> None:
        async with self._lock:
            for key in keys:
                if self._in_flight.get(key) == owner:
                    del self._in_flight[key]

    def active_runs(self) -> List[str]:
        """Identifiers of runs and operations currently holding an environment."""
        return sorted(set(self._in_flight.values()))

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def resolve_artifact(
        self, image: str, commit_sha: Optional[str] = None
    ) -> DeployableRevision:
        """Turn the publisher's output into the artifact every stage deploys."""
        if not self.config.registry.resolve_digests:
            return DeployableRevision(reference=image, commit_sha=commit_sha)
        return await self.registry.build_revision(image, commit_sha)

    async def _prepare(
        self, image: str, trigger: TriggerEvent
    ) -> Tuple[str, List[LockKey], DeployableRevision]:
        run_id = str(uuid4())
        keys = self._keys("staging", "production")
        await self._claim(keys, run_id)
        try:
            artifact = await self.resolve_artifact(image, trigger.commit_sha)
        except BaseException:
            await self._release(keys, run_id)
            raise
        return run_id, keys, artifact

    async def run(self, image: str, trigger: Optional[TriggerEvent] = None) -> PipelineRun:
        """
        Run the pipeline for ``image`` and wait for it to finish.

        Raises:
            PipelineBusyError: Another run holds staging or production
            ArtifactResolutionError: The image could not be resolved
        """
        trigger = trigger or TriggerEvent()
        run_id, keys, artifact = await self._prepare(image, trigger)
        try:
            return await self.controller.run(artifact, trigger, run_id=run_id)
        finally:
            await self._release(keys, run_id)

    async def start_run(self, image: str, trigger: Optional[TriggerEvent] = None) -> str:
        """
        Start the pipeline for ``image`` in the background.

        Returns:
            The run identifier

        Raises:
            PipelineBusyError: Another run holds staging or production
            ArtifactResolutionError: The image could not be resolved
        """
        trigger = trigger or TriggerEvent()
        run_id, keys, artifact = await self._prepare(image, trigger)

        task = asyncio.create_task(self._run_in_background(run_id, keys, artifact, trigger))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

        logger.info(f"Started run {run_id} for {artifact.reference}")
        return run_id

    async def _run_in_background(
        self,
        run_id: str,
        keys: List[LockKey],
        artifact: DeployableRevision,
        trigger: TriggerEvent,
    ) -> None:
        try:
            await self.controller.run(artifact, trigger, run_id=run_id)
        except Exception:
            logger.exception(f"Run {run_id} crashed outside a stage")
        finally:
            await self._release(keys, run_id)

    def abort(self, run_id: str, user: Optional[str] = None) -> bool:
        """
        Ask an in-flight run to stop before its next stage.

        Returns:
            True if the run was in flight
        """
        if run_id not in self._in_flight.values():
            return False
        self.controller.request_abort(run_id)
        audit_pipeline_action("abort_requested", run_id, user=user)
        logger.warning(f"Abort requested for run {sanitize_identifier(run_id)}")
        return True

    def get_run(self, run_id: str) -> Optional[PipelineRun]:
        return self.store.get(run_id)

    def list_runs(self, limit: int = 20) -> List[PipelineRun]:
        return self.store.list_runs(limit)

    # ------------------------------------------------------------------
    # Manual rollback
    # ------------------------------------------------------------------

    async def manual_rollback(self, user: Optional[str] = None) -> Dict[str, Any]:
        """
        Roll production back to a copy of the revision before the active one.

        Raises:
            PipelineBusyError: A run holds production
            NoPriorRevisionError: Production runs the first revision of its family
        """
        production = self.environments["production"]
        owner = f"rollback-{uuid4()}"
        keys = self._keys("production")
        await self._claim(keys, owner)
        try:
            audit_pipeline_action("manual_rollback_started", owner, {"family": production.family}, user=user)
            try:
                record = await self.rollback_resolver.resolve_previous(production)
                state = await self.service_updater.roll_out(production, revision=record.revision)
            except Exception as e:
                audit_pipeline_action(
                    "manual_rollback_failed", owner, {"error": str(e)}, user=user, success=False
                )
                raise
        finally:
            await self._release(keys, owner)

        result = {
            "family": record.family,
            "copied_from_revision": record.source_revision,
            "rollback_revision": record.revision,
            "rollback_arn": record.arn,
            "service_state": state.model_dump(),
        }
        audit_pipeline_action("manual_rollback_completed", owner, result, user=user, success=True)
        logger.info(
            f"Manual rollback of {record.family} to revision {record.revision} "
            f"(copy of {record.source_revision}) completed"
        )
        return result

    async def stop(self) -> None:
        """Wait for background runs to finish and release clients."""
        if self._background_tasks:
            logger.info(f"Waiting for {len(self._background_tasks)} in-flight run(s)")
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        await self.registry.close()
