"""
Data models for StageGate.

Keep it simple. Keep it typed. Keep it working.
"""

import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from stagegate.errors import RunFinalizedError
from stagegate.stages import TERMINAL_STATES, PipelineState, require_transition

# Fields the platform assigns on registration. They describe a registered
# revision, not the operator's intent, and must never be replayed.
PLATFORM_METADATA_FIELDS = frozenset(
    {
        "taskDefinitionArn",
        "revision",
        "status",
        "requiresAttributes",
        "compatibilities",
        "registeredAt",
        "registeredBy",
        "deregisteredAt",
    }
)

_REVISION_SUFFIX = re.compile(r":(\d+)$")


def utc_now() -> str:
    """Current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def parse_revision(reference: Any) -> int:
    """
    Extract a revision number from a platform reference.

    Accepts an int, a numeric string, ``family:7`` or a full task definition
    ARN ending in ``:7``.

    Raises:
        ValueError: If no revision number can be found
    """
    if isinstance(reference, bool):
        raise ValueError(f"Not a revision reference: {reference!r}")
    if isinstance(reference, int):
        return reference
    text = str(reference).strip()
    if text.isdigit():
        return int(text)
    match = _REVISION_SUFFIX.search(text)
    if not match:
        raise ValueError(f"Not a revision reference: {reference!r}")
    return int(match.group(1))


def strip_platform_metadata(definition: Dict[str, Any]) -> Dict[str, Any]:
    """Copy a registered definition without its platform-assigned fields."""
    return {k: v for k, v in definition.items() if k not in PLATFORM_METADATA_FIELDS}


class DeployableRevision(BaseModel):
    """One immutable build artifact produced by the build collaborator."""

    model_config = ConfigDict(frozen=True)

    reference: str = Field(
        ..., description="Content-addressed artifact reference (e.g., repo@sha256:...)"
    )
    commit_sha: Optional[str] = Field(None, description="Source commit the artifact was built from")
    image_tag: Optional[str] = Field(None, description="Human-readable tag the digest was resolved from")


class DeploymentPolicy(BaseModel):
    """Rollout policy passed to the environment's stack."""

    max_running_count: int = Field(2, ge=1, description="Desired number of running tasks")
    circuit_breaker_enabled: bool = Field(
        True, description="Whether the platform deployment circuit breaker is enabled"
    )
    circuit_breaker_threshold: int = Field(
        3, ge=1, description="Failed task launches before the circuit breaker trips"
    )


class Environment(BaseModel):
    """A named deployment target and its observed runtime state."""

    name: str = Field(..., description="Environment name: staging, production")
    stack_name: str = Field(..., description="Infrastructure stack name")
    template: str = Field(..., description="Infrastructure template path or URL")
    cluster: str = Field(..., description="Cluster running the service")
    service: str = Field(..., description="Service name within the cluster")
    family: str = Field(..., description="Service revision family")
    execution_role_ref: str = Field("", description="Execution role reference")
    network_placement_refs: List[str] = Field(
        default_factory=list, description="Subnet / placement references"
    )
    parameters: Dict[str, str] = Field(
        default_factory=dict, description="Additional stack parameters"
    )
    policy: DeploymentPolicy = Field(default_factory=DeploymentPolicy)
    endpoint_output: str = Field("ServiceUrl", description="Stack output holding the endpoint")
    revision_output: str = Field(
        "TaskDefinitionArn", description="Stack output holding the declared revision"
    )

    # Runtime state, owned by one pipeline run at a time
    declared_revision: Optional[int] = Field(None, description="Revision last declared by stack apply")
    running_revision: Optional[int] = Field(None, description="Revision last confirmed stable")
    endpoint: Optional[str] = Field(None, description="Public endpoint resolved after stack apply")

    @property
    def is_converged(self) -> bool:
        """Declared and running revisions agree (or nothing declared yet)."""
        if self.declared_revision is None:
            return True
        return self.declared_revision == self.running_revision


class ServiceRevisionRecord(BaseModel):
    """A registered, immutable service definition."""

    model_config = ConfigDict(frozen=True)

    family: str
    revision: int = Field(..., ge=1)
    arn: Optional[str] = None
    status: str = "ACTIVE"
    definition: Dict[str, Any] = Field(default_factory=dict)
    registered_at: Optional[str] = None
    source_revision: Optional[int] = Field(
        None, description="Revision this record was copied from, for rollback registrations"
    )

    def functional_fields(self) -> Dict[str, Any]:
        """The definition as the operator wrote it."""
        return strip_platform_metadata(self.definition)


class CircuitBreakerConfig(BaseModel):
    enabled: bool = False
    rollback: bool = False


class ServiceDeployment(BaseModel):
    """One deployment of a service, as reported by the cluster platform."""

    deployment_id: str
    status: str = Field("PRIMARY", description="PRIMARY, ACTIVE or INACTIVE")
    revision: Optional[int] = None
    task_definition: Optional[str] = None
    running_count: int = 0
    desired_count: int = 0
    failed_tasks: int = 0
    rollout_state: Optional[str] = Field(None, description="IN_PROGRESS, COMPLETED or FAILED")
    rollout_state_reason: Optional[str] = None


class ServiceDescription(BaseModel):
    """Snapshot of a running service."""

    running_count: int = 0
    desired_count: int = 0
    deployments: List[ServiceDeployment] = Field(default_factory=list)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)

    @property
    def primary(self) -> Optional[ServiceDeployment]:
        for deployment in self.deployments:
            if deployment.status == "PRIMARY":
                return deployment
        return None


class ServiceState(BaseModel):
    """Outcome of a rollout once the service is stable."""

    running_count: int
    desired_count: int
    circuit_breaker_tripped: bool = False
    active_revision: Optional[int] = None


class StackApplyResult(BaseModel):
    endpoint: str
    declared_revision: Optional[int] = None
    outputs: Dict[str, str] = Field(default_factory=dict)
    changed: bool = True


class GateResult(BaseModel):
    suite_id: str
    passed: bool
    details: Dict[str, Any] = Field(default_factory=dict)


class TriggerEvent(BaseModel):
    """The event that started a run (e.g., a push with its change description)."""

    commit_sha: Optional[str] = Field(None, description="Commit that triggered the run")
    message: str = Field("", description="Change description (commit message)")
    actor: Optional[str] = Field(None, description="Who triggered the run")
    source: str = Field("manual", description="Trigger source (ci, cli, api)")
    rollback_intent: bool = Field(
        False, description="Explicit operator opt-in to automatic rollback"
    )

    def has_rollback_intent(self, marker: str = "[rollback]") -> bool:
        """Explicit flag, or the marker in the change description."""
        if self.rollback_intent:
            return True
        return bool(marker) and marker.lower() in self.message.lower()


class StageResult(BaseModel):
    """Outcome of one pipeline stage."""

    model_config = ConfigDict(frozen=True)

    stage: PipelineState
    status: Literal["success", "failed", "skipped"]
    environment: Optional[str] = None
    outputs: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = Field(None, description="Exception type name on failure")
    message: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


class PipelineRun(BaseModel):
    """One execution of the pipeline; immutable once terminal."""

    run_id: str
    artifact: DeployableRevision
    trigger: TriggerEvent = Field(default_factory=TriggerEvent)
    environments: List[str] = Field(default_factory=lambda: ["staging", "production"])
    state: PipelineState = PipelineState.PENDING
    stage_results: List[StageResult] = Field(default_factory=list)
    outcome: Optional[Literal["succeeded", "failed", "rolled_back"]] = None
    message: Optional[str] = None
    created_at: str = Field(default_factory=utc_now)
    completed_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def _ensure_open(self) -> None:
        if self.is_terminal:
            raise RunFinalizedError(
                f"Pipeline run {self.run_id} is {self.state.value} and can no longer change",
                {"run_id": self.run_id, "state": self.state.value},
            )

    def transition(self, state: PipelineState) -> None:
        self._ensure_open()
        require_transition(self.state, state)
        self.state = state

    def record(self, result: StageResult) -> None:
        self._ensure_open()
        self.stage_results.append(result)

    def finalize(self, state: PipelineState, message: Optional[str] = None) -> None:
        """Move to a terminal state and stamp the outcome."""
        self.transition(state)
        self.outcome = {
            PipelineState.SUCCEEDED: "succeeded",
            PipelineState.ROLLED_BACK: "rolled_back",
            PipelineState.FAILED: "failed",
        }[state]
        self.message = message
        self.completed_at = utc_now()

    def result_for(self, stage: PipelineState) -> Optional[StageResult]:
        for result in self.stage_results:
            if result.stage == stage:
                return result
        return None

    def executed_stages(self) -> List[PipelineState]:
        return [r.stage for r in self.stage_results if r.status != "skipped"]
