"""
In-memory implementation of the infrastructure and cluster platforms.

Used for dry runs (``platform.provider: memory``) and for exercising the
pipeline without a cloud account. It keeps the properties the pipeline
relies on: stack applies are idempotent and report "no changes", revision
numbers are append-only per family, and rollouts progress one poll at a time
with an optional deployment circuit breaker.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from stagegate.errors import NoChangesError, PlatformError
from stagegate.models import (
    CircuitBreakerConfig,
    ServiceDeployment,
    ServiceDescription,
    ServiceRevisionRecord,
    parse_revision,
    utc_now,
)

logger = logging.getLogger(__name__)


@dataclass
class StackBinding:
    """What a stack provisions: the service it runs and the endpoint it exposes."""

    cluster: str
    service: str
    family: str
    endpoint: Optional[str]
    container_name: str = "app"
    endpoint_output: str = "ServiceUrl"
    revision_output: str = "TaskDefinitionArn"


@dataclass
class _Stack:
    template: str
    parameters: Dict[str, str]
    outputs: Dict[str, str]


@dataclass
class _Service:
    family: str
    desired_count: int = 1
    task_revision: Optional[int] = None
    breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    breaker_threshold: int = 3
    deployments: List[ServiceDeployment] = field(default_factory=list)
    accept_updates: bool = True
    deployment_counter: int = 0


class InMemoryPlatform:
    """
    Simulated CloudFormation-and-ECS style platform.

    Every public call is appended to ``calls`` as ``(method, args...)``.
    """

    def __init__(self, ramp_step: int = 1, account: str = "000000000000", region: str = "local"):
        self.ramp_step = max(1, ramp_step)
        self.account = account
        self.region = region
        self.calls: List[Tuple[Any, ...]] = []
        self.bindings: Dict[str, StackBinding] = {}
        self.stacks: Dict[str, _Stack] = {}
        self.revisions: Dict[str, List[Dict[str, Any]]] = {}
        self.services: Dict[Tuple[str, str], _Service] = {}
        self.stack_failures: Dict[str, str] = {}
        self.failing_images: Set[str] = set()

    # ------------------------------------------------------------------
    # Setup helpers
    # ------------------------------------------------------------------

    def bind_stack(self, stack_name: str, binding: StackBinding) -> None:
        self.bindings[stack_name] = binding
        self.services.setdefault(
            (binding.cluster, binding.service), _Service(family=binding.family)
        )

    def seed_revisions(self, family: str, images: List[str], container_name: str = "app") -> None:
        """Register one revision per image, in order."""
        for image in images:
            self._register(
                {
                    "family": family,
                    "containerDefinitions": [
                        {"name": container_name, "image": image, "essential": True}
                    ],
                }
            )

    def run_service(
        self,
        cluster: str,
        service: str,
        family: str,
        revision: int,
        desired_count: int = 2,
        circuit_breaker: bool = True,
        threshold: int = 3,
    ) -> None:
        """Put a service into a steady state on ``revision``."""
        svc = self.services.setdefault((cluster, service), _Service(family=family))
        svc.family = family
        svc.desired_count = desired_count
        svc.task_revision = revision
        svc.breaker = CircuitBreakerConfig(enabled=circuit_breaker, rollback=circuit_breaker)
        svc.breaker_threshold = threshold
        svc.deployment_counter += 1
        svc.deployments = [
            ServiceDeployment(
                deployment_id=f"ecs-svc/{svc.deployment_counter}",
                status="PRIMARY",
                revision=revision,
                task_definition=self._arn(family, revision),
                running_count=desired_count,
                desired_count=desired_count,
                rollout_state="COMPLETED",
            )
        ]

    def fail_stack(self, stack_name: str, reason: str) -> None:
        self.stack_failures[stack_name] = reason

    def fail_image(self, image: str) -> None:
        """Tasks running ``image`` never start."""
        self.failing_images.add(image)

    def reject_updates(self, cluster: str, service: str) -> None:
        self.services[(cluster, service)].accept_updates = False

    def latest_revision(self, family: str) -> int:
        return len(self.revisions.get(family, []))

    def calls_to(self, method: str) -> List[Tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == method]

    # ------------------------------------------------------------------
    # InfrastructurePlatform
    # ------------------------------------------------------------------

    async def apply_stack(
        self, stack_name: str, template: str, parameters: Dict[str, str]
    ) -> Dict[str, str]:
        self.calls.append(("apply_stack", stack_name, template, dict(parameters)))

        if stack_name in self.stack_failures:
            raise PlatformError(
                self.stack_failures[stack_name],
                {"stack_name": stack_name, "stack_status": "UPDATE_ROLLBACK_COMPLETE"},
                code="ValidationError",
            )

        existing = self.stacks.get(stack_name)
        if existing and existing.template == template and existing.parameters == parameters:
            raise NoChangesError("No updates are to be performed.", {"stack_name": stack_name})

        binding = self.bindings.get(stack_name)
        if binding is None:
            raise PlatformError(
                f"Stack {stack_name} has no bound resources", {"stack_name": stack_name}
            )

        definition: Dict[str, Any] = {
            "family": binding.family,
            "containerDefinitions": [
                {
                    "name": binding.container_name,
                    "image": parameters.get("ArtifactReference", ""),
                    "essential": True,
                }
            ],
            "networkMode": "awsvpc",
        }
        if parameters.get("ExecutionRoleArn"):
            definition["executionRoleArn"] = parameters["ExecutionRoleArn"]
        registered = self._register(definition)

        svc = self.services.setdefault(
            (binding.cluster, binding.service), _Service(family=binding.family)
        )
        svc.task_revision = registered["revision"]
        svc.desired_count = int(parameters.get("DesiredCount", svc.desired_count))
        enabled = parameters.get("CircuitBreakerEnabled", "true").lower() == "true"
        svc.breaker = CircuitBreakerConfig(enabled=enabled, rollback=enabled)
        svc.breaker_threshold = int(parameters.get("CircuitBreakerThreshold", svc.breaker_threshold))

        outputs = {binding.revision_output: registered["taskDefinitionArn"]}
        if binding.endpoint:
            outputs[binding.endpoint_output] = binding.endpoint

        self.stacks[stack_name] = _Stack(
            template=template, parameters=dict(parameters), outputs=outputs
        )
        logger.debug(f"Applied stack {stack_name}, declared {binding.family}:{registered['revision']}")
        return dict(outputs)

    async def describe_stack(self, stack_name: str) -> Dict[str, str]:
        self.calls.append(("describe_stack", stack_name))
        stack = self.stacks.get(stack_name)
        if stack is None:
            raise PlatformError(f"Stack with id {stack_name} does not exist", code="ValidationError")
        return dict(stack.outputs)

    # ------------------------------------------------------------------
    # ClusterPlatform
    # ------------------------------------------------------------------

    async def update_service(
        self, cluster: str, service: str, revision: Optional[str] = None
    ) -> bool:
        self.calls.append(("update_service", cluster, service, revision))
        svc = self._service(cluster, service)
        if not svc.accept_updates:
            return False

        target = parse_revision(revision) if revision else svc.task_revision
        if target is None:
            raise PlatformError(f"Service {service} has no task definition", code="InvalidParameterException")
        self._definition(svc.family, target)

        svc.task_revision = target
        for deployment in svc.deployments:
            deployment.status = "ACTIVE"
        svc.deployment_counter += 1
        svc.deployments.insert(
            0,
            ServiceDeployment(
                deployment_id=f"ecs-svc/{svc.deployment_counter}",
                status="PRIMARY",
                revision=target,
                task_definition=self._arn(svc.family, target),
                running_count=0,
                desired_count=svc.desired_count,
                rollout_state="IN_PROGRESS",
            ),
        )
        return True

    async def describe_service(self, cluster: str, service: str) -> ServiceDescription:
        self.calls.append(("describe_service", cluster, service))
        svc = self._service(cluster, service)
        self._tick(svc)
        deployments = [d.model_copy() for d in svc.deployments]
        return ServiceDescription(
            running_count=sum(d.running_count for d in deployments),
            desired_count=svc.desired_count,
            deployments=deployments,
            circuit_breaker=svc.breaker.model_copy(),
        )

    async def list_tasks(self, cluster: str, service: str) -> List[str]:
        self.calls.append(("list_tasks", cluster, service))
        svc = self._service(cluster, service)
        tasks = []
        for deployment in svc.deployments:
            for index in range(deployment.running_count):
                tasks.append(
                    f"arn:aws:ecs:{self.region}:{self.account}:task/{cluster}/"
                    f"{deployment.deployment_id.split('/')[-1]}-{index}"
                )
        return tasks

    async def register_revision(self, definition: Dict[str, Any]) -> ServiceRevisionRecord:
        self.calls.append(("register_revision", copy.deepcopy(definition)))
        registered = self._register(definition)
        return ServiceRevisionRecord(
            family=registered["family"],
            revision=registered["revision"],
            arn=registered["taskDefinitionArn"],
            status=registered["status"],
            definition=copy.deepcopy(registered),
            registered_at=registered["registeredAt"],
        )

    async def describe_revision(self, family: str, revision: int) -> Dict[str, Any]:
        self.calls.append(("describe_revision", family, revision))
        return copy.deepcopy(self._definition(family, revision))

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    def _arn(self, family: str, revision: int) -> str:
        return f"arn:aws:ecs:{self.region}:{self.account}:task-definition/{family}:{revision}"

    def _service(self, cluster: str, service: str) -> _Service:
        svc = self.services.get((cluster, service))
        if svc is None:
            raise PlatformError(f"Service {cluster}/{service} not found", code="ServiceNotFoundException")
        return svc

    def _definition(self, family: str, revision: int) -> Dict[str, Any]:
        history = self.revisions.get(family, [])
        if revision < 1 or revision > len(history):
            raise PlatformError(
                f"Unable to describe task definition {family}:{revision}",
                code="ClientException",
            )
        return history[revision - 1]

    def _register(self, definition: Dict[str, Any]) -> Dict[str, Any]:
        family = definition.get("family")
        if not family:
            raise PlatformError("Task definition has no family", code="ClientException")
        history = self.revisions.setdefault(family, [])
        revision = len(history) + 1
        registered = copy.deepcopy(definition)
        registered.update(
            {
                "taskDefinitionArn": self._arn(family, revision),
                "revision": revision,
                "status": "ACTIVE",
                "requiresAttributes": [],
                "compatibilities": ["EC2", "FARGATE"],
                "registeredAt": utc_now(),
                "registeredBy": "stagegate",
            }
        )
        history.append(registered)
        return registered

    def _images(self, family: str, revision: Optional[int]) -> List[str]:
        if revision is None:
            return []
        definition = self._definition(family, revision)
        return [c.get("image", "") for c in definition.get("containerDefinitions", [])]

    def _tick(self, svc: _Service) -> None:
        """Advance every in-flight rollout by one poll."""
        if not svc.deployments:
            return
        primary = svc.deployments[0]
        if primary.rollout_state != "IN_PROGRESS":
            return

        if any(image in self.failing_images for image in self._images(svc.family, primary.revision)):
            primary.failed_tasks += 1
            if svc.breaker.enabled and primary.failed_tasks >= svc.breaker_threshold:
                self._trip_breaker(svc, primary)
            return

        primary.running_count = min(primary.desired_count, primary.running_count + self.ramp_step)
        for old in svc.deployments[1:]:
            old.running_count = max(0, old.running_count - self.ramp_step)
        svc.deployments = [primary] + [d for d in svc.deployments[1:] if d.running_count > 0]
        if primary.running_count == primary.desired_count and len(svc.deployments) == 1:
            primary.rollout_state = "COMPLETED"

    def _trip_breaker(self, svc: _Service, failed: ServiceDeployment) -> None:
        failed.status = "ACTIVE"
        failed.rollout_state = "FAILED"
        failed.rollout_state_reason = (
            f"ECS deployment circuit breaker: tasks failed to start "
            f"({failed.failed_tasks} failed, threshold {svc.breaker_threshold})"
        )
        previous = svc.deployments[1] if len(svc.deployments) > 1 else None
        if previous is not None and svc.breaker.rollback:
            previous.status = "PRIMARY"
            previous.running_count = previous.desired_count
            previous.rollout_state = "COMPLETED"
            svc.task_revision = previous.revision
            svc.deployments = [previous, failed]
        logger.debug(f"Circuit breaker tripped for {svc.family}:{failed.revision}")
