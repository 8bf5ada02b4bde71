"""
AWS implementations of the platform protocols.

CloudFormation provides the infrastructure platform and ECS the cluster
platform. boto3 is blocking, so every call runs in a worker thread.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError, WaiterError

from stagegate.errors import NoChangesError, PlatformError
from stagegate.models import (
    CircuitBreakerConfig,
    ServiceDeployment,
    ServiceDescription,
    ServiceRevisionRecord,
    parse_revision,
)

logger = logging.getLogger(__name__)

NO_CHANGES_MESSAGE = "No updates are to be performed"


def create_session(region: Optional[str] = None, profile: Optional[str] = None) -> Any:
    """Build a boto3 session from explicit configuration."""
    return boto3.Session(region_name=region, profile_name=profile)


def _client_error(exc: ClientError, context: str) -> PlatformError:
    error = exc.response.get("Error", {})
    code = error.get("Code")
    message = error.get("Message", str(exc))
    return PlatformError(f"{context}: {message}", {"code": code, "message": message}, code=code)


class CloudFormationPlatform:
    """Infrastructure platform backed by CloudFormation stacks."""

    def __init__(
        self,
        session: Any,
        capabilities: Optional[List[str]] = None,
        timeout_seconds: int = 1800,
        poll_delay: int = 15,
    ) -> None:
        self._client = session.client("cloudformation")
        self.capabilities = capabilities or ["CAPABILITY_NAMED_IAM"]
        self.timeout_seconds = timeout_seconds
        self.poll_delay = poll_delay

    def _template_args(self, template: str) -> Dict[str, str]:
        if template.startswith(("https://", "http://", "s3://")):
            return {"TemplateURL": template}
        return {"TemplateBody": Path(template).read_text()}

    def _stack_exists(self, stack_name: str) -> bool:
        try:
            stacks = self._client.describe_stacks(StackName=stack_name)["Stacks"]
        except ClientError as e:
            if "does not exist" in e.response.get("Error", {}).get("Message", ""):
                return False
            raise _client_error(e, f"Failed to describe stack {stack_name}")
        # A stack that never finished creating cannot be updated
        return bool(stacks) and stacks[0]["StackStatus"] != "REVIEW_IN_PROGRESS"

    def _failure_reason(self, stack_name: str) -> Dict[str, Any]:
        """Status and the first failed resource event, for diagnostics."""
        details: Dict[str, Any] = {"stack_name": stack_name}
        try:
            stack = self._client.describe_stacks(StackName=stack_name)["Stacks"][0]
            details["stack_status"] = stack.get("StackStatus")
            details["stack_status_reason"] = stack.get("StackStatusReason")
            events = self._client.describe_stack_events(StackName=stack_name)["StackEvents"]
            for event in events:
                if event.get("ResourceStatus", "").endswith("_FAILED"):
                    details["failed_resource"] = event.get("LogicalResourceId")
                    details["failed_reason"] = event.get("ResourceStatusReason")
                    break
        except ClientError as e:
            logger.warning(f"Could not read failure reason for stack {stack_name}: {e}")
        return details

    def _apply(self, stack_name: str, template: str, parameters: Dict[str, str]) -> Dict[str, str]:
        args: Dict[str, Any] = {
            "StackName": stack_name,
            "Parameters": [
                {"ParameterKey": key, "ParameterValue": value} for key, value in parameters.items()
            ],
            "Capabilities": self.capabilities,
            **self._template_args(template),
        }
        exists = self._stack_exists(stack_name)
        try:
            if exists:
                self._client.update_stack(**args)
                waiter_name = "stack_update_complete"
            else:
                self._client.create_stack(**args)
                waiter_name = "stack_create_complete"
        except ClientError as e:
            if NO_CHANGES_MESSAGE in e.response.get("Error", {}).get("Message", ""):
                raise NoChangesError(f"{NO_CHANGES_MESSAGE}.", {"stack_name": stack_name})
            raise _client_error(e, f"Failed to apply stack {stack_name}")

        logger.info(f"Waiting for stack {stack_name} ({waiter_name})")
        try:
            self._client.get_waiter(waiter_name).wait(
                StackName=stack_name,
                WaiterConfig={
                    "Delay": self.poll_delay,
                    "MaxAttempts": max(1, self.timeout_seconds // max(1, self.poll_delay)),
                },
            )
        except WaiterError as e:
            details = self._failure_reason(stack_name)
            raise PlatformError(
                f"Stack {stack_name} did not reach a complete state: {e}",
                details,
                code=details.get("stack_status"),
            )
        return self._outputs(stack_name)

    def _outputs(self, stack_name: str) -> Dict[str, str]:
        try:
            stacks = self._client.describe_stacks(StackName=stack_name)["Stacks"]
        except ClientError as e:
            raise _client_error(e, f"Failed to describe stack {stack_name}")
        if not stacks:
            raise PlatformError(f"Stack {stack_name} does not exist")
        return {
            output["OutputKey"]: output["OutputValue"] for output in stacks[0].get("Outputs", [])
        }

    async def apply_stack(
        self, stack_name: str, template: str, parameters: Dict[str, str]
    ) -> Dict[str, str]:
        return await asyncio.to_thread(self._apply, stack_name, template, parameters)

    async def describe_stack(self, stack_name: str) -> Dict[str, str]:
        return await asyncio.to_thread(self._outputs, stack_name)


class ECSPlatform:
    """Cluster platform backed by ECS services and task definitions."""

    def __init__(self, session: Any) -> None:
        self._client = session.client("ecs")

    async def _call(self, method: str, context: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            return await asyncio.to_thread(getattr(self._client, method), **kwargs)
        except ClientError as e:
            raise _client_error(e, context)

    async def update_service(
        self, cluster: str, service: str, revision: Optional[str] = None
    ) -> bool:
        kwargs: Dict[str, Any] = {
            "cluster": cluster,
            "service": service,
            "forceNewDeployment": True,
        }
        if revision:
            kwargs["taskDefinition"] = revision
        response = await self._call(
            "update_service", f"Failed to update service {cluster}/{service}", **kwargs
        )
        return bool(response.get("service"))

    async def describe_service(self, cluster: str, service: str) -> ServiceDescription:
        response = await self._call(
            "describe_services",
            f"Failed to describe service {cluster}/{service}",
            cluster=cluster,
            services=[service],
        )
        services = response.get("services", [])
        if not services:
            failures = response.get("failures", [])
            reason = failures[0].get("reason") if failures else "MISSING"
            raise PlatformError(f"Service {cluster}/{service} not found: {reason}", code=reason)
        data = services[0]

        deployments = []
        for d in data.get("deployments", []):
            task_definition = d.get("taskDefinition")
            deployments.append(
                ServiceDeployment(
                    deployment_id=d.get("id", ""),
                    status=d.get("status", "ACTIVE"),
                    revision=parse_revision(task_definition) if task_definition else None,
                    task_definition=task_definition,
                    running_count=d.get("runningCount", 0),
                    desired_count=d.get("desiredCount", 0),
                    failed_tasks=d.get("failedTasks", 0),
                    rollout_state=d.get("rolloutState"),
                    rollout_state_reason=d.get("rolloutStateReason"),
                )
            )

        breaker = (
            data.get("deploymentConfiguration", {}).get("deploymentCircuitBreaker", {}) or {}
        )
        return ServiceDescription(
            running_count=data.get("runningCount", 0),
            desired_count=data.get("desiredCount", 0),
            deployments=deployments,
            circuit_breaker=CircuitBreakerConfig(
                enabled=breaker.get("enable", False), rollback=breaker.get("rollback", False)
            ),
        )

    async def list_tasks(self, cluster: str, service: str) -> List[str]:
        task_arns: List[str] = []
        kwargs: Dict[str, Any] = {
            "cluster": cluster,
            "serviceName": service,
            "desiredStatus": "RUNNING",
        }
        while True:
            response = await self._call(
                "list_tasks", f"Failed to list tasks for {cluster}/{service}", **kwargs
            )
            task_arns.extend(response.get("taskArns", []))
            token = response.get("nextToken")
            if not token:
                return task_arns
            kwargs["nextToken"] = token

    async def register_revision(self, definition: Dict[str, Any]) -> ServiceRevisionRecord:
        response = await self._call(
            "register_task_definition",
            f"Failed to register task definition for {definition.get('family')}",
            **definition,
        )
        registered = response["taskDefinition"]
        registered_at = registered.get("registeredAt")
        return ServiceRevisionRecord(
            family=registered["family"],
            revision=registered["revision"],
            arn=registered.get("taskDefinitionArn"),
            status=registered.get("status", "ACTIVE"),
            definition=registered,
            registered_at=str(registered_at) if registered_at is not None else None,
        )

    async def describe_revision(self, family: str, revision: int) -> Dict[str, Any]:
        response = await self._call(
            "describe_task_definition",
            f"Failed to describe task definition {family}:{revision}",
            taskDefinition=f"{family}:{revision}",
        )
        return dict(response["taskDefinition"])
