"""
Stack deployer.

Applies an environment's infrastructure stack for one artifact and resolves
the environment's public endpoint from the stack outputs.
"""

import logging
from typing import Dict

from stagegate.errors import (
    InfrastructureApplyError,
    MissingOutputError,
    NoChangesError,
    PlatformError,
)
from stagegate.models import DeployableRevision, Environment, StackApplyResult, parse_revision
from stagegate.platform.protocols import InfrastructurePlatform

logger = logging.getLogger(__name__)


class StackDeployer:
    """Idempotent stack apply for one environment at a time."""

    def __init__(self, platform: InfrastructurePlatform) -> None:
        self.platform = platform

    def build_parameters(self, env: Environment, artifact: DeployableRevision) -> Dict[str, str]:
        """
        Stack parameters for ``env`` running ``artifact``.

        Extra environment parameters are applied last and may override the
        defaults.
        """
        parameters = {
            "EnvironmentName": env.name,
            "ArtifactReference": artifact.reference,
            "ExecutionRoleArn": env.execution_role_ref,
            "NetworkPlacement": ",".join(env.network_placement_refs),
            "DesiredCount": str(env.policy.max_running_count),
            "CircuitBreakerEnabled": str(env.policy.circuit_breaker_enabled).lower(),
            "CircuitBreakerThreshold": str(env.policy.circuit_breaker_threshold),
        }
        parameters.update(env.parameters)
        return parameters

    async def apply(self, env: Environment, artifact: DeployableRevision) -> StackApplyResult:
        """
        Apply the environment's stack.

        Args:
            env: Target environment; its endpoint and declared revision are updated
            artifact: Artifact the stack should run

        Returns:
            Endpoint, declared revision and raw outputs

        Raises:
            InfrastructureApplyError: The apply failed for a reason other than "no changes"
            MissingOutputError: The stack exposes no endpoint output
        """
        parameters = self.build_parameters(env, artifact)
        logger.info(f"Applying stack {env.stack_name} for {env.name} with {artifact.reference}")

        changed = True
        try:
            outputs = await self.platform.apply_stack(env.stack_name, env.template, parameters)
        except NoChangesError:
            logger.info(f"Stack {env.stack_name} already up to date, reading outputs")
            changed = False
            try:
                outputs = await self.platform.describe_stack(env.stack_name)
            except PlatformError as e:
                raise InfrastructureApplyError(
                    f"Failed to read outputs of unchanged stack {env.stack_name}: {e.message}",
                    {"stack_name": env.stack_name, "code": e.code, **e.details},
                ) from e
        except PlatformError as e:
            raise InfrastructureApplyError(
                f"Stack {env.stack_name} apply failed: {e.message}",
                {"stack_name": env.stack_name, "code": e.code, **e.details},
            ) from e

        endpoint = outputs.get(env.endpoint_output)
        if not endpoint:
            raise MissingOutputError(
                f"Stack {env.stack_name} has no '{env.endpoint_output}' output",
                {
                    "stack_name": env.stack_name,
                    "expected_output": env.endpoint_output,
                    "available_outputs": sorted(outputs),
                },
            )

        declared_revision = None
        revision_ref = outputs.get(env.revision_output)
        if revision_ref:
            try:
                declared_revision = parse_revision(revision_ref)
            except ValueError:
                logger.warning(
                    f"Stack output {env.revision_output}={revision_ref!r} is not a revision reference"
                )

        env.endpoint = endpoint
        if declared_revision is not None:
            env.declared_revision = declared_revision

        logger.info(
            f"Stack {env.stack_name} {'applied' if changed else 'unchanged'}: "
            f"endpoint={endpoint}, declared revision={declared_revision}"
        )
        return StackApplyResult(
            endpoint=endpoint,
            declared_revision=declared_revision,
            outputs=outputs,
            changed=changed,
        )
