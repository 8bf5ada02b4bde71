"""
Service updater.

Triggers a rolling update of an environment's service and waits, with a
bounded poll loop, until the service is stable or the platform's deployment
circuit breaker rejects the rollout.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from stagegate.errors import (
    DeploymentRejectedError,
    PlatformError,
    StabilizationTimeoutError,
)
from stagegate.models import Environment, ServiceDescription, ServiceState
from stagegate.platform.protocols import ClusterPlatform

logger = logging.getLogger(__name__)


class ServiceUpdater:
    """Rolling update with stabilization wait."""

    def __init__(
        self,
        platform: ClusterPlatform,
        interval_seconds: float = 15.0,
        max_attempts: int = 40,
    ) -> None:
        """
        Initialize the updater.

        Args:
            platform: Cluster platform running the services
            interval_seconds: Fixed delay between polls
            max_attempts: Polls before giving up; the overall timeout is
                interval_seconds * max_attempts
        """
        self.platform = platform
        self.interval_seconds = interval_seconds
        self.max_attempts = max_attempts

    async def roll_out(self, env: Environment, revision: Optional[int] = None) -> ServiceState:
        """
        Roll the environment's service out and wait until it is stable.

        Args:
            env: Target environment; its running revision is updated on success
            revision: Explicit revision to target (rollback). When omitted the
                environment's declared revision is re-applied.

        Returns:
            Service state once stable

        Raises:
            DeploymentRejectedError: Update not accepted, or circuit breaker tripped
            StabilizationTimeoutError: Not stable within the allowed number of polls
        """
        target = revision if revision is not None else env.declared_revision
        # Without a target the service is redeployed on whatever it runs now
        revision_ref = f"{env.family}:{target}" if target is not None else None

        logger.info(
            f"Rolling out {env.cluster}/{env.service} in {env.name} "
            f"(target revision: {target if target is not None else 'current'})"
        )
        try:
            accepted = await self.platform.update_service(env.cluster, env.service, revision_ref)
        except PlatformError as e:
            raise DeploymentRejectedError(
                f"Update of {env.service} in {env.name} failed: {e.message}",
                {"cluster": env.cluster, "service": env.service, "code": e.code, **e.details},
            ) from e
        if not accepted:
            raise DeploymentRejectedError(
                f"Platform did not accept the update of {env.service} in {env.name}",
                {"cluster": env.cluster, "service": env.service, "target_revision": target},
            )
        if revision is not None:
            env.declared_revision = revision

        last: Optional[ServiceDescription] = None
        for attempt in range(1, self.max_attempts + 1):
            description = await self.platform.describe_service(env.cluster, env.service)
            last = description

            rejection = self._rejected_deployment(description, target)
            if rejection is not None:
                logger.error(
                    f"Rollout of {env.service} in {env.name} rejected by circuit breaker: "
                    f"{rejection.get('reason')}"
                )
                raise DeploymentRejectedError(
                    f"Deployment of revision {rejection.get('revision')} to {env.name} was "
                    f"rejected: {rejection.get('reason')}",
                    rejection,
                )

            if self._is_settled(description, target):
                tasks = await self.platform.list_tasks(env.cluster, env.service)
                if len(tasks) == description.desired_count:
                    primary = description.primary
                    active_revision = primary.revision if primary else target
                    env.running_revision = active_revision
                    if env.declared_revision is None:
                        env.declared_revision = active_revision
                    logger.info(
                        f"{env.service} in {env.name} stable on revision {active_revision} "
                        f"({description.running_count}/{description.desired_count}) "
                        f"after {attempt} poll(s)"
                    )
                    return ServiceState(
                        running_count=description.running_count,
                        desired_count=description.desired_count,
                        circuit_breaker_tripped=False,
                        active_revision=active_revision,
                    )
                logger.debug(
                    f"{env.service}: counts settled but {len(tasks)} task(s) listed, "
                    f"expected {description.desired_count}"
                )

            logger.debug(
                f"{env.service} in {env.name} not stable yet "
                f"({description.running_count}/{description.desired_count}, "
                f"{len(description.deployments)} deployment(s)), poll {attempt}/{self.max_attempts}"
            )
            if attempt < self.max_attempts:
                await asyncio.sleep(self.interval_seconds)

        details: Dict[str, Any] = {
            "cluster": env.cluster,
            "service": env.service,
            "target_revision": target,
            "attempts": self.max_attempts,
            "interval_seconds": self.interval_seconds,
        }
        if last is not None:
            details["running_count"] = last.running_count
            details["desired_count"] = last.desired_count
            details["deployments"] = self._deployment_summary(last)
        raise StabilizationTimeoutError(
            f"{env.service} in {env.name} did not stabilize within "
            f"{self.max_attempts * self.interval_seconds:.0f}s",
            details,
        )

    def _is_settled(self, description: ServiceDescription, target: Optional[int]) -> bool:
        """One deployment left, on the target revision, at full strength."""
        if len(description.deployments) != 1:
            return False
        primary = description.primary
        if primary is None:
            return False
        if target is not None and primary.revision != target:
            return False
        if primary.rollout_state not in (None, "COMPLETED"):
            return False
        return description.running_count == description.desired_count

    def _rejected_deployment(
        self, description: ServiceDescription, target: Optional[int]
    ) -> Optional[Dict[str, Any]]:
        for deployment in description.deployments:
            if deployment.rollout_state != "FAILED":
                continue
            if target is not None and deployment.revision != target:
                continue
            primary = description.primary
            return {
                "revision": deployment.revision,
                "deployment_id": deployment.deployment_id,
                "reason": deployment.rollout_state_reason or "rollout failed",
                "failed_tasks": deployment.failed_tasks,
                "circuit_breaker": description.circuit_breaker.model_dump(),
                "reverted_to": primary.revision if primary else None,
            }
        return None

    def _deployment_summary(self, description: ServiceDescription) -> List[Dict[str, Any]]:
        return [
            {
                "id": d.deployment_id,
                "status": d.status,
                "revision": d.revision,
                "running": d.running_count,
                "desired": d.desired_count,
                "rollout_state": d.rollout_state,
            }
            for d in description.deployments
        ]
