"""
Rollback resolver.

Computes the revision before the one a service is running and registers a
fresh copy of it, so the rollback target is always an eligible, newly
numbered revision regardless of the platform's retention of old ones.

"Previous" is the active revision number minus one. A revision registered
outside this pipeline can occupy that number with an unrelated definition;
that limitation is kept deliberately and logged with every resolution.
"""

import logging
from typing import Optional

from stagegate.errors import NoPriorRevisionError, PlatformError, RevisionOrderError
from stagegate.models import Environment, ServiceRevisionRecord, strip_platform_metadata
from stagegate.platform.protocols import ClusterPlatform

logger = logging.getLogger(__name__)


class RollbackResolver:
    """Resolves and re-registers the previous service revision."""

    def __init__(self, platform: ClusterPlatform) -> None:
        self.platform = platform

    async def active_revision(self, env: Environment) -> Optional[int]:
        """Revision of the service's primary deployment, else the last confirmed one."""
        description = await self.platform.describe_service(env.cluster, env.service)
        primary = description.primary
        if primary is not None and primary.revision is not None:
            return primary.revision
        return env.running_revision

    async def resolve_previous(self, env: Environment) -> ServiceRevisionRecord:
        """
        Register a new revision equivalent to the one before the active one.

        Args:
            env: Environment whose service is rolled back

        Returns:
            The newly registered record; its revision is the rollback target

        Raises:
            NoPriorRevisionError: The active revision is the first of its family
            RevisionOrderError: The platform registered a revision that is not
                newer than the active one
        """
        current = await self.active_revision(env)
        if current is None or current - 1 < 1:
            raise NoPriorRevisionError(
                f"No revision before {env.family}:{current} to roll back to",
                {"family": env.family, "current_revision": current},
            )

        previous = current - 1
        logger.info(
            f"Resolving rollback for {env.family}: current {current}, previous {previous} "
            f"(previous = current - 1; revisions registered outside the pipeline are not skipped)"
        )

        try:
            definition = await self.platform.describe_revision(env.family, previous)
        except PlatformError as e:
            raise NoPriorRevisionError(
                f"Revision {env.family}:{previous} could not be read: {e.message}",
                {"family": env.family, "current_revision": current, "code": e.code},
            ) from e

        record = await self.platform.register_revision(strip_platform_metadata(definition))
        if record.revision <= current:
            raise RevisionOrderError(
                f"Registered {record.family}:{record.revision} is not newer than active "
                f"revision {current}; the revision store is not append-only",
                {
                    "family": record.family,
                    "current_revision": current,
                    "registered_revision": record.revision,
                },
            )

        logger.info(
            f"Registered {record.family}:{record.revision} as a copy of {env.family}:{previous}"
        )
        return record.model_copy(update={"source_revision": previous})
