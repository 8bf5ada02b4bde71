"""
Platform protocols defining contracts between the pipeline and the platforms
it drives.

Stage executors depend only on these protocols, so the same pipeline runs
against AWS or the in-memory platform.
"""

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from stagegate.models import ServiceDescription, ServiceRevisionRecord


@runtime_checkable
class InfrastructurePlatform(Protocol):
    """Applies and describes parameterized infrastructure stacks."""

    async def apply_stack(
        self, stack_name: str, template: str, parameters: Dict[str, str]
    ) -> Dict[str, str]:
        """
        Create or update a stack and wait for it to settle.

        Promises:
        - Returns the stack outputs (key -> value) on success
        - Raises NoChangesError when the stack already matches
        - Raises PlatformError for every other failure
        """
        ...

    async def describe_stack(self, stack_name: str) -> Dict[str, str]:
        """
        Return the outputs of an existing stack.

        Promises:
        - Raises PlatformError if the stack does not exist
        """
        ...


@runtime_checkable
class ClusterPlatform(Protocol):
    """Runs services and keeps the append-only revision store."""

    async def update_service(
        self, cluster: str, service: str, revision: Optional[str] = None
    ) -> bool:
        """
        Start a rolling update; ``revision`` is ``family:N`` or None to
        force a fresh deployment of the current definition.

        Promises:
        - Returns True when the platform accepted the request
        """
        ...

    async def describe_service(self, cluster: str, service: str) -> ServiceDescription:
        """Current counts, deployments and circuit-breaker configuration."""
        ...

    async def list_tasks(self, cluster: str, service: str) -> List[str]:
        """References of the service's running tasks."""
        ...

    async def register_revision(self, definition: Dict[str, Any]) -> ServiceRevisionRecord:
        """
        Register a definition.

        Promises:
        - Always appends a new revision number, strictly greater than any
          previously registered for the family
        """
        ...

    async def describe_revision(self, family: str, revision: int) -> Dict[str, Any]:
        """
        Full registered definition for ``family:revision``.

        Promises:
        - Raises PlatformError if the revision does not exist
        """
        ...
