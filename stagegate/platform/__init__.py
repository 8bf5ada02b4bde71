"""
Platform adapters.

Provides the infrastructure and cluster platforms the pipeline drives:
- AWS CloudFormation and ECS (boto3)
- An in-memory platform for dry runs

Usage:
    from stagegate.platform import build_platforms

    infrastructure, cluster = build_platforms(config.platform)
"""

from typing import Any, Tuple

from stagegate.platform.memory import InMemoryPlatform, StackBinding
from stagegate.platform.protocols import ClusterPlatform, InfrastructurePlatform


def build_platforms(platform_config: Any) -> Tuple[InfrastructurePlatform, ClusterPlatform]:
    """Create the infrastructure and cluster platforms named in configuration."""
    if platform_config.provider == "memory":
        memory = InMemoryPlatform()
        return memory, memory

    from stagegate.platform.aws import CloudFormationPlatform, ECSPlatform, create_session

    session = create_session(platform_config.region, platform_config.profile)
    infrastructure = CloudFormationPlatform(
        session,
        capabilities=platform_config.capabilities,
        timeout_seconds=platform_config.stack_timeout_seconds,
    )
    return infrastructure, ECSPlatform(session)


__all__ = [
    "ClusterPlatform",
    "InfrastructurePlatform",
    "InMemoryPlatform",
    "StackBinding",
    "build_platforms",
]
