"""
Tests for the stack deployer.
"""

import pytest
from unittest.mock import AsyncMock, Mock

from stagegate.errors import (
    InfrastructureApplyError,
    MissingOutputError,
    NoChangesError,
    PlatformError,
)
from stagegate.pipeline import StackDeployer
from stagegate.platform import StackBinding

STAGING_ENDPOINT = "http://stg.example/"


class TestStackDeployer:
    """Test stack apply and output resolution."""

    @pytest.fixture
    def deployer(self, platform):
        return StackDeployer(platform)

    def test_build_parameters(self, deployer, staging_env, artifact):
        staging_env.parameters = {"DesiredCount": "4", "LogRetention": "14"}

        parameters = deployer.build_parameters(staging_env, artifact)

        assert parameters["EnvironmentName"] == "staging"
        assert parameters["ArtifactReference"] == "sha:abc123"
        assert parameters["NetworkPlacement"] == "subnet-a,subnet-b"
        assert parameters["CircuitBreakerEnabled"] == "true"
        assert parameters["CircuitBreakerThreshold"] == "3"
        # Extra parameters win
        assert parameters["DesiredCount"] == "4"
        assert parameters["LogRetention"] == "14"

    @pytest.mark.asyncio
    async def test_apply_resolves_endpoint_and_revision(self, deployer, platform, staging_env, artifact):
        result = await deployer.apply(staging_env, artifact)

        assert result.endpoint == STAGING_ENDPOINT
        assert result.declared_revision == 1
        assert result.changed is True
        assert staging_env.endpoint == STAGING_ENDPOINT
        assert staging_env.declared_revision == 1

    @pytest.mark.asyncio
    async def test_apply_is_idempotent(self, deployer, platform, staging_env, artifact):
        """Test that a repeated apply with the same inputs reads outputs instead of failing."""
        first = await deployer.apply(staging_env, artifact)
        second = await deployer.apply(staging_env, artifact)

        assert second.changed is False
        assert second.endpoint == first.endpoint
        assert second.declared_revision == first.declared_revision
        assert platform.latest_revision(staging_env.family) == 1
        assert len(platform.calls_to("describe_stack")) == 1

    @pytest.mark.asyncio
    async def test_apply_failure(self, deployer, platform, staging_env, artifact):
        platform.fail_stack(staging_env.stack_name, "Parameter ExecutionRoleArn is invalid")

        with pytest.raises(InfrastructureApplyError) as exc_info:
            await deployer.apply(staging_env, artifact)

        assert "ExecutionRoleArn" in exc_info.value.message
        assert exc_info.value.details["stack_status"] == "UPDATE_ROLLBACK_COMPLETE"
        assert staging_env.endpoint is None

    @pytest.mark.asyncio
    async def test_missing_endpoint_output(self, deployer, platform, staging_env, artifact):
        platform.bind_stack(
            staging_env.stack_name,
            StackBinding(
                cluster=staging_env.cluster,
                service=staging_env.service,
                family=staging_env.family,
                endpoint=None,
            ),
        )

        with pytest.raises(MissingOutputError) as exc_info:
            await deployer.apply(staging_env, artifact)

        assert exc_info.value.details["expected_output"] == "ServiceUrl"
        assert "TaskDefinitionArn" in exc_info.value.details["available_outputs"]

    @pytest.mark.asyncio
    async def test_unreadable_unchanged_stack(self, staging_env, artifact):
        mock_platform = Mock()
        mock_platform.apply_stack = AsyncMock(side_effect=NoChangesError("No updates are to be performed."))
        mock_platform.describe_stack = AsyncMock(side_effect=PlatformError("Throttling", code="Throttling"))

        with pytest.raises(InfrastructureApplyError):
            await StackDeployer(mock_platform).apply(staging_env, artifact)
