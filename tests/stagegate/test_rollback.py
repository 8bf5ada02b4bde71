"""
Tests for rollback resolution.
"""

import pytest
from unittest.mock import AsyncMock, Mock

from stagegate.errors import NoPriorRevisionError, PlatformError, RevisionOrderError
from stagegate.models import ServiceDescription, strip_platform_metadata
from stagegate.pipeline import RollbackResolver
from stagegate.platform import InMemoryPlatform


class TestRollbackResolver:
    """Test previous-revision resolution and re-registration."""

    @pytest.fixture
    def memory(self):
        return InMemoryPlatform()

    @pytest.mark.asyncio
    async def test_copies_previous_revision(self, memory, production_env):
        """Test current 5 -> reads 4 -> registers a new revision equal to 4."""
        memory.seed_revisions(
            production_env.family, [f"registry.example/app:{i}" for i in range(1, 6)]
        )
        memory.run_service(production_env.cluster, production_env.service, production_env.family, 5)

        record = await RollbackResolver(memory).resolve_previous(production_env)

        assert record.revision == 6
        assert record.revision not in (4, 5)
        assert record.source_revision == 4
        assert memory.calls_to("describe_revision") == [
            ("describe_revision", production_env.family, 4)
        ]
        original = await memory.describe_revision(production_env.family, 4)
        assert record.functional_fields() == strip_platform_metadata(original)
        assert record.functional_fields()["containerDefinitions"][0]["image"] == (
            "registry.example/app:4"
        )

    @pytest.mark.asyncio
    async def test_registered_definition_has_no_platform_metadata(self, memory, production_env):
        memory.seed_revisions(production_env.family, ["a", "b"])
        memory.run_service(production_env.cluster, production_env.service, production_env.family, 2)

        await RollbackResolver(memory).resolve_previous(production_env)

        _, submitted = memory.calls_to("register_revision")[0]
        assert "revision" not in submitted
        assert "taskDefinitionArn" not in submitted
        assert "registeredAt" not in submitted

    @pytest.mark.asyncio
    async def test_first_revision_has_no_prior(self, memory, production_env):
        memory.seed_revisions(production_env.family, ["registry.example/app:1"])
        memory.run_service(production_env.cluster, production_env.service, production_env.family, 1)

        with pytest.raises(NoPriorRevisionError) as exc_info:
            await RollbackResolver(memory).resolve_previous(production_env)

        assert exc_info.value.details["current_revision"] == 1
        assert memory.calls_to("register_revision") == []
        assert memory.calls_to("update_service") == []

    @pytest.mark.asyncio
    async def test_falls_back_to_last_confirmed_revision(self, production_env):
        mock_platform = Mock()
        mock_platform.describe_service = AsyncMock(return_value=ServiceDescription())
        mock_platform.describe_revision = AsyncMock(
            return_value={"family": production_env.family, "revision": 2, "cpu": "256"}
        )
        mock_platform.register_revision = AsyncMock(
            return_value=Mock(revision=4, family=production_env.family)
        )
        production_env.running_revision = 3

        await RollbackResolver(mock_platform).resolve_previous(production_env)

        mock_platform.describe_revision.assert_awaited_once_with(production_env.family, 2)
        mock_platform.register_revision.assert_awaited_once_with(
            {"family": production_env.family, "cpu": "256"}
        )

    @pytest.mark.asyncio
    async def test_unreadable_previous_revision(self, production_env):
        mock_platform = Mock()
        mock_platform.describe_service = AsyncMock(return_value=ServiceDescription())
        mock_platform.describe_revision = AsyncMock(
            side_effect=PlatformError("Unable to describe task definition", code="ClientException")
        )
        mock_platform.register_revision = AsyncMock()
        production_env.running_revision = 3

        with pytest.raises(NoPriorRevisionError):
            await RollbackResolver(mock_platform).resolve_previous(production_env)

        mock_platform.register_revision.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_registered_revision_must_be_newer(self, production_env):
        """Test that a registration numbered at or below the active revision is refused."""
        mock_platform = Mock()
        mock_platform.describe_service = AsyncMock(return_value=ServiceDescription())
        mock_platform.describe_revision = AsyncMock(
            return_value={"family": production_env.family, "revision": 4, "cpu": "256"}
        )
        mock_platform.register_revision = AsyncMock(
            return_value=Mock(revision=4, family=production_env.family)
        )
        mock_platform.update_service = AsyncMock()
        production_env.running_revision = 5

        with pytest.raises(RevisionOrderError) as exc_info:
            await RollbackResolver(mock_platform).resolve_previous(production_env)

        assert exc_info.value.details == {
            "family": production_env.family,
            "current_revision": 5,
            "registered_revision": 4,
        }
        mock_platform.update_service.assert_not_awaited()
