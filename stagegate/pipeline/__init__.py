"""
Pipeline orchestration module.

Provides the progressive deployment pipeline:
- Stack apply per environment
- Rolling service updates with stabilization wait
- Acceptance and smoke gates
- Rollback to the previous revision

Usage:
    from stagegate.pipeline import PipelineController

    controller = PipelineController(staging, production, deployer, updater, gates, resolver)
    run = await controller.run(artifact, trigger)
"""

from stagegate.pipeline.controller import PipelineController
from stagegate.pipeline.gate_runner import GateRunner, parse_failed_tests
from stagegate.pipeline.rollback import RollbackResolver
from stagegate.pipeline.service_updater import ServiceUpdater
from stagegate.pipeline.stack_deployer import StackDeployer
from stagegate.pipeline.state import RunStore

__all__ = [
    "PipelineController",
    "GateRunner",
    "RollbackResolver",
    "RunStore",
    "ServiceUpdater",
    "StackDeployer",
    "parse_failed_tests",
]
