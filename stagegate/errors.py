"""
Error taxonomy for StageGate.

Stage executors raise PipelineError subclasses; the controller records them
verbatim in the failing StageResult. Platform adapters raise PlatformError,
which stage executors translate into the pipeline taxonomy.
"""

from typing import Any, Dict, Optional


class StageGateError(Exception):
    """Base class for every error raised by StageGate."""

    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details or {}


# ============================================================================
# PIPELINE STAGE FAILURES
# ============================================================================


class PipelineError(StageGateError):
    """A stage failed; recorded in its StageResult."""


class InfrastructureApplyError(PipelineError):
    """Stack apply failed for a reason other than "no changes"."""


class MissingOutputError(PipelineError):
    """Applied stack did not expose an expected output."""


class StabilizationTimeoutError(PipelineError):
    """Service did not stabilize within the allowed number of polls."""

    retryable = True


class DeploymentRejectedError(PipelineError):
    """Platform refused the rollout or its circuit breaker reverted it."""


class GateFailure(PipelineError):
    """A gate suite reported failure."""


class NoPriorRevisionError(PipelineError):
    """There is no revision before the active one to roll back to."""


class RevisionOrderError(PipelineError):
    """A newly registered revision is not newer than the active one."""


class EnvironmentDivergedError(PipelineError):
    """Declared and running revisions did not converge."""


# ============================================================================
# PLATFORM ERRORS
# ============================================================================


class PlatformError(StageGateError):
    """An infrastructure or cluster platform call failed."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: Optional[str] = None,
    ) -> None:
        super().__init__(message, details)
        self.code = code


class NoChangesError(PlatformError):
    """Stack apply had nothing to change."""


# ============================================================================
# CONFIGURATION AND ORCHESTRATION ERRORS
# ============================================================================


class ConfigurationError(StageGateError):
    """Configuration is missing or invalid."""


class GateConfigurationError(ConfigurationError):
    """A gate suite id has no configured command."""


class ArtifactResolutionError(StageGateError):
    """An image reference could not be resolved to a digest."""


class InvalidTransitionError(StageGateError):
    """A pipeline state transition is not in the transition table."""


class RunFinalizedError(StageGateError):
    """A terminal PipelineRun was modified."""


class PipelineBusyError(StageGateError):
    """A run is already in flight for the same family and environment."""
