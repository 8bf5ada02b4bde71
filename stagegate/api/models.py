"""
Request and response models for the pipeline API.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from stagegate.models import PipelineRun


class TriggerRequest(BaseModel):
    """Start a pipeline run for a published artifact."""

    image: str = Field(..., min_length=1, description="Image reference or digest to promote")
    commit_sha: Optional[str] = Field(None, description="Commit the image was built from")
    message: str = Field("", description="Change description; may carry the rollback marker")
    actor: Optional[str] = Field(None, description="Who triggered the run")
    rollback_intent: bool = Field(False, description="Roll back automatically if the smoke gate fails")


class TriggerResponse(BaseModel):
    run_id: str
    status: str = "started"


class RunListResponse(BaseModel):
    runs: List[PipelineRun]


class AbortResponse(BaseModel):
    run_id: str
    status: str = "abort_requested"


class RollbackRequest(BaseModel):
    actor: Optional[str] = None


class RollbackResponse(BaseModel):
    family: str
    copied_from_revision: Optional[int] = None
    rollback_revision: int
    rollback_arn: Optional[str] = None
    service_state: Dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    status: str
    version: str
    active_runs: List[str] = Field(default_factory=list)
