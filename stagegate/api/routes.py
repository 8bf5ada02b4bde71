"""
Pipeline routes - trigger runs, inspect history, abort, manual rollback.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Query

from stagegate import __version__
from stagegate.errors import (
    ArtifactResolutionError,
    NoPriorRevisionError,
    PipelineBusyError,
    PipelineError,
)
from stagegate.models import PipelineRun, TriggerEvent
from stagegate.utils.log_sanitizer import sanitize_for_log

from .dependencies import deployment_auth, get_manager
from .models import (
    AbortResponse,
    HealthResponse,
    RollbackRequest,
    RollbackResponse,
    RunListResponse,
    TriggerRequest,
    TriggerResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["pipeline"])


@router.get("/health", response_model=HealthResponse)
async def health(manager: Any = Depends(get_manager)) -> HealthResponse:
    return HealthResponse(status="ok", version=__version__, active_runs=manager.active_runs())


@router.post("/pipeline/runs", response_model=TriggerResponse)
async def trigger_run(
    request: TriggerRequest,
    manager: Any = Depends(get_manager),
    _user: Dict[str, str] = Depends(deployment_auth),
) -> TriggerResponse:
    """
    Start a pipeline run.

    This is the single call the publishing workflow makes once an image is
    pushed.
    """
    trigger = TriggerEvent(
        commit_sha=request.commit_sha,
        message=request.message,
        actor=request.actor,
        source="api",
        rollback_intent=request.rollback_intent,
    )
    try:
        run_id = await manager.start_run(request.image, trigger)
    except PipelineBusyError as e:
        raise HTTPException(status_code=409, detail=e.message)
    except ArtifactResolutionError as e:
        raise HTTPException(status_code=422, detail=e.message)

    logger.info(f"Run {run_id} triggered for {sanitize_for_log(request.image)}")
    return TriggerResponse(run_id=run_id)


@router.get("/pipeline/runs", response_model=RunListResponse)
async def list_runs(
    limit: int = Query(20, ge=1, le=500),
    manager: Any = Depends(get_manager),
) -> RunListResponse:
    return RunListResponse(runs=manager.list_runs(limit))


@router.get("/pipeline/runs/{run_id}", response_model=PipelineRun)
async def get_run(run_id: str, manager: Any = Depends(get_manager)) -> PipelineRun:
    run = manager.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")
    return run  # type: ignore[no-any-return]


@router.post("/pipeline/runs/{run_id}/abort", response_model=AbortResponse)
async def abort_run(
    run_id: str,
    manager: Any = Depends(get_manager),
    _user: Dict[str, str] = Depends(deployment_auth),
) -> AbortResponse:
    """Stop a run before its next stage; the current stage runs to completion."""
    if manager.abort(run_id, user=_user.get("id")):
        return AbortResponse(run_id=run_id)
    if manager.get_run(run_id) is None:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")
    raise HTTPException(status_code=409, detail=f"Run '{run_id}' is not in flight")


@router.post("/pipeline/rollback", response_model=RollbackResponse)
async def rollback(
    request: RollbackRequest,
    manager: Any = Depends(get_manager),
    _user: Dict[str, str] = Depends(deployment_auth),
) -> RollbackResponse:
    """Roll production back to a copy of the revision before the active one."""
    try:
        result = await manager.manual_rollback(user=request.actor or _user.get("id"))
    except PipelineBusyError as e:
        raise HTTPException(status_code=409, detail=e.message)
    except NoPriorRevisionError as e:
        raise HTTPException(status_code=409, detail=e.message)
    except PipelineError as e:
        logger.error(f"Manual rollback failed: {e.message}")
        raise HTTPException(status_code=502, detail=e.message)
    return RollbackResponse(**result)
