"""
Shared dependencies for the pipeline routes.
"""

import hmac
import logging
from typing import Any, Dict, Optional

from fastapi import Header, HTTPException, Request

logger = logging.getLogger(__name__)


def get_manager(request: Request) -> Any:
    """Return the PipelineManager attached by ``create_app``."""
    manager = getattr(request.app.state, "manager", None)
    if manager is None:
        raise HTTPException(status_code=500, detail="Pipeline manager not initialized")
    return manager


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise _unauthorized("Missing authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _unauthorized("Expected 'Bearer <deploy token>'")
    return token.strip()


async def deployment_auth(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Dict[str, str]:
    """
    Check the deploy token on routes that change an environment.

    With no ``api.deploy_token`` configured the routes are open, which is
    only meant for local dry runs against the in-memory platform.

    Returns:
        Dict identifying the caller
    """
    expected = get_manager(request).config.api.deploy_token
    if not expected:
        return {"id": "anonymous"}

    if not hmac.compare_digest(_bearer_token(authorization), expected):
        logger.warning(f"Rejected deploy token from {request.client.host if request.client else 'unknown'}")
        raise _unauthorized("Invalid deploy token")

    return {"id": "deploy-token"}
