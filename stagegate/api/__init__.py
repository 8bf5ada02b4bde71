"""
HTTP API for StageGate.

Routes:
- POST /pipeline/runs: start a run (CI trigger)
- GET  /pipeline/runs, /pipeline/runs/{run_id}: run history
- POST /pipeline/runs/{run_id}/abort: stop a run between stages
- POST /pipeline/rollback: manual production rollback
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI

from stagegate import __version__

from .routes import router


def create_app(manager: Any) -> FastAPI:
    """Create the FastAPI application bound to ``manager``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await manager.stop()

    app = FastAPI(title="StageGate API", version=__version__, lifespan=lifespan)
    app.state.manager = manager
    app.include_router(router)
    return app


__all__ = ["create_app", "router"]
