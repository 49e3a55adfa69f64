"""FastAPI application factory for the ClusterScope status API.

Usage::

    from clusterscope.api.app import create_app

    app = create_app(watcher=watcher, config=config)

The API is read-only.  It serves the latest snapshot and the resolved
policy methods for probes and debugging.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from clusterscope.api.routes import router
from clusterscope.api.schemas import ErrorResponse

_log = structlog.get_logger(component="api.app")

_API_PREFIX = "/api/v1"


def create_app(watcher: Any, config: Any = None, acp_registry: Any = None) -> FastAPI:
    """Create and configure the status API application.

    Args:
        watcher: TopologyWatcher whose snapshot is served.
        config:  ClusterScopeConfig.  Used for cluster_id metadata.
        acp_registry: ACPRegistry behind /policies; None disables it.
    """
    from clusterscope import __version__

    cluster_id: str = ""
    if config is not None and hasattr(config, "cluster_id"):
        cluster_id = config.cluster_id or ""

    app = FastAPI(
        title="ClusterScope",
        summary="Cluster topology snapshot status API",
        version=__version__,
        docs_url="/api/v1/docs",
        redoc_url=None,
        openapi_url="/api/v1/openapi.json",
    )
    app.state.watcher = watcher
    app.state.config = config
    app.state.acp_registry = acp_registry
    app.state.cluster_id = cluster_id

    app.include_router(router, prefix=_API_PREFIX)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unhandled exceptions, never exposing stack traces."""
        _log.error(
            "unhandled_exception",
            path=str(request.url.path),
            method=request.method,
            error=str(exc),
        )
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="INTERNAL_ERROR",
                detail="An unexpected error occurred.",
            ).model_dump(),
        )

    return app
