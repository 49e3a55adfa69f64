"""Status API routes."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from clusterscope.api.schemas import ErrorResponse, HealthResponse, PoliciesResponse, SnapshotResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    """Report whether a snapshot is available and how the last pass went.

    ``degraded`` means a snapshot is published but the latest pass failed,
    so it is older than one interval.
    """
    watcher = request.app.state.watcher
    snapshot = watcher.snapshot
    if snapshot is None:
        status = "warming"
    elif watcher.last_error:
        status = "degraded"
    else:
        status = "ok"
    last_success = watcher.last_success
    return HealthResponse(
        status=status,
        cluster_id=request.app.state.cluster_id,
        snapshot_available=snapshot is not None,
        last_success=last_success.isoformat() if last_success else None,
        last_error=watcher.last_error,
    )


@router.get(
    "/snapshot",
    response_model=SnapshotResponse,
    responses={503: {"model": ErrorResponse}},
)
async def snapshot(request: Request) -> SnapshotResponse | JSONResponse:
    """Return the latest published Cluster snapshot."""
    watcher = request.app.state.watcher
    cluster = watcher.snapshot
    if cluster is None:
        return JSONResponse(
            status_code=503,
            content=ErrorResponse(
                error="SNAPSHOT_UNAVAILABLE",
                detail="No aggregation pass has completed yet.",
            ).model_dump(),
        )
    last_success = watcher.last_success
    return SnapshotResponse(
        cluster_id=cluster.id,
        captured_at=last_success.isoformat() if last_success else "",
        entities=cluster.entity_counts(),
        snapshot=cluster.to_dict(),
    )


@router.get(
    "/policies",
    response_model=PoliciesResponse,
    responses={503: {"model": ErrorResponse}},
)
async def policies(request: Request) -> PoliciesResponse | JSONResponse:
    """Return the method of every resolved access control policy.

    Only method names are exposed, never credentials.
    """
    registry = request.app.state.acp_registry
    if registry is None:
        return JSONResponse(
            status_code=503,
            content=ErrorResponse(
                error="POLICIES_UNAVAILABLE",
                detail="Access control policy resolution is not running.",
            ).model_dump(),
        )
    methods = registry.methods()
    return PoliciesResponse(count=len(methods), methods=methods, last_error=registry.last_error)
