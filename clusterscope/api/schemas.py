"""Response schemas for the status API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Error envelope returned by every failing endpoint."""

    error: str
    detail: str


class HealthResponse(BaseModel):
    """Outcome of the most recent aggregation passes."""

    status: str  # ok | degraded | warming
    cluster_id: str
    snapshot_available: bool
    last_success: str | None = None  # ISO-8601 UTC
    last_error: str | None = None


class SnapshotResponse(BaseModel):
    """The latest published snapshot."""

    cluster_id: str
    captured_at: str  # ISO-8601 UTC
    entities: dict[str, int]
    snapshot: dict[str, Any]


class PoliciesResponse(BaseModel):
    """Resolved access control policies, by ``name@namespace`` key."""

    count: int
    methods: dict[str, str]
    last_error: str | None = None
