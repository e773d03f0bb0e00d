"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    version: str
    session_count: int


@router.get("/api/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Health check endpoint for monitoring."""
    manager = getattr(request.app.state, "sync_manager", None)
    if manager is None:
        return HealthResponse(status="starting", version="0.1.0", session_count=0)
    return HealthResponse(status="ok", version="0.1.0", session_count=len(manager.sessions))
