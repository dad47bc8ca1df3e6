"""Health check and monitoring endpoints.

This module provides:
- GET /health - Basic health check
- GET /metrics - Prometheus metrics
"""
from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from keyrelay.app.dependencies import get_app_state

router = APIRouter(tags=["Health"])


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str = "0.1.0"
    credentials: int = 0
    usable_credentials: int = 0
    models: int = 0


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Basic health check endpoint for load balancers and monitoring."""
    pools = get_app_state().pools
    if pools is None:
        return HealthResponse(status="starting")
    return HealthResponse(
        status="ok",
        credentials=len(pools.credentials),
        usable_credentials=len(pools.credentials.usable_ids),
        models=len(pools.model_pool),
    )


@router.get("/metrics")
async def metrics() -> Response:
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
